"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "builder",
    "genesis",
    "resources",
    "cluster",
    "sequencer",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
