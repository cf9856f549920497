"""
The store module holds the cluster data path: the directory of identity keys,
genesis output, client account files, and generated build contexts that a
family of orchestrator runs shares.

- Genesis and identity files are write-once. When present they are authoritative.
- The store is passed explicitly to every component; there is no global instance.
- A data path has a single writer at a time, enforced with a lock file.

This abstract interface allows for other backing implementations.
"""

from .store import Store
from .directory import DirectoryStore
from .artifact import Artifact, AccountsArtifact, GenesisArtifact

__all__ = [
    "Store",
    "DirectoryStore",
    "Artifact",
    "AccountsArtifact",
    "GenesisArtifact",
]
