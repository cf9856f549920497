"""
The builder module turns a build specification into binaries and container
images.

A build specification is one of a local source tree, a commit of a GitHub
repository, or a published release channel. Sources are prepared once per
specification and turned into one image per node role, pushed to a registry.
An image that already exists in the registry under the same reference is not
rebuilt.
"""

from .artifact import ImageArtifact, SourceArtifact
from .builder import ArtifactBuilder, BuildConfig

__all__ = [
    "ArtifactBuilder",
    "BuildConfig",
    "ImageArtifact",
    "SourceArtifact",
]
