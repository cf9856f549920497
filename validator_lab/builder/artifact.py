"""Artifact representation."""

from dataclasses import dataclass
from pathlib import Path

from validator_lab.manifest import BuildSpec, ImageRef, NodeType
from validator_lab.store.artifact import Artifact


@dataclass(frozen=True, kw_only=True)
class SourceArtifact(Artifact):
    """Binaries prepared from a build specification.

    The bin directory holds the validator, keygen, genesis, ledger and
    bench-tps programs used both locally and inside the images.
    """

    spec: BuildSpec
    """The specification the binaries were produced from."""

    root: Path
    """Directory containing the source tree or extracted release."""

    bin_dir: Path
    """Directory with the compiled or downloaded programs."""

    version_tag: str
    """Tag identifying this build in image references and resource names."""

    version_file: Path | None = None
    """The version.yml describing where the binaries came from."""


@dataclass(frozen=True, kw_only=True)
class ImageArtifact(Artifact):
    """A container image for one node role of a build."""

    node_type: NodeType
    image: ImageRef
    built: bool = False
    """True if this run built and pushed the image."""
