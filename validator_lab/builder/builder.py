"""Artifact builder that resolves a build specification to pushed images."""

import asyncio
from dataclasses import dataclass
import hashlib
import logging
from pathlib import Path

from validator_lab.exceptions import BuildException
from validator_lab.manifest import (
    BuildSpec,
    Commit,
    ImageRef,
    LocalPath,
    NodeType,
    ReleaseChannel,
)
from validator_lab.store import Store
from validator_lab.store.store import SOURCES

from . import source
from .artifact import ImageArtifact, SourceArtifact
from .cache import SourceCache
from .docker import Docker, assemble_context, render_dockerfile

_LOGGER = logging.getLogger(__name__)

DEFAULT_SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


@dataclass
class BuildConfig:
    """Options for producing and publishing images."""

    registry: str = "localhost:5000"
    """Registry images are pushed to and pulled from."""

    image_name: str = "k8s-cluster-image"
    """Image name, prefixed with the role of the node."""

    base_image: str = "ubuntu:22.04"

    skip_docker_build: bool = False
    """Compute image references without building or pushing."""

    scripts_dir: Path | None = None
    """Startup scripts copied into every image, defaults to the packaged scripts."""

    docker_bin: str = "docker"


def fingerprint(path: Path) -> str:
    """Short digest of a file, used to tell images with baked in content apart."""
    try:
        content = path.read_bytes()
    except OSError as err:
        raise BuildException(f"Unable to read {path}: {err}") from err
    return hashlib.sha256(content).hexdigest()[:8]


class ArtifactBuilder:
    """Resolves build specifications to binaries and per role images.

    Sources are prepared at most once per specification for the lifetime of
    the builder, and only once an image or a tool actually needs them.
    """

    def __init__(
        self, store: Store, config: BuildConfig, docker: Docker | None = None
    ) -> None:
        """Initialize ArtifactBuilder."""
        self._store = store
        self._config = config
        self._docker = docker or Docker(config.docker_bin)
        self._cache = SourceCache(store.path(SOURCES))
        self._sources: dict[BuildSpec, SourceArtifact] = {}
        self._lock = asyncio.Lock()

    @property
    def scripts_dir(self) -> Path:
        return self._config.scripts_dir or DEFAULT_SCRIPTS_DIR

    async def resolve(self, spec: BuildSpec) -> SourceArtifact:
        """Locate the binaries of a build specification without producing them.

        The version tag is known before anything is compiled or downloaded,
        so image references can be checked against the registry first.
        """
        if isinstance(spec, LocalPath):
            return await source.resolve_local(spec)
        if isinstance(spec, Commit):
            return source.resolve_commit(spec, self._cache)
        if isinstance(spec, ReleaseChannel):
            return source.resolve_release(spec, self._cache)
        raise BuildException(f"Unsupported build specification: {spec}")

    async def prepare(self, spec: BuildSpec) -> SourceArtifact:
        """Produce the binaries for a build specification."""
        async with self._lock:
            if (artifact := self._sources.get(spec)) is not None:
                return artifact
            _LOGGER.info("Preparing %s", spec.describe())
            if isinstance(spec, LocalPath):
                artifact = await source.prepare_local(spec)
            elif isinstance(spec, Commit):
                artifact = await source.fetch_commit(spec, self._cache)
            elif isinstance(spec, ReleaseChannel):
                artifact = await source.fetch_release(spec, self._cache)
            else:
                raise BuildException(f"Unsupported build specification: {spec}")
            _LOGGER.info("Prepared %s as tag %s", spec.describe(), artifact.version_tag)
            self._sources[spec] = artifact
            return artifact

    def image_ref(self, node_type: NodeType, tag: str) -> ImageRef:
        """Image reference for a role, e.g. `registry/validator-k8s-cluster-image:tag`."""
        return ImageRef(
            registry=self._config.registry,
            name=f"{node_type.resource_prefix}-{self._config.image_name}",
            tag=tag,
        )

    async def build_image(
        self,
        artifact: SourceArtifact,
        node_type: NodeType,
        extra_dirs: dict[str, Path] | None = None,
        content_id: str | None = None,
    ) -> ImageArtifact:
        """Build and push the image of a role unless the registry already has it.

        The binaries are only prepared when the image has to be built.

        Args:
            artifact: Resolved or prepared binaries.
            node_type: Role the image is for.
            extra_dirs: Directories baked into the image, keyed by their name
                in the build context.
            content_id: Appended to the tag when the image carries content
                specific to one cluster, such as the genesis ledger.
        """
        tag = artifact.version_tag
        if content_id:
            tag = f"{tag}-{content_id}"
        image = self.image_ref(node_type, tag)
        if self._config.skip_docker_build:
            _LOGGER.info("Skipping docker build for %s", image)
            return ImageArtifact(node_type=node_type, image=image)
        if await self._docker.exists(image):
            _LOGGER.info("Image %s already exists in registry", image)
            return ImageArtifact(node_type=node_type, image=image)

        if not self.scripts_dir.is_dir():
            raise BuildException(f"Scripts directory {self.scripts_dir} does not exist")
        prepared = await self.prepare(artifact.spec)
        context_dir = self._store.path(self._store.docker_key(node_type, tag))
        await assemble_context(
            context_dir,
            render_dockerfile(
                self._config.base_image,
                node_type,
                has_version=prepared.version_file is not None,
            ),
            prepared.bin_dir,
            self.scripts_dir,
            version_file=prepared.version_file,
            extra_dirs=extra_dirs,
        )
        await self._docker.build(image, context_dir)
        await self._docker.push(image)
        return ImageArtifact(node_type=node_type, image=image, built=True)
