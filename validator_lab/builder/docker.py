"""Container image build contexts and the docker command line."""

import asyncio
import logging
import os
from pathlib import Path
import shutil

from validator_lab import command
from validator_lab.exceptions import BuildException
from validator_lab.manifest import ImageRef, NodeType

_LOGGER = logging.getLogger(__name__)

HOME = "/home/solana"
SCRIPTS_DIR = f"{HOME}/k8s-cluster-scripts"
BIN_DIR = f"{HOME}/.cargo/bin"
LEDGER_DIR = f"{HOME}/ledger"
CLIENT_ACCOUNTS_DIR = f"{HOME}/client-accounts"

PACKAGES = "iputils-ping curl vim bzip2 psmisc iproute2 sudo procps"

DOCKERFILE = """\
FROM {base_image}
RUN apt-get update && apt-get install -y {packages} && rm -rf /var/lib/apt/lists/*

RUN useradd -ms /bin/bash solana && adduser solana sudo
USER solana

RUN mkdir -p {scripts_dir} {bin_dir} {home}/config
{copies}
ENV PATH="{bin_dir}:${{PATH}}"
WORKDIR {home}
"""


def render_dockerfile(base_image: str, node_type: NodeType, has_version: bool = True) -> str:
    """Dockerfile for a role.

    The bootstrap image carries the genesis ledger and a client image carries
    its funded account file. Other roles fetch genesis from the bootstrap.
    """
    copies = [
        f"./scripts {SCRIPTS_DIR}",
        f"./bin/ {BIN_DIR}/",
    ]
    if has_version:
        copies.append(f"./version.yml {HOME}/")
    if node_type == NodeType.BOOTSTRAP:
        copies.append(f"./ledger {LEDGER_DIR}")
    elif node_type == NodeType.CLIENT:
        copies.append(f"./client-accounts {CLIENT_ACCOUNTS_DIR}")
    return DOCKERFILE.format(
        base_image=base_image,
        packages=PACKAGES,
        scripts_dir=SCRIPTS_DIR,
        bin_dir=BIN_DIR,
        home=HOME,
        copies="\n".join(f"COPY --chown=solana:solana {copy}" for copy in copies),
    )


def _link_tree(src: Path, dst: Path) -> None:
    """Mirror a directory using hard links where the filesystem allows."""

    def link_or_copy(source: str, dest: str) -> None:
        try:
            os.link(source, dest)
        except OSError:
            shutil.copy2(source, dest)

    shutil.copytree(src, dst, copy_function=link_or_copy, dirs_exist_ok=True)


def _assemble(
    context_dir: Path,
    dockerfile: str,
    bin_dir: Path,
    scripts_dir: Path,
    version_file: Path | None,
    extra_dirs: dict[str, Path],
) -> None:
    if context_dir.exists():
        shutil.rmtree(context_dir)
    context_dir.mkdir(parents=True)
    _link_tree(bin_dir, context_dir / "bin")
    _link_tree(scripts_dir, context_dir / "scripts")
    if version_file is not None:
        shutil.copy2(version_file, context_dir / "version.yml")
    for name, src in extra_dirs.items():
        _link_tree(src, context_dir / name)
    (context_dir / "Dockerfile").write_text(dockerfile)


async def assemble_context(
    context_dir: Path,
    dockerfile: str,
    bin_dir: Path,
    scripts_dir: Path,
    version_file: Path | None = None,
    extra_dirs: dict[str, Path] | None = None,
) -> Path:
    """Write a build context with the binaries, scripts and extra directories.

    The context directory is recreated on every call so stale files from an
    earlier build never leak into an image.
    """
    await asyncio.to_thread(
        _assemble,
        context_dir,
        dockerfile,
        bin_dir,
        scripts_dir,
        version_file,
        extra_dirs or {},
    )
    _LOGGER.debug("Assembled docker build context %s", context_dir)
    return context_dir


class Docker:
    """Thin wrapper around the docker command line."""

    def __init__(self, docker_bin: str = "docker") -> None:
        self._docker = docker_bin

    async def exists(self, image: ImageRef) -> bool:
        """Return True if the registry already has the image."""
        try:
            await command.run(
                command.Command(
                    [self._docker, "manifest", "inspect", image.uri],
                    exc=BuildException,
                )
            )
        except BuildException:
            return False
        return True

    async def build(self, image: ImageRef, context_dir: Path) -> None:
        _LOGGER.info("Building image %s", image)
        await command.run(
            command.Command(
                [
                    self._docker,
                    "build",
                    "--tag",
                    image.uri,
                    "--file",
                    str(context_dir / "Dockerfile"),
                    str(context_dir),
                ],
                exc=BuildException,
                timeout=None,
            )
        )

    async def push(self, image: ImageRef) -> None:
        _LOGGER.info("Pushing image %s", image)
        await command.run(
            command.Command(
                [self._docker, "push", image.uri], exc=BuildException, timeout=None
            )
        )
