"""Preparation of binaries from a local tree, a commit or a release channel."""

import asyncio
import hashlib
import logging
from pathlib import Path
import tarfile

import git
import httpx

from validator_lab import command
from validator_lab.exceptions import BuildException, ConfigException
from validator_lab.manifest import BuildType, Commit, LocalPath, ReleaseChannel, sanitize_tag

from .artifact import SourceArtifact
from .cache import SourceCache

_LOGGER = logging.getLogger(__name__)

INSTALL_SCRIPT = "scripts/cargo-install-all.sh"
BUILD_DIR = "farf"
RELEASE_DIR = "solana-release"
VERSION_FILE = "version.yml"
RELEASE_URL = (
    "https://github.com/anza-xyz/agave/releases/download/"
    "{tag}/solana-release-x86_64-unknown-linux-gnu.tar.bz2"
)
DOWNLOAD_TIMEOUT = 600.0


def tree_tag(repo: git.Repo) -> str:
    """Short hash identifying the state of a working tree.

    A clean tree is identified by its commit; uncommitted changes are folded
    into the hash so that different local edits never share an image tag.
    """
    sha = repo.head.commit.hexsha
    diff = repo.git.diff("HEAD")
    if not diff:
        return sanitize_tag(sha[:8])
    digest = hashlib.sha256()
    digest.update(sha.encode())
    digest.update(diff.encode())
    return sanitize_tag(digest.hexdigest()[:8])


def version_note(repo: git.Repo) -> str:
    """Branch name, or tag when the head is detached."""
    if not repo.head.is_detached:
        return repo.active_branch.name
    sha = repo.head.commit.hexsha
    for tag in repo.tags:
        if tag.commit.hexsha == sha:
            return tag.name
    return sha[:8]


def _open_repo(path: Path) -> git.Repo:
    try:
        return git.Repo(path)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as err:
        raise ConfigException(f"Local path {path} is not a git repository") from err


async def build_tree(
    spec: LocalPath | Commit, root: Path, build_type: BuildType, tag: str
) -> SourceArtifact:
    """Compile the validator binaries of a source tree in place."""
    install_dir = root / BUILD_DIR
    bin_dir = install_dir / "bin"
    if build_type == BuildType.SKIP:
        if not bin_dir.is_dir():
            raise BuildException(
                f"Build type is skip but no binaries were found in {bin_dir}"
            )
        _LOGGER.info("Skipping build, reusing binaries in %s", bin_dir)
    else:
        script = root / INSTALL_SCRIPT
        if not script.exists():
            raise BuildException(f"Build script {script} does not exist")
        args = [str(script)]
        if build_type == BuildType.DEBUG:
            args.append("--debug")
        args.extend(["--validator-only", str(install_dir)])
        _LOGGER.info("Building %s binaries in %s", build_type, root)
        await command.run(command.Command(args, cwd=root, exc=BuildException, timeout=None))

    repo = await asyncio.to_thread(_open_repo, root)
    version_file = install_dir / VERSION_FILE
    note = await asyncio.to_thread(version_note, repo)
    version_file.write_text(
        f"channel: devbuild {note}\ncommit: {repo.head.commit.hexsha}\n"
    )
    return SourceArtifact(
        spec=spec,
        root=root,
        bin_dir=bin_dir,
        version_tag=tag,
        version_file=version_file,
    )


def _tree_artifact(spec: LocalPath | Commit, root: Path, tag: str) -> SourceArtifact:
    install_dir = root / BUILD_DIR
    return SourceArtifact(
        spec=spec,
        root=root,
        bin_dir=install_dir / "bin",
        version_tag=tag,
        version_file=install_dir / VERSION_FILE,
    )


async def resolve_local(spec: LocalPath) -> SourceArtifact:
    """Locate a local source tree and compute its tag without building it."""
    root = spec.path.expanduser().resolve()
    if not root.is_dir():
        raise ConfigException(f"Local path {root} does not exist")
    repo = await asyncio.to_thread(_open_repo, root)
    tag = await asyncio.to_thread(tree_tag, repo)
    return _tree_artifact(spec, root, tag)


async def prepare_local(spec: LocalPath) -> SourceArtifact:
    """Build binaries from a local source tree."""
    artifact = await resolve_local(spec)
    return await build_tree(spec, artifact.root, spec.build_type, artifact.version_tag)


def _checkout(url: str, sha: str, repo_path: Path) -> None:
    if (repo_path / ".git").exists():
        _LOGGER.info("Updating existing repository at %s", repo_path)
        repo = git.Repo(repo_path)
        repo.git.fetch("origin")
    else:
        _LOGGER.info("Cloning repository %s to %s", url, repo_path)
        repo = git.Repo.clone_from(url, repo_path)
    _LOGGER.info("Checking out commit %s", sha)
    repo.git.checkout(sha)


def resolve_commit(spec: Commit, cache: SourceCache) -> SourceArtifact:
    """Where a commit is checked out and built, without fetching it."""
    return _tree_artifact(spec, cache.get_path(spec.url, f"commit:{spec.sha}"), spec.version_tag)


async def fetch_commit(spec: Commit, cache: SourceCache) -> SourceArtifact:
    """Clone a repository at a commit, then build it like a local tree."""
    repo_path = cache.get_path(spec.url, f"commit:{spec.sha}")
    try:
        await asyncio.to_thread(_checkout, spec.url, spec.sha, repo_path)
    except git.exc.GitCommandError as err:
        raise BuildException(f"Git operation failed for {spec.url}: {err}") from err
    return await build_tree(spec, repo_path, spec.build_type, spec.version_tag)


async def download(url: str, dest: Path) -> None:
    """Stream a file to disk."""
    tmp_dest = dest.with_name(f".{dest.name}.part")
    _LOGGER.info("Downloading %s", url)
    try:
        async with httpx.AsyncClient(
            follow_redirects=True, timeout=DOWNLOAD_TIMEOUT
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with tmp_dest.open("wb") as out:
                    async for chunk in response.aiter_bytes():
                        out.write(chunk)
    except httpx.HTTPError as err:
        tmp_dest.unlink(missing_ok=True)
        raise BuildException(f"Failed to download {url}: {err}") from err
    tmp_dest.replace(dest)


def _extract(archive: Path, dest: Path) -> None:
    with tarfile.open(archive, "r:bz2") as tar:
        tar.extractall(dest, filter="data")


def resolve_release(spec: ReleaseChannel, cache: SourceCache) -> SourceArtifact:
    release_dir = cache.get_path(RELEASE_URL.format(tag=spec.tag), spec.tag) / RELEASE_DIR
    version_file = release_dir / VERSION_FILE
    return SourceArtifact(
        spec=spec,
        root=release_dir,
        bin_dir=release_dir / "bin",
        version_tag=spec.version_tag,
        version_file=version_file if version_file.exists() else None,
    )


async def fetch_release(spec: ReleaseChannel, cache: SourceCache) -> SourceArtifact:
    """Download and unpack the prebuilt release archive for a tag."""
    url = RELEASE_URL.format(tag=spec.tag)
    root = cache.get_path(url, spec.tag)
    release_dir = root / RELEASE_DIR
    bin_dir = release_dir / "bin"
    if bin_dir.is_dir():
        _LOGGER.info("Using cached release %s in %s", spec.tag, release_dir)
    else:
        archive = root / "solana-release.tar.bz2"
        if not archive.exists():
            await download(url, archive)
        try:
            await asyncio.to_thread(_extract, archive, root)
        except (tarfile.TarError, OSError) as err:
            archive.unlink(missing_ok=True)
            raise BuildException(f"Failed to extract release {spec.tag}: {err}") from err
        if not bin_dir.is_dir():
            raise BuildException(f"Release archive for {spec.tag} has no {RELEASE_DIR}/bin")
    version_file = release_dir / VERSION_FILE
    return SourceArtifact(
        spec=spec,
        root=release_dir,
        bin_dir=bin_dir,
        version_tag=spec.version_tag,
        version_file=version_file if version_file.exists() else None,
    )
