"""Module for the directory backed cluster data store."""

import asyncio
from collections.abc import Generator
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import shutil

import aiofiles
from aiofiles.ospath import exists

from validator_lab.exceptions import ConfigException

from .store import Store

_LOGGER = logging.getLogger(__name__)

LOCK_FILE = ".validator-lab.lock"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DirectoryStore(Store):
    """Store implementation backed by a local directory."""

    def __init__(self, root: Path) -> None:
        """Initialize DirectoryStore, creating the directory if needed."""
        self._root = root.expanduser().resolve()
        if self._root.exists() and not self._root.is_dir():
            raise ConfigException(f"Cluster data path is not a directory: {self._root}")
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise ValueError(f"Key '{key}' escapes the cluster data path")
        return path

    async def exists(self, key: str) -> bool:
        return await exists(self.path(key))

    async def read(self, key: str) -> bytes:
        async with aiofiles.open(self.path(key), mode="rb") as key_file:
            return await key_file.read()

    async def write(self, key: str, content: bytes) -> None:
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(tmp_path, mode="wb") as key_file:
            await key_file.write(content)
        os.replace(tmp_path, path)

    async def write_once(self, key: str, content: bytes) -> bool:
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiofiles.open(path, mode="xb") as key_file:
                await key_file.write(content)
        except FileExistsError:
            _LOGGER.debug("Keeping existing %s", key)
            return False
        return True

    async def remove(self, key: str) -> None:
        path = self.path(key)
        if path.is_dir():
            await asyncio.to_thread(shutil.rmtree, path)
        elif path.exists():
            path.unlink()

    @contextmanager
    def lock(self) -> Generator[None, None, None]:
        """Hold the data path lock, taking over a lock left by a dead process."""
        lock_path = self._root / LOCK_FILE
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    owner = int(lock_path.read_text().strip() or "0")
                except (OSError, ValueError):
                    owner = 0
                if owner and _pid_alive(owner):
                    raise ConfigException(
                        f"Cluster data path {self._root} is in use by process {owner}; "
                        "runs against the same data path must not overlap"
                    )
                _LOGGER.warning("Removing stale lock %s (owner %s)", lock_path, owner)
                lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as lock_file:
                lock_file.write(str(os.getpid()))
            break
        try:
            yield
        finally:
            lock_path.unlink(missing_ok=True)
