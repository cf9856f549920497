"""Cache of cloned repositories and downloaded releases in the data path."""

import hashlib
import logging
from pathlib import Path
from urllib.parse import urlparse

from slugify import slugify

from validator_lab.exceptions import BuildException

_LOGGER = logging.getLogger(__name__)


class SourceCache:
    """Locations for fetched sources, keyed by URL and reference.

    The cache lives in the cluster data path so repeated runs against the
    same path reuse clones and downloads.
    """

    def __init__(self, cache_dir: Path) -> None:
        """Initialize SourceCache."""
        self._cache_dir = cache_dir

    @staticmethod
    def slug(url: str) -> str:
        """Readable name for a repository or download URL."""
        path = urlparse(url).path
        if path.endswith(".git"):
            path = path[:-4]
        name = path.rstrip("/").split("/")[-1]
        if not name:
            raise BuildException(f"Unable to derive a cache name from URL '{url}'")
        return slugify(name, max_length=50, lowercase=True, separator="-")

    def get_path(self, url: str, ref: str | None = None) -> Path:
        """Return the directory for a URL at a reference, creating it if needed.

        For example `sources/agave/ab1234567890abcd`.
        """
        cache_key = hashlib.sha256()
        cache_key.update(url.encode("utf-8"))
        if ref:
            cache_key.update(ref.encode("utf-8"))
        cache_path = self._cache_dir / self.slug(url) / cache_key.hexdigest()[:16]
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise BuildException(f"Failed to create cache directory {cache_path}: {err}") from err
        _LOGGER.debug("Cache path for %s@%s: %s", url, ref, cache_path)
        return cache_path
