"""Store module for the files a cluster depends on across invocations."""

from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
import logging
from pathlib import Path

from validator_lab.manifest import Endpoints, GenesisConfig, NodeType

_LOGGER = logging.getLogger(__name__)

FAUCET_KEYPAIR = "faucet.json"
BOOTSTRAP_ACCOUNTS = "bootstrap-accounts"
BOOTSTRAP_LEDGER = "bootstrap-ledger"
GENESIS_RECORD = "genesis-config.yaml"
ENDPOINTS_RECORD = "endpoints.yaml"
DOCKER_BUILD = "docker-build"
SOURCES = "sources"

ACCOUNT_DIRS = {
    NodeType.BOOTSTRAP: BOOTSTRAP_ACCOUNTS,
    NodeType.VALIDATOR: "validator-accounts",
    NodeType.RPC: "rpc-accounts",
    NodeType.CLIENT: "client-accounts",
}


class Store(ABC):
    """Abstract base class for the cluster data path.

    Keys are relative paths within the store. Genesis and identity files are
    created with `write_once` and never overwritten once present.
    """

    @property
    @abstractmethod
    def root(self) -> Path:
        """Location of the store on the local filesystem."""

    @abstractmethod
    def path(self, key: str) -> Path:
        """Local filesystem path for a key, for external tools that need one."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if the key has content."""

    @abstractmethod
    async def read(self, key: str) -> bytes:
        """Read the content of a key."""

    @abstractmethod
    async def write(self, key: str, content: bytes) -> None:
        """Write the content of a key, replacing it if present."""

    @abstractmethod
    async def write_once(self, key: str, content: bytes) -> bool:
        """Write the content of a key unless it exists.

        Returns True if the content was written, False if the key already existed.
        """

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key and everything beneath it."""

    @abstractmethod
    @contextmanager
    def lock(self) -> Generator[None, None, None]:
        """Hold exclusive ownership of the store for the duration of a run."""
        yield

    def account_key(self, node_type: NodeType, node_name: str | None = None) -> str:
        """Key of the directory holding the keypairs of a node."""
        base = ACCOUNT_DIRS[node_type]
        if node_type == NodeType.BOOTSTRAP or node_name is None:
            return base
        return f"{base}/{node_name}"

    def docker_key(self, node_type: NodeType, tag: str) -> str:
        """Key of the docker build context for a role and build."""
        return f"{DOCKER_BUILD}/{node_type.resource_prefix}-{tag}"

    async def has_genesis(self) -> bool:
        """Return True once genesis has been fully committed to the store."""
        return await self.exists(GENESIS_RECORD)

    async def read_genesis_config(self) -> GenesisConfig | None:
        """Return the genesis parameters the store was created with."""
        if not await self.exists(GENESIS_RECORD):
            return None
        content = await self.read(GENESIS_RECORD)
        return GenesisConfig.parse_yaml(content.decode())

    async def read_endpoints(self) -> Endpoints | None:
        """Return the endpoints recorded when the bootstrap was deployed."""
        if not await self.exists(ENDPOINTS_RECORD):
            return None
        content = await self.read(ENDPOINTS_RECORD)
        return Endpoints.parse_yaml(content.decode())

    async def write_endpoints(self, endpoints: Endpoints) -> None:
        """Record the endpoints every later join should use."""
        existing = await self.read_endpoints()
        if existing is not None and existing != endpoints:
            _LOGGER.info(
                "Updating recorded endpoints in %s (was %s)", self.root, existing
            )
        await self.write(ENDPOINTS_RECORD, endpoints.yaml().encode())
