"""Artifact representation."""

from abc import ABC
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, kw_only=True)
class Artifact(ABC):
    """Base class for all artifacts."""


@dataclass(frozen=True, kw_only=True)
class GenesisArtifact(Artifact):
    """The one-time genesis and identity material of a cluster.

    Written once per data path and returned unchanged on every later run.
    """

    faucet_keypair: Path
    """Keypair of the faucet funded in genesis."""

    bootstrap_dir: Path
    """Directory with the bootstrap identity, vote and stake keypairs."""

    ledger_dir: Path
    """Directory holding the genesis archive produced by the genesis tool."""

    created: bool = False
    """True if this run created the genesis, False if it was loaded."""

    @property
    def bootstrap_identity(self) -> Path:
        return self.bootstrap_dir / "identity.json"


@dataclass(frozen=True, kw_only=True)
class AccountsArtifact(Artifact):
    """Keypair files owned by a single node."""

    node_name: str
    """Name of the node the keypairs belong to."""

    keypairs: dict[str, Path]
    """Map of secret key (e.g. identity, vote) to keypair file."""
