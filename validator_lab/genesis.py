"""Library for creating the one-time genesis and identity material of a cluster.

The faucet keypair, the bootstrap keypairs and the genesis ledger are created
once per cluster data path. Every later invocation against the same path loads
them unchanged, which is what lets node groups deployed by separate runs (and
possibly different versions) join the same cluster.

```python
from validator_lab.genesis import Genesis
from validator_lab.manifest import GenesisConfig
from validator_lab.store import DirectoryStore

genesis = Genesis(DirectoryStore(Path("/tmp/cluster")), bin_dir=Path("farf/bin"))
artifact = await genesis.ensure_genesis(GenesisConfig(slots_per_epoch=150))
```
"""

from collections.abc import Awaitable, Callable
import logging
import os
from pathlib import Path
import tempfile

from . import command
from .exceptions import GenesisException
from .manifest import LAMPORTS_PER_SOL, GenesisConfig, NodeType
from .store import AccountsArtifact, GenesisArtifact, Store
from .store.store import (
    BOOTSTRAP_ACCOUNTS,
    BOOTSTRAP_LEDGER,
    FAUCET_KEYPAIR,
    GENESIS_RECORD,
)

__all__ = [
    "Genesis",
    "genesis_args",
]

_LOGGER = logging.getLogger(__name__)


KEYGEN_BIN = "solana-keygen"
GENESIS_BIN = "solana-genesis"
LEDGER_TOOL_BIN = "agave-ledger-tool"

# Keypairs each role owns, keyed by the file name used in the store and in
# the mounted secret.
ROLE_KEYPAIRS: dict[NodeType, tuple[str, ...]] = {
    NodeType.BOOTSTRAP: ("identity.json", "vote-account.json", "stake-account.json"),
    NodeType.VALIDATOR: ("identity.json", "vote-account.json", "stake-account.json"),
    NodeType.RPC: ("identity.json",),
    NodeType.CLIENT: (),
}


def genesis_args(
    config: GenesisConfig,
    faucet_keypair: Path,
    bootstrap_dir: Path,
    ledger_dir: Path,
) -> list[str]:
    """Arguments for the genesis tool built from the genesis parameters."""
    args = [
        "--bootstrap-validator",
        str(bootstrap_dir / "identity.json"),
        str(bootstrap_dir / "vote-account.json"),
        str(bootstrap_dir / "stake-account.json"),
        "--bootstrap-validator-lamports",
        str(int(config.bootstrap_validator_sol * LAMPORTS_PER_SOL)),
        "--bootstrap-validator-stake-lamports",
        str(int(config.bootstrap_validator_stake_sol * LAMPORTS_PER_SOL)),
        "--hashes-per-tick",
        config.hashes_per_tick,
        "--max-genesis-archive-unpacked-size",
        str(config.max_genesis_archive_unpacked_size),
        "--faucet-pubkey",
        str(faucet_keypair),
        "--faucet-lamports",
        str(config.faucet_lamports),
        "--cluster-type",
        config.cluster_type,
        "--ledger",
        str(ledger_dir),
    ]
    if config.enable_warmup_epochs:
        args.append("--enable-warmup-epochs")
    if config.slots_per_epoch is not None:
        args.extend(["--slots-per-epoch", str(config.slots_per_epoch)])
    if config.target_lamports_per_signature is not None:
        args.extend(
            [
                "--target-lamports-per-signature",
                str(config.target_lamports_per_signature),
            ]
        )
    return args


class Genesis:
    """Creates or loads the genesis material of a cluster data path."""

    def __init__(
        self,
        store: Store,
        bin_dir: Path | None = None,
        tools: Callable[[], Awaitable[Path]] | None = None,
    ) -> None:
        """Initialize Genesis.

        Args:
            store: The cluster data path.
            bin_dir: Directory with the keygen, genesis and ledger tools, or
                None to find them on the PATH.
            tools: Produces the tools directory the first time a tool runs,
                used instead of bin_dir so that loading an existing genesis
                never has to build anything.
        """
        self._store = store
        self._bin_dir = bin_dir
        self._tools = tools

    async def _bin(self, program: str) -> str:
        if self._bin_dir is None and self._tools is not None:
            self._bin_dir = await self._tools()
        if self._bin_dir is not None:
            return str(self._bin_dir / program)
        return program

    def _artifact(self, created: bool) -> GenesisArtifact:
        return GenesisArtifact(
            faucet_keypair=self._store.path(FAUCET_KEYPAIR),
            bootstrap_dir=self._store.path(BOOTSTRAP_ACCOUNTS),
            ledger_dir=self._store.path(BOOTSTRAP_LEDGER),
            created=created,
        )

    async def generate_keypair(self, outfile: Path) -> None:
        """Generate a new keypair file."""
        outfile.parent.mkdir(parents=True, exist_ok=True)
        await command.run(
            command.Command(
                [
                    await self._bin(KEYGEN_BIN),
                    "new",
                    "--no-bip39-passphrase",
                    "--silent",
                    "--outfile",
                    str(outfile),
                ],
                exc=GenesisException,
            )
        )

    async def ensure_genesis(self, config: GenesisConfig) -> GenesisArtifact:
        """Return the genesis of the data path, creating it on first use.

        The passed config is ignored when a genesis already exists.
        """
        if await self._store.has_genesis():
            recorded = await self._store.read_genesis_config()
            if recorded is not None and recorded != config:
                _LOGGER.info(
                    "Genesis already exists in %s; ignoring new genesis parameters",
                    self._store.root,
                )
            artifact = self._artifact(created=False)
            for path in (artifact.faucet_keypair, artifact.bootstrap_identity):
                if not path.exists():
                    raise GenesisException(
                        f"Genesis record exists but {path} is missing; the data path "
                        "is corrupt and must be recreated"
                    )
            _LOGGER.info("Loaded existing genesis from %s", self._store.root)
            return artifact

        # Anything present without the genesis record is left over from an
        # interrupted run and was never deployed.
        for key in (FAUCET_KEYPAIR, BOOTSTRAP_ACCOUNTS, BOOTSTRAP_LEDGER):
            if await self._store.exists(key):
                _LOGGER.warning("Discarding incomplete genesis output %s", key)
                await self._store.remove(key)

        with tempfile.TemporaryDirectory(
            dir=self._store.root, prefix=".genesis-"
        ) as staging_dir:
            staging = Path(staging_dir)
            faucet = staging / FAUCET_KEYPAIR
            bootstrap_dir = staging / BOOTSTRAP_ACCOUNTS
            ledger_dir = staging / BOOTSTRAP_LEDGER

            await self.generate_keypair(faucet)
            _LOGGER.info("Generated faucet account")
            for name in ROLE_KEYPAIRS[NodeType.BOOTSTRAP]:
                await self.generate_keypair(bootstrap_dir / name)
            _LOGGER.info("Generated bootstrap accounts")

            await command.run(
                command.Command(
                    [await self._bin(GENESIS_BIN)]
                    + genesis_args(config, faucet, bootstrap_dir, ledger_dir),
                    exc=GenesisException,
                    timeout=600.0,
                )
            )
            if not (ledger_dir / "genesis.bin").exists() and not (
                ledger_dir / "genesis.tar.bz2"
            ).exists():
                raise GenesisException(f"Genesis tool produced no genesis in {ledger_dir}")

            for key, path in (
                (FAUCET_KEYPAIR, faucet),
                (BOOTSTRAP_ACCOUNTS, bootstrap_dir),
                (BOOTSTRAP_LEDGER, ledger_dir),
            ):
                os.replace(path, self._store.path(key))

        # The record is written last; its presence marks genesis as complete.
        await self._store.write_once(GENESIS_RECORD, config.yaml().encode())
        _LOGGER.info("Created genesis successfully in %s", self._store.root)
        return self._artifact(created=True)

    async def ensure_accounts(self, node_type: NodeType, node_name: str) -> AccountsArtifact:
        """Return the keypairs of a node, generating any that are missing."""
        base_key = self._store.account_key(node_type, node_name)
        keypairs: dict[str, Path] = {}
        with tempfile.TemporaryDirectory(
            dir=self._store.root, prefix=".keygen-"
        ) as staging_dir:
            for name in ROLE_KEYPAIRS[node_type]:
                key = f"{base_key}/{name}"
                if not await self._store.exists(key):
                    staged = Path(staging_dir) / name
                    await self.generate_keypair(staged)
                    if await self._store.write_once(key, staged.read_bytes()):
                        _LOGGER.debug("Generated %s for %s", name, node_name)
                keypairs[name] = self._store.path(key)
        return AccountsArtifact(node_name=node_name, keypairs=keypairs)

    async def shred_version(self, artifact: GenesisArtifact, max_unpacked_size: int) -> int:
        """Compute the shred version of the cluster from its genesis ledger."""
        if not artifact.ledger_dir.exists():
            raise GenesisException(
                f"Ledger directory {artifact.ledger_dir} does not exist; create genesis first"
            )
        out = await command.run(
            command.Command(
                [
                    await self._bin(LEDGER_TOOL_BIN),
                    "--ledger",
                    str(artifact.ledger_dir),
                    "shred-version",
                    "--max-genesis-archive-unpacked-size",
                    str(max_unpacked_size),
                ],
                exc=GenesisException,
            )
        )
        lines = [line.strip() for line in out.splitlines() if line.strip()]
        try:
            shred_version = int(lines[-1])
        except (IndexError, ValueError) as err:
            raise GenesisException(
                f"Unexpected shred-version output from ledger tool: {out!r}"
            ) from err
        _LOGGER.info("Shred version: %s", shred_version)
        return shred_version
