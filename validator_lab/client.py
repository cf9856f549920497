"""Client launch controller for load generating clients.

Clients expect their accounts to be funded before they start, so every
client of a group is funded from the faucet before any client pod is
created. Funding failures are fatal. A client that cannot be scheduled is
reported and the remaining clients are still launched.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Awaitable
import logging
import os
from pathlib import Path
import shlex
import tempfile
from typing import TypeVar, cast

from . import command, ordinals, resources
from .builder import ArtifactBuilder, SourceArtifact
from .builder.builder import fingerprint
from .cluster import ClusterApi
from .exceptions import (
    ClientLaunchError,
    CommandException,
    FundingError,
    ResourceApplyError,
)
from .manifest import (
    FAUCET_PORT,
    MAX_CLIENT_THREADS,
    RPC_PORT,
    ClientConfig,
    Endpoints,
    ImageRef,
    NodeGroup,
    NodeType,
)
from .store import Store

__all__ = [
    "ClientLauncher",
    "Funder",
    "BenchTpsFunder",
    "DryRunFunder",
    "client_args",
    "thread_count",
]

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

BENCH_TPS_BIN = "solana-bench-tps"
ACCOUNTS_FILE = "client-accounts.yml"


async def _gather_all(aws: list[Awaitable[T]]) -> list[T]:
    """Run awaitables concurrently and raise the first error once all finished."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return cast(list[T], results)


def thread_count(cpu_count: int | None = None) -> int:
    """Client threads: the host core count, at most four."""
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(1, min(cpus, MAX_CLIENT_THREADS))


def client_args(config: ClientConfig, threads: int) -> list[str]:
    """Arguments for the client startup script, or for a generic executable."""
    if config.is_generic:
        return shlex.split(config.generic_args)
    args = [config.client_to_run, config.client_type]
    if config.duration is not None:
        args.extend(["--duration", str(config.duration)])
    if config.num_nodes is not None:
        args.extend(["--num-nodes", str(config.num_nodes)])
    if config.target_node is not None:
        args.extend(["--target-node", config.target_node])
    if config.client_to_run == "bench-tps":
        args.extend(
            [
                "--threads",
                str(threads),
                "--tx-count",
                str(config.tx_count),
                "--keypair-multiplier",
                str(config.keypair_multiplier),
            ]
        )
        if config.bench_tps_args:
            args.append("--")
            args.extend(config.bench_tps_args)
    return args


class Funder(ABC):
    """Funds the accounts a client uses from the faucet."""

    @abstractmethod
    async def fund(self, client_name: str, config: ClientConfig, endpoints: Endpoints) -> Path:
        """Fund `config.num_accounts` accounts for a client.

        Returns the directory holding the account file baked into the
        client's image.
        """


class BenchTpsFunder(Funder):
    """Generates client accounts and funds them with bench-tps."""

    def __init__(
        self,
        store: Store,
        faucet_keypair: Path,
        bin_dir: Path | None = None,
        attempts: int = 3,
        interval: float = 10.0,
    ) -> None:
        self._store = store
        self._faucet_keypair = faucet_keypair
        self._bin_dir = bin_dir
        self._attempts = attempts
        self._interval = interval

    def _bench_tps(self) -> str:
        if self._bin_dir is not None:
            return str(self._bin_dir / BENCH_TPS_BIN)
        return BENCH_TPS_BIN

    async def _write_accounts(self, key: str, config: ClientConfig) -> None:
        with tempfile.TemporaryDirectory(dir=self._store.root, prefix=".client-") as tmp:
            keys_file = Path(tmp) / ACCOUNTS_FILE
            try:
                await command.run(
                    command.Command(
                        [
                            self._bench_tps(),
                            "--write-client-keys",
                            str(keys_file),
                            "--tx-count",
                            str(config.tx_count),
                            "--keypair-multiplier",
                            str(config.keypair_multiplier),
                            "--num-lamports-per-account",
                            str(config.lamports_per_account),
                        ]
                    )
                )
            except CommandException as err:
                raise FundingError(f"Unable to generate client accounts: {err}") from err
            await self._store.write_once(key, keys_file.read_bytes())

    async def fund(self, client_name: str, config: ClientConfig, endpoints: Endpoints) -> Path:
        base_key = self._store.account_key(NodeType.CLIENT, client_name)
        key = f"{base_key}/{ACCOUNTS_FILE}"
        if not await self._store.exists(key):
            await self._write_accounts(key, config)
        host = endpoints.load_balancer_address
        rpc_url = f"http://{host}:{RPC_PORT}" if host else f"http://{endpoints.rpc_address}"
        faucet = f"{host}:{FAUCET_PORT}" if host else endpoints.faucet_address
        cmd = command.Command(
            [
                self._bench_tps(),
                "--url",
                rpc_url,
                "--faucet",
                faucet,
                "--identity",
                str(self._faucet_keypair),
                "--read-client-keys",
                str(self._store.path(key)),
                "--tx-count",
                str(config.tx_count),
                "--keypair-multiplier",
                str(config.keypair_multiplier),
                "--num-lamports-per-account",
                str(config.lamports_per_account),
                "--duration",
                "0",
            ],
            timeout=1800.0,
        )
        _LOGGER.info("Funding %d accounts for %s", config.num_accounts, client_name)
        for attempt in range(1, self._attempts + 1):
            try:
                await command.run(cmd)
                break
            except CommandException as err:
                if attempt == self._attempts:
                    raise FundingError(
                        f"Funding accounts for {client_name} failed after {attempt} attempts: {err}"
                    ) from err
                _LOGGER.warning(
                    "Funding %s failed (attempt %d/%d), retrying",
                    client_name,
                    attempt,
                    self._attempts,
                )
                await asyncio.sleep(self._interval)
        return self._store.path(base_key)


class DryRunFunder(Funder):
    """Reports the funding a real run would perform."""

    def __init__(self, store: Store) -> None:
        self._store = store

    async def fund(self, client_name: str, config: ClientConfig, endpoints: Endpoints) -> Path:
        _LOGGER.info(
            "Dry run: would fund %d accounts for %s via %s",
            config.num_accounts,
            client_name,
            endpoints.faucet_address,
        )
        return self._store.path(self._store.account_key(NodeType.CLIENT, client_name))


class ClientLauncher:
    """Funds and schedules the clients of a node group."""

    def __init__(
        self,
        cluster: ClusterApi,
        builder: ArtifactBuilder,
        funder: Funder,
        namespace: str,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self._cluster = cluster
        self._builder = builder
        self._funder = funder
        self._namespace = namespace
        self._extra_env = extra_env

    async def launch(
        self,
        group: NodeGroup,
        endpoints: Endpoints,
        source: SourceArtifact,
    ) -> list[ClientLaunchError]:
        """Launch every client of a group.

        Returns the clients that failed to schedule. Raises FundingError if
        any client could not be funded, and BuildException if a client image
        could not be built, in both cases before any client pod exists.
        """
        if group.client is None:
            raise ValueError(f"Client group {group.label} has no client config")
        config = group.client
        tag = group.tag or source.version_tag
        indexes = await ordinals.allocate(
            self._cluster, self._namespace, NodeType.CLIENT, tag, group.count, group.append
        )
        names = {i: resources.service_name(NodeType.CLIENT, tag, i) for i in indexes}

        accounts = await _gather_all(
            [self._funder.fund(names[i], config, endpoints) for i in indexes]
        )
        _LOGGER.info(
            "Funded %d accounts for %d client(s)",
            config.num_accounts * len(indexes),
            len(indexes),
        )

        images = await self._build_images(source, accounts)
        results = await asyncio.gather(
            *(
                self._launch_one(group, tag, index, endpoints, image)
                for index, image in zip(indexes, images)
            )
        )
        return [error for error in results if error is not None]

    async def _build_images(
        self, source: SourceArtifact, accounts: list[Path]
    ) -> list[ImageRef]:
        """Build the image of every client, one build per distinct reference.

        A build or push failure propagates and aborts the launch before any
        client is scheduled.
        """
        built: dict[str | None, ImageRef] = {}
        images = []
        for accounts_dir in accounts:
            accounts_file = accounts_dir / ACCOUNTS_FILE
            content_id = fingerprint(accounts_file) if accounts_file.exists() else None
            if content_id not in built:
                image = await self._builder.build_image(
                    source,
                    NodeType.CLIENT,
                    extra_dirs={"client-accounts": accounts_dir} if accounts_dir.exists() else None,
                    content_id=content_id,
                )
                built[content_id] = image.image
            images.append(built[content_id])
        return images

    async def _launch_one(
        self,
        group: NodeGroup,
        tag: str,
        index: int,
        endpoints: Endpoints,
        image: ImageRef,
    ) -> ClientLaunchError | None:
        config = group.client
        assert config is not None
        name = resources.service_name(NodeType.CLIENT, tag, index)
        try:
            resource_set = resources.build(
                group.resolve(image, tag),
                index,
                endpoints,
                namespace=self._namespace,
                args=client_args(config, thread_count()),
                extra_env=self._extra_env,
                delay_start=config.delay_start,
                executable=config.executable_path if config.is_generic else None,
            )
            await ordinals.apply_member(self._cluster, resource_set)
        except ResourceApplyError as err:
            error = ClientLaunchError(name, str(err))
            _LOGGER.warning("%s", error)
            return error
        _LOGGER.info("Launched client %s", name)
        return None
