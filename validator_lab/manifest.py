"""Representation of a validator cluster deployment.

A deployment is described by a `DeploymentPlan`: the namespace to deploy into,
the node groups to bring up, the genesis parameters used the first time a data
path is initialized, and the endpoints that every non-bootstrap node joins.
Objects that outlive a single invocation (`Endpoints`, `GenesisConfig`) can be
serialized to YAML and stored in the cluster data path.
"""

from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
import re
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import ConfigException

__all__ = [
    "NodeType",
    "BuildType",
    "BuildSpec",
    "LocalPath",
    "Commit",
    "ReleaseChannel",
    "ImageRef",
    "GenesisConfig",
    "ValidatorConfig",
    "ResourceRequests",
    "ClientConfig",
    "MetricsConfig",
    "NodeGroup",
    "Endpoints",
    "DeploymentPlan",
    "NamedResource",
    "parse_bench_tps_args",
]


DEFAULT_NAMESPACE = "default"
CLUSTER_DOMAIN = "svc.cluster.local"

GOSSIP_PORT = 8001
RPC_PORT = 8899
FAUCET_PORT = 9900

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_FAUCET_LAMPORTS = 500_000_000_000_000_000
DEFAULT_MAX_GENESIS_ARCHIVE_UNPACKED_SIZE = 1_073_741_824
DEFAULT_BOOTSTRAP_NODE_SOL = 100.0
DEFAULT_BOOTSTRAP_NODE_STAKE_SOL = 10.0
DEFAULT_INTERNAL_NODE_SOL = 100.0
DEFAULT_INTERNAL_NODE_STAKE_SOL = 10.0
DEFAULT_COMMISSION = 100
DEFAULT_TARGET_LAMPORTS_PER_SIGNATURE = 10_000
DEFAULT_TX_COUNT = 50_000
DEFAULT_KEYPAIR_MULTIPLIER = 8
DEFAULT_LAMPORTS_PER_ACCOUNT = 1_000_000
MAX_CLIENT_THREADS = 4

CLUSTER_TYPES = ("development", "devnet", "testnet", "mainnet-beta")
CLIENT_PROGRAMS = ("bench-tps", "idle", "generic")
CLIENT_TRANSPORTS = ("tpu-client", "rpc-client")

# Values a node learns from its environment. They may not be smuggled in
# through free-form client arguments.
RESERVED_CLIENT_ARGS = {"target-node", "shred-version", "url", "entrypoint", "faucet"}

# Kubernetes object names are DNS labels; leave room for the role prefix,
# the "-service-" infix and the ordinal.
MAX_TAG_LENGTH = 30
_TAG_INVALID = re.compile(r"[^a-z0-9-]+")


class NodeType(StrEnum):
    """Role of a node within the cluster."""

    BOOTSTRAP = "bootstrap"
    VALIDATOR = "validator"
    RPC = "rpc"
    CLIENT = "client"

    @property
    def resource_prefix(self) -> str:
        """Prefix used when naming cluster resources for this role."""
        if self == NodeType.BOOTSTRAP:
            return "bootstrap-validator"
        if self == NodeType.RPC:
            return "rpc-node"
        return str(self.value)


class BuildType(StrEnum):
    """How binaries are produced for a source tree."""

    RELEASE = "release"
    DEBUG = "debug"
    SKIP = "skip"


def sanitize_tag(value: str) -> str:
    """Turn a version or commit string into a tag usable in resource names."""
    tag = _TAG_INVALID.sub("-", value.lower()).strip("-")
    tag = tag[:MAX_TAG_LENGTH].rstrip("-")
    if not tag:
        raise ConfigException(f"Unable to derive a resource tag from '{value}'")
    return tag


@dataclass(frozen=True)
class BuildSpec:
    """Base class for the sources a container image may be built from."""

    def describe(self) -> str:
        """Human readable description for logging."""
        raise NotImplementedError


@dataclass(frozen=True)
class LocalPath(BuildSpec):
    """Build from an existing source tree on the local filesystem."""

    path: Path
    """Root of the source tree."""

    build_type: BuildType = BuildType.RELEASE
    """Optimization level of the build, or skip to reuse existing binaries."""

    def describe(self) -> str:
        return f"local path {self.path} ({self.build_type})"


@dataclass(frozen=True)
class Commit(BuildSpec):
    """Build from a specific commit of a GitHub repository."""

    repo: str
    """Name of the repository."""

    sha: str
    """Commit to check out."""

    github_user: str
    """Owner of the repository."""

    build_type: BuildType = BuildType.RELEASE

    @property
    def url(self) -> str:
        """Clone URL of the repository."""
        return f"https://github.com/{self.github_user}/{self.repo}.git"

    @property
    def version_tag(self) -> str:
        """Tag used for images and resource names built from this commit."""
        return sanitize_tag(self.sha[:8])

    def describe(self) -> str:
        return f"commit {self.sha} of {self.url} ({self.build_type})"


@dataclass(frozen=True)
class ReleaseChannel(BuildSpec):
    """Use the prebuilt release archive published for a tag."""

    tag: str
    """Release tag, e.g. v1.18.8."""

    @property
    def version_tag(self) -> str:
        """Tag used for images and resource names built from this release."""
        return sanitize_tag(self.tag)

    def describe(self) -> str:
        return f"release channel {self.tag}"


@dataclass(frozen=True)
class ImageRef:
    """A container image pushed to a registry."""

    registry: str
    name: str
    tag: str

    @property
    def uri(self) -> str:
        """Full reference used in pod templates."""
        return f"{self.registry}/{self.name}:{self.tag}"

    def __str__(self) -> str:
        return self.uri


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for objects that are stored as YAML."""

    @classmethod
    def parse_yaml(cls, content: str) -> Any:
        """Parse a serialized object."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass
class GenesisConfig(BaseManifest):
    """Economic and timing parameters of the genesis ledger.

    Only honored the first time genesis is created for a data path.
    """

    faucet_lamports: int = DEFAULT_FAUCET_LAMPORTS
    bootstrap_validator_sol: float = DEFAULT_BOOTSTRAP_NODE_SOL
    bootstrap_validator_stake_sol: float = DEFAULT_BOOTSTRAP_NODE_STAKE_SOL
    hashes_per_tick: str = "auto"
    """NUM_HASHES, sleep, or auto."""
    slots_per_epoch: int | None = None
    target_lamports_per_signature: int | None = DEFAULT_TARGET_LAMPORTS_PER_SIGNATURE
    max_genesis_archive_unpacked_size: int = DEFAULT_MAX_GENESIS_ARCHIVE_UNPACKED_SIZE
    enable_warmup_epochs: bool = True
    cluster_type: str = "development"

    def validate(self) -> None:
        """Check the values are usable by the genesis tool."""
        if self.cluster_type not in CLUSTER_TYPES:
            raise ConfigException(
                f"Invalid cluster type '{self.cluster_type}', expected one of {CLUSTER_TYPES}"
            )
        if self.hashes_per_tick not in ("auto", "sleep") and not self.hashes_per_tick.isdigit():
            raise ConfigException(
                f"Invalid hashes-per-tick '{self.hashes_per_tick}', expected NUM_HASHES|sleep|auto"
            )
        if self.faucet_lamports <= 0:
            raise ConfigException("Faucet lamports must be positive")
        if self.bootstrap_validator_stake_sol > self.bootstrap_validator_sol:
            raise ConfigException(
                "Bootstrap validator stake sol may not exceed bootstrap validator sol"
            )


@dataclass(frozen=True)
class ValidatorConfig:
    """Flags passed to validator and RPC node startup."""

    internal_node_sol: float = DEFAULT_INTERNAL_NODE_SOL
    internal_node_stake_sol: float = DEFAULT_INTERNAL_NODE_STAKE_SOL
    commission: int = DEFAULT_COMMISSION
    limit_ledger_size: int | None = None
    skip_poh_verify: bool = False
    no_snapshot_fetch: bool = False
    require_tower: bool = False
    enable_full_rpc: bool = False
    known_validators: tuple[str, ...] = ()

    def args(self, node_type: NodeType) -> list[str]:
        """Render the startup arguments for a node of the given role."""
        args: list[str] = []
        if node_type == NodeType.VALIDATOR:
            args.extend(
                [
                    "--internal-node-sol",
                    str(self.internal_node_sol),
                    "--internal-node-stake-sol",
                    str(self.internal_node_stake_sol),
                    "--commission",
                    str(self.commission),
                ]
            )
        if self.limit_ledger_size is not None:
            args.extend(["--limit-ledger-size", str(self.limit_ledger_size)])
        if self.skip_poh_verify:
            args.append("--skip-poh-verify")
        if self.no_snapshot_fetch:
            args.append("--no-snapshot-fetch")
        if self.require_tower and node_type != NodeType.RPC:
            args.append("--require-tower")
        if self.enable_full_rpc and node_type != NodeType.VALIDATOR:
            args.append("--enable-full-rpc")
        for known_validator in self.known_validators:
            args.extend(["--known-validator", known_validator])
        return args


@dataclass(frozen=True)
class ResourceRequests:
    """Container resource requests for every pod of a node group."""

    cpu: str = "20"
    memory: str = "70Gi"

    def to_dict(self) -> dict[str, str]:
        return {"cpu": self.cpu, "memory": self.memory}


def parse_bench_tps_args(value: str | None) -> list[str]:
    """Convert `key=value flag` tokens into bench-tps command line arguments.

    Values come before bare flags, which matches how bench-tps is invoked by
    the client startup script.
    """
    if not value:
        return []
    val_args: list[str] = []
    flag_args: list[str] = []
    for token in value.split():
        key, sep, arg = token.partition("=")
        key = key.lstrip("-")
        if key in RESERVED_CLIENT_ARGS:
            raise ConfigException(
                f"bench-tps argument '{key}' is set from the cluster environment "
                "and may not be passed through"
            )
        if sep:
            val_args.extend([f"--{key}", arg])
        else:
            flag_args.append(f"--{key}")
    return val_args + flag_args


@dataclass(frozen=True)
class ClientConfig:
    """Options for a group of load generating clients."""

    client_to_run: str = "bench-tps"
    """Client program: bench-tps, idle, or generic."""

    client_type: str = "tpu-client"
    """Transport used by bench-tps: tpu-client or rpc-client."""

    bench_tps_args: tuple[str, ...] = ()
    """Extra arguments forwarded verbatim to bench-tps."""

    executable_path: str | None = None
    """Executable inside the image for a generic client."""

    generic_args: str = ""
    """Opaque argument string for a generic client."""

    tx_count: int = DEFAULT_TX_COUNT
    keypair_multiplier: int = DEFAULT_KEYPAIR_MULTIPLIER
    lamports_per_account: int = DEFAULT_LAMPORTS_PER_ACCOUNT

    delay_start: int = 0
    """Seconds after deployment before the client issues its first request."""

    duration: int | None = None
    num_nodes: int | None = None
    target_node: str | None = None

    @property
    def num_accounts(self) -> int:
        """Number of funded accounts the client expects to find."""
        return self.tx_count * self.keypair_multiplier

    @property
    def is_generic(self) -> bool:
        return self.client_to_run == "generic"

    def validate(self) -> None:
        if self.client_to_run not in CLIENT_PROGRAMS:
            raise ConfigException(
                f"Unknown client '{self.client_to_run}', expected one of {CLIENT_PROGRAMS}"
            )
        if self.client_type not in CLIENT_TRANSPORTS:
            raise ConfigException(
                f"Unknown client type '{self.client_type}', expected one of {CLIENT_TRANSPORTS}"
            )
        if self.is_generic and not self.executable_path:
            raise ConfigException("A generic client requires an executable path")
        if self.tx_count <= 0 or self.keypair_multiplier <= 0:
            raise ConfigException("Client tx-count and keypair-multiplier must be positive")
        if self.delay_start < 0:
            raise ConfigException("Client delay start may not be negative")


@dataclass(frozen=True)
class NodeGroup:
    """A batch of same-role, same-version nodes deployed together."""

    node_type: NodeType
    count: int
    build: BuildSpec | None = None
    """Source of the image, or None to use the plan's default build."""

    tag: str | None = None
    """Version tag used in resource names, derived from the build when unset."""

    image: ImageRef | None = None
    """Resolved image, set once the build has been pushed."""

    requests: ResourceRequests = field(default_factory=ResourceRequests)
    client: ClientConfig | None = None

    append: bool = False
    """Allocate ordinals after the highest existing one for this tag."""

    def resolve(self, image: ImageRef, tag: str) -> "NodeGroup":
        """Return a copy bound to a pushed image."""
        return replace(self, image=image, tag=self.tag or tag)

    @property
    def label(self) -> str:
        return f"{self.node_type}/{self.tag or '?'}"


@dataclass
class Endpoints(BaseManifest):
    """Addresses of the bootstrap node that every other node joins."""

    namespace: str
    rpc_address: str
    gossip_address: str
    faucet_address: str
    shred_version: int
    load_balancer_address: str | None = None
    """External address of the load balancer, when one has been assigned."""

    @classmethod
    def for_bootstrap(
        cls, namespace: str, service_name: str, shred_version: int
    ) -> "Endpoints":
        """Endpoints of a bootstrap service deployed in the given namespace."""
        host = f"{service_name}.{namespace}.{CLUSTER_DOMAIN}"
        return cls(
            namespace=namespace,
            rpc_address=f"{host}:{RPC_PORT}",
            gossip_address=f"{host}:{GOSSIP_PORT}",
            faucet_address=f"{host}:{FAUCET_PORT}",
            shred_version=shred_version,
        )

    def env(self) -> list[dict[str, Any]]:
        """Environment variables published to every non-bootstrap pod."""
        return [
            {"name": "NAMESPACE", "value": self.namespace},
            {"name": "BOOTSTRAP_RPC_ADDRESS", "value": self.rpc_address},
            {"name": "BOOTSTRAP_GOSSIP_ADDRESS", "value": self.gossip_address},
            {"name": "BOOTSTRAP_FAUCET_ADDRESS", "value": self.faucet_address},
            {"name": "SHRED_VERSION", "value": str(self.shred_version)},
        ]


@dataclass(frozen=True)
class MetricsConfig:
    """Metrics endpoint every node reports to."""

    host: str
    port: int
    db: str
    username: str
    password: str

    def env(self) -> dict[str, str]:
        """Environment variables that point the node programs at the endpoint."""
        return {
            "SOLANA_METRICS_CONFIG": (
                f"host=https://{self.host}:{self.port},db={self.db},"
                f"u={self.username},p={self.password}"
            )
        }


@dataclass
class DeploymentPlan:
    """Everything one invocation of the orchestrator should bring up."""

    namespace: str
    groups: list[NodeGroup]
    build: BuildSpec | None = None
    """Default build for groups that do not name their own."""

    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)

    no_bootstrap: bool = False
    """Join an already running cluster instead of deploying a bootstrap."""

    endpoints: Endpoints | None = None
    """Endpoints of the running cluster for a no-bootstrap join."""

    shred_version: int | None = None
    """Overrides the shred version otherwise read from the genesis ledger."""

    run_client: bool = False
    client_wait_for_n_nodes: int | None = None
    convergence_timeout: float = 600.0

    metrics: MetricsConfig | None = None
    """Metrics endpoint passed to every node, if any."""

    def groups_of(self, node_type: NodeType) -> list[NodeGroup]:
        """Node groups of the given role with at least one member."""
        return [g for g in self.groups if g.node_type == node_type and g.count > 0]

    @property
    def bootstrap(self) -> NodeGroup | None:
        if groups := self.groups_of(NodeType.BOOTSTRAP):
            return groups[0]
        return None

    def validate(self) -> None:
        """Reject contradictory plans before anything is touched."""
        for group in self.groups:
            if group.count < 0:
                raise ConfigException(f"Node group {group.label} has a negative count")
            if group.build is None and self.build is None and group.count > 0:
                raise ConfigException(
                    f"Node group {group.label} has no build; specify a local path, "
                    "commit, or release channel"
                )
            if group.node_type == NodeType.CLIENT and group.count > 0:
                if group.client is None:
                    raise ConfigException(f"Client group {group.label} has no client config")
                group.client.validate()
        bootstraps = self.groups_of(NodeType.BOOTSTRAP)
        if self.no_bootstrap and bootstraps:
            raise ConfigException("A bootstrap group may not be requested with --no-bootstrap")
        if not self.no_bootstrap:
            if len(bootstraps) != 1 or bootstraps[0].count != 1:
                raise ConfigException("Exactly one bootstrap node is required")
        seen: set[tuple[NodeType, str | None, str]] = set()
        for group in self.groups:
            key = (group.node_type, group.tag, repr(group.build))
            if group.count and key in seen:
                raise ConfigException(f"Node group {group.label} is listed twice")
            seen.add(key)
        if self.client_wait_for_n_nodes is not None and self.client_wait_for_n_nodes <= 0:
            raise ConfigException("client-wait-for-n-nodes must be positive")
        self.genesis.validate()


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Identify a resource descriptor."""
        metadata = doc.get("metadata") or {}
        if not (name := metadata.get("name")):
            raise ValueError(f"Resource missing metadata.name: {doc}")
        return cls(kind=doc["kind"], namespace=metadata.get("namespace"), name=name)
