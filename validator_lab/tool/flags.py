"""Command line flags shared by the actions and the objects built from them."""

from argparse import ArgumentParser, BooleanOptionalAction
import logging
import pathlib
from typing import Any

from validator_lab.builder import BuildConfig
from validator_lab.cluster import (
    ClusterApi,
    ClusterConfig,
    InMemoryCluster,
    KubernetesCluster,
)
from validator_lab.exceptions import ConfigException
from validator_lab.manifest import (
    CLIENT_PROGRAMS,
    CLIENT_TRANSPORTS,
    CLUSTER_TYPES,
    DEFAULT_BOOTSTRAP_NODE_SOL,
    DEFAULT_BOOTSTRAP_NODE_STAKE_SOL,
    DEFAULT_COMMISSION,
    DEFAULT_FAUCET_LAMPORTS,
    DEFAULT_INTERNAL_NODE_SOL,
    DEFAULT_INTERNAL_NODE_STAKE_SOL,
    DEFAULT_KEYPAIR_MULTIPLIER,
    DEFAULT_LAMPORTS_PER_ACCOUNT,
    DEFAULT_MAX_GENESIS_ARCHIVE_UNPACKED_SIZE,
    DEFAULT_NAMESPACE,
    DEFAULT_TARGET_LAMPORTS_PER_SIGNATURE,
    DEFAULT_TX_COUNT,
    FAUCET_PORT,
    GOSSIP_PORT,
    RPC_PORT,
    BuildSpec,
    BuildType,
    ClientConfig,
    Commit,
    DeploymentPlan,
    Endpoints,
    GenesisConfig,
    LocalPath,
    MetricsConfig,
    NodeGroup,
    NodeType,
    ReleaseChannel,
    ResourceRequests,
    ValidatorConfig,
    parse_bench_tps_args,
    sanitize_tag,
)
from validator_lab.store import DirectoryStore, Store

_LOGGER = logging.getLogger(__name__)

DEFAULT_DATA_PATH = "validator-lab-data"
DEFAULT_REPO = "agave"
DEFAULT_GITHUB_USER = "anza-xyz"


def add_cluster_flags(args: ArgumentParser) -> None:
    """Add flags that select the cluster and namespace."""
    args.add_argument(
        "--namespace",
        "-n",
        default=DEFAULT_NAMESPACE,
        help="Namespace the cluster is deployed in",
    )
    args.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig file, used when not running inside a pod",
    )
    args.add_argument(
        "--context",
        default=None,
        help="Kubeconfig context to use",
    )


def add_deploy_flags(args: ArgumentParser) -> None:
    """Add every flag that configures a deployment."""
    source = args.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--local-path",
        type=pathlib.Path,
        help="Build from a local source tree",
    )
    source.add_argument(
        "--commit",
        help="Build from a commit of a GitHub repository",
    )
    source.add_argument(
        "--release-channel",
        help="Use the published release archive for a tag, e.g. v1.18.8",
    )
    args.add_argument(
        "--repo",
        default=DEFAULT_REPO,
        help="GitHub repository the commit belongs to",
    )
    args.add_argument(
        "--github-user",
        default=DEFAULT_GITHUB_USER,
        help="Owner of the GitHub repository",
    )
    args.add_argument(
        "--build-type",
        choices=[str(value) for value in BuildType],
        default=str(BuildType.RELEASE),
        help="Optimization level, or skip to reuse binaries already built",
    )
    args.add_argument(
        "--data-path",
        type=pathlib.Path,
        default=pathlib.Path(DEFAULT_DATA_PATH),
        help="Cluster data path shared by every invocation against a cluster",
    )
    args.add_argument(
        "--tag",
        default=None,
        help="Version tag used in image and resource names, derived from the build if unset",
    )

    counts = args.add_argument_group("node groups")
    counts.add_argument("--validators", type=int, default=0, help="Number of validators")
    counts.add_argument("--rpc-nodes", type=int, default=0, help="Number of RPC nodes")
    counts.add_argument("--clients", type=int, default=0, help="Number of clients")
    counts.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Join an existing cluster instead of deploying a bootstrap validator",
    )
    counts.add_argument(
        "--append",
        action="store_true",
        help="Add members after the highest existing ordinal instead of reconciling 0..N-1",
    )
    counts.add_argument(
        "--bootstrap-address",
        default=None,
        help="Host of the bootstrap validator of an existing cluster",
    )
    counts.add_argument(
        "--shred-version",
        type=int,
        default=None,
        help="Shred version of an existing cluster",
    )

    genesis = args.add_argument_group("genesis")
    genesis.add_argument("--faucet-lamports", type=int, default=DEFAULT_FAUCET_LAMPORTS)
    genesis.add_argument(
        "--bootstrap-validator-sol", type=float, default=DEFAULT_BOOTSTRAP_NODE_SOL
    )
    genesis.add_argument(
        "--bootstrap-validator-stake-sol",
        type=float,
        default=DEFAULT_BOOTSTRAP_NODE_STAKE_SOL,
    )
    genesis.add_argument(
        "--hashes-per-tick", default="auto", help="NUM_HASHES, sleep, or auto"
    )
    genesis.add_argument("--slots-per-epoch", type=int, default=None)
    genesis.add_argument(
        "--target-lamports-per-signature",
        type=int,
        default=DEFAULT_TARGET_LAMPORTS_PER_SIGNATURE,
    )
    genesis.add_argument(
        "--max-genesis-archive-unpacked-size",
        type=int,
        default=DEFAULT_MAX_GENESIS_ARCHIVE_UNPACKED_SIZE,
    )
    genesis.add_argument(
        "--enable-warmup-epochs",
        action=BooleanOptionalAction,
        default=True,
        help="Start with short epochs that grow to the configured length",
    )
    genesis.add_argument("--cluster-type", choices=CLUSTER_TYPES, default="development")

    validator = args.add_argument_group("validators")
    validator.add_argument("--internal-node-sol", type=float, default=DEFAULT_INTERNAL_NODE_SOL)
    validator.add_argument(
        "--internal-node-stake-sol", type=float, default=DEFAULT_INTERNAL_NODE_STAKE_SOL
    )
    validator.add_argument("--commission", type=int, default=DEFAULT_COMMISSION)
    validator.add_argument("--limit-ledger-size", type=int, default=None)
    validator.add_argument("--skip-poh-verify", action="store_true")
    validator.add_argument("--no-snapshot-fetch", action="store_true")
    validator.add_argument("--require-tower", action="store_true")
    validator.add_argument("--enable-full-rpc", action="store_true")
    validator.add_argument(
        "--known-validator",
        dest="known_validators",
        action="append",
        default=[],
        help="Public key of a known validator, may be repeated",
    )

    docker = args.add_argument_group("images")
    docker.add_argument("--registry", default=BuildConfig.registry)
    docker.add_argument("--image-name", default=BuildConfig.image_name)
    docker.add_argument("--base-image", default=BuildConfig.base_image)
    docker.add_argument("--docker-bin", default=BuildConfig.docker_bin)
    docker.add_argument(
        "--skip-docker-build",
        action="store_true",
        help="Compute image references without building or pushing images",
    )

    requests = args.add_argument_group("resource requests")
    for role in ("validator", "rpc", "client"):
        requests.add_argument(f"--{role}-cpu-requests", default=ResourceRequests.cpu)
        requests.add_argument(f"--{role}-memory-requests", default=ResourceRequests.memory)

    client = args.add_argument_group("clients")
    client.add_argument("--run-client", action="store_true", help="Launch the client groups")
    client.add_argument("--client-to-run", choices=CLIENT_PROGRAMS, default="bench-tps")
    client.add_argument("--client-type", choices=CLIENT_TRANSPORTS, default="tpu-client")
    client.add_argument(
        "--bench-tps-args",
        default=None,
        help="Space separated key=value and flag tokens forwarded to bench-tps",
    )
    client.add_argument("--generic-client-executable", default=None)
    client.add_argument("--generic-client-args", default="")
    client.add_argument("--client-tx-count", type=int, default=DEFAULT_TX_COUNT)
    client.add_argument(
        "--client-keypair-multiplier", type=int, default=DEFAULT_KEYPAIR_MULTIPLIER
    )
    client.add_argument(
        "--client-lamports-per-account", type=int, default=DEFAULT_LAMPORTS_PER_ACCOUNT
    )
    client.add_argument("--client-delay-start", type=int, default=0)
    client.add_argument("--client-duration-seconds", type=int, default=None)
    client.add_argument("--client-num-nodes", type=int, default=None)
    client.add_argument("--client-target-node", default=None)
    client.add_argument(
        "--client-wait-for-n-nodes",
        type=int,
        default=None,
        help="Wait until this many nodes are in gossip before launching clients",
    )
    client.add_argument(
        "--convergence-timeout",
        type=float,
        default=600.0,
        help="Seconds to wait for --client-wait-for-n-nodes",
    )

    metrics = args.add_argument_group("metrics")
    metrics.add_argument("--metrics-host", default=None)
    metrics.add_argument("--metrics-port", type=int, default=None)
    metrics.add_argument("--metrics-db", default=None)
    metrics.add_argument("--metrics-username", default=None)
    metrics.add_argument("--metrics-password", default=None)

    args.add_argument(
        "--dry-run",
        action="store_true",
        help="Run against an in-memory cluster and print the resources instead",
    )


def build_spec(
    local_path: pathlib.Path | None = None,
    commit: str | None = None,
    release_channel: str | None = None,
    **kwargs: Any,
) -> BuildSpec:
    """Create the build specification selected on the command line."""
    build_type = BuildType(kwargs.get("build_type", BuildType.RELEASE))
    if local_path is not None:
        return LocalPath(path=local_path, build_type=build_type)
    if commit is not None:
        return Commit(
            repo=kwargs.get("repo", DEFAULT_REPO),
            sha=commit,
            github_user=kwargs.get("github_user", DEFAULT_GITHUB_USER),
            build_type=build_type,
        )
    if release_channel is not None:
        return ReleaseChannel(tag=release_channel)
    raise ConfigException("One of --local-path, --commit or --release-channel is required")


def genesis_config(**kwargs: Any) -> GenesisConfig:
    return GenesisConfig(
        faucet_lamports=kwargs["faucet_lamports"],
        bootstrap_validator_sol=kwargs["bootstrap_validator_sol"],
        bootstrap_validator_stake_sol=kwargs["bootstrap_validator_stake_sol"],
        hashes_per_tick=kwargs["hashes_per_tick"],
        slots_per_epoch=kwargs["slots_per_epoch"],
        target_lamports_per_signature=kwargs["target_lamports_per_signature"],
        max_genesis_archive_unpacked_size=kwargs["max_genesis_archive_unpacked_size"],
        enable_warmup_epochs=kwargs["enable_warmup_epochs"],
        cluster_type=kwargs["cluster_type"],
    )


def validator_config(**kwargs: Any) -> ValidatorConfig:
    return ValidatorConfig(
        internal_node_sol=kwargs["internal_node_sol"],
        internal_node_stake_sol=kwargs["internal_node_stake_sol"],
        commission=kwargs["commission"],
        limit_ledger_size=kwargs["limit_ledger_size"],
        skip_poh_verify=kwargs["skip_poh_verify"],
        no_snapshot_fetch=kwargs["no_snapshot_fetch"],
        require_tower=kwargs["require_tower"],
        enable_full_rpc=kwargs["enable_full_rpc"],
        known_validators=tuple(kwargs["known_validators"]),
    )


def client_config(**kwargs: Any) -> ClientConfig:
    return ClientConfig(
        client_to_run=kwargs["client_to_run"],
        client_type=kwargs["client_type"],
        bench_tps_args=tuple(parse_bench_tps_args(kwargs["bench_tps_args"])),
        executable_path=kwargs["generic_client_executable"],
        generic_args=kwargs["generic_client_args"],
        tx_count=kwargs["client_tx_count"],
        keypair_multiplier=kwargs["client_keypair_multiplier"],
        lamports_per_account=kwargs["client_lamports_per_account"],
        delay_start=kwargs["client_delay_start"],
        duration=kwargs["client_duration_seconds"],
        num_nodes=kwargs["client_num_nodes"],
        target_node=kwargs["client_target_node"],
    )


def metrics_config(**kwargs: Any) -> MetricsConfig | None:
    """Metrics endpoint, when every metrics flag is set."""
    names = ["host", "port", "db", "username", "password"]
    values = {name: kwargs.get(f"metrics_{name}") for name in names}
    if all(value is None for value in values.values()):
        return None
    if missing := [name for name, value in values.items() if value is None]:
        raise ConfigException(
            "Metrics require every metrics flag, missing: "
            + ", ".join(f"--metrics-{name}" for name in missing)
        )
    return MetricsConfig(**values)  # type: ignore[arg-type]


def endpoints(namespace: str, **kwargs: Any) -> Endpoints | None:
    """Endpoints of an existing cluster named on the command line."""
    host = kwargs.get("bootstrap_address")
    if host is None:
        return None
    if kwargs.get("shred_version") is None:
        raise ConfigException("--bootstrap-address requires --shred-version")
    return Endpoints(
        namespace=namespace,
        rpc_address=f"{host}:{RPC_PORT}",
        gossip_address=f"{host}:{GOSSIP_PORT}",
        faucet_address=f"{host}:{FAUCET_PORT}",
        shred_version=kwargs["shred_version"],
    )


def _requests(role: str, kwargs: dict[str, Any]) -> ResourceRequests:
    return ResourceRequests(
        cpu=kwargs[f"{role}_cpu_requests"], memory=kwargs[f"{role}_memory_requests"]
    )


def build_plan(namespace: str, **kwargs: Any) -> DeploymentPlan:
    """Create the deployment plan described by the command line."""
    tag = sanitize_tag(kwargs["tag"]) if kwargs.get("tag") else None
    append = kwargs.get("append", False)
    groups: list[NodeGroup] = []
    if not kwargs.get("no_bootstrap"):
        groups.append(
            NodeGroup(NodeType.BOOTSTRAP, 1, requests=_requests("validator", kwargs))
        )
    groups.append(
        NodeGroup(
            NodeType.VALIDATOR,
            kwargs["validators"],
            tag=tag,
            requests=_requests("validator", kwargs),
            append=append,
        )
    )
    groups.append(
        NodeGroup(
            NodeType.RPC,
            kwargs["rpc_nodes"],
            tag=tag,
            requests=_requests("rpc", kwargs),
            append=append,
        )
    )
    if kwargs["clients"] > 0:
        groups.append(
            NodeGroup(
                NodeType.CLIENT,
                kwargs["clients"],
                tag=tag,
                requests=_requests("client", kwargs),
                client=client_config(**kwargs),
                append=append,
            )
        )
    return DeploymentPlan(
        namespace=namespace,
        groups=groups,
        build=build_spec(**kwargs),
        genesis=genesis_config(**kwargs),
        validator=validator_config(**kwargs),
        no_bootstrap=kwargs.get("no_bootstrap", False),
        endpoints=endpoints(namespace, **kwargs),
        shred_version=kwargs.get("shred_version"),
        run_client=kwargs.get("run_client", False),
        client_wait_for_n_nodes=kwargs.get("client_wait_for_n_nodes"),
        convergence_timeout=kwargs.get("convergence_timeout", 600.0),
        metrics=metrics_config(**kwargs),
    )


def build_config(**kwargs: Any) -> BuildConfig:
    return BuildConfig(
        registry=kwargs["registry"],
        image_name=kwargs["image_name"],
        base_image=kwargs["base_image"],
        docker_bin=kwargs["docker_bin"],
        skip_docker_build=kwargs["skip_docker_build"] or kwargs.get("dry_run", False),
    )


def cluster_config(namespace: str, **kwargs: Any) -> ClusterConfig:
    return ClusterConfig(
        namespace=namespace,
        dry_run=kwargs.get("dry_run", False),
        kubeconfig=kwargs.get("kubeconfig"),
        context=kwargs.get("context"),
    )


def make_cluster(config: ClusterConfig) -> ClusterApi:
    """Connect to the configured cluster, or create an empty in-memory one."""
    if config.dry_run:
        _LOGGER.info("Dry run: using an in-memory cluster for namespace %s", config.namespace)
        return InMemoryCluster(namespaces={config.namespace})
    return KubernetesCluster(config)


def make_store(data_path: pathlib.Path) -> Store:
    return DirectoryStore(data_path)
