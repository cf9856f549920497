"""Tests for the deployment data model."""

from pathlib import Path

import pytest

from validator_lab.exceptions import ConfigException
from validator_lab.manifest import (
    BuildType,
    ClientConfig,
    Commit,
    DeploymentPlan,
    Endpoints,
    GenesisConfig,
    ImageRef,
    LocalPath,
    MetricsConfig,
    NamedResource,
    NodeGroup,
    NodeType,
    ReleaseChannel,
    ValidatorConfig,
    parse_bench_tps_args,
    sanitize_tag,
)

BUILD = ReleaseChannel(tag="v1.18.8")


def test_resource_prefix() -> None:
    assert NodeType.BOOTSTRAP.resource_prefix == "bootstrap-validator"
    assert NodeType.VALIDATOR.resource_prefix == "validator"
    assert NodeType.RPC.resource_prefix == "rpc-node"
    assert NodeType.CLIENT.resource_prefix == "client"


def test_sanitize_tag() -> None:
    """Test versions are turned into names usable in resources."""
    assert sanitize_tag("v1.18.8") == "v1-18-8"
    assert sanitize_tag("Feature/Branch_Name") == "feature-branch-name"
    assert len(sanitize_tag("x" * 64)) == 30
    with pytest.raises(ConfigException):
        sanitize_tag("...")


def test_build_specs() -> None:
    commit = Commit(repo="agave", sha="0123456789abcdef", github_user="anza-xyz")
    assert commit.url == "https://github.com/anza-xyz/agave.git"
    assert commit.version_tag == "01234567"
    assert BUILD.version_tag == "v1-18-8"
    assert LocalPath(path=Path("/src"), build_type=BuildType.SKIP).describe() == (
        "local path /src (skip)"
    )


def test_parse_bench_tps_args() -> None:
    """Test values come before bare flags."""
    assert parse_bench_tps_args("tx-count=10 sustained threads=4") == [
        "--tx-count",
        "10",
        "--threads",
        "4",
        "--sustained",
    ]
    assert parse_bench_tps_args(None) == []


@pytest.mark.parametrize("token", ["target-node=abc", "shred-version=1", "--url=http://x"])
def test_parse_bench_tps_args_reserved(token: str) -> None:
    """Test values set from the cluster environment are rejected."""
    with pytest.raises(ConfigException, match="cluster environment"):
        parse_bench_tps_args(token)


def test_client_config() -> None:
    config = ClientConfig(tx_count=5000, keypair_multiplier=4)
    assert config.num_accounts == 20000
    config.validate()
    with pytest.raises(ConfigException, match="executable"):
        ClientConfig(client_to_run="generic").validate()
    with pytest.raises(ConfigException, match="Unknown client"):
        ClientConfig(client_to_run="spam").validate()


def test_validator_args() -> None:
    """Test startup arguments differ by role."""
    config = ValidatorConfig(
        commission=50, enable_full_rpc=True, require_tower=True, known_validators=("abc",)
    )
    validator = config.args(NodeType.VALIDATOR)
    assert validator[:6] == [
        "--internal-node-sol",
        "100.0",
        "--internal-node-stake-sol",
        "10.0",
        "--commission",
        "50",
    ]
    assert "--require-tower" in validator
    assert "--enable-full-rpc" not in validator
    rpc = config.args(NodeType.RPC)
    assert "--commission" not in rpc
    assert "--require-tower" not in rpc
    assert "--enable-full-rpc" in rpc
    assert rpc[-2:] == ["--known-validator", "abc"]


def test_genesis_config_validate() -> None:
    GenesisConfig().validate()
    GenesisConfig(hashes_per_tick="12500").validate()
    with pytest.raises(ConfigException, match="cluster type"):
        GenesisConfig(cluster_type="localnet").validate()
    with pytest.raises(ConfigException, match="hashes-per-tick"):
        GenesisConfig(hashes_per_tick="fast").validate()
    with pytest.raises(ConfigException, match="stake"):
        GenesisConfig(bootstrap_validator_sol=1, bootstrap_validator_stake_sol=2).validate()


def test_genesis_config_yaml() -> None:
    config = GenesisConfig(slots_per_epoch=150, cluster_type="devnet")
    assert GenesisConfig.parse_yaml(config.yaml()) == config


def test_endpoints() -> None:
    endpoints = Endpoints.for_bootstrap("lab", "bootstrap-validator-service", 42)
    host = "bootstrap-validator-service.lab.svc.cluster.local"
    assert endpoints.rpc_address == f"{host}:8899"
    assert endpoints.gossip_address == f"{host}:8001"
    assert endpoints.faucet_address == f"{host}:9900"
    env = {item["name"]: item["value"] for item in endpoints.env()}
    assert env["SHRED_VERSION"] == "42"
    assert env["NAMESPACE"] == "lab"
    assert Endpoints.parse_yaml(endpoints.yaml()) == endpoints


def test_metrics_env() -> None:
    metrics = MetricsConfig(host="metrics.example.com", port=8086, db="lab", username="u", password="p")
    assert metrics.env() == {
        "SOLANA_METRICS_CONFIG": "host=https://metrics.example.com:8086,db=lab,u=u,p=p"
    }


def test_node_group_resolve() -> None:
    image = ImageRef("localhost:5000", "validator-k8s-cluster-image", "v1")
    group = NodeGroup(NodeType.VALIDATOR, 3)
    assert group.resolve(image, "v1").tag == "v1"
    assert NodeGroup(NodeType.VALIDATOR, 3, tag="mine").resolve(image, "v1").tag == "mine"
    assert image.uri == "localhost:5000/validator-k8s-cluster-image:v1"


def _plan(*groups: NodeGroup, **kwargs) -> DeploymentPlan:  # type: ignore[no-untyped-def]
    return DeploymentPlan(namespace="lab", groups=list(groups), build=BUILD, **kwargs)


def test_plan_validate() -> None:
    _plan(NodeGroup(NodeType.BOOTSTRAP, 1), NodeGroup(NodeType.VALIDATOR, 3)).validate()
    _plan(NodeGroup(NodeType.VALIDATOR, 2), no_bootstrap=True).validate()


@pytest.mark.parametrize(
    ("plan", "match"),
    [
        (_plan(NodeGroup(NodeType.VALIDATOR, 1)), "Exactly one bootstrap"),
        (
            _plan(NodeGroup(NodeType.BOOTSTRAP, 1), no_bootstrap=True),
            "may not be requested",
        ),
        (
            _plan(NodeGroup(NodeType.BOOTSTRAP, 1), NodeGroup(NodeType.VALIDATOR, -1)),
            "negative",
        ),
        (
            _plan(NodeGroup(NodeType.BOOTSTRAP, 1), NodeGroup(NodeType.CLIENT, 1)),
            "no client config",
        ),
        (
            _plan(NodeGroup(NodeType.BOOTSTRAP, 1), client_wait_for_n_nodes=0),
            "must be positive",
        ),
        (
            DeploymentPlan(namespace="lab", groups=[NodeGroup(NodeType.BOOTSTRAP, 1)]),
            "has no build",
        ),
    ],
)
def test_plan_validate_errors(plan: DeploymentPlan, match: str) -> None:
    with pytest.raises(ConfigException, match=match):
        plan.validate()


def test_zero_count_group_allowed() -> None:
    """Test an empty group is accepted and ignored."""
    plan = _plan(NodeGroup(NodeType.BOOTSTRAP, 1), NodeGroup(NodeType.RPC, 0))
    plan.validate()
    assert plan.groups_of(NodeType.RPC) == []


def test_named_resource() -> None:
    doc = {"kind": "Service", "metadata": {"name": "svc", "namespace": "lab"}}
    assert str(NamedResource.from_doc(doc)) == "Service/lab/svc"
    with pytest.raises(ValueError):
        NamedResource.from_doc({"kind": "Service", "metadata": {}})
