"""Tests for the validator-lab `deploy` command."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from validator_lab.exceptions import ConfigException
from validator_lab.manifest import BuildType, LocalPath, NodeType, ReleaseChannel
from validator_lab.tool import flags
from validator_lab.tool.validator_lab import main

from .. import FakeTools
from . import parse_args


def deploy_kwargs(args: list[str]) -> dict[str, Any]:
    kwargs = parse_args(["deploy"] + args)
    kwargs.pop("namespace")
    return kwargs


def test_dry_run(
    source_tree: Path, tmp_path: Path, fake_tools: FakeTools, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test a dry run prints the resources it would create."""
    main(
        [
            "deploy",
            "--dry-run",
            "--local-path",
            str(source_tree),
            "--build-type",
            "skip",
            "--validators",
            "2",
            "--tag",
            "v1",
            "--data-path",
            str(tmp_path / "data"),
        ]
    )
    out = capsys.readouterr().out
    docs = list(yaml.safe_load_all(out))
    names = [(doc["kind"], doc["metadata"]["name"]) for doc in docs]
    assert ("ReplicaSet", "bootstrap-validator-replicaset") in names
    assert ("ReplicaSet", "validator-v1-0-replicaset") in names
    assert ("ReplicaSet", "validator-v1-1-replicaset") in names
    assert ("Service", "bootstrap-and-rpc-node-lb-service") in names
    assert not any(kind == "Pod" for kind, _ in names)
    assert "docker" not in fake_tools.programs()
    assert (tmp_path / "data" / "genesis-config.yaml").exists()


def test_dry_run_no_bootstrap_without_data(
    source_tree: Path, tmp_path: Path, fake_tools: FakeTools, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(
            [
                "deploy",
                "--dry-run",
                "--no-bootstrap",
                "--local-path",
                str(source_tree),
                "--build-type",
                "skip",
                "--validators",
                "1",
                "--data-path",
                str(tmp_path / "empty"),
            ]
        )
    assert exc_info.value.code == 1
    assert "validator-lab error:" in capsys.readouterr().err
    assert fake_tools.calls == []


def test_build_source_required(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        parse_args(["deploy", "--validators", "1"])
    assert "--local-path" in capsys.readouterr().err


def test_build_plan() -> None:
    """Test the plan lists a group per role with the requested counts."""
    kwargs = deploy_kwargs(
        [
            "--release-channel",
            "v1.18.8",
            "--validators",
            "3",
            "--rpc-nodes",
            "1",
            "--clients",
            "2",
            "--client-tx-count",
            "100",
            "--bench-tps-args",
            "sustained tx-count=100",
            "--tag",
            "V1.18.8",
        ]
    )
    plan = flags.build_plan("lab", **kwargs)
    assert plan.namespace == "lab"
    assert plan.build == ReleaseChannel(tag="v1.18.8")
    assert [(g.node_type, g.count, g.tag) for g in plan.groups] == [
        (NodeType.BOOTSTRAP, 1, None),
        (NodeType.VALIDATOR, 3, "v1-18-8"),
        (NodeType.RPC, 1, "v1-18-8"),
        (NodeType.CLIENT, 2, "v1-18-8"),
    ]
    client = plan.groups[-1].client
    assert client is not None
    assert client.tx_count == 100
    assert client.bench_tps_args == ("--tx-count", "100", "--sustained")
    assert plan.metrics is None
    assert not plan.run_client
    plan.validate()


def test_build_plan_no_bootstrap(tmp_path: Path) -> None:
    kwargs = deploy_kwargs(
        [
            "--local-path",
            str(tmp_path),
            "--build-type",
            "debug",
            "--no-bootstrap",
            "--validators",
            "2",
            "--append",
            "--bootstrap-address",
            "10.0.0.5",
            "--shred-version",
            "4242",
        ]
    )
    plan = flags.build_plan("lab", **kwargs)
    assert plan.build == LocalPath(path=tmp_path, build_type=BuildType.DEBUG)
    assert plan.bootstrap is None
    assert all(group.append for group in plan.groups)
    assert plan.endpoints is not None
    assert plan.endpoints.gossip_address == "10.0.0.5:8001"
    assert plan.endpoints.shred_version == 4242


def test_bootstrap_address_requires_shred_version(tmp_path: Path) -> None:
    kwargs = deploy_kwargs(
        ["--local-path", str(tmp_path), "--no-bootstrap", "--bootstrap-address", "10.0.0.5"]
    )
    with pytest.raises(ConfigException, match="--shred-version"):
        flags.build_plan("lab", **kwargs)


def test_metrics_flags(tmp_path: Path) -> None:
    """Test metrics are configured with every flag or none."""
    kwargs = deploy_kwargs(
        [
            "--local-path",
            str(tmp_path),
            "--metrics-host",
            "metrics.example.com",
            "--metrics-port",
            "8086",
        ]
    )
    with pytest.raises(ConfigException, match="--metrics-db, --metrics-username"):
        flags.build_plan("lab", **kwargs)

    kwargs.update(metrics_db="testnet", metrics_username="lab", metrics_password="secret")
    metrics = flags.build_plan("lab", **kwargs).metrics
    assert metrics is not None
    assert metrics.port == 8086


def test_dry_run_skips_docker(tmp_path: Path) -> None:
    kwargs = deploy_kwargs(["--local-path", str(tmp_path), "--dry-run"])
    assert flags.build_config(**kwargs).skip_docker_build
    assert flags.cluster_config("lab", **kwargs).dry_run
