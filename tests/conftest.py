"""Fixtures shared by the validator-lab tests."""

from pathlib import Path

import git
import pytest

from validator_lab import command
from validator_lab.builder import BuildConfig
from validator_lab.cluster import ClusterConfig, InMemoryCluster
from validator_lab.poll import PollConfig
from validator_lab.sequencer import SequencerConfig
from validator_lab.store import DirectoryStore

from . import NAMESPACE, FakeTools


@pytest.fixture(name="fake_tools")
def fake_tools_fixture(monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    """Replace every external program with a recording fake."""
    tools = FakeTools()
    monkeypatch.setattr(command, "run", tools.run)
    return tools


@pytest.fixture(name="store")
def store_fixture(tmp_path: Path) -> DirectoryStore:
    return DirectoryStore(tmp_path / "data")


@pytest.fixture(name="source_tree")
def source_tree_fixture(tmp_path: Path) -> Path:
    """A git repository with prebuilt binaries in farf/bin."""
    root = tmp_path / "agave"
    root.mkdir()
    repo = git.Repo.init(root)
    (root / "README.md").write_text("agave\n")
    repo.index.add(["README.md"])
    actor = git.Actor("Test", "test@example.com")
    repo.index.commit("Initial commit", author=actor, committer=actor)
    (root / "farf" / "bin").mkdir(parents=True)
    return root


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster(namespaces={NAMESPACE})


@pytest.fixture(name="sequencer_config")
def sequencer_config_fixture() -> SequencerConfig:
    return SequencerConfig(
        cluster=ClusterConfig(namespace=NAMESPACE, apply_interval=0.0),
        build=BuildConfig(skip_docker_build=True),
        bootstrap_poll=PollConfig(attempts=3, interval=0.0),
        load_balancer_poll=PollConfig(attempts=3, interval=0.0),
        convergence_interval=0.01,
    )

