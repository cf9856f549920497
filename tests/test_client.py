"""Tests for funding and launching clients."""

import asyncio
from pathlib import Path

import pytest

from validator_lab.builder import ArtifactBuilder, BuildConfig, SourceArtifact
from validator_lab.client import (
    BenchTpsFunder,
    ClientLauncher,
    Funder,
    client_args,
    thread_count,
)
from validator_lab.cluster import InMemoryCluster
from validator_lab.exceptions import BuildException, FundingError
from validator_lab.manifest import (
    BuildType,
    ClientConfig,
    Endpoints,
    LocalPath,
    NodeGroup,
    NodeType,
    ReleaseChannel,
)
from validator_lab.resources import IMAGE_ANNOTATION
from validator_lab.store import DirectoryStore

from . import NAMESPACE, SHRED_VERSION, FakeTools

ENDPOINTS = Endpoints.for_bootstrap(NAMESPACE, "bootstrap-validator-service", SHRED_VERSION)


class RecordingFunder(Funder):
    """Records the cluster side effects that happened before each funding."""

    def __init__(self, cluster: InMemoryCluster, store: DirectoryStore, fail: bool = False) -> None:
        self._cluster = cluster
        self._store = store
        self._fail = fail
        self.funded: list[str] = []
        self.events_seen: list[int] = []

    async def fund(self, client_name: str, config: ClientConfig, endpoints: Endpoints) -> Path:
        self.events_seen.append(len(self._cluster.events))
        if self._fail:
            raise FundingError("faucet is unavailable")
        self.funded.append(client_name)
        return self._store.path(self._store.account_key(NodeType.CLIENT, client_name))


class AccountsFunder(RecordingFunder):
    """Writes a distinct account file for every client."""

    async def fund(self, client_name: str, config: ClientConfig, endpoints: Endpoints) -> Path:
        accounts_dir = await super().fund(client_name, config, endpoints)
        accounts_dir.mkdir(parents=True, exist_ok=True)
        (accounts_dir / "client-accounts.yml").write_text(f"accounts: [{client_name}]\n")
        return accounts_dir


class UnevenFunder(Funder):
    """Fails the first client at once while the others are still funding."""

    def __init__(self, store: DirectoryStore) -> None:
        self._store = store
        self.finished: list[str] = []

    async def fund(self, client_name: str, config: ClientConfig, endpoints: Endpoints) -> Path:
        if client_name.endswith("-0"):
            raise FundingError(f"faucet rejected {client_name}")
        await asyncio.sleep(0.01)
        self.finished.append(client_name)
        return self._store.path(self._store.account_key(NodeType.CLIENT, client_name))


@pytest.fixture(name="source")
def source_fixture(tmp_path: Path) -> SourceArtifact:
    return SourceArtifact(
        spec=ReleaseChannel(tag="v1.18.8"),
        root=tmp_path,
        bin_dir=tmp_path / "bin",
        version_tag="v1-18-8",
    )


@pytest.fixture(name="builder")
def builder_fixture(store: DirectoryStore) -> ArtifactBuilder:
    return ArtifactBuilder(store, BuildConfig(skip_docker_build=True))


@pytest.fixture(name="local_source")
async def local_source_fixture(store: DirectoryStore, source_tree: Path) -> SourceArtifact:
    builder = ArtifactBuilder(store, BuildConfig())
    return await builder.resolve(LocalPath(path=source_tree, build_type=BuildType.SKIP))


def client_group(count: int = 2) -> NodeGroup:
    return NodeGroup(
        node_type=NodeType.CLIENT,
        count=count,
        client=ClientConfig(tx_count=5000, keypair_multiplier=4),
    )


@pytest.mark.parametrize(
    ("cpus", "expected"),
    [(None, None), (1, 1), (2, 2), (4, 4), (64, 4), (0, 1)],
)
def test_thread_count(cpus: int | None, expected: int | None) -> None:
    threads = thread_count(cpus)
    if expected is None:
        assert 1 <= threads <= 4
    else:
        assert threads == expected


def test_bench_tps_args() -> None:
    config = ClientConfig(
        tx_count=100,
        keypair_multiplier=2,
        duration=60,
        bench_tps_args=("--sustained",),
    )
    assert client_args(config, 4) == [
        "bench-tps",
        "tpu-client",
        "--duration",
        "60",
        "--threads",
        "4",
        "--tx-count",
        "100",
        "--keypair-multiplier",
        "2",
        "--",
        "--sustained",
    ]


def test_generic_client_args() -> None:
    """Test a generic client receives its argument string split, unchanged."""
    config = ClientConfig(
        client_to_run="generic",
        executable_path="/home/solana/.cargo/bin/spammer",
        generic_args="--rate 100 --target 'rpc node'",
    )
    assert client_args(config, 4) == ["--rate", "100", "--target", "rpc node"]


async def test_fund_before_launch(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    builder: ArtifactBuilder,
    source: SourceArtifact,
) -> None:
    """Test every client is funded before the first client pod exists."""
    funder = RecordingFunder(cluster, store)
    launcher = ClientLauncher(cluster, builder, funder, NAMESPACE)

    errors = await launcher.launch(client_group(), ENDPOINTS, source)

    assert errors == []
    assert sorted(funder.funded) == [
        "client-service-v1-18-8-0",
        "client-service-v1-18-8-1",
    ]
    assert funder.events_seen == [0, 0]
    assert ClientConfig(tx_count=5000, keypair_multiplier=4).num_accounts == 20000

    replica_sets = cluster.objects("ReplicaSet")
    assert [doc["metadata"]["name"] for doc in replica_sets] == [
        "client-v1-18-8-0-replicaset",
        "client-v1-18-8-1-replicaset",
    ]
    container = replica_sets[0]["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == "localhost:5000/client-k8s-cluster-image:v1-18-8"
    assert container["args"][:2] == ["bench-tps", "tpu-client"]
    assert cluster.objects("Service") == []


async def test_partial_launch_failure(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    builder: ArtifactBuilder,
    source: SourceArtifact,
) -> None:
    """Test a client that cannot be scheduled does not stop the others."""
    await cluster.create(
        {
            "apiVersion": "apps/v1",
            "kind": "ReplicaSet",
            "metadata": {
                "name": "client-v1-18-8-1-replicaset",
                "namespace": NAMESPACE,
                "labels": {},
                "annotations": {IMAGE_ANNOTATION: "other"},
            },
            "spec": {
                "replicas": 1,
                "template": {"metadata": {"labels": {}}, "spec": {}},
            },
        }
    )
    launcher = ClientLauncher(cluster, builder, RecordingFunder(cluster, store), NAMESPACE)

    errors = await launcher.launch(client_group(), ENDPOINTS, source)

    assert [error.client_name for error in errors] == ["client-service-v1-18-8-1"]
    assert "other" in str(errors[0])
    names = [doc["metadata"]["name"] for doc in cluster.objects("ReplicaSet")]
    assert "client-v1-18-8-0-replicaset" in names
    replica_set = await cluster.get("ReplicaSet", NAMESPACE, "client-v1-18-8-1-replicaset")
    assert replica_set is not None
    assert replica_set["metadata"]["annotations"][IMAGE_ANNOTATION] == "other"


async def test_funding_failure_is_fatal(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    builder: ArtifactBuilder,
    source: SourceArtifact,
) -> None:
    launcher = ClientLauncher(
        cluster, builder, RecordingFunder(cluster, store, fail=True), NAMESPACE
    )
    with pytest.raises(FundingError, match="faucet"):
        await launcher.launch(client_group(), ENDPOINTS, source)
    assert cluster.events == []


async def test_extra_env(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    builder: ArtifactBuilder,
    source: SourceArtifact,
) -> None:
    launcher = ClientLauncher(
        cluster,
        builder,
        RecordingFunder(cluster, store),
        NAMESPACE,
        extra_env={"SOLANA_METRICS_CONFIG": "host=https://metrics:8086"},
    )
    await launcher.launch(client_group(count=1), ENDPOINTS, source)
    (replica_set,) = cluster.objects("ReplicaSet")
    env = replica_set["spec"]["template"]["spec"]["containers"][0]["env"]
    assert {"name": "SOLANA_METRICS_CONFIG", "value": "host=https://metrics:8086"} in env


async def test_bench_tps_funder(store: DirectoryStore, fake_tools: FakeTools) -> None:
    """Test accounts are generated once, then funded through the faucet."""
    funder = BenchTpsFunder(store, Path("/keys/faucet.json"), interval=0)
    config = ClientConfig(tx_count=10, keypair_multiplier=2)

    accounts_dir = await funder.fund("client-service-v1-0", config, ENDPOINTS)

    assert accounts_dir == store.path("client-accounts/client-service-v1-0")
    assert (accounts_dir / "client-accounts.yml").read_text() == "accounts: []\n"
    write, read = fake_tools.calls
    assert "--write-client-keys" in write
    assert "--read-client-keys" in read
    assert read[read.index("--faucet") + 1] == ENDPOINTS.faucet_address
    assert read[read.index("--identity") + 1] == "/keys/faucet.json"

    await funder.fund("client-service-v1-0", config, ENDPOINTS)
    assert len(fake_tools.calls) == 3
    assert "--read-client-keys" in fake_tools.calls[2]


async def test_bench_tps_funder_failure(store: DirectoryStore, fake_tools: FakeTools) -> None:
    """Test funding is retried before giving up."""
    await store.write("client-accounts/client-service-v1-0/client-accounts.yml", b"[]")
    fake_tools.fail.add("solana-bench-tps")
    funder = BenchTpsFunder(store, Path("/keys/faucet.json"), attempts=2, interval=0)

    with pytest.raises(FundingError, match="after 2 attempts"):
        await funder.fund("client-service-v1-0", ClientConfig(), ENDPOINTS)
    assert fake_tools.programs() == ["solana-bench-tps", "solana-bench-tps"]


async def test_funding_failure_waits_for_other_clients(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    builder: ArtifactBuilder,
    source: SourceArtifact,
) -> None:
    """Test no funding is left running when another client failed."""
    funder = UnevenFunder(store)
    launcher = ClientLauncher(cluster, builder, funder, NAMESPACE)
    with pytest.raises(FundingError, match="client-service-v1-18-8-0"):
        await launcher.launch(client_group(count=3), ENDPOINTS, source)
    assert sorted(funder.finished) == [
        "client-service-v1-18-8-1",
        "client-service-v1-18-8-2",
    ]
    assert cluster.events == []


async def test_client_image_build_failure_is_fatal(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    local_source: SourceArtifact,
    fake_tools: FakeTools,
) -> None:
    """Test a failed push aborts the launch before any client is scheduled."""
    fake_tools.fail.update({"docker manifest", "docker push"})
    builder = ArtifactBuilder(store, BuildConfig())
    launcher = ClientLauncher(cluster, builder, RecordingFunder(cluster, store), NAMESPACE)

    with pytest.raises(BuildException, match="push"):
        await launcher.launch(client_group(), ENDPOINTS, local_source)
    assert cluster.objects("ReplicaSet") == []
    assert [call[1] for call in fake_tools.calls_to("docker")] == ["manifest", "build", "push"]


async def test_clients_share_one_image_build(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    local_source: SourceArtifact,
    fake_tools: FakeTools,
) -> None:
    """Test clients resolving to the same image reference build it once."""
    fake_tools.fail.add("docker manifest")
    builder = ArtifactBuilder(store, BuildConfig())
    launcher = ClientLauncher(cluster, builder, RecordingFunder(cluster, store), NAMESPACE)

    assert await launcher.launch(client_group(count=3), ENDPOINTS, local_source) == []
    assert [call[1] for call in fake_tools.calls_to("docker")] == ["manifest", "build", "push"]
    images = {
        doc["spec"]["template"]["spec"]["containers"][0]["image"]
        for doc in cluster.objects("ReplicaSet")
    }
    assert images == {f"localhost:5000/client-k8s-cluster-image:{local_source.version_tag}"}


async def test_clients_with_own_accounts_get_own_images(
    cluster: InMemoryCluster,
    store: DirectoryStore,
    local_source: SourceArtifact,
    fake_tools: FakeTools,
) -> None:
    fake_tools.fail.add("docker manifest")
    builder = ArtifactBuilder(store, BuildConfig())
    launcher = ClientLauncher(cluster, builder, AccountsFunder(cluster, store), NAMESPACE)

    assert await launcher.launch(client_group(), ENDPOINTS, local_source) == []
    builds = [call for call in fake_tools.calls_to("docker") if call[1] == "build"]
    assert len(builds) == 2
    images = {
        doc["spec"]["template"]["spec"]["containers"][0]["image"]
        for doc in cluster.objects("ReplicaSet")
    }
    assert len(images) == 2
    prefix = f"localhost:5000/client-k8s-cluster-image:{local_source.version_tag}-"
    assert all(image.startswith(prefix) for image in images)
