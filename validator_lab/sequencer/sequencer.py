"""Deployment sequencer state machine."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path

from validator_lab import ordinals, resources
from validator_lab.builder import ArtifactBuilder, BuildConfig, SourceArtifact
from validator_lab.builder.builder import fingerprint
from validator_lab.client import BenchTpsFunder, ClientLauncher, DryRunFunder, Funder
from validator_lab.cluster import ClusterApi, ClusterConfig
from validator_lab.exceptions import (
    ConfigException,
    ReadinessTimeoutError,
    ValidatorLabException,
)
from validator_lab.genesis import Genesis
from validator_lab.load_balancer import LoadBalancer
from validator_lab.manifest import (
    BuildSpec,
    DeploymentPlan,
    Endpoints,
    NodeGroup,
    NodeType,
)
from validator_lab.poll import PollConfig, poll_until
from validator_lab.probe import NodeCountProbe, PodCountProbe, RpcGossipProbe
from validator_lab.store import GenesisArtifact, Store

from .state import RunResult, State, Trace

_LOGGER = logging.getLogger(__name__)


@dataclass
class SequencerConfig:
    """Configuration for the deployment sequencer."""

    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    build: BuildConfig = field(default_factory=BuildConfig)

    bootstrap_poll: PollConfig = field(
        default_factory=lambda: PollConfig(attempts=60, interval=5.0)
    )
    """Readiness gate for the bootstrap pod."""

    load_balancer_poll: PollConfig = field(
        default_factory=lambda: PollConfig(attempts=24, interval=5.0)
    )
    """How long to wait for an external load balancer address."""

    convergence_interval: float = 10.0
    """Seconds between gossip node count checks."""


class Sequencer:
    """Brings up the node groups of a deployment plan in order.

    The stages are:
      - resolve the version tag of every build used by the plan
      - create or load genesis
      - build the images of every non-client group
      - deploy the bootstrap, or skip it when joining an existing cluster
      - resolve the endpoints every other node joins
      - deploy validator and RPC groups
      - wait for the gossip node count, when requested
      - fund and launch clients
    """

    def __init__(
        self,
        store: Store,
        cluster: ClusterApi,
        config: SequencerConfig | None = None,
        builder: ArtifactBuilder | None = None,
        funder: Funder | None = None,
        probe: NodeCountProbe | None = None,
    ) -> None:
        """Initialize Sequencer.

        Args:
            store: The cluster data path.
            cluster: The cluster API boundary.
            config: Sequencer configuration.
            builder: Builder for binaries and images, created from the
                build config when not given.
            funder: Funds client accounts, chosen from the cluster config
                when not given.
            probe: Counts gossip nodes, chosen from the cluster config when
                not given.
        """
        self._store = store
        self._cluster = cluster
        self._config = config or SequencerConfig()
        self._builder = builder or ArtifactBuilder(store, self._config.build)
        self._funder = funder
        self._probe = probe

    async def run(self, plan: DeploymentPlan) -> RunResult:
        """Run a deployment plan to completion or to the first fatal error."""
        trace = Trace()
        result = RunResult(state=State.INIT, trace=trace.states)
        try:
            plan.validate()
            with self._store.lock():
                await self._run(plan, trace, result)
        except ValidatorLabException as err:
            _LOGGER.error("Deployment aborted after %s: %s", trace.current, err)
            trace.enter(State.ABORTED)
            result.state = State.ABORTED
            result.error = err
            return result
        trace.enter(State.DONE)
        result.state = State.DONE
        return result

    async def _preflight(self, plan: DeploymentPlan) -> None:
        """Checks that must pass before anything is built or touched."""
        if not await self._cluster.namespace_exists(plan.namespace):
            raise ConfigException(f"Namespace '{plan.namespace}' does not exist")
        if plan.no_bootstrap:
            if (
                plan.endpoints is None
                and plan.shred_version is None
                and await self._store.read_endpoints() is None
                and not await self._store.has_genesis()
            ):
                raise ConfigException(
                    "--no-bootstrap requires the endpoints of a running cluster: pass "
                    "them explicitly or reuse the data path the cluster was created with"
                )

    async def _run(self, plan: DeploymentPlan, trace: Trace, result: RunResult) -> None:
        namespace = plan.namespace
        await self._preflight(plan)

        with trace.stage_context(State.SOURCES_PREPARED):
            sources: dict[BuildSpec, SourceArtifact] = {}
            for group in plan.groups:
                spec = group.build or plan.build
                if group.count > 0 and spec is not None and spec not in sources:
                    sources[spec] = await self._builder.resolve(spec)

        def source_of(group: NodeGroup) -> SourceArtifact:
            spec = group.build or plan.build
            assert spec is not None
            return sources[spec]

        with trace.stage_context(State.GENESIS_READY):
            if plan.bootstrap is not None:
                tools = source_of(plan.bootstrap)
            elif sources:
                tools = next(iter(sources.values()))
            else:
                tools = None
            genesis = Genesis(self._store, tools=self._tools_of(tools) if tools else None)
            genesis_artifact = await genesis.ensure_genesis(plan.genesis)

        with trace.stage_context(State.IMAGES_READY):
            deployable = [
                g for g in plan.groups if g.count > 0 and g.node_type != NodeType.CLIENT
            ]
            bound = await asyncio.gather(
                *(self._bind_image(g, source_of(g), genesis_artifact) for g in deployable)
            )

        bootstrap = next((g for g in bound if g.node_type == NodeType.BOOTSTRAP), None)
        load_balancer = LoadBalancer(self._cluster, namespace, self._config.load_balancer_poll)
        if bootstrap is not None:
            with trace.stage_context(State.BOOTSTRAP_DEPLOYED):
                name = await self._deploy_bootstrap(bootstrap, genesis_artifact, plan)
                result.deployed.append(name)
        else:
            trace.enter(State.BOOTSTRAP_SKIPPED)

        with trace.stage_context(State.ENDPOINTS_RESOLVED):
            endpoints = await self._resolve_endpoints(plan, genesis, genesis_artifact)
            if bootstrap is not None:
                address = await load_balancer.register(endpoints)
                endpoints = replace(endpoints, load_balancer_address=address)
            await self._store.write_endpoints(endpoints)
            result.endpoints = endpoints

        with trace.stage_context(State.DEPENDENT_GROUPS_DEPLOYED):
            for group in bound:
                if group.node_type in (NodeType.VALIDATOR, NodeType.RPC):
                    names = await self._deploy_group(group, endpoints, genesis, plan)
                    result.deployed.extend(names)
            if any(g.node_type == NodeType.RPC for g in bound):
                address = await load_balancer.register(endpoints)
                if address and address != endpoints.load_balancer_address:
                    endpoints = replace(endpoints, load_balancer_address=address)
                    await self._store.write_endpoints(endpoints)
                    result.endpoints = endpoints

        with trace.stage_context(State.CONVERGENCE_WAITED):
            if plan.client_wait_for_n_nodes is not None:
                await self._wait_for_nodes(plan, endpoints)

        with trace.stage_context(State.CLIENTS_LAUNCHED):
            clients = plan.groups_of(NodeType.CLIENT)
            if clients and not plan.run_client:
                _LOGGER.info("Client groups are configured but --run-client was not set")
            elif clients:
                funder = self._funder or await self._default_funder(
                    genesis_artifact, source_of(clients[0])
                )
                launcher = ClientLauncher(
                    self._cluster,
                    self._builder,
                    funder,
                    namespace,
                    extra_env=plan.metrics.env() if plan.metrics else None,
                )
                for group in clients:
                    source = source_of(group)
                    group = replace(group, tag=group.tag or source.version_tag)
                    result.client_errors.extend(await launcher.launch(group, endpoints, source))

    async def _bind_image(
        self, group: NodeGroup, source: SourceArtifact, genesis_artifact: GenesisArtifact
    ) -> NodeGroup:
        """Build the image of a group and bind the group to it."""
        if group.node_type == NodeType.BOOTSTRAP:
            image = await self._builder.build_image(
                source,
                NodeType.BOOTSTRAP,
                extra_dirs={"ledger": genesis_artifact.ledger_dir},
                content_id=fingerprint(genesis_artifact.bootstrap_identity),
            )
        else:
            image = await self._builder.build_image(source, group.node_type)
        return group.resolve(image.image, source.version_tag)

    async def _deploy_bootstrap(
        self, group: NodeGroup, genesis_artifact: GenesisArtifact, plan: DeploymentPlan
    ) -> str:
        secret_data = {"faucet.json": genesis_artifact.faucet_keypair.read_bytes()}
        for path in sorted(genesis_artifact.bootstrap_dir.glob("*.json")):
            secret_data[path.name] = path.read_bytes()
        resource_set = resources.build(
            group,
            0,
            None,
            namespace=plan.namespace,
            secret_data=secret_data,
            args=plan.validator.args(NodeType.BOOTSTRAP),
            extra_env=plan.metrics.env() if plan.metrics else None,
        )
        await ordinals.apply_member(self._cluster, resource_set)

        selector = resources.group_selector(plan.namespace, NodeType.BOOTSTRAP)
        service = resource_set.service
        assert service is not None

        async def bootstrap_ready() -> bool:
            pods = await self._cluster.pods(plan.namespace, selector)
            if not any(pod.running for pod in pods):
                return False
            return (
                await self._cluster.get("Service", plan.namespace, service["metadata"]["name"])
                is not None
            )

        poll = await poll_until(
            bootstrap_ready, bool, self._config.bootstrap_poll, "bootstrap validator"
        )
        if not poll.ready:
            raise ReadinessTimeoutError(resource_set.name, poll.attempts)
        _LOGGER.info("Bootstrap validator %s is running", resource_set.name)
        return resource_set.name

    async def _resolve_endpoints(
        self,
        plan: DeploymentPlan,
        genesis: Genesis,
        genesis_artifact: GenesisArtifact,
    ) -> Endpoints:
        """Endpoints of the bootstrap, with the shred version of the cluster.

        The shred version comes from the plan, then the recorded endpoints,
        then the genesis ledger.
        """
        stored = await self._store.read_endpoints()
        if stored is not None and stored.namespace != plan.namespace:
            stored = None
        endpoints = plan.endpoints or stored
        shred_version = plan.shred_version
        if shred_version is None and endpoints is not None:
            shred_version = endpoints.shred_version
        if shred_version is None:
            shred_version = await genesis.shred_version(
                genesis_artifact, plan.genesis.max_genesis_archive_unpacked_size
            )
        if endpoints is None:
            endpoints = Endpoints.for_bootstrap(
                plan.namespace,
                resources.service_name(NodeType.BOOTSTRAP, resources.BOOTSTRAP_TAG, 0),
                shred_version,
            )
        elif endpoints.shred_version != shred_version:
            endpoints = replace(endpoints, shred_version=shred_version)
        _LOGGER.info(
            "Endpoints: rpc=%s gossip=%s shred-version=%s",
            endpoints.rpc_address,
            endpoints.gossip_address,
            endpoints.shred_version,
        )
        return endpoints

    async def _deploy_group(
        self,
        group: NodeGroup,
        endpoints: Endpoints,
        genesis: Genesis,
        plan: DeploymentPlan,
    ) -> list[str]:
        """Deploy the members of a validator or RPC group in parallel."""
        assert group.tag is not None
        indexes = await ordinals.allocate(
            self._cluster,
            plan.namespace,
            group.node_type,
            group.tag,
            group.count,
            group.append,
        )
        _LOGGER.info("Deploying %s members %s", group.label, indexes)

        async def deploy(index: int) -> str:
            name = resources.service_name(group.node_type, group.tag or "", index)
            accounts = await genesis.ensure_accounts(group.node_type, name)
            resource_set = resources.build(
                group,
                index,
                endpoints,
                namespace=plan.namespace,
                secret_data={key: path.read_bytes() for key, path in accounts.keypairs.items()},
                args=plan.validator.args(group.node_type),
                extra_env=plan.metrics.env() if plan.metrics else None,
            )
            await ordinals.apply_member(self._cluster, resource_set)
            return name

        return list(await asyncio.gather(*(deploy(index) for index in indexes)))

    async def _wait_for_nodes(self, plan: DeploymentPlan, endpoints: Endpoints) -> None:
        assert plan.client_wait_for_n_nodes is not None
        target = plan.client_wait_for_n_nodes
        probe = self._probe
        if probe is None:
            if endpoints.load_balancer_address and not self._config.cluster.dry_run:
                probe = RpcGossipProbe.for_address(endpoints.load_balancer_address)
            else:
                probe = PodCountProbe(self._cluster, plan.namespace)
        poll = await poll_until(
            probe.count,
            lambda count: count >= target,
            PollConfig.from_timeout(plan.convergence_timeout, self._config.convergence_interval),
            f"{target} nodes in gossip",
        )
        if not poll.ready:
            raise ReadinessTimeoutError(
                f"{target} nodes in gossip",
                poll.attempts,
                f"only {poll.value} observed; client launch aborted, deployed groups kept",
            )
        _LOGGER.info("Cluster converged with %s nodes", poll.value)

    def _tools_of(self, source: SourceArtifact) -> Callable[[], Awaitable[Path]]:
        """Produces the tools directory of a build when first needed."""

        async def tools() -> Path:
            return (await self._builder.prepare(source.spec)).bin_dir

        return tools

    async def _default_funder(
        self, genesis_artifact: GenesisArtifact, source: SourceArtifact
    ) -> Funder:
        if self._config.cluster.dry_run:
            return DryRunFunder(self._store)
        prepared = await self._builder.prepare(source.spec)
        return BenchTpsFunder(
            self._store, genesis_artifact.faucet_keypair, bin_dir=prepared.bin_dir
        )
