"""Validator-lab deploy action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import sys
from typing import Any, cast

from validator_lab.cluster import InMemoryCluster
from validator_lab.sequencer import Sequencer, SequencerConfig

from . import flags
from .format import PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)


class DeployAction:
    """Deploy a validator cluster, or add node groups to an existing one."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "deploy",
                help="Deploy a validator cluster",
                description=(
                    "Build images, create genesis and bring up the bootstrap, "
                    "validator, RPC and client node groups"
                ),
            ),
        )
        flags.add_cluster_flags(args)
        flags.add_deploy_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        namespace: str,
        data_path: Any,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        plan = flags.build_plan(namespace, **kwargs)
        config = SequencerConfig(
            cluster=flags.cluster_config(namespace, **kwargs),
            build=flags.build_config(**kwargs),
        )
        cluster = flags.make_cluster(config.cluster)
        sequencer = Sequencer(flags.make_store(data_path), cluster, config)

        result = await sequencer.run(plan)
        if result.error is not None:
            raise result.error

        if isinstance(cluster, InMemoryCluster):
            YamlFormatter().print(
                [doc for doc in cluster.objects() if doc["kind"] != "Pod"]
            )
            return

        for error in result.client_errors:
            print(f"warning: {error}", file=sys.stderr)
        PrintFormatter(["name"]).print([{"name": name} for name in result.deployed])
        if result.endpoints is not None:
            print(f"rpc: {result.endpoints.rpc_address}")
            if result.endpoints.load_balancer_address:
                print(f"load balancer: {result.endpoints.load_balancer_address}")
