"""Validator-lab teardown action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import cast

from validator_lab.cluster import ClusterApi
from validator_lab.exceptions import ConfigException
from validator_lab.manifest import NamedResource
from validator_lab.resources import NAMESPACE_LABEL

from . import flags
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)

# Replica sets go before the pods they own.
TEARDOWN_KINDS = ["ReplicaSet", "Pod", "Service", "Secret"]


async def teardown(cluster: ClusterApi, namespace: str) -> list[NamedResource]:
    """Delete every resource this tool created in a namespace."""
    if not await cluster.namespace_exists(namespace):
        raise ConfigException(f"Namespace '{namespace}' does not exist")
    selector = {NAMESPACE_LABEL: namespace}
    deleted: list[NamedResource] = []
    for kind in TEARDOWN_KINDS:
        deleted.extend(await cluster.delete(kind, namespace, selector))
    _LOGGER.info("Deleted %d resources from namespace %s", len(deleted), namespace)
    return deleted


class TeardownAction:
    """Delete a deployed validator cluster."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "teardown",
                help="Delete a validator cluster",
                description=(
                    "Delete every replica set, pod, service and secret created "
                    "in the namespace. The cluster data path is left untouched."
                ),
            ),
        )
        flags.add_cluster_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        namespace: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        cluster = flags.make_cluster(flags.cluster_config(namespace, **kwargs))
        deleted = await teardown(cluster, namespace)
        if not deleted:
            print(f"No validator-lab resources found in namespace {namespace}")
            return
        PrintFormatter(["kind", "name"]).print(
            [{"kind": key.kind, "name": key.name} for key in deleted]
        )
