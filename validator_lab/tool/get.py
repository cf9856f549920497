"""Validator-lab get action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import Any, cast

from validator_lab.cluster import ClusterApi
from validator_lab.manifest import NodeType
from validator_lab.resources import (
    IMAGE_ANNOTATION,
    NAME_LABEL,
    NAMESPACE_LABEL,
    TAG_LABEL,
    TYPE_LABEL,
)

from . import flags
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)

NODE_COLUMNS = ["name", "role", "tag", "image", "phase"]
MISSING = "Missing"


async def list_nodes(
    cluster: ClusterApi,
    namespace: str,
    role: str | None = None,
    tag: str | None = None,
) -> list[dict[str, str]]:
    """Describe every deployed node, one row per replica set."""
    selector = {NAMESPACE_LABEL: namespace}
    if role is not None:
        selector[TYPE_LABEL] = role
    if tag is not None:
        selector[TAG_LABEL] = tag
    rows = []
    for doc in await cluster.list_resources("ReplicaSet", namespace, selector):
        metadata = doc["metadata"]
        labels = metadata.get("labels") or {}
        pods = await cluster.pods(namespace, doc["spec"]["selector"]["matchLabels"])
        rows.append(
            {
                "name": labels.get(NAME_LABEL, metadata["name"]),
                "role": labels.get(TYPE_LABEL, ""),
                "tag": labels.get(TAG_LABEL, ""),
                "image": (metadata.get("annotations") or {}).get(IMAGE_ANNOTATION, ""),
                "phase": pods[0].phase if pods else MISSING,
            }
        )
    return rows


class GetNodesAction:
    """Get details about deployed nodes."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "nodes",
                aliases=["node"],
                help="Get deployed nodes",
                description="Print the name, role, tag, image and phase of each node",
            ),
        )
        flags.add_cluster_flags(args)
        args.add_argument(
            "--role",
            choices=[str(value) for value in NodeType],
            default=None,
            help="Only list nodes of this role",
        )
        args.add_argument(
            "--tag",
            default=None,
            help="Only list nodes with this version tag",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        namespace: str,
        role: str | None,
        tag: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        cluster = flags.make_cluster(flags.cluster_config(namespace, **kwargs))
        rows: list[dict[str, Any]] = await list_nodes(cluster, namespace, role, tag)
        if not rows:
            print(f"No nodes found in namespace {namespace}")
            return
        PrintFormatter(NODE_COLUMNS).print(rows)


class GetAction:
    """Validator-lab get action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get",
                help="Print information about a deployed cluster",
                description="Print information about the resources of a deployed cluster",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        GetNodesAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
