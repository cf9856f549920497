"""Ordinal allocation and guarded application of node group members.

Names are derived from (role, tag, ordinal), so ordinals must never be
handed out twice for the same role and tag, including across invocations.
Existing members are read from the live cluster immediately before
allocation, and a new member's ReplicaSet is created with a create-only call
so that a name taken in the meantime is detected instead of overwritten.
"""

import logging
from typing import Any

from .cluster import ApplyResult, ClusterApi
from .exceptions import OrdinalCollisionError, ResourceConflictError
from .manifest import NodeType
from .resources import IMAGE_ANNOTATION, INDEX_LABEL, ClusterResourceSet, group_selector

__all__ = [
    "allocate",
    "apply_member",
    "existing_members",
]

_LOGGER = logging.getLogger(__name__)


async def existing_members(
    cluster: ClusterApi, namespace: str, node_type: NodeType, tag: str
) -> dict[int, dict[str, Any]]:
    """Return the ReplicaSets of a role and tag keyed by ordinal."""
    members: dict[int, dict[str, Any]] = {}
    for doc in await cluster.list_resources(
        "ReplicaSet", namespace, group_selector(namespace, node_type, tag)
    ):
        index = (doc["metadata"].get("labels") or {}).get(INDEX_LABEL)
        if index is None or not index.isdigit():
            _LOGGER.warning("Ignoring ReplicaSet %s without an ordinal", doc["metadata"]["name"])
            continue
        members[int(index)] = doc
    return members


async def allocate(
    cluster: ClusterApi,
    namespace: str,
    node_type: NodeType,
    tag: str,
    count: int,
    append: bool = False,
) -> list[int]:
    """Ordinals for a group of `count` members.

    By default the group describes the desired members `0..count-1`; members
    that already exist are reconciled in place. With `append` the ordinals
    start after the highest one in use for the role and tag.
    """
    if count <= 0:
        return []
    start = 0
    if append:
        existing = await existing_members(cluster, namespace, node_type, tag)
        start = max(existing) + 1 if existing else 0
    ordinals = list(range(start, start + count))
    _LOGGER.debug("Allocated ordinals %s for %s/%s", ordinals, node_type, tag)
    return ordinals


async def apply_member(cluster: ClusterApi, resource_set: ClusterResourceSet) -> ApplyResult:
    """Bring one member to the state described by its resource set.

    Raises OrdinalCollisionError if the member's name is held by a different
    image, or was taken between the read and the create.
    """
    replica_set = resource_set.replica_set["metadata"]
    namespace = replica_set["namespace"]
    existing = await cluster.get("ReplicaSet", namespace, replica_set["name"])
    if existing is not None:
        owner = (existing["metadata"].get("annotations") or {}).get(IMAGE_ANNOTATION)
        if owner != resource_set.image:
            raise OrdinalCollisionError(
                resource_set.name,
                f"held by image {owner}, refusing to replace it with {resource_set.image}",
            )

    results = []
    for doc in resource_set.resources():
        if doc is resource_set.replica_set and existing is None:
            try:
                await cluster.create(doc)
            except ResourceConflictError as err:
                raise OrdinalCollisionError(
                    resource_set.name, "name was taken by a concurrent deployment"
                ) from err
            results.append(ApplyResult.CREATED)
        else:
            results.append(await cluster.apply(doc))

    if existing is None:
        _LOGGER.info("Created %s", resource_set.name)
        return ApplyResult.CREATED
    if all(result == ApplyResult.UNCHANGED for result in results):
        _LOGGER.debug("%s is up to date", resource_set.name)
        return ApplyResult.UNCHANGED
    _LOGGER.info("Updated %s", resource_set.name)
    return ApplyResult.UPDATED
