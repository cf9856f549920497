"""Probes that count the nodes participating in the cluster."""

from abc import ABC, abstractmethod
import logging

import httpx

from .cluster import ClusterApi
from .manifest import RPC_PORT, NodeType
from .resources import NAMESPACE_LABEL, TYPE_LABEL

__all__ = [
    "NodeCountProbe",
    "PodCountProbe",
    "RpcGossipProbe",
]

_LOGGER = logging.getLogger(__name__)

NODE_TYPES = (NodeType.BOOTSTRAP, NodeType.VALIDATOR, NodeType.RPC)


class NodeCountProbe(ABC):
    """Observes how many nodes have joined the cluster.

    An unreachable endpoint counts as zero nodes and the bounded poll of the
    caller decides when to give up.
    """

    @abstractmethod
    async def count(self) -> int:
        """Return the number of nodes currently observed."""


class RpcGossipProbe(NodeCountProbe):
    """Counts the nodes in gossip as reported by an RPC endpoint."""

    def __init__(self, rpc_url: str, timeout: float = 10.0) -> None:
        self._rpc_url = rpc_url
        self._timeout = timeout

    @classmethod
    def for_address(cls, address: str) -> "RpcGossipProbe":
        return cls(f"http://{address}:{RPC_PORT}")

    async def count(self) -> int:
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getClusterNodes"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._rpc_url, json=payload)
                response.raise_for_status()
                nodes = response.json().get("result") or []
        except (httpx.HTTPError, ValueError) as err:
            _LOGGER.debug("getClusterNodes via %s failed: %s", self._rpc_url, err)
            return 0
        return len(nodes)


class PodCountProbe(NodeCountProbe):
    """Counts running bootstrap, validator and RPC pods in a namespace."""

    def __init__(self, cluster: ClusterApi, namespace: str) -> None:
        self._cluster = cluster
        self._namespace = namespace

    async def count(self) -> int:
        pods = await self._cluster.pods(self._namespace, {NAMESPACE_LABEL: self._namespace})
        return sum(
            1
            for pod in pods
            if pod.running and pod.labels.get(TYPE_LABEL) in NODE_TYPES
        )
