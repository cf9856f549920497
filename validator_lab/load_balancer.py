"""Load balancer service spanning the bootstrap and every RPC node.

There is exactly one load balancer per namespace. Its selector matches a
label carried by bootstrap and RPC pods of every version, so RPC groups that
join later are picked up without touching the service. The service is always
re-applied, never deleted and re-created, which keeps its external address
stable across incremental deployments.
"""

import logging
from typing import Any

from .cluster import ApplyResult, ClusterApi
from .manifest import FAUCET_PORT, GOSSIP_PORT, RPC_PORT, Endpoints
from .poll import PollConfig, poll_until
from .resources import LB_LABEL, LB_SELECTOR, MANAGED_BY, MANAGED_BY_LABEL, NAMESPACE_LABEL, stamp

__all__ = [
    "LOAD_BALANCER_SERVICE",
    "LoadBalancer",
    "load_balancer_service",
]

_LOGGER = logging.getLogger(__name__)

LOAD_BALANCER_SERVICE = "bootstrap-and-rpc-node-lb-service"


def load_balancer_service(namespace: str) -> dict[str, Any]:
    """Descriptor of the load balancer service for a namespace."""
    return stamp(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": LOAD_BALANCER_SERVICE,
                "namespace": namespace,
                "labels": {NAMESPACE_LABEL: namespace, MANAGED_BY_LABEL: MANAGED_BY},
            },
            "spec": {
                "type": "LoadBalancer",
                "selector": {LB_LABEL: LB_SELECTOR, NAMESPACE_LABEL: namespace},
                "ports": [
                    {"name": "gossip", "port": GOSSIP_PORT, "protocol": "TCP"},
                    {"name": "rpc", "port": RPC_PORT, "protocol": "TCP"},
                    {"name": "faucet", "port": FAUCET_PORT, "protocol": "TCP"},
                ],
            },
        }
    )


class LoadBalancer:
    """Registers the bootstrap and RPC nodes behind one external address."""

    def __init__(self, cluster: ClusterApi, namespace: str, poll: PollConfig) -> None:
        self._cluster = cluster
        self._namespace = namespace
        self._poll = poll

    async def register(self, endpoints: Endpoints) -> str | None:
        """Apply the service and return its external address once assigned.

        Returns None if no address was assigned within the poll attempts; the
        cluster stays usable from inside, so this is not fatal.
        """
        result = await self._cluster.apply(load_balancer_service(self._namespace))
        if result != ApplyResult.UNCHANGED:
            _LOGGER.info("Load balancer service %s %s", LOAD_BALANCER_SERVICE, result)

        async def address() -> str | None:
            return await self._cluster.service_address(self._namespace, LOAD_BALANCER_SERVICE)

        poll = await poll_until(
            address,
            lambda value: value is not None,
            self._poll,
            f"load balancer address for {endpoints.rpc_address}",
        )
        if not poll.ready:
            _LOGGER.warning(
                "Load balancer %s has no external address after %d attempts",
                LOAD_BALANCER_SERVICE,
                poll.attempts,
            )
            return None
        _LOGGER.info("Load balancer external address: %s", poll.value)
        return poll.value
