"""
The cluster module is the boundary to the container orchestration API.

`ClusterApi` offers create-only and create-or-update calls for the namespaced
resource descriptors built by `validator_lab.resources`, plus the reads the
sequencer needs: pod status for readiness polls, label selector queries for
ordinal discovery, and the external address of a load balancer service.

`KubernetesCluster` talks to a real cluster. `InMemoryCluster` keeps
resources in memory and is used for dry runs and tests.
"""

from .api import ApplyResult, ClusterApi, ClusterConfig, PodStatus
from .in_memory import InMemoryCluster
from .kube import KubernetesCluster

__all__ = [
    "ApplyResult",
    "ClusterApi",
    "ClusterConfig",
    "PodStatus",
    "InMemoryCluster",
    "KubernetesCluster",
]
