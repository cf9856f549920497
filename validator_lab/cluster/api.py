"""Abstract interface to the cluster API."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any

from validator_lab.manifest import DEFAULT_NAMESPACE, NamedResource

_LOGGER = logging.getLogger(__name__)

RUNNING = "Running"


@dataclass
class ClusterConfig:
    """How to reach the cluster and how hard to try."""

    namespace: str = DEFAULT_NAMESPACE

    apply_attempts: int = 5
    """Attempts for a call that fails with a transient error."""

    apply_interval: float = 2.0
    """Seconds between attempts."""

    dry_run: bool = False
    """Use an in-memory cluster instead of the configured one."""

    kubeconfig: str | None = None
    context: str | None = None


class ApplyResult(StrEnum):
    """Outcome of a create-or-update call."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class PodStatus:
    """Observed state of a pod."""

    name: str
    phase: str
    ready: bool = False
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.phase == RUNNING


def matches(labels: dict[str, str] | None, selector: dict[str, str]) -> bool:
    """Return True if the labels satisfy an equality based selector."""
    labels = labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


def selector_string(selector: dict[str, str]) -> str:
    """Render a selector the way the API expects it, e.g. `a=b,c=d`."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


class ClusterApi(ABC):
    """Namespaced resource operations the orchestrator depends on.

    Descriptors are plain dictionaries. Implementations return the stored
    form of resources as dictionaries with camel case keys.
    """

    @abstractmethod
    async def namespace_exists(self, namespace: str) -> bool:
        """Return True if the namespace exists."""

    @abstractmethod
    async def create(self, doc: dict[str, Any]) -> None:
        """Create a resource.

        Raises ResourceConflictError if the name is already taken.
        """

    @abstractmethod
    async def apply(self, doc: dict[str, Any]) -> ApplyResult:
        """Create a resource, or update it when its content changed."""

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """Return a resource or None if it does not exist."""

    @abstractmethod
    async def list_resources(
        self, kind: str, namespace: str, selector: dict[str, str]
    ) -> list[dict[str, Any]]:
        """Return the resources of a kind matching a label selector."""

    @abstractmethod
    async def delete(
        self, kind: str, namespace: str, selector: dict[str, str]
    ) -> list[NamedResource]:
        """Delete the resources of a kind matching a label selector."""

    @abstractmethod
    async def pods(self, namespace: str, selector: dict[str, str]) -> list[PodStatus]:
        """Return the status of pods matching a label selector."""

    @abstractmethod
    async def service_address(self, namespace: str, name: str) -> str | None:
        """Return the external address of a load balancer service, if assigned."""
