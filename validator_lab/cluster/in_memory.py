"""Cluster API implementation that keeps resources in memory."""

import copy
import logging
from typing import Any

from validator_lab.exceptions import ResourceApplyError, ResourceConflictError
from validator_lab.manifest import NamedResource
from validator_lab.resources import SPEC_HASH_ANNOTATION

from .api import RUNNING, ApplyResult, ClusterApi, PodStatus, matches

_LOGGER = logging.getLogger(__name__)

DEFAULT_INGRESS_IP = "203.0.113.10"


def _annotation(doc: dict[str, Any] | None, key: str) -> str | None:
    if doc is None:
        return None
    return (doc.get("metadata", {}).get("annotations") or {}).get(key)


class InMemoryCluster(ClusterApi):
    """A cluster that exists only in this process.

    Creating a ReplicaSet schedules one pod per replica in `pod_phase`.
    LoadBalancer services are assigned `ingress_ip`. Every mutating call is
    recorded in `events` so callers can inspect the order of side effects.
    """

    def __init__(
        self,
        namespaces: set[str] | None = None,
        pod_phase: str = RUNNING,
        ingress_ip: str | None = DEFAULT_INGRESS_IP,
    ) -> None:
        self.namespaces = namespaces if namespaces is not None else {"default"}
        self.pod_phase = pod_phase
        self.ingress_ip = ingress_ip
        self.events: list[tuple[str, NamedResource]] = []
        self._objects: dict[NamedResource, dict[str, Any]] = {}

    def _key(self, doc: dict[str, Any]) -> NamedResource:
        try:
            key = NamedResource.from_doc(doc)
        except (KeyError, ValueError) as err:
            raise ResourceApplyError(str(doc.get("kind")), str(err)) from err
        if key.namespace not in self.namespaces:
            raise ResourceApplyError(str(key), f"namespace {key.namespace} not found")
        return key

    def _store(self, key: NamedResource, doc: dict[str, Any]) -> None:
        stored = copy.deepcopy(doc)
        if key.kind == "Service" and stored.get("spec", {}).get("type") == "LoadBalancer":
            if self.ingress_ip:
                stored["status"] = {"loadBalancer": {"ingress": [{"ip": self.ingress_ip}]}}
        self._objects[key] = stored
        if key.kind == "ReplicaSet":
            self._schedule(key, stored)

    def _drop_pods(self, replica_set: NamedResource) -> None:
        prefix = f"{replica_set.name}-"
        for key in [
            k for k in self._objects if k.kind == "Pod" and k.name.startswith(prefix)
        ]:
            del self._objects[key]

    def _schedule(self, key: NamedResource, replica_set: dict[str, Any]) -> None:
        template = replica_set["spec"]["template"]
        self._drop_pods(key)
        for replica in range(replica_set["spec"].get("replicas", 1)):
            pod_key = NamedResource("Pod", key.namespace, f"{key.name}-{replica}")
            self._objects[pod_key] = {
                "apiVersion": "v1",
                "kind": "Pod",
                "metadata": {
                    "name": pod_key.name,
                    "namespace": key.namespace,
                    "labels": dict(template["metadata"].get("labels", {})),
                },
                "spec": copy.deepcopy(template["spec"]),
                "status": {"phase": self.pod_phase},
            }

    def set_pod_phase(self, phase: str) -> None:
        """Move every existing pod to a phase."""
        for key, doc in self._objects.items():
            if key.kind == "Pod":
                doc["status"]["phase"] = phase

    def objects(self, kind: str | None = None) -> list[dict[str, Any]]:
        """Stored descriptors in name order, optionally of a single kind."""
        return [
            copy.deepcopy(doc)
            for key, doc in sorted(self._objects.items())
            if kind is None or key.kind == kind
        ]

    async def namespace_exists(self, namespace: str) -> bool:
        return namespace in self.namespaces

    async def create(self, doc: dict[str, Any]) -> None:
        key = self._key(doc)
        if key in self._objects:
            raise ResourceConflictError(str(key), "already exists")
        self._store(key, doc)
        self.events.append(("create", key))
        _LOGGER.debug("Created %s", key)

    async def apply(self, doc: dict[str, Any]) -> ApplyResult:
        key = self._key(doc)
        existing = self._objects.get(key)
        if existing is None:
            self._store(key, doc)
            self.events.append(("create", key))
            return ApplyResult.CREATED
        new_hash = _annotation(doc, SPEC_HASH_ANNOTATION)
        if new_hash is not None and new_hash == _annotation(existing, SPEC_HASH_ANNOTATION):
            return ApplyResult.UNCHANGED
        self._store(key, doc)
        self.events.append(("update", key))
        return ApplyResult.UPDATED

    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        doc = self._objects.get(NamedResource(kind, namespace, name))
        return copy.deepcopy(doc) if doc is not None else None

    async def list_resources(
        self, kind: str, namespace: str, selector: dict[str, str]
    ) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(doc)
            for key, doc in sorted(self._objects.items())
            if key.kind == kind
            and key.namespace == namespace
            and matches(doc["metadata"].get("labels"), selector)
        ]

    async def delete(
        self, kind: str, namespace: str, selector: dict[str, str]
    ) -> list[NamedResource]:
        deleted = [
            key
            for key, doc in sorted(self._objects.items())
            if key.kind == kind
            and key.namespace == namespace
            and matches(doc["metadata"].get("labels"), selector)
        ]
        for key in deleted:
            del self._objects[key]
            self.events.append(("delete", key))
            if kind == "ReplicaSet":
                self._drop_pods(key)
        return deleted

    async def pods(self, namespace: str, selector: dict[str, str]) -> list[PodStatus]:
        return [
            PodStatus(
                name=doc["metadata"]["name"],
                phase=doc["status"]["phase"],
                ready=doc["status"]["phase"] == RUNNING,
                labels=dict(doc["metadata"].get("labels", {})),
            )
            for doc in await self.list_resources("Pod", namespace, selector)
        ]

    async def service_address(self, namespace: str, name: str) -> str | None:
        doc = self._objects.get(NamedResource("Service", namespace, name))
        if doc is None:
            return None
        ingress = doc.get("status", {}).get("loadBalancer", {}).get("ingress") or []
        for entry in ingress:
            if address := entry.get("ip") or entry.get("hostname"):
                return address
        return None
