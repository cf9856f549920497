"""Cluster API implementation backed by the Kubernetes python client."""

import asyncio
from collections.abc import Callable
import logging
from typing import Any

from kubernetes import client, config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException as KubeConfigException
import urllib3

from validator_lab.exceptions import (
    ConfigException,
    ResourceApplyError,
    ResourceConflictError,
)
from validator_lab.manifest import NamedResource
from validator_lab.resources import SPEC_HASH_ANNOTATION

from .api import ApplyResult, ClusterApi, ClusterConfig, PodStatus, selector_string

_LOGGER = logging.getLogger(__name__)

TRANSIENT_STATUS = {429, 500, 502, 503, 504}


def load_api_client(cluster_config: ClusterConfig) -> client.ApiClient:
    """Load credentials from the pod environment, falling back to kubeconfig."""
    try:
        kube_config.load_incluster_config()
        _LOGGER.debug("Loaded in-cluster kubernetes configuration")
    except KubeConfigException:
        try:
            kube_config.load_kube_config(
                config_file=cluster_config.kubeconfig, context=cluster_config.context
            )
        except (KubeConfigException, OSError) as err:
            raise ConfigException(f"Unable to load kubernetes configuration: {err}") from err
        _LOGGER.debug("Loaded kubernetes configuration from kubeconfig")
    return client.ApiClient()


class KubernetesCluster(ClusterApi):
    """Issues calls against a real cluster.

    The client is synchronous, so every call runs in a worker thread. Calls
    failing with a transient error are retried a bounded number of times.
    """

    def __init__(
        self, cluster_config: ClusterConfig, api_client: client.ApiClient | None = None
    ) -> None:
        self._config = cluster_config
        self._api_client = api_client or load_api_client(cluster_config)
        self._core = client.CoreV1Api(self._api_client)
        self._apps = client.AppsV1Api(self._api_client)

    def _resource_api(self, kind: str) -> tuple[Any, str]:
        """Return the API object and method suffix for a kind."""
        if kind == "Secret":
            return self._core, "namespaced_secret"
        if kind == "Service":
            return self._core, "namespaced_service"
        if kind == "Pod":
            return self._core, "namespaced_pod"
        if kind == "ReplicaSet":
            return self._apps, "namespaced_replica_set"
        raise ResourceApplyError(kind, f"Unsupported resource kind {kind}")

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    async def _call(self, resource: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call the API, retrying transient failures."""
        attempts = max(1, self._config.apply_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except ApiException as err:
                if err.status not in TRANSIENT_STATUS or attempt == attempts:
                    raise
                reason = f"HTTP {err.status}"
            except urllib3.exceptions.HTTPError as err:
                if attempt == attempts:
                    raise ResourceApplyError(resource, str(err)) from err
                reason = str(err)
            _LOGGER.warning(
                "Transient error for %s (attempt %d/%d): %s",
                resource,
                attempt,
                attempts,
                reason,
            )
            await asyncio.sleep(self._config.apply_interval)
        raise ResourceApplyError(resource, "retries exhausted")

    async def namespace_exists(self, namespace: str) -> bool:
        try:
            await self._call(f"Namespace/{namespace}", self._core.read_namespace, namespace)
        except ApiException as err:
            if err.status == 404:
                return False
            raise ResourceApplyError(f"Namespace/{namespace}", err.reason) from err
        return True

    async def create(self, doc: dict[str, Any]) -> None:
        key = NamedResource.from_doc(doc)
        api, suffix = self._resource_api(key.kind)
        try:
            await self._call(str(key), getattr(api, f"create_{suffix}"), key.namespace, doc)
        except ApiException as err:
            if err.status == 409:
                raise ResourceConflictError(str(key), "already exists") from err
            raise ResourceApplyError(str(key), err.reason) from err
        _LOGGER.info("Created %s", key)

    async def apply(self, doc: dict[str, Any]) -> ApplyResult:
        key = NamedResource.from_doc(doc)
        existing = await self.get(key.kind, key.namespace or "", key.name)
        if existing is None:
            try:
                await self.create(doc)
            except ResourceConflictError:
                # Created concurrently since the read; fall through to update.
                existing = await self.get(key.kind, key.namespace or "", key.name)
            else:
                return ApplyResult.CREATED
        new_hash = (doc["metadata"].get("annotations") or {}).get(SPEC_HASH_ANNOTATION)
        old_hash = ((existing or {}).get("metadata", {}).get("annotations") or {}).get(
            SPEC_HASH_ANNOTATION
        )
        if new_hash is not None and new_hash == old_hash:
            _LOGGER.debug("%s is unchanged", key)
            return ApplyResult.UNCHANGED
        api, suffix = self._resource_api(key.kind)
        try:
            await self._call(
                str(key), getattr(api, f"patch_{suffix}"), key.name, key.namespace, doc
            )
        except ApiException as err:
            raise ResourceApplyError(str(key), err.reason) from err
        _LOGGER.info("Updated %s", key)
        return ApplyResult.UPDATED

    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        api, suffix = self._resource_api(kind)
        resource = f"{kind}/{namespace}/{name}"
        try:
            obj = await self._call(resource, getattr(api, f"read_{suffix}"), name, namespace)
        except ApiException as err:
            if err.status == 404:
                return None
            raise ResourceApplyError(resource, err.reason) from err
        return self._to_dict(obj)

    async def list_resources(
        self, kind: str, namespace: str, selector: dict[str, str]
    ) -> list[dict[str, Any]]:
        api, suffix = self._resource_api(kind)
        try:
            result = await self._call(
                f"{kind}/{namespace}",
                getattr(api, f"list_{suffix}"),
                namespace,
                label_selector=selector_string(selector),
            )
        except ApiException as err:
            raise ResourceApplyError(f"{kind}/{namespace}", err.reason) from err
        return [self._to_dict(item) for item in result.items]

    async def delete(
        self, kind: str, namespace: str, selector: dict[str, str]
    ) -> list[NamedResource]:
        api, suffix = self._resource_api(kind)
        deleted = []
        for doc in await self.list_resources(kind, namespace, selector):
            key = NamedResource(kind, namespace, doc["metadata"]["name"])
            try:
                await self._call(
                    str(key), getattr(api, f"delete_{suffix}"), key.name, namespace
                )
            except ApiException as err:
                if err.status == 404:
                    continue
                raise ResourceApplyError(str(key), err.reason) from err
            _LOGGER.info("Deleted %s", key)
            deleted.append(key)
        return deleted

    async def pods(self, namespace: str, selector: dict[str, str]) -> list[PodStatus]:
        statuses = []
        for doc in await self.list_resources("Pod", namespace, selector):
            status = doc.get("status") or {}
            conditions = status.get("conditions") or []
            ready = any(
                c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
            )
            statuses.append(
                PodStatus(
                    name=doc["metadata"]["name"],
                    phase=status.get("phase", "Unknown"),
                    ready=ready,
                    labels=doc["metadata"].get("labels") or {},
                )
            )
        return statuses

    async def service_address(self, namespace: str, name: str) -> str | None:
        doc = await self.get("Service", namespace, name)
        if doc is None:
            return None
        ingress = ((doc.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        for entry in ingress:
            if address := entry.get("ip") or entry.get("hostname"):
                return address
        return None
