"""Resource builder mapping a node group member to cluster resource descriptors.

Every function in this module is pure: the same inputs always produce the
same descriptors, byte for byte. Descriptors are plain dictionaries in the
shape the Kubernetes API accepts, so they can be applied with any client and
printed as YAML for a dry run.

Naming follows `<role>-service-<tag>-<index>` for services. The bootstrap is
singular and uses fixed names.
"""

import base64
from collections.abc import Sequence
from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any

import yaml

from .manifest import (
    FAUCET_PORT,
    GOSSIP_PORT,
    RPC_PORT,
    Endpoints,
    NamedResource,
    NodeGroup,
    NodeType,
)

__all__ = [
    "ClusterResourceSet",
    "build",
    "service_name",
    "replica_set_name",
    "secret_name",
    "node_labels",
    "group_selector",
]

_LOGGER = logging.getLogger(__name__)

LABEL_PREFIX = "validator-lab"
NAMESPACE_LABEL = f"{LABEL_PREFIX}/namespace"
TYPE_LABEL = f"{LABEL_PREFIX}/type"
TAG_LABEL = f"{LABEL_PREFIX}/tag"
NAME_LABEL = f"{LABEL_PREFIX}/name"
INDEX_LABEL = f"{LABEL_PREFIX}/index"
LB_LABEL = f"{LABEL_PREFIX}/lb"
LB_SELECTOR = "load-balancer-selector"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "validator-lab"

SPEC_HASH_ANNOTATION = f"{LABEL_PREFIX}/spec-hash"
IMAGE_ANNOTATION = f"{LABEL_PREFIX}/image"

BOOTSTRAP_TAG = "bootstrap"
SCRIPTS_DIR = "/home/solana/k8s-cluster-scripts"
HOME_DIR = "/home/solana"
RUN_AS = 1000

STARTUP_SCRIPTS = {
    NodeType.BOOTSTRAP: "bootstrap-startup-script.sh",
    NodeType.VALIDATOR: "validator-startup-script.sh",
    NodeType.RPC: "rpc-node-startup-script.sh",
    NodeType.CLIENT: "client-startup-script.sh",
}

# Where each role's secret is mounted; relative paths in the startup
# scripts resolve against the home directory.
ACCOUNT_MOUNTS = {
    NodeType.BOOTSTRAP: f"{HOME_DIR}/bootstrap-accounts",
    NodeType.VALIDATOR: f"{HOME_DIR}/validator-accounts",
    NodeType.RPC: f"{HOME_DIR}/rpc-accounts",
}


def _member(node_type: NodeType, tag: str, index: int) -> str:
    return f"{node_type.resource_prefix}-{tag}-{index}"


def service_name(node_type: NodeType, tag: str, index: int) -> str:
    """Stable DNS name of a node, e.g. `validator-service-v1-0`."""
    if node_type == NodeType.BOOTSTRAP:
        return "bootstrap-validator-service"
    return f"{node_type.resource_prefix}-service-{tag}-{index}"


def replica_set_name(node_type: NodeType, tag: str, index: int) -> str:
    if node_type == NodeType.BOOTSTRAP:
        return "bootstrap-validator-replicaset"
    return f"{_member(node_type, tag, index)}-replicaset"


def secret_name(node_type: NodeType, tag: str, index: int) -> str:
    if node_type == NodeType.BOOTSTRAP:
        return "bootstrap-accounts-secret"
    return f"{_member(node_type, tag, index)}-secret"


def group_selector(namespace: str, node_type: NodeType, tag: str | None = None) -> dict[str, str]:
    """Labels shared by every member of a role, or of one tag of a role."""
    selector = {NAMESPACE_LABEL: namespace, TYPE_LABEL: str(node_type)}
    if tag is not None:
        selector[TAG_LABEL] = tag
    return selector


def node_labels(namespace: str, node_type: NodeType, tag: str, index: int) -> dict[str, str]:
    """Labels identifying a single member, used as its pod selector."""
    return {
        **group_selector(namespace, node_type, tag),
        NAME_LABEL: service_name(node_type, tag, index),
        INDEX_LABEL: str(index),
    }


def spec_hash(doc: dict[str, Any]) -> str:
    """Digest of a descriptor, ignoring its own hash annotation."""
    metadata = doc.get("metadata", {})
    annotations = {
        k: v for k, v in metadata.get("annotations", {}).items() if k != SPEC_HASH_ANNOTATION
    }
    content = {**doc, "metadata": {**metadata, "annotations": annotations}}
    encoded = json.dumps(content, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def stamp(doc: dict[str, Any]) -> dict[str, Any]:
    doc["metadata"].setdefault("annotations", {})[SPEC_HASH_ANNOTATION] = spec_hash(doc)
    return doc


def _metadata(
    name: str, namespace: str, labels: dict[str, str], image: str | None = None
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "labels": {**labels, MANAGED_BY_LABEL: MANAGED_BY},
    }
    if image:
        metadata["annotations"] = {IMAGE_ANNOTATION: image}
    return metadata


def _ports(node_type: NodeType) -> list[dict[str, Any]]:
    ports = [
        {"name": "gossip-tcp", "port": GOSSIP_PORT, "protocol": "TCP"},
        {"name": "gossip-udp", "port": GOSSIP_PORT, "protocol": "UDP"},
        {"name": "rpc", "port": RPC_PORT, "protocol": "TCP"},
    ]
    if node_type == NodeType.BOOTSTRAP:
        ports.append({"name": "faucet", "port": FAUCET_PORT, "protocol": "TCP"})
    return ports


def _env(endpoints: Endpoints | None, extra_env: dict[str, str]) -> list[dict[str, Any]]:
    env: list[dict[str, Any]] = [
        {"name": "MY_POD_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
    ]
    if endpoints is not None:
        env.extend(endpoints.env())
    env.extend({"name": k, "value": v} for k, v in sorted(extra_env.items()))
    return env


@dataclass(frozen=True)
class ClusterResourceSet:
    """The descriptors that bring up one member of a node group."""

    node_type: NodeType
    tag: str
    index: int
    labels: dict[str, str]
    replica_set: dict[str, Any]
    secret: dict[str, Any] | None = None
    service: dict[str, Any] | None = None
    image: str = ""

    @property
    def name(self) -> str:
        """Stable DNS name of the member."""
        return service_name(self.node_type, self.tag, self.index)

    def resources(self) -> list[dict[str, Any]]:
        """Descriptors in the order they must be applied."""
        return [doc for doc in (self.secret, self.replica_set, self.service) if doc is not None]

    def named_resources(self) -> list[NamedResource]:
        return [NamedResource.from_doc(doc) for doc in self.resources()]

    def yaml(self) -> str:
        """Multi-document YAML of every descriptor."""
        return yaml.dump_all(self.resources(), sort_keys=False, explicit_start=True)


def build(
    group: NodeGroup,
    index: int,
    endpoints: Endpoints | None,
    *,
    namespace: str,
    secret_data: dict[str, bytes] | None = None,
    args: Sequence[str] = (),
    extra_env: dict[str, str] | None = None,
    delay_start: int = 0,
    executable: str | None = None,
) -> ClusterResourceSet:
    """Build the descriptors for member `index` of a node group.

    Args:
        group: A node group bound to an image.
        index: Ordinal of the member within its role and tag.
        endpoints: Endpoints of the bootstrap, None for the bootstrap itself.
        namespace: Namespace the resources are created in.
        secret_data: Keypair file contents mounted into the pod by file name.
        args: Arguments passed to the role's startup script.
        extra_env: Additional environment variables for the container.
        delay_start: Seconds the container waits before starting its program.
        executable: Program run instead of the role's startup script.
    """
    if group.image is None:
        raise ValueError(f"Node group {group.label} is not bound to an image")
    node_type = group.node_type
    if node_type != NodeType.BOOTSTRAP and endpoints is None:
        raise ValueError(f"Node group {group.label} requires bootstrap endpoints")
    tag = BOOTSTRAP_TAG if node_type == NodeType.BOOTSTRAP else group.tag or group.image.tag
    image = group.image.uri
    labels = node_labels(namespace, node_type, tag, index)
    pod_labels = dict(labels)
    if node_type in (NodeType.BOOTSTRAP, NodeType.RPC):
        pod_labels[LB_LABEL] = LB_SELECTOR

    secret: dict[str, Any] | None = None
    volumes: list[dict[str, Any]] = []
    mounts: list[dict[str, Any]] = []
    if node_type in ACCOUNT_MOUNTS:
        secret = stamp(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": _metadata(secret_name(node_type, tag, index), namespace, labels),
                "type": "Opaque",
                "data": {
                    key: base64.b64encode(value).decode()
                    for key, value in sorted((secret_data or {}).items())
                },
            }
        )
        volumes.append(
            {
                "name": "accounts",
                "secret": {
                    "secretName": secret["metadata"]["name"],
                    "defaultMode": 0o440,
                },
            }
        )
        mounts.append(
            {"name": "accounts", "mountPath": ACCOUNT_MOUNTS[node_type], "readOnly": True}
        )

    script = executable or f"{SCRIPTS_DIR}/{STARTUP_SCRIPTS[node_type]}"
    env = dict(extra_env or {})
    if delay_start > 0:
        env["CLIENT_DELAY_START"] = str(delay_start)
        command = ["/bin/bash", "-c", 'sleep "$CLIENT_DELAY_START" && exec "$0" "$@"', script]
    else:
        command = [script]

    container: dict[str, Any] = {
        "name": node_type.resource_prefix,
        "image": image,
        "imagePullPolicy": "Always",
        "command": command,
        "args": list(args),
        "env": _env(endpoints, env),
        "resources": {"requests": group.requests.to_dict()},
        "securityContext": {"runAsUser": RUN_AS, "runAsGroup": RUN_AS},
    }
    if node_type != NodeType.CLIENT:
        container["ports"] = [
            {"name": p["name"], "containerPort": p["port"], "protocol": p["protocol"]}
            for p in _ports(node_type)
        ]
    if node_type in (NodeType.BOOTSTRAP, NodeType.RPC):
        container["readinessProbe"] = {
            "tcpSocket": {"port": RPC_PORT},
            "initialDelaySeconds": 20,
            "periodSeconds": 20,
        }
    if mounts:
        container["volumeMounts"] = mounts

    pod_spec: dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes

    replica_set = stamp(
        {
            "apiVersion": "apps/v1",
            "kind": "ReplicaSet",
            "metadata": _metadata(
                replica_set_name(node_type, tag, index), namespace, labels, image=image
            ),
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": pod_labels},
                    "spec": pod_spec,
                },
            },
        }
    )

    service: dict[str, Any] | None = None
    if node_type != NodeType.CLIENT:
        service = stamp(
            {
                "apiVersion": "v1",
                "kind": "Service",
                "metadata": _metadata(service_name(node_type, tag, index), namespace, labels),
                "spec": {
                    "clusterIP": "None",
                    "selector": labels,
                    "ports": _ports(node_type),
                },
            }
        )

    _LOGGER.debug("Built resources for %s", service_name(node_type, tag, index))
    return ClusterResourceSet(
        node_type=node_type,
        tag=tag,
        index=index,
        labels=labels,
        replica_set=replica_set,
        secret=secret,
        service=service,
        image=image,
    )
