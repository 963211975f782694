"""Cluster, node and registry resources and their data sources.

Each resource takes the flat attribute mapping the plugin host holds,
normalises it against its schema and returns a :class:`ResourceResult` with
the resource ID and the attributes after read-back. Every attribute forces
replacement, so there is no update operation. IDs are always
``k3d-<name>``, including for data sources whose lookup key is the plain
name.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from k3d_reconciler._attributes import (
    credentials_from_kubeconfig,
    expand_cluster_intent,
    expand_node_intent,
    expand_registry_intent,
    flatten_cluster_state,
    flatten_credentials,
    flatten_node_state,
)
from k3d_reconciler._cluster_models import (
    LABEL_ROLE,
    NodeCreateSpec,
    RegistryCreateSpec,
)
from k3d_reconciler._identity import derive_id
from k3d_reconciler._kubeconfig import KubeconfigReconciler
from k3d_reconciler._ports import EphemeralPortAllocator, default_allocator
from k3d_reconciler._provisioning import (
    ClusterProvisioner,
    delete_cluster,
    read_cluster,
)
from k3d_reconciler._reconciler_errors import InvalidConfiguration, ReconcilerError
from k3d_reconciler._runtime import ClusterRuntime
from k3d_reconciler._schema import (
    CLUSTER_DATA_SCHEMA,
    CLUSTER_SCHEMA,
    NODE_DATA_SCHEMA,
    NODE_SCHEMA,
    REGISTRY_DATA_SCHEMA,
    REGISTRY_SCHEMA,
    Block,
    normalize_attributes,
)

logger = logging.getLogger(__name__)

Attributes = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class ResourceResult:
    """Identity and attributes of a resource after an operation."""

    id: str
    attributes: dict[str, Any] = field(default_factory=dict)


def _name(raw: Attributes) -> str:
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        msg = "invalid attribute 'name': attribute is required"
        raise InvalidConfiguration(msg)
    return name


def _lookup_attributes(schema: Block, raw: Attributes) -> dict[str, Any]:
    # Computed attributes from a previous read are dropped, not rejected.
    settable = {
        key: value
        for key, value in raw.items()
        if key in schema.attributes and schema.attributes[key].user_settable
    }
    return normalize_attributes(schema, settable)


class ClusterResource:
    """The ``k3d_cluster`` resource."""

    kind = "cluster"
    schema = CLUSTER_SCHEMA

    def __init__(
        self,
        runtime: ClusterRuntime,
        *,
        default_image: Callable[[], str],
        allocator: EphemeralPortAllocator = default_allocator,
        kubeconfig: KubeconfigReconciler | None = None,
    ) -> None:
        self.runtime = runtime
        self.default_image = default_image
        self.allocator = allocator
        self.kubeconfig = kubeconfig or KubeconfigReconciler(runtime)
        self.last_provisioner: ClusterProvisioner | None = None

    def create(self, raw: Attributes) -> ResourceResult:
        attrs = normalize_attributes(self.schema, raw)
        intent = expand_cluster_intent(
            attrs,
            default_image=self.default_image,
            allocator=self.allocator,
        )
        provisioner = ClusterProvisioner(self.runtime, kubeconfig=self.kubeconfig)
        self.last_provisioner = provisioner
        result = provisioner.create(intent)

        attributes = dict(attrs)
        attributes["image"] = intent.image
        attributes.update(flatten_cluster_state(result.state))
        attributes["credentials"] = self._credentials(intent.name)
        return ResourceResult(result.identity, attributes)

    def read(self, raw: Attributes) -> ResourceResult:
        name = _name(raw)
        state = read_cluster(self.runtime, name)
        attributes = dict(raw)
        attributes.update(flatten_cluster_state(state))
        attributes["credentials"] = self._credentials(name)
        return ResourceResult(derive_id(self.kind, name), attributes)

    def delete(self, raw: Attributes) -> None:
        delete_cluster(self.runtime, _name(raw))

    def _credentials(self, name: str) -> list[dict[str, str]]:
        try:
            raw = self.runtime.kubeconfig_get(name)
            return flatten_credentials(credentials_from_kubeconfig(name, raw))
        except ReconcilerError as exc:
            logger.warning("Could not read credentials for cluster %s: %s", name, exc)
            return []


class NodeResource:
    """The ``k3d_node`` resource: a node joined to an existing cluster."""

    kind = "node"
    schema = NODE_SCHEMA

    def __init__(self, runtime: ClusterRuntime, *, default_image: Callable[[], str]) -> None:
        self.runtime = runtime
        self.default_image = default_image

    def create(self, raw: Attributes) -> ResourceResult:
        attrs = normalize_attributes(self.schema, raw)
        intent = expand_node_intent(attrs, default_image=self.default_image)
        identity = derive_id(self.kind, intent.name)
        self.runtime.node_add(
            NodeCreateSpec(
                name=identity,
                cluster=intent.cluster,
                role=intent.role,
                image=intent.image,
                memory=intent.memory,
                labels={LABEL_ROLE: intent.role},
            )
        )
        logger.info("Added node %s to cluster %s", identity, intent.cluster)
        attributes = dict(attrs)
        attributes["image"] = intent.image
        return self._read(intent.name, attributes)

    def read(self, raw: Attributes) -> ResourceResult:
        return self._read(_name(raw), dict(raw))

    def _read(self, name: str, attributes: dict[str, Any]) -> ResourceResult:
        identity = derive_id(self.kind, name)
        self.runtime.node_get(identity)
        return ResourceResult(identity, attributes)

    def delete(self, raw: Attributes) -> None:
        identity = derive_id(self.kind, _name(raw))
        self.runtime.node_delete(identity)
        logger.info("Deleted node %s", identity)


class RegistryResource:
    """The ``k3d_registry`` resource: a standalone managed registry."""

    kind = "registry"
    schema = REGISTRY_SCHEMA

    def __init__(
        self,
        runtime: ClusterRuntime,
        *,
        allocator: EphemeralPortAllocator = default_allocator,
    ) -> None:
        self.runtime = runtime
        self.allocator = allocator

    def create(self, raw: Attributes) -> ResourceResult:
        attrs = normalize_attributes(self.schema, raw)
        intent = expand_registry_intent(attrs, self.allocator)
        identity = derive_id(self.kind, intent.name)
        self.runtime.registry_create(
            RegistryCreateSpec(
                name=identity,
                image=intent.image,
                exposure=intent.exposure,
                volumes=intent.volumes,
                proxy_remote_url=intent.proxy_remote_url,
                proxy_username=intent.proxy_username,
                proxy_password=intent.proxy_password,
            )
        )
        logger.info("Created registry %s on host port %d", identity, intent.exposure.host_port)
        attributes = dict(attrs)
        attributes["port"] = [
            {
                "host": intent.exposure.host,
                "host_ip": intent.exposure.host_ip,
                "host_port": intent.exposure.host_port,
            }
        ]
        return self._read(intent.name, attributes)

    def read(self, raw: Attributes) -> ResourceResult:
        return self._read(_name(raw), dict(raw))

    def _read(self, name: str, attributes: dict[str, Any]) -> ResourceResult:
        identity = derive_id(self.kind, name)
        self.runtime.registry_get(identity)
        return ResourceResult(identity, attributes)

    def delete(self, raw: Attributes) -> None:
        identity = derive_id(self.kind, _name(raw))
        self.runtime.registry_delete(identity)
        logger.info("Deleted registry %s", identity)


class ClusterDataSource:
    """Look up an existing cluster by name."""

    kind = "cluster"
    schema = CLUSTER_DATA_SCHEMA

    def __init__(self, runtime: ClusterRuntime) -> None:
        self.runtime = runtime

    def read(self, raw: Attributes) -> ResourceResult:
        attrs = _lookup_attributes(self.schema, raw)
        name = attrs["name"]
        state = read_cluster(self.runtime, name)
        attributes: dict[str, Any] = {"name": name, **flatten_cluster_state(state)}
        try:
            attributes["kubeconfig_raw"] = self.runtime.kubeconfig_get(name)
        except ReconcilerError as exc:
            logger.warning("Could not read kubeconfig for cluster %s: %s", name, exc)
        return ResourceResult(derive_id(self.kind, name), attributes)


class NodeDataSource:
    """Look up an existing node by name."""

    kind = "node"
    schema = NODE_DATA_SCHEMA

    def __init__(self, runtime: ClusterRuntime) -> None:
        self.runtime = runtime

    def read(self, raw: Attributes) -> ResourceResult:
        name = _lookup_attributes(self.schema, raw)["name"]
        identity = derive_id(self.kind, name)
        state = self.runtime.node_get(identity)
        return ResourceResult(identity, {"name": name, **flatten_node_state(state)})


class RegistryDataSource:
    """Check that a managed registry exists."""

    kind = "registry"
    schema = REGISTRY_DATA_SCHEMA

    def __init__(self, runtime: ClusterRuntime) -> None:
        self.runtime = runtime

    def read(self, raw: Attributes) -> ResourceResult:
        name = _lookup_attributes(self.schema, raw)["name"]
        identity = derive_id(self.kind, name)
        self.runtime.registry_get(identity)
        return ResourceResult(identity, {"name": name})


__all__ = [
    "ClusterDataSource",
    "ClusterResource",
    "NodeDataSource",
    "NodeResource",
    "RegistryDataSource",
    "RegistryResource",
    "ResourceResult",
]
