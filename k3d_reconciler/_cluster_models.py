"""Data models for k3d cluster reconciliation.

Intents are built fresh from flat attributes on every operation; specs are
the pipeline's working copy of an intent; state models mirror what the
runtime reports back. Nothing here is persisted between operations.

Examples
--------
>>> intent = TaggedValue("LOG_LEVEL=debug", ("agent[*]",))
>>> intent.node_filters
('agent[*]',)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")

ROLE_SERVER = "server"
ROLE_AGENT = "agent"
ROLE_LOADBALANCER = "loadbalancer"
NODE_ROLES = (ROLE_SERVER, ROLE_AGENT, ROLE_LOADBALANCER)

DEFAULT_CLUSTER_NAME = "k3s-default"
DEFAULT_K3S_IMAGE_REPO = "docker.io/rancher/k3s"
DEFAULT_REGISTRY_IMAGE = "docker.io/library/registry:2"
DEFAULT_PROTOCOL = "TCP"
PROTOCOLS = ("TCP", "UDP")

LABEL_ROLE = "k3d.role"
LABEL_CLUSTER_NAME = "k3d.cluster"


@dataclass(frozen=True, slots=True)
class TaggedValue(Generic[T]):
    """A configuration value scoped to the nodes selected by ``node_filters``.

    An empty ``node_filters`` tuple applies the value to every server node.
    """

    value: T
    node_filters: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ExposureSpec:
    """Host-side exposure of an internal service port.

    Attributes
    ----------
    host
        Hostname written into client configuration (e.g. kubeconfig server).
    host_ip
        Host interface the port binds to; empty binds every interface.
    host_port
        Host port; always concrete once expanded.
    """

    host: str = ""
    host_ip: str = ""
    host_port: int = 0


@dataclass(frozen=True, slots=True)
class ManagedRegistrySpec:
    """A registry the reconciler creates alongside the cluster."""

    name: str = ""
    host: str = ""
    image: str = ""
    host_port: int = 0


@dataclass(frozen=True, slots=True)
class NoRegistry:
    """The cluster neither creates nor uses a registry."""


@dataclass(frozen=True, slots=True)
class CreateManaged:
    """Create a managed registry; optionally connect existing ones as well."""

    spec: ManagedRegistrySpec
    use: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UseExisting:
    """Connect registries that are already running."""

    addresses: tuple[str, ...]


RegistryIntent = NoRegistry | CreateManaged | UseExisting


@dataclass(frozen=True, slots=True)
class K3dOptions:
    """Engine options for the k3d runtime."""

    disable_image_volume: bool = False
    disable_load_balancer: bool = False
    wait: bool = True
    timeout: int = 0
    no_rollback: bool = False


@dataclass(frozen=True, slots=True)
class K3sOptions:
    """Options handed to k3s itself."""

    extra_args: tuple[TaggedValue[str], ...] = ()


@dataclass(frozen=True, slots=True)
class KubeconfigOptions:
    """How the cluster's credentials are synced into the local kubeconfig."""

    update_default_kubeconfig: bool = False
    switch_current_context: bool = False


@dataclass(frozen=True, slots=True)
class RuntimeOptions:
    """Container runtime resource limits."""

    servers_memory: str = ""
    agents_memory: str = ""
    gpu_request: str = ""


@dataclass(frozen=True, slots=True)
class ClusterIntent:
    """Fully expanded desired state of a cluster."""

    name: str
    servers: int
    agents: int
    image: str
    network: str | None = None
    token: str | None = field(default=None, repr=False)
    env: tuple[TaggedValue[str], ...] = ()
    labels: tuple[TaggedValue[str], ...] = ()
    volumes: tuple[TaggedValue[str], ...] = ()
    ports: tuple[TaggedValue[str], ...] = ()
    exposure: ExposureSpec = field(default_factory=ExposureSpec)
    registry: RegistryIntent = field(default_factory=NoRegistry)
    registries_config: str | None = None
    k3d: K3dOptions = field(default_factory=K3dOptions)
    k3s: K3sOptions = field(default_factory=K3sOptions)
    kubeconfig: KubeconfigOptions = field(default_factory=KubeconfigOptions)
    runtime: RuntimeOptions = field(default_factory=RuntimeOptions)


@dataclass(frozen=True, slots=True)
class NodeRef:
    """A node position in a cluster topology."""

    role: str
    index: int
    name: str


@dataclass(slots=True)
class NodeSpec:
    """A concrete node of a transformed cluster, with its resolved values."""

    name: str
    role: str
    index: int
    image: str
    memory: str = ""
    gpu_request: str = ""
    env: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    ports: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)

    @property
    def ref(self) -> NodeRef:
        return NodeRef(role=self.role, index=self.index, name=self.name)


@dataclass(slots=True)
class ClusterSpec:
    """The pipeline's resolved cluster specification.

    Built by the transform stage from a :class:`ClusterIntent`, completed by
    the process stage and checked by the validate stage before submission.
    """

    name: str
    identity: str
    servers: int
    agents: int
    image: str
    network: str | None
    token: str | None = field(repr=False)
    nodes: list[NodeSpec] = field(default_factory=list)
    env: tuple[TaggedValue[str], ...] = ()
    labels: tuple[TaggedValue[str], ...] = ()
    volumes: tuple[TaggedValue[str], ...] = ()
    ports: tuple[TaggedValue[str], ...] = ()
    k3s_args: tuple[TaggedValue[str], ...] = ()
    exposure: ExposureSpec = field(default_factory=ExposureSpec)
    registry: RegistryIntent = field(default_factory=NoRegistry)
    registries_config: str | None = None
    k3d: K3dOptions = field(default_factory=K3dOptions)
    kubeconfig: KubeconfigOptions = field(default_factory=KubeconfigOptions)
    runtime: RuntimeOptions = field(default_factory=RuntimeOptions)

    def topology(self) -> tuple[NodeRef, ...]:
        """Return the node positions currently present in the spec."""
        return tuple(node.ref for node in self.nodes)

    def node(self, ref: NodeRef) -> NodeSpec:
        """Return the node spec for ``ref``."""
        for node in self.nodes:
            if node.name == ref.name:
                return node
        msg = f"node {ref.name!r} is not part of cluster {self.name!r}"
        raise KeyError(msg)


@dataclass(frozen=True, slots=True)
class NodeIntent:
    """Desired state of a single node joined to an existing cluster."""

    name: str
    cluster: str
    role: str
    image: str
    memory: str = ""


@dataclass(frozen=True, slots=True)
class NodeCreateSpec:
    """What the runtime needs to add a node to a cluster."""

    name: str
    cluster: str
    role: str
    image: str
    memory: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RegistryResourceIntent:
    """Desired state of a standalone managed registry."""

    name: str
    image: str
    exposure: ExposureSpec
    proxy_remote_url: str = ""
    proxy_username: str = ""
    proxy_password: str = field(default="", repr=False)
    volumes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RegistryCreateSpec:
    """What the runtime needs to start a managed registry."""

    name: str
    image: str
    exposure: ExposureSpec
    volumes: tuple[str, ...] = ()
    proxy_remote_url: str = ""
    proxy_username: str = ""
    proxy_password: str = field(default="", repr=False)


@dataclass(frozen=True, slots=True)
class NodeState:
    """A node as reported by the runtime."""

    name: str
    role: str
    cluster: str = ""
    image: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ClusterState:
    """A cluster as reported by the runtime."""

    name: str
    network: str
    token: str = field(repr=False)
    nodes: tuple[NodeState, ...] = ()

    def count(self, role: str) -> int:
        return sum(1 for node in self.nodes if node.role == role)


@dataclass(frozen=True, slots=True)
class Credentials:
    """Access credentials computed from a cluster's kubeconfig."""

    client_certificate: str = field(repr=False)
    client_key: str = field(repr=False)
    cluster_ca_certificate: str = field(repr=False)
    host: str
    raw: str = field(repr=False)


__all__ = [
    "DEFAULT_CLUSTER_NAME",
    "DEFAULT_K3S_IMAGE_REPO",
    "DEFAULT_PROTOCOL",
    "DEFAULT_REGISTRY_IMAGE",
    "LABEL_CLUSTER_NAME",
    "LABEL_ROLE",
    "NODE_ROLES",
    "PROTOCOLS",
    "ROLE_AGENT",
    "ROLE_LOADBALANCER",
    "ROLE_SERVER",
    "ClusterIntent",
    "ClusterSpec",
    "ClusterState",
    "CreateManaged",
    "Credentials",
    "ExposureSpec",
    "K3dOptions",
    "K3sOptions",
    "KubeconfigOptions",
    "ManagedRegistrySpec",
    "NoRegistry",
    "NodeCreateSpec",
    "NodeIntent",
    "NodeRef",
    "NodeSpec",
    "NodeState",
    "RegistryCreateSpec",
    "RegistryIntent",
    "RegistryResourceIntent",
    "RuntimeOptions",
    "TaggedValue",
    "UseExisting",
]
