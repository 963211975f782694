"""Translate between flat resource attributes and the domain models.

The ``expand_*`` helpers take attribute mappings already normalised by
:func:`k3d_reconciler._schema.normalize_attributes`, so every declared key is
present and well typed. They apply the remaining defaults: a volume without a
source mounts only its destination, a port protocol defaults to ``TCP`` and a
missing host port is replaced with a freshly allocated ephemeral port.

The ``flatten_*`` helpers go the other way for computed attributes and for
the wire encodings consumed by the runtime::

    volume  source:destination   (or destination alone)
    port    host:hostPort:containerPort/protocol
    env     key=value
    label   key=value

Examples
--------
>>> flatten_port(":8080:80/TCP")
{'host': '', 'host_port': 8080, 'container_port': 80, 'protocol': 'TCP'}
>>> flatten_volume("/data:/var/lib/data")
{'source': '/data', 'destination': '/var/lib/data'}
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import yaml

from k3d_reconciler._cluster_models import (
    DEFAULT_PROTOCOL,
    DEFAULT_REGISTRY_IMAGE,
    LABEL_CLUSTER_NAME,
    LABEL_ROLE,
    ClusterIntent,
    ClusterState,
    CreateManaged,
    Credentials,
    ExposureSpec,
    K3dOptions,
    K3sOptions,
    KubeconfigOptions,
    ManagedRegistrySpec,
    NodeIntent,
    NodeState,
    NoRegistry,
    RegistryIntent,
    RegistryResourceIntent,
    RuntimeOptions,
    TaggedValue,
    UseExisting,
)
from k3d_reconciler._identity import kubeconfig_cluster_name, kubeconfig_user_name
from k3d_reconciler._ports import EphemeralPortAllocator, default_allocator
from k3d_reconciler._reconciler_errors import InvalidConfiguration, NotFound

Attributes = Mapping[str, Any]


def _first_block(items: Sequence[Attributes] | None) -> Attributes | None:
    if not items or items[0] is None:
        return None
    return items[0]


def expand_node_filters(items: Sequence[str] | None) -> tuple[str, ...]:
    """Return the node filter strings of a block, dropping blank entries."""
    return tuple(item for item in items or () if item)


def encode_key_value(key: str, value: str) -> str:
    """Encode an environment variable or label.

    Examples
    --------
    >>> encode_key_value("LOG_LEVEL", "debug")
    'LOG_LEVEL=debug'
    """
    return f"{key}={value}"


def encode_volume(source: str, destination: str) -> str:
    """Encode a volume mount in the runtime's ``source:destination`` form.

    Examples
    --------
    >>> encode_volume("", "/data")
    '/data'
    >>> encode_volume("/srv", "/data")
    '/srv:/data'
    """
    return f"{source}:{destination}" if source else destination


def encode_port(host: str, host_port: int, container_port: int, protocol: str) -> str:
    """Encode a port mapping as ``host:hostPort:containerPort/protocol``.

    Examples
    --------
    >>> encode_port("", 8080, 80, "tcp")
    ':8080:80/TCP'
    """
    return f"{host}:{host_port}:{container_port}/{(protocol or DEFAULT_PROTOCOL).upper()}"


def _expand_key_values(items: Sequence[Attributes] | None) -> tuple[TaggedValue[str], ...]:
    return tuple(
        TaggedValue(
            encode_key_value(item["key"], item.get("value") or ""),
            expand_node_filters(item.get("node_filters")),
        )
        for item in items or ()
    )


def expand_env(items: Sequence[Attributes] | None) -> tuple[TaggedValue[str], ...]:
    """Expand ``env`` blocks into ``key=value`` tagged values."""
    return _expand_key_values(items)


def expand_labels(items: Sequence[Attributes] | None) -> tuple[TaggedValue[str], ...]:
    """Expand ``label`` blocks into ``key=value`` tagged values."""
    return _expand_key_values(items)


def expand_volumes(items: Sequence[Attributes] | None) -> tuple[TaggedValue[str], ...]:
    """Expand ``volume`` blocks; a missing source mounts only the destination."""
    return tuple(
        TaggedValue(
            encode_volume(item.get("source") or "", item["destination"]),
            expand_node_filters(item.get("node_filters")),
        )
        for item in items or ()
    )


def expand_registry_volumes(items: Sequence[Attributes] | None) -> tuple[str, ...]:
    """Expand the registry resource's untagged ``volume`` blocks."""
    return tuple(
        encode_volume(item.get("source") or "", item["destination"])
        for item in items or ()
    )


def expand_ports(
    items: Sequence[Attributes] | None,
    allocator: EphemeralPortAllocator = default_allocator,
) -> tuple[TaggedValue[str], ...]:
    """Expand ``port`` blocks, allocating a host port where none was given."""
    ports: list[TaggedValue[str]] = []
    for item in items or ():
        host_port = item.get("host_port") or allocator.allocate()
        encoded = encode_port(
            item.get("host") or "",
            host_port,
            item["container_port"],
            item.get("protocol") or DEFAULT_PROTOCOL,
        )
        ports.append(TaggedValue(encoded, expand_node_filters(item.get("node_filters"))))
    return tuple(ports)


def expand_k3s_extra_args(items: Sequence[Attributes] | None) -> tuple[TaggedValue[str], ...]:
    return tuple(
        TaggedValue(item.get("arg") or "", expand_node_filters(item.get("node_filters")))
        for item in items or ()
        if item.get("arg")
    )


def expand_k3s_options(items: Sequence[Attributes] | None) -> K3sOptions:
    block = _first_block(items)
    if block is None:
        return K3sOptions()
    return K3sOptions(extra_args=expand_k3s_extra_args(block.get("extra_args")))


def expand_k3d_options(items: Sequence[Attributes] | None) -> K3dOptions:
    """Expand the ``k3d`` block; wait, timeout and rollback stay fixed."""
    block = _first_block(items)
    if block is None:
        return K3dOptions()
    return K3dOptions(
        disable_image_volume=bool(block.get("disable_image_volume")),
        disable_load_balancer=bool(block.get("disable_load_balancer")),
    )


def expand_kubeconfig_options(items: Sequence[Attributes] | None) -> KubeconfigOptions:
    block = _first_block(items)
    if block is None:
        return KubeconfigOptions()
    return KubeconfigOptions(
        update_default_kubeconfig=bool(block.get("update_default_kubeconfig")),
        switch_current_context=bool(block.get("switch_current_context")),
    )


def expand_runtime_options(items: Sequence[Attributes] | None) -> RuntimeOptions:
    block = _first_block(items)
    if block is None:
        return RuntimeOptions()
    return RuntimeOptions(
        servers_memory=block.get("servers_memory") or "",
        agents_memory=block.get("agents_memory") or "",
        gpu_request=block.get("gpu_request") or "",
    )


def expand_exposure(
    items: Sequence[Attributes] | None,
    allocator: EphemeralPortAllocator = default_allocator,
) -> ExposureSpec:
    """Expand a ``kube_api`` or registry ``port`` block.

    The host port is always concrete in the result: an absent block or a
    zero port receives an ephemeral port.
    """
    block = _first_block(items)
    if block is None:
        return ExposureSpec(host_port=allocator.allocate())
    return ExposureSpec(
        host=block.get("host") or "",
        host_ip=block.get("host_ip") or "",
        host_port=block.get("host_port") or allocator.allocate(),
    )


def default_registry_name(cluster_name: str) -> str:
    """Return the managed registry name used when none is configured.

    Examples
    --------
    >>> default_registry_name("dev")
    'dev-registry'
    """
    return f"{cluster_name}-registry"


def _expand_managed_registry(
    block: Attributes,
    cluster_name: str,
    allocator: EphemeralPortAllocator,
) -> ManagedRegistrySpec:
    name = block.get("name") or default_registry_name(cluster_name)
    raw_port = block.get("host_port") or ""
    port = int(raw_port) if raw_port else 0
    return ManagedRegistrySpec(
        name=name,
        host=block.get("host") or name,
        image=block.get("image") or DEFAULT_REGISTRY_IMAGE,
        host_port=port or allocator.allocate(),
    )


def expand_registries(
    items: Sequence[Attributes] | None,
    cluster_name: str,
    allocator: EphemeralPortAllocator = default_allocator,
) -> tuple[RegistryIntent, str | None]:
    """Expand the ``registries`` block into a registry intent and mirror config.

    Returns
    -------
    tuple
        The :data:`RegistryIntent` variant and the raw ``registries.yaml``
        document, or ``None`` when no document was supplied.
    """
    block = _first_block(items)
    if block is None:
        return NoRegistry(), None

    config = block.get("config") or None
    use = tuple(block.get("use") or ())
    create = _first_block(block.get("create"))
    if block.get("create"):
        spec = _expand_managed_registry(create or {}, cluster_name, allocator)
        return CreateManaged(spec=spec, use=use), config
    if use:
        return UseExisting(addresses=use), config
    return NoRegistry(), config


def expand_cluster_intent(
    attrs: Attributes,
    *,
    default_image: Callable[[], str],
    allocator: EphemeralPortAllocator = default_allocator,
) -> ClusterIntent:
    """Build a :class:`ClusterIntent` from normalised cluster attributes.

    Parameters
    ----------
    attrs
        Output of ``normalize_attributes(CLUSTER_SCHEMA, raw)``.
    default_image
        Called only when ``image`` is unset.
    allocator
        Source of ephemeral host ports.
    """
    name = attrs["name"]
    registry, registries_config = expand_registries(attrs.get("registries"), name, allocator)
    return ClusterIntent(
        name=name,
        servers=attrs["servers"],
        agents=attrs["agents"],
        image=attrs.get("image") or default_image(),
        network=attrs.get("network") or None,
        token=attrs.get("token") or None,
        env=expand_env(attrs.get("env")),
        labels=expand_labels(attrs.get("label")),
        volumes=expand_volumes(attrs.get("volume")),
        ports=expand_ports(attrs.get("port"), allocator),
        exposure=expand_exposure(attrs.get("kube_api"), allocator),
        registry=registry,
        registries_config=registries_config,
        k3d=expand_k3d_options(attrs.get("k3d")),
        k3s=expand_k3s_options(attrs.get("k3s")),
        kubeconfig=expand_kubeconfig_options(attrs.get("kubeconfig")),
        runtime=expand_runtime_options(attrs.get("runtime")),
    )


def expand_node_intent(attrs: Attributes, *, default_image: Callable[[], str]) -> NodeIntent:
    return NodeIntent(
        name=attrs["name"],
        cluster=attrs["cluster"],
        role=attrs["role"].lower(),
        image=attrs.get("image") or default_image(),
        memory=attrs.get("memory") or "",
    )


def expand_registry_intent(
    attrs: Attributes,
    allocator: EphemeralPortAllocator = default_allocator,
) -> RegistryResourceIntent:
    return RegistryResourceIntent(
        name=attrs["name"],
        image=attrs.get("image") or DEFAULT_REGISTRY_IMAGE,
        exposure=expand_exposure(attrs.get("port"), allocator),
        proxy_remote_url=attrs.get("proxy_remote_url") or "",
        proxy_username=attrs.get("proxy_username") or "",
        proxy_password=attrs.get("proxy_password") or "",
        volumes=expand_registry_volumes(attrs.get("volume")),
    )


def flatten_volume(encoded: str) -> dict[str, str]:
    """Split an encoded volume back into ``source`` and ``destination``."""
    source, separator, destination = encoded.partition(":")
    if not separator:
        return {"source": "", "destination": encoded}
    return {"source": source, "destination": destination}


def flatten_port(encoded: str) -> dict[str, Any]:
    """Parse ``host:hostPort:containerPort/protocol`` back into attributes.

    Raises
    ------
    InvalidConfiguration
        If ``encoded`` is not in the port wire format.
    """
    mapping, _, protocol = encoded.rpartition("/")
    parts = mapping.rsplit(":", 2)
    if len(parts) != 3 or not parts[1].isdigit() or not parts[2].isdigit():
        msg = f"invalid port mapping {encoded!r}: expected host:hostPort:containerPort/protocol"
        raise InvalidConfiguration(msg)
    host, host_port, container_port = parts
    return {
        "host": host,
        "host_port": int(host_port),
        "container_port": int(container_port),
        "protocol": protocol.upper() or DEFAULT_PROTOCOL,
    }


def flatten_cluster_state(state: ClusterState) -> dict[str, Any]:
    """Return the computed cluster attributes reported by the runtime."""
    return {"network": state.network, "token": state.token}


def flatten_node_state(state: NodeState) -> dict[str, str]:
    """Return the computed node attributes reported by the runtime."""
    return {
        "cluster": state.cluster or state.labels.get(LABEL_CLUSTER_NAME, ""),
        "role": state.role or state.labels.get(LABEL_ROLE, ""),
    }


def _named_entry(entries: Sequence[Mapping[str, Any]] | None, name: str, section: str) -> Mapping[str, Any]:
    for entry in entries or ():
        if entry.get("name") == name:
            return entry.get(section) or {}
    msg = f"kubeconfig has no {section} entry named {name!r}"
    raise NotFound(msg)


def _decode(data: str | None, field_name: str) -> str:
    if not data:
        return ""
    try:
        return base64.b64decode(data, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        msg = f"kubeconfig field {field_name!r} is not valid base64 PEM data: {exc}"
        raise InvalidConfiguration(msg) from exc


def credentials_from_kubeconfig(cluster_name: str, raw: str) -> Credentials:
    """Extract the cluster's credentials from a kubeconfig document.

    Raises
    ------
    NotFound
        If the document lacks the ``k3d-<name>`` cluster or its admin user.
    InvalidConfiguration
        If the document cannot be parsed.
    """
    try:
        document = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        msg = f"kubeconfig for cluster {cluster_name!r} is not valid YAML: {exc}"
        raise InvalidConfiguration(msg) from exc
    if not isinstance(document, Mapping):
        msg = f"kubeconfig for cluster {cluster_name!r} must be a mapping"
        raise InvalidConfiguration(msg)

    cluster = _named_entry(document.get("clusters"), kubeconfig_cluster_name(cluster_name), "cluster")
    user = _named_entry(document.get("users"), kubeconfig_user_name(cluster_name), "user")
    return Credentials(
        client_certificate=_decode(user.get("client-certificate-data"), "client-certificate-data"),
        client_key=_decode(user.get("client-key-data"), "client-key-data"),
        cluster_ca_certificate=_decode(
            cluster.get("certificate-authority-data"), "certificate-authority-data"
        ),
        host=cluster.get("server", ""),
        raw=raw,
    )


def flatten_credentials(credentials: Credentials) -> list[dict[str, str]]:
    """Render credentials as the single-item ``credentials`` attribute list."""
    return [
        {
            "client_certificate": credentials.client_certificate,
            "client_key": credentials.client_key,
            "cluster_ca_certificate": credentials.cluster_ca_certificate,
            "host": credentials.host,
            "raw": credentials.raw,
        }
    ]


__all__ = [
    "credentials_from_kubeconfig",
    "default_registry_name",
    "encode_key_value",
    "encode_port",
    "encode_volume",
    "expand_cluster_intent",
    "expand_env",
    "expand_exposure",
    "expand_k3d_options",
    "expand_k3s_extra_args",
    "expand_k3s_options",
    "expand_kubeconfig_options",
    "expand_labels",
    "expand_node_filters",
    "expand_node_intent",
    "expand_ports",
    "expand_registries",
    "expand_registry_intent",
    "expand_registry_volumes",
    "expand_runtime_options",
    "expand_volumes",
    "flatten_cluster_state",
    "flatten_credentials",
    "flatten_node_state",
    "flatten_port",
    "flatten_volume",
]
