"""Attribute schemas for the cluster, node and registry resources.

The schemas mirror what the plugin host declares: each attribute is required,
optional or computed, every user-settable attribute forces replacement, and
nested blocks arrive as lists of mappings. :func:`normalize_attributes`
checks scalar types and validators and fills the zero value of every unset
attribute, so the expanders can read any declared key without guarding.

Examples
--------
>>> attrs = normalize_attributes(CLUSTER_SCHEMA, {"name": "bar"})
>>> attrs["servers"], attrs["agents"], attrs["env"]
(1, 0, [])
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from k3d_reconciler._cluster_models import (
    DEFAULT_CLUSTER_NAME,
    DEFAULT_REGISTRY_IMAGE,
    PROTOCOLS,
    ROLE_AGENT,
    ROLE_SERVER,
)
from k3d_reconciler._ports import is_valid_port
from k3d_reconciler._reconciler_errors import InvalidConfiguration

STRING = "string"
INT = "int"
BOOL = "bool"
LIST = "list"

_ZERO_VALUES: dict[str, object] = {STRING: "", INT: 0, BOOL: False}

Validator = Callable[[object, str], None]


@dataclass(frozen=True, slots=True)
class Attribute:
    """Declaration of one schema attribute."""

    type: str
    description: str = ""
    required: bool = False
    optional: bool = False
    computed: bool = False
    sensitive: bool = False
    force_new: bool = True
    default: object = None
    elem: Block | str | None = None
    max_items: int | None = None
    validate: Validator | None = None
    accepts_bool: bool = False

    @property
    def user_settable(self) -> bool:
        return self.required or self.optional


@dataclass(frozen=True, slots=True)
class Block:
    """A set of named attributes: a resource or a nested block."""

    attributes: Mapping[str, Attribute] = field(default_factory=dict)
    description: str = ""


def _fail(path: str, problem: str) -> None:
    msg = f"invalid attribute {path!r}: {problem}"
    raise InvalidConfiguration(msg)


def is_port_number(value: object, path: str) -> None:
    """Reject ports outside 1-65535. Zero means "unset" and is accepted."""
    if isinstance(value, int) and value != 0 and not is_valid_port(value):
        _fail(path, f"expected a port number between 1 and 65535, got {value}")


def is_port_string(value: object, path: str) -> None:
    """Like :func:`is_port_number` for ports declared as strings."""
    if not isinstance(value, str) or not value:
        return
    if not value.isdigit():
        _fail(path, f"expected a numeric port, got {value!r}")
    is_port_number(int(value), path)


def is_ip_address(value: object, path: str) -> None:
    if not isinstance(value, str) or not value:
        return
    try:
        ipaddress.ip_address(value)
    except ValueError:
        _fail(path, f"expected an IP address, got {value!r}")


def is_http_url(value: object, path: str) -> None:
    if not isinstance(value, str) or not value:
        return
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        _fail(path, f"expected an http or https URL, got {value!r}")


def string_in(choices: tuple[str, ...], *, ignore_case: bool = True) -> Validator:
    """Return a validator accepting only ``choices``."""

    def _validate(value: object, path: str) -> None:
        if not isinstance(value, str) or not value:
            return
        candidate = value.lower() if ignore_case else value
        allowed = [c.lower() for c in choices] if ignore_case else list(choices)
        if candidate not in allowed:
            _fail(path, f"expected one of {', '.join(choices)}, got {value!r}")

    return _validate


def _check_scalar(kind: str, value: object, path: str) -> None:
    if kind == BOOL:
        ok = isinstance(value, bool)
    elif kind == INT:
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif kind == STRING:
        ok = isinstance(value, str)
    else:
        ok = False
    if not ok:
        _fail(path, f"expected {kind}, got {type(value).__name__}")


def _zero_value(attribute: Attribute) -> object:
    if attribute.default is not None:
        return attribute.default
    if attribute.type == LIST:
        return []
    return _ZERO_VALUES[attribute.type]


def _normalize_list(attribute: Attribute, value: object, path: str) -> list[Any]:
    if attribute.accepts_bool and isinstance(value, bool):
        # Legacy form: ``create = true`` requests a block with defaults.
        value = [{}] if value else []
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected list, got {type(value).__name__}")
    items = list(value)
    if attribute.max_items is not None and len(items) > attribute.max_items:
        _fail(path, f"at most {attribute.max_items} item(s) allowed, got {len(items)}")

    normalized: list[Any] = []
    for position, item in enumerate(items):
        item_path = f"{path}[{position}]"
        if isinstance(attribute.elem, Block):
            if item is None:
                item = {}
            if not isinstance(item, Mapping):
                _fail(item_path, f"expected block, got {type(item).__name__}")
            normalized.append(_normalize_block(attribute.elem, item, item_path))
        else:
            _check_scalar(attribute.elem or STRING, item, item_path)
            normalized.append(item)
    return normalized


def _normalize_block(block: Block, raw: Mapping[str, object], prefix: str) -> dict[str, object]:
    unknown = sorted(set(raw) - set(block.attributes))
    if unknown:
        _fail(f"{prefix}{'.' if prefix else ''}{unknown[0]}", "not declared in the schema")

    result: dict[str, object] = {}
    for name, attribute in block.attributes.items():
        path = f"{prefix}.{name}" if prefix else name
        value = raw.get(name)
        if value is not None and not attribute.user_settable:
            _fail(path, "attribute is computed and cannot be set")
        if value is None:
            if attribute.required:
                _fail(path, "attribute is required")
            if not attribute.user_settable:
                continue
            result[name] = _zero_value(attribute)
            continue
        if attribute.type == LIST:
            result[name] = _normalize_list(attribute, value, path)
        else:
            _check_scalar(attribute.type, value, path)
            if attribute.validate is not None:
                attribute.validate(value, path)
            result[name] = value
    return result


def normalize_attributes(schema: Block, raw: Mapping[str, object]) -> dict[str, object]:
    """Validate ``raw`` against ``schema`` and fill unset attributes.

    Raises
    ------
    InvalidConfiguration
        If an attribute is undeclared, missing, mistyped or fails a validator.
    """
    return _normalize_block(schema, raw, "")


def computed_attributes(schema: Block) -> tuple[str, ...]:
    """Return the names of attributes populated by read-back."""
    return tuple(name for name, attr in schema.attributes.items() if attr.computed)


def _optional(kind: str, description: str = "", **kwargs: Any) -> Attribute:
    return Attribute(type=kind, description=description, optional=True, **kwargs)


def _computed(kind: str, description: str = "", **kwargs: Any) -> Attribute:
    return Attribute(type=kind, description=description, computed=True, force_new=False, **kwargs)


_NODE_FILTERS = _optional(LIST, "Nodes the value applies to; all servers when empty.", elem=STRING)

_KEY_VALUE_BLOCK = Block(
    {
        "key": Attribute(STRING, required=True),
        "value": _optional(STRING),
        "node_filters": _NODE_FILTERS,
    }
)

_VOLUME_BLOCK = Block(
    {
        "source": _optional(STRING),
        "destination": Attribute(STRING, required=True),
        "node_filters": _NODE_FILTERS,
    }
)

_CREDENTIALS_BLOCK = Block(
    {
        "client_certificate": _computed(STRING),
        "client_key": _computed(STRING),
        "cluster_ca_certificate": _computed(STRING),
        "host": _computed(STRING),
        "raw": _computed(STRING),
    }
)

CLUSTER_SCHEMA = Block(
    description="Cluster resource in k3d.",
    attributes={
        "name": Attribute(STRING, "Cluster name.", required=True),
        "servers": _optional(INT, "How many servers to create.", default=1),
        "agents": _optional(INT, "How many agents to create.", default=0),
        "image": _optional(STRING, "k3s image used for the nodes; defaults to the stable channel."),
        "network": _optional(STRING, "Join an existing network.", computed=True),
        "token": _optional(STRING, "Cluster token; generated when unset.", computed=True, sensitive=True),
        "credentials": _computed(LIST, "Cluster credentials.", sensitive=True, elem=_CREDENTIALS_BLOCK),
        "env": _optional(LIST, "Environment variables for the nodes.", elem=_KEY_VALUE_BLOCK),
        "label": _optional(LIST, "Labels for the node containers.", elem=_KEY_VALUE_BLOCK),
        "volume": _optional(LIST, "Volumes mounted into the nodes.", elem=_VOLUME_BLOCK),
        "port": _optional(
            LIST,
            "Ports mapped from the node containers to the host.",
            elem=Block(
                {
                    "host": _optional(STRING),
                    "host_port": _optional(INT, validate=is_port_number),
                    "container_port": Attribute(INT, required=True, validate=is_port_number),
                    "protocol": _optional(STRING, validate=string_in(PROTOCOLS)),
                    "node_filters": _NODE_FILTERS,
                }
            ),
        ),
        "k3d": _optional(
            LIST,
            "k3d runtime settings.",
            max_items=1,
            elem=Block(
                {
                    "disable_image_volume": _optional(BOOL, "Skip the image import volume."),
                    "disable_load_balancer": _optional(BOOL, "Skip the load balancer in front of the servers."),
                }
            ),
        ),
        "k3s": _optional(
            LIST,
            "Options passed on to k3s itself.",
            max_items=1,
            elem=Block(
                {
                    "extra_args": _optional(
                        LIST,
                        "Additional arguments for the k3s command.",
                        elem=Block({"arg": _optional(STRING), "node_filters": _NODE_FILTERS}),
                    ),
                }
            ),
        ),
        "kube_api": _optional(
            LIST,
            "Kubernetes API exposure.",
            max_items=1,
            elem=Block(
                {
                    "host": _optional(STRING, "Server host written to the kubeconfig."),
                    "host_ip": _optional(STRING, "Interface the API listens on.", validate=is_ip_address),
                    "host_port": _optional(INT, "API port on the load balancer.", validate=is_port_number),
                }
            ),
        ),
        "kubeconfig": _optional(
            LIST,
            "Manage the default kubeconfig.",
            max_items=1,
            elem=Block(
                {
                    "update_default_kubeconfig": _optional(BOOL, default=False),
                    "switch_current_context": _optional(BOOL, default=False),
                }
            ),
        ),
        "registries": _optional(
            LIST,
            "Define how registries should be created or used.",
            max_items=1,
            elem=Block(
                {
                    "config": _optional(STRING, "Raw registries.yaml mirror configuration."),
                    "create": _optional(
                        LIST,
                        "Create a managed registry and connect it to the cluster.",
                        max_items=1,
                        accepts_bool=True,
                        elem=Block(
                            {
                                "name": _optional(STRING),
                                "host": _optional(STRING),
                                "image": _optional(STRING),
                                "host_port": _optional(STRING, validate=is_port_string),
                            }
                        ),
                    ),
                    "use": _optional(LIST, "Connect to running registries.", elem=STRING),
                }
            ),
        ),
        "runtime": _optional(
            LIST,
            "Container runtime options.",
            max_items=1,
            elem=Block(
                {
                    "agents_memory": _optional(STRING),
                    "gpu_request": _optional(STRING),
                    "servers_memory": _optional(STRING),
                }
            ),
        ),
    },
)

NODE_SCHEMA = Block(
    description="Containerized k3s node.",
    attributes={
        "name": Attribute(STRING, "Node name.", required=True),
        "cluster": _optional(STRING, "Cluster the node joins.", default=DEFAULT_CLUSTER_NAME),
        "image": _optional(STRING, "k3s image used for the node."),
        "memory": _optional(STRING, "Memory limit imposed on the node."),
        "role": _optional(
            STRING,
            "Node role.",
            default=ROLE_AGENT,
            validate=string_in((ROLE_AGENT, ROLE_SERVER)),
        ),
    },
)

REGISTRY_SCHEMA = Block(
    description="Managed registry.",
    attributes={
        "name": Attribute(STRING, "Registry name.", required=True),
        "image": _optional(STRING, "Registry image.", default=DEFAULT_REGISTRY_IMAGE),
        "port": _optional(
            LIST,
            "Where the registry listens on the host.",
            max_items=1,
            elem=Block(
                {
                    "host": _optional(STRING),
                    "host_ip": _optional(STRING, validate=is_ip_address),
                    "host_port": _optional(INT, validate=is_port_number),
                }
            ),
        ),
        "proxy_remote_url": _optional(STRING, "Proxied remote registry.", validate=is_http_url),
        "proxy_username": _optional(STRING),
        "proxy_password": _optional(STRING, sensitive=True),
        "volume": _optional(
            LIST,
            "Volumes mounted into the registry.",
            elem=Block(
                {
                    "source": _optional(STRING),
                    "destination": Attribute(STRING, required=True),
                }
            ),
        ),
    },
)

CLUSTER_DATA_SCHEMA = Block(
    description="Cluster data source.",
    attributes={
        "name": Attribute(STRING, "Cluster name.", required=True),
        "kubeconfig_raw": _computed(STRING, "Full kubeconfig document.", sensitive=True),
        "network": _computed(STRING),
        "token": _computed(STRING, sensitive=True),
    },
)

NODE_DATA_SCHEMA = Block(
    description="Node data source.",
    attributes={
        "name": Attribute(STRING, "Node name.", required=True),
        "cluster": _computed(STRING),
        "role": _computed(STRING),
    },
)

REGISTRY_DATA_SCHEMA = Block(
    description="Managed registry data source.",
    attributes={"name": Attribute(STRING, "Registry name.", required=True)},
)


__all__ = [
    "BOOL",
    "CLUSTER_DATA_SCHEMA",
    "CLUSTER_SCHEMA",
    "INT",
    "LIST",
    "NODE_DATA_SCHEMA",
    "NODE_SCHEMA",
    "REGISTRY_DATA_SCHEMA",
    "REGISTRY_SCHEMA",
    "STRING",
    "Attribute",
    "Block",
    "computed_attributes",
    "is_http_url",
    "is_ip_address",
    "is_port_number",
    "is_port_string",
    "normalize_attributes",
    "string_in",
]
