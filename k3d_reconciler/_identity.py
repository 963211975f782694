"""Stable identifiers for reconciled resources.

Every cluster, node and registry is addressed as ``k3d-<name>`` both in the
runtime and as the plugin-host resource ID. Identity depends on the kind and
user-supplied name only, so renaming a resource always means replacing it.

Examples
--------
>>> derive_id("cluster", "bar")
'k3d-bar'
>>> kubeconfig_user_name("bar")
'admin@k3d-bar'
"""

from __future__ import annotations

OBJECT_NAME_PREFIX = "k3d"
RESOURCE_KINDS = ("cluster", "node", "registry")


def derive_id(kind: str, name: str) -> str:
    """Return the resource identity for ``name``.

    Parameters
    ----------
    kind
        One of ``cluster``, ``node`` or ``registry``.
    name
        User-supplied resource name.

    Raises
    ------
    ValueError
        If ``kind`` is unknown or ``name`` is blank.
    """
    if kind not in RESOURCE_KINDS:
        msg = f"unknown resource kind {kind!r}; expected one of {', '.join(RESOURCE_KINDS)}"
        raise ValueError(msg)
    if not name:
        msg = f"{kind} name must not be blank"
        raise ValueError(msg)
    return f"{OBJECT_NAME_PREFIX}-{name}"


def strip_prefix(identity: str) -> str:
    """Return the display name for ``identity``.

    Examples
    --------
    >>> strip_prefix("k3d-bar")
    'bar'
    >>> strip_prefix("bar")
    'bar'
    """
    prefix = f"{OBJECT_NAME_PREFIX}-"
    return identity[len(prefix):] if identity.startswith(prefix) else identity


def kubeconfig_cluster_name(cluster_name: str) -> str:
    """Return the kubeconfig cluster and context name for ``cluster_name``."""
    return derive_id("cluster", cluster_name)


def kubeconfig_user_name(cluster_name: str) -> str:
    """Return the kubeconfig user entry name for ``cluster_name``."""
    return f"admin@{derive_id('cluster', cluster_name)}"


__all__ = [
    "OBJECT_NAME_PREFIX",
    "RESOURCE_KINDS",
    "derive_id",
    "kubeconfig_cluster_name",
    "kubeconfig_user_name",
    "strip_prefix",
]
