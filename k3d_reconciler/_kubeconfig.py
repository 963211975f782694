"""Merge cluster credentials into the local kubeconfig.

The kubeconfig is shared with every other tool on the machine and possibly
with concurrent cluster creations, so it is only ever updated by merging:
cluster, user and context entries are upserted by name, entries with other
names are left untouched and ``current-context`` moves only on request.
Writes go through a temporary file and an advisory lock.

Syncing is best effort. :meth:`KubeconfigReconciler.sync` logs and warns
with :class:`CredentialSyncWarning` on failure instead of raising, so a
cluster that was created successfully is never reported as failed because
its credentials could not be stored.
"""

from __future__ import annotations

import copy
import fcntl
import logging
import os
import warnings
from collections import abc as cabc
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

import yaml

from k3d_reconciler._reconciler_errors import (
    CredentialSyncWarning,
    InvalidConfiguration,
    ReconcilerError,
)
from k3d_reconciler._runtime import ClusterRuntime

logger = logging.getLogger(__name__)

KUBECONFIG_ENV = "KUBECONFIG"
_SECTIONS = ("clusters", "users", "contexts")


def default_kubeconfig_path(env: cabc.Mapping[str, str] | None = None) -> Path:
    """Return the kubeconfig file credentials are merged into.

    This is the first entry of ``$KUBECONFIG`` when set, else
    ``~/.kube/config``.
    """
    value = (os.environ if env is None else env).get(KUBECONFIG_ENV, "")
    for entry in value.split(os.pathsep):
        if entry:
            return Path(entry).expanduser()
    return Path.home() / ".kube" / "config"


def empty_kubeconfig() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "clusters": [],
        "users": [],
        "contexts": [],
        "current-context": "",
    }


def parse_kubeconfig(raw: str, source: str) -> dict[str, Any]:
    """Parse a kubeconfig document, filling missing sections.

    Raises
    ------
    InvalidConfiguration
        If ``raw`` is not a YAML mapping, or a clusters, users or contexts
        section is not a list of mappings.
    """
    try:
        document = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as exc:
        msg = f"kubeconfig {source} is not valid YAML: {exc}"
        raise InvalidConfiguration(msg) from exc
    if document is None:
        document = {}
    if not isinstance(document, cabc.Mapping):
        msg = f"kubeconfig {source} must be a mapping"
        raise InvalidConfiguration(msg)
    merged = empty_kubeconfig()
    merged.update(document)
    for section in _SECTIONS:
        entries = merged.get(section) or []
        if not isinstance(entries, list) or not all(isinstance(entry, cabc.Mapping) for entry in entries):
            msg = f"kubeconfig {source} section {section!r} must be a list of mappings"
            raise InvalidConfiguration(msg)
        merged[section] = list(entries)
    return merged


def _upsert(entries: list[dict[str, Any]], incoming: cabc.Iterable[cabc.Mapping[str, Any]]) -> list[dict[str, Any]]:
    result = [copy.deepcopy(entry) for entry in entries]
    positions = {entry.get("name"): index for index, entry in enumerate(result)}
    for entry in incoming:
        name = entry.get("name")
        if name in positions:
            result[positions[name]] = copy.deepcopy(dict(entry))
        else:
            positions[name] = len(result)
            result.append(copy.deepcopy(dict(entry)))
    return result


def merge_kubeconfig(
    existing: cabc.Mapping[str, Any],
    incoming: cabc.Mapping[str, Any],
    *,
    switch_context: bool,
) -> dict[str, Any]:
    """Return ``existing`` with the entries of ``incoming`` merged in.

    Examples
    --------
    >>> base = {"clusters": [{"name": "other"}], "users": [], "contexts": [], "current-context": "other"}
    >>> new = {"clusters": [{"name": "k3d-bar"}], "users": [], "contexts": [{"name": "k3d-bar"}], "current-context": "k3d-bar"}
    >>> merged = merge_kubeconfig(base, new, switch_context=False)
    >>> [c["name"] for c in merged["clusters"]], merged["current-context"]
    (['other', 'k3d-bar'], 'other')
    """
    merged = copy.deepcopy(dict(existing))
    for section in _SECTIONS:
        merged[section] = _upsert(list(merged.get(section) or []), incoming.get(section) or [])
    if switch_context and incoming.get("current-context"):
        merged["current-context"] = incoming["current-context"]
    return merged


@contextmanager
def _locked(path: Path) -> cabc.Iterator[None]:
    lock_path = path.with_name(path.name + ".lock")
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def write_kubeconfig(path: Path, document: cabc.Mapping[str, Any]) -> None:
    """Write ``document`` to ``path`` atomically with mode 0600."""
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    payload = yaml.safe_dump(dict(document), default_flow_style=False, sort_keys=False)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        with suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise

    tmp_path.replace(path)
    os.chmod(path, 0o600)


def _read_existing(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        msg = f"kubeconfig {path} is not valid UTF-8: {exc}"
        raise InvalidConfiguration(msg) from exc
    return parse_kubeconfig(raw, str(path))


def merge_into_file(path: Path, incoming: cabc.Mapping[str, Any], *, switch_context: bool) -> None:
    """Merge ``incoming`` into the kubeconfig at ``path`` under a file lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with _locked(path):
        existing = _read_existing(path) if path.exists() else empty_kubeconfig()
        write_kubeconfig(path, merge_kubeconfig(existing, incoming, switch_context=switch_context))


class KubeconfigReconciler:
    """Fetch a cluster's kubeconfig and merge it into the local store.

    Parameters
    ----------
    runtime
        Source of the cluster's kubeconfig.
    path
        Target kubeconfig; resolved with :func:`default_kubeconfig_path`
        at sync time when omitted.
    """

    def __init__(self, runtime: ClusterRuntime, path: Path | None = None) -> None:
        self.runtime = runtime
        self.path = path

    def sync(self, cluster_name: str, *, switch_context: bool = False) -> bool:
        """Merge credentials for ``cluster_name``; return whether it worked."""
        path = self.path or default_kubeconfig_path()
        try:
            raw = self.runtime.kubeconfig_get(cluster_name)
            incoming = parse_kubeconfig(raw, f"for cluster {cluster_name!r}")
            merge_into_file(path, incoming, switch_context=switch_context)
        except (ReconcilerError, OSError) as exc:
            msg = f"failed to update kubeconfig {path} for cluster {cluster_name!r}: {exc}"
            logger.warning("%s", msg)
            warnings.warn(msg, CredentialSyncWarning, stacklevel=2)
            return False
        logger.info("Merged credentials for cluster %s into %s", cluster_name, path)
        return True


__all__ = [
    "KUBECONFIG_ENV",
    "KubeconfigReconciler",
    "default_kubeconfig_path",
    "empty_kubeconfig",
    "merge_into_file",
    "merge_kubeconfig",
    "parse_kubeconfig",
    "write_kubeconfig",
]
