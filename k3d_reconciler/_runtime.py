"""Cluster runtime client.

:class:`ClusterRuntime` is the interface the provisioning pipeline and the
resources need from the container runtime. :class:`K3dCli` implements it by
driving the ``k3d`` binary through plumbum. A runtime handle is always passed
explicitly; nothing here keeps a process-wide "selected runtime".

Clusters are created from a ``k3d.io/v1alpha4`` ``Simple`` config document
rendered from the processed :class:`ClusterSpec`. Node filters have already
been resolved by then, so the document carries concrete ``role:index``
filters rather than the user's expressions.
"""

from __future__ import annotations

import json
import logging
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml
from plumbum import local
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from k3d_reconciler._cluster_models import (
    LABEL_CLUSTER_NAME,
    LABEL_ROLE,
    ClusterSpec,
    ClusterState,
    CreateManaged,
    NodeCreateSpec,
    NodeSpec,
    NodeState,
    RegistryCreateSpec,
    UseExisting,
)
from k3d_reconciler._identity import strip_prefix
from k3d_reconciler._node_filters import format_runtime_filter
from k3d_reconciler._reconciler_errors import NotFound, RuntimeCommandError

logger = logging.getLogger(__name__)

SIMPLE_CONFIG_API_VERSION = "k3d.io/v1alpha4"


class ClusterRuntime(Protocol):
    """Operations the reconciler needs from a cluster runtime.

    Lookups raise :class:`NotFound` when the object is absent; every other
    failure is raised as :class:`RuntimeCommandError` carrying the runtime's
    error text.
    """

    def cluster_get(self, name: str) -> ClusterState: ...

    def cluster_create(self, spec: ClusterSpec) -> None: ...

    def cluster_delete(self, name: str) -> None: ...

    def node_add(self, spec: NodeCreateSpec) -> None: ...

    def node_get(self, name: str) -> NodeState: ...

    def node_delete(self, name: str) -> None: ...

    def registry_create(self, spec: RegistryCreateSpec) -> None: ...

    def registry_get(self, name: str) -> NodeState: ...

    def registry_delete(self, name: str) -> None: ...

    def kubeconfig_get(self, name: str) -> str: ...

    def k3s_version(self) -> str: ...


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`."""

    env: dict[str, str] | None = None
    timeout: float | None = None


def run_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Execute an external command and return its standard output.

    Raises
    ------
    RuntimeCommandError
        If the command exits non-zero or times out.
    """
    ctx = context or CommandContext()
    bound = local[command][list(args)]
    try:
        _, stdout, _ = bound.run(env=ctx.env, timeout=ctx.timeout)
    except ProcessTimedOut as exc:
        msg = f"Command {command!r} timed out after {ctx.timeout}s"
        raise RuntimeCommandError(msg) from exc
    except ProcessExecutionError as exc:
        msg = f"Command {command!r} failed: {str(exc.stderr).strip()}"
        raise RuntimeCommandError(msg) from exc
    return stdout


Runner = Callable[[Sequence[str]], str]


def _filters_for(nodes: Sequence[NodeSpec], carries: Callable[[NodeSpec], bool]) -> list[str]:
    return [format_runtime_filter(node.ref) for node in nodes if carries(node)]


def _placed(
    spec: ClusterSpec,
    values: Sequence[str],
    key: str,
    carries: Callable[[NodeSpec, str], bool],
) -> list[dict[str, Any]]:
    placed: list[dict[str, Any]] = []
    seen: set[str] = set()
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        filters = _filters_for(spec.nodes, lambda node, v=value: carries(node, v))
        if filters:
            placed.append({key: value, "nodeFilters": filters})
    return placed


def _label_on(node: NodeSpec, encoded: str) -> bool:
    key, _, value = encoded.partition("=")
    return node.labels.get(key) == value


def render_simple_config(spec: ClusterSpec) -> dict[str, Any]:
    """Render a processed cluster spec as a k3d ``Simple`` config document.

    Kubeconfig handling is left to the reconciler, so the document never asks
    k3d itself to touch the default kubeconfig.
    """
    document: dict[str, Any] = {
        "apiVersion": SIMPLE_CONFIG_API_VERSION,
        "kind": "Simple",
        "metadata": {"name": spec.name},
        "servers": spec.servers,
        "agents": spec.agents,
        "image": spec.image,
        "kubeAPI": {
            "host": spec.exposure.host,
            "hostIP": spec.exposure.host_ip,
            "hostPort": str(spec.exposure.host_port),
        },
    }
    if spec.network:
        document["network"] = spec.network
    if spec.token:
        document["token"] = spec.token

    sections = {
        "env": _placed(spec, [t.value for t in spec.env], "envVar", lambda n, v: v in n.env),
        "volumes": _placed(spec, [t.value for t in spec.volumes], "volume", lambda n, v: v in n.volumes),
        "ports": _placed(spec, [t.value for t in spec.ports], "port", lambda n, v: v in n.ports),
    }
    document.update({key: value for key, value in sections.items() if value})

    registry = spec.registry
    registries: dict[str, Any] = {}
    if isinstance(registry, CreateManaged):
        registries["create"] = {
            "name": registry.spec.name,
            "host": registry.spec.host,
            "image": registry.spec.image,
            "hostPort": str(registry.spec.host_port),
        }
        if registry.use:
            registries["use"] = list(registry.use)
    elif isinstance(registry, UseExisting):
        registries["use"] = list(registry.addresses)
    if spec.registries_config:
        registries["config"] = spec.registries_config
    if registries:
        document["registries"] = registries

    user_labels = [t.value for t in spec.labels]
    document["options"] = {
        "k3d": {
            "wait": spec.k3d.wait,
            "timeout": f"{spec.k3d.timeout}s",
            "disableLoadbalancer": spec.k3d.disable_load_balancer,
            "disableImageVolume": spec.k3d.disable_image_volume,
            "disableRollback": spec.k3d.no_rollback,
        },
        "k3s": {
            "extraArgs": _placed(spec, [t.value for t in spec.k3s_args], "arg", lambda n, v: v in n.args),
        },
        "kubeconfig": {"updateDefaultKubeconfig": False, "switchCurrentContext": False},
        "runtime": {
            "gpuRequest": spec.runtime.gpu_request,
            "serversMemory": spec.runtime.servers_memory,
            "agentsMemory": spec.runtime.agents_memory,
            "labels": _placed(spec, user_labels, "label", _label_on),
        },
    }
    return document


def _load_json_list(stdout: str, what: str) -> list[Mapping[str, Any]]:
    try:
        payload = json.loads(stdout or "[]")
    except json.JSONDecodeError as exc:
        msg = f"k3d returned invalid JSON for {what}: {exc}"
        raise RuntimeCommandError(msg) from exc
    if not isinstance(payload, list):
        msg = f"k3d JSON root for {what} must be a list"
        raise RuntimeCommandError(msg)
    return payload


def _node_state(raw: Mapping[str, Any]) -> NodeState:
    labels = dict(raw.get("runtimeLabels") or raw.get("labels") or {})
    return NodeState(
        name=raw.get("name", ""),
        role=raw.get("role") or labels.get(LABEL_ROLE, ""),
        cluster=labels.get(LABEL_CLUSTER_NAME, ""),
        image=raw.get("image", ""),
        labels=labels,
    )


class K3dCli:
    """:class:`ClusterRuntime` backed by the ``k3d`` command line.

    Parameters
    ----------
    binary
        Name or path of the ``k3d`` executable.
    timeout
        Seconds before a single ``k3d`` invocation is abandoned.
    runner
        Replacement for :func:`run_command`; receives the argument list
        without the binary and returns standard output.
    """

    def __init__(
        self,
        binary: str = "k3d",
        *,
        timeout: float | None = None,
        runner: Runner | None = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self._runner = runner

    def _run(self, *args: str) -> str:
        logger.debug("Running %s %s", self.binary, " ".join(args))
        if self._runner is not None:
            return self._runner(list(args))
        return run_command(self.binary, *args, context=CommandContext(timeout=self.timeout))

    def _find(self, kind: str, name: str) -> Mapping[str, Any]:
        for entry in _load_json_list(self._run(kind, "list", "-o", "json"), f"{kind} list"):
            if entry.get("name") == name:
                return entry
        msg = f"{kind} {name!r} not found"
        raise NotFound(msg)

    def cluster_get(self, name: str) -> ClusterState:
        raw = self._find("cluster", name)
        network = raw.get("network") or {}
        return ClusterState(
            name=raw.get("name", name),
            network=network.get("name", "") if isinstance(network, Mapping) else str(network),
            token=raw.get("token", ""),
            nodes=tuple(_node_state(node) for node in raw.get("nodes") or ()),
        )

    def cluster_create(self, spec: ClusterSpec) -> None:
        document = render_simple_config(spec)
        with tempfile.TemporaryDirectory(prefix="k3d-reconciler-") as tmp:
            config_path = Path(tmp) / f"{spec.name}.yaml"
            config_path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
            config_path.chmod(0o600)
            self._run("cluster", "create", "--config", str(config_path))

    def cluster_delete(self, name: str) -> None:
        self._find("cluster", name)
        self._run("cluster", "delete", name)

    def _find_node(self, name: str) -> Mapping[str, Any]:
        try:
            return self._find("node", name)
        except NotFound:
            # k3d names single-replica nodes "<name>-0".
            return self._find("node", f"{name}-0")

    def node_add(self, spec: NodeCreateSpec) -> None:
        args = [
            "node",
            "create",
            strip_prefix(spec.name),
            "--cluster",
            spec.cluster,
            "--role",
            spec.role,
            "--image",
            spec.image,
            "--wait",
        ]
        if spec.memory:
            args.extend(["--memory", spec.memory])
        for key, value in spec.labels.items():
            args.extend(["--k3s-node-label", f"{key}={value}"])
        self._run(*args)

    def node_get(self, name: str) -> NodeState:
        return _node_state(self._find_node(name))

    def node_delete(self, name: str) -> None:
        raw = self._find_node(name)
        self._run("node", "delete", raw.get("name", name))

    def registry_create(self, spec: RegistryCreateSpec) -> None:
        port = str(spec.exposure.host_port)
        if spec.exposure.host_ip:
            port = f"{spec.exposure.host_ip}:{port}"
        # k3d adds the object prefix itself.
        args = ["registry", "create", strip_prefix(spec.name), "--image", spec.image, "--port", port]
        if spec.proxy_remote_url:
            args.extend(["--proxy-remote-url", spec.proxy_remote_url])
        if spec.proxy_username:
            args.extend(["--proxy-username", spec.proxy_username])
        if spec.proxy_password:
            args.extend(["--proxy-password", spec.proxy_password])
        for volume in spec.volumes:
            args.extend(["--volume", volume])
        self._run(*args)

    def registry_get(self, name: str) -> NodeState:
        return _node_state(self._find("registry", name))

    def registry_delete(self, name: str) -> None:
        self._find("registry", name)
        self._run("registry", "delete", name)

    def kubeconfig_get(self, name: str) -> str:
        return self._run("kubeconfig", "get", name)

    def k3s_version(self) -> str:
        """Return the k3s version k3d uses by default, e.g. ``v1.31.5-k3s1``."""
        for line in self._run("version").splitlines():
            words = line.split()
            if len(words) >= 3 and words[0] == "k3s" and words[1] == "version":
                return words[2]
        msg = "k3d version output does not mention a k3s version"
        raise RuntimeCommandError(msg)


__all__ = [
    "SIMPLE_CONFIG_API_VERSION",
    "ClusterRuntime",
    "CommandContext",
    "K3dCli",
    "render_simple_config",
    "run_command",
]
