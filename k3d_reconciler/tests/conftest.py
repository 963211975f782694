from __future__ import annotations

import base64
import sys
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def render_kubeconfig(cluster_name: str, server: str = "https://0.0.0.0:6443") -> str:
    """Return a kubeconfig document shaped like the one k3d writes."""
    cluster_id = f"k3d-{cluster_name}"
    user = f"admin@{cluster_id}"
    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": cluster_id,
                "cluster": {
                    "server": server,
                    "certificate-authority-data": _b64(f"CA {cluster_name}"),
                },
            }
        ],
        "users": [
            {
                "name": user,
                "user": {
                    "client-certificate-data": _b64(f"CERT {cluster_name}"),
                    "client-key-data": _b64(f"KEY {cluster_name}"),
                },
            }
        ],
        "contexts": [{"name": cluster_id, "context": {"cluster": cluster_id, "user": user}}],
        "current-context": cluster_id,
        "preferences": {},
    }
    return yaml.safe_dump(document, sort_keys=False)


class FakeRuntime:
    """In-memory runtime recording every call it receives."""

    def __init__(self) -> None:
        from k3d_reconciler._reconciler_errors import NotFound

        self._not_found = NotFound
        self.clusters: dict = {}
        self.nodes: dict = {}
        self.registries: dict = {}
        self.kubeconfigs: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self.created_specs: list = []
        self.created_registries: list = []
        self.added_nodes: list = []
        self.create_error: Exception | None = None
        self.leave_partial_cluster = True
        self.delete_error: Exception | None = None
        self.kubeconfig_error: Exception | None = None
        self.version = "v1.31.5+k3s1"
        self.version_error: Exception | None = None

    def _missing(self, kind: str, name: str) -> Exception:
        return self._not_found(f"{kind} {name!r} not found")

    def cluster_get(self, name: str):
        self.calls.append(("cluster_get", name))
        if name not in self.clusters:
            raise self._missing("cluster", name)
        return self.clusters[name]

    def cluster_create(self, spec) -> None:
        from k3d_reconciler._cluster_models import (
            LABEL_CLUSTER_NAME,
            LABEL_ROLE,
            ClusterState,
            NodeState,
        )

        self.calls.append(("cluster_create", spec.name))
        self.created_specs.append(spec)
        state = ClusterState(
            name=spec.name,
            network=spec.network or "",
            token=spec.token or "",
            nodes=tuple(
                NodeState(
                    name=node.name,
                    role=node.role,
                    cluster=spec.name,
                    image=node.image,
                    labels={LABEL_ROLE: node.role, LABEL_CLUSTER_NAME: spec.name},
                )
                for node in spec.nodes
            ),
        )
        if self.create_error is not None:
            if self.leave_partial_cluster:
                self.clusters[spec.name] = state
            raise self.create_error
        self.clusters[spec.name] = state
        self.kubeconfigs[spec.name] = render_kubeconfig(
            spec.name, f"https://0.0.0.0:{spec.exposure.host_port}"
        )

    def cluster_delete(self, name: str) -> None:
        self.calls.append(("cluster_delete", name))
        if self.delete_error is not None:
            raise self.delete_error
        if name not in self.clusters:
            raise self._missing("cluster", name)
        del self.clusters[name]
        self.kubeconfigs.pop(name, None)

    def node_add(self, spec) -> None:
        from k3d_reconciler._cluster_models import LABEL_CLUSTER_NAME, NodeState

        self.calls.append(("node_add", spec.name))
        self.added_nodes.append(spec)
        self.nodes[spec.name] = NodeState(
            name=spec.name,
            role=spec.role,
            cluster=spec.cluster,
            image=spec.image,
            labels={**spec.labels, LABEL_CLUSTER_NAME: spec.cluster},
        )

    def node_get(self, name: str):
        self.calls.append(("node_get", name))
        if name not in self.nodes:
            raise self._missing("node", name)
        return self.nodes[name]

    def node_delete(self, name: str) -> None:
        self.calls.append(("node_delete", name))
        if name not in self.nodes:
            raise self._missing("node", name)
        del self.nodes[name]

    def registry_create(self, spec) -> None:
        from k3d_reconciler._cluster_models import NodeState

        self.calls.append(("registry_create", spec.name))
        self.created_registries.append(spec)
        self.registries[spec.name] = NodeState(name=spec.name, role="registry", image=spec.image)

    def registry_get(self, name: str):
        self.calls.append(("registry_get", name))
        if name not in self.registries:
            raise self._missing("registry", name)
        return self.registries[name]

    def registry_delete(self, name: str) -> None:
        self.calls.append(("registry_delete", name))
        if name not in self.registries:
            raise self._missing("registry", name)
        del self.registries[name]

    def kubeconfig_get(self, name: str) -> str:
        self.calls.append(("kubeconfig_get", name))
        if self.kubeconfig_error is not None:
            raise self.kubeconfig_error
        if name not in self.kubeconfigs:
            raise self._missing("kubeconfig", name)
        return self.kubeconfigs[name]

    def k3s_version(self) -> str:
        self.calls.append(("k3s_version", ""))
        if self.version_error is not None:
            raise self.version_error
        return self.version


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def allocator():
    from k3d_reconciler._ports import EphemeralPortAllocator

    return EphemeralPortAllocator()


@pytest.fixture
def kubeconfig_text() -> Callable[..., str]:
    return render_kubeconfig


@pytest.fixture
def kubeconfig_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "kube" / "config"
    monkeypatch.setenv("KUBECONFIG", str(path))
    return path
