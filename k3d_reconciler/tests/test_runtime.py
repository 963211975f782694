"""Unit tests for the k3d command line runtime."""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

import pytest
import yaml
from plumbum.commands.processes import ProcessExecutionError

from k3d_reconciler import _runtime
from k3d_reconciler._cluster_models import (
    ClusterIntent,
    CreateManaged,
    ExposureSpec,
    ManagedRegistrySpec,
    NodeCreateSpec,
    RegistryCreateSpec,
    TaggedValue,
)
from k3d_reconciler._provisioning import ClusterProvisioner
from k3d_reconciler._reconciler_errors import NotFound, RuntimeCommandError
from k3d_reconciler._runtime import K3dCli, render_simple_config, run_command

CLUSTER_LIST = json.dumps(
    [
        {
            "name": "bar",
            "network": {"name": "k3d-bar"},
            "token": "s3cret",
            "nodes": [
                {"name": "k3d-bar-server-0", "role": "server", "image": "rancher/k3s", "runtimeLabels": {"k3d.cluster": "bar"}},
                {"name": "k3d-bar-serverlb", "role": "loadbalancer", "runtimeLabels": {"k3d.cluster": "bar"}},
            ],
        }
    ]
)


class RecordingRunner:
    def __init__(self, responses: dict[tuple[str, ...], str] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[list[str]] = []
        self.configs: list[dict] = []

    def __call__(self, args: Sequence[str]) -> str:
        args = list(args)
        self.calls.append(args)
        if "--config" in args:
            path = Path(args[args.index("--config") + 1])
            self.configs.append(yaml.safe_load(path.read_text(encoding="utf-8")))
        for prefix, response in self.responses.items():
            if tuple(args[: len(prefix)]) == prefix:
                return response
        return ""


def _processed_spec(fake_runtime, **overrides: object):
    defaults: dict[str, object] = {
        "name": "bar",
        "servers": 1,
        "agents": 2,
        "image": "rancher/k3s:v1.31.5-k3s1",
        "token": "s3cret",
        "exposure": ExposureSpec(host="k3d.local", host_port=6550),
    }
    defaults.update(overrides)
    provisioner = ClusterProvisioner(fake_runtime)
    return provisioner.validate(provisioner.process(provisioner.transform(ClusterIntent(**defaults))))


def test_cluster_get_parses_list_output() -> None:
    runner = RecordingRunner({("cluster", "list"): CLUSTER_LIST})
    state = K3dCli(runner=runner).cluster_get("bar")

    assert (state.name, state.network, state.token) == ("bar", "k3d-bar", "s3cret")
    assert state.count("server") == 1
    assert state.nodes[0].cluster == "bar"
    assert runner.calls == [["cluster", "list", "-o", "json"]]


def test_cluster_get_missing_is_not_found() -> None:
    runner = RecordingRunner({("cluster", "list"): "[]"})
    with pytest.raises(NotFound):
        K3dCli(runner=runner).cluster_get("bar")


def test_invalid_json_is_runtime_error() -> None:
    runner = RecordingRunner({("cluster", "list"): "not json"})
    with pytest.raises(RuntimeCommandError):
        K3dCli(runner=runner).cluster_get("bar")


def test_cluster_delete_checks_existence_first() -> None:
    runner = RecordingRunner({("cluster", "list"): "[]"})
    with pytest.raises(NotFound):
        K3dCli(runner=runner).cluster_delete("bar")
    assert ["cluster", "delete", "bar"] not in runner.calls


def test_cluster_create_passes_rendered_config(fake_runtime) -> None:
    runner = RecordingRunner()
    spec = _processed_spec(fake_runtime)
    K3dCli(runner=runner).cluster_create(spec)

    assert runner.calls[0][:3] == ["cluster", "create", "--config"]
    (config,) = runner.configs
    assert config["apiVersion"] == "k3d.io/v1alpha4"
    assert config["metadata"] == {"name": "bar"}
    assert config["kubeAPI"]["hostPort"] == "6550"
    assert config["network"] == "k3d-bar"
    assert not Path(runner.calls[0][3]).exists(), "config file must be removed after create"


def test_render_simple_config_uses_resolved_filters(fake_runtime) -> None:
    spec = _processed_spec(
        fake_runtime,
        env=(TaggedValue("A=1"), TaggedValue("B=2", ("agent[*]",))),
        labels=(TaggedValue("tier=edge", ("agent[1]",)),),
        ports=(TaggedValue(":8080:80/TCP", ("loadbalancer",)),),
        volumes=(TaggedValue("/srv:/data", ("all",)),),
        registry=CreateManaged(
            ManagedRegistrySpec(name="bar-registry", host="bar-registry", image="registry:2", host_port=5001),
            use=("k3d-shared:5000",),
        ),
    )
    config = render_simple_config(spec)

    assert config["env"] == [
        {"envVar": "A=1", "nodeFilters": ["server:0"]},
        {"envVar": "B=2", "nodeFilters": ["agent:0", "agent:1"]},
    ]
    assert config["ports"] == [{"port": ":8080:80/TCP", "nodeFilters": ["loadbalancer"]}]
    assert config["volumes"][0]["nodeFilters"] == ["server:0", "agent:0", "agent:1", "loadbalancer"]
    assert config["options"]["runtime"]["labels"] == [{"label": "tier=edge", "nodeFilters": ["agent:1"]}]
    assert config["registries"]["create"]["hostPort"] == "5001"
    assert config["registries"]["use"] == ["k3d-shared:5000"]
    assert config["options"]["kubeconfig"]["updateDefaultKubeconfig"] is False
    assert config["options"]["k3d"]["wait"] is True


def test_node_add_builds_arguments() -> None:
    runner = RecordingRunner()
    K3dCli(runner=runner).node_add(
        NodeCreateSpec(
            name="k3d-extra",
            cluster="bar",
            role="agent",
            image="rancher/k3s",
            memory="1g",
            labels={"k3d.role": "agent"},
        )
    )
    assert runner.calls == [
        [
            "node",
            "create",
            "extra",
            "--cluster",
            "bar",
            "--role",
            "agent",
            "--image",
            "rancher/k3s",
            "--wait",
            "--memory",
            "1g",
            "--k3s-node-label",
            "k3d.role=agent",
        ]
    ]


def test_node_get_accepts_replica_suffix() -> None:
    listing = json.dumps([{"name": "k3d-extra-0", "role": "agent", "runtimeLabels": {"k3d.cluster": "bar"}}])
    runner = RecordingRunner({("node", "list"): listing})
    cli = K3dCli(runner=runner)

    assert cli.node_get("k3d-extra").cluster == "bar"
    cli.node_delete("k3d-extra")
    assert runner.calls[-1] == ["node", "delete", "k3d-extra-0"]


def test_registry_create_builds_arguments() -> None:
    runner = RecordingRunner()
    K3dCli(runner=runner).registry_create(
        RegistryCreateSpec(
            name="k3d-mirror",
            image="docker.io/library/registry:2",
            exposure=ExposureSpec(host_ip="127.0.0.1", host_port=5001),
            volumes=("cache:/var/lib/registry",),
            proxy_remote_url="https://registry-1.docker.io",
        )
    )
    assert runner.calls == [
        [
            "registry",
            "create",
            "mirror",
            "--image",
            "docker.io/library/registry:2",
            "--port",
            "127.0.0.1:5001",
            "--proxy-remote-url",
            "https://registry-1.docker.io",
            "--volume",
            "cache:/var/lib/registry",
        ]
    ]


def test_k3s_version_parses_version_output() -> None:
    output = "k3d version v5.8.3\nk3s version v1.31.5-k3s1 (default)\n"
    runner = RecordingRunner({("version",): output})
    assert K3dCli(runner=runner).k3s_version() == "v1.31.5-k3s1"


def test_k3s_version_requires_k3s_line() -> None:
    runner = RecordingRunner({("version",): "k3d version v5.8.3\n"})
    with pytest.raises(RuntimeCommandError):
        K3dCli(runner=runner).k3s_version()


def test_run_command_translates_process_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    class FailingCommand:
        def __getitem__(self, args):
            return self

        def run(self, env=None, timeout=None):
            raise ProcessExecutionError(["k3d", "cluster", "create"], 1, "", "port is already allocated\n")

    class FakeLocal:
        def __getitem__(self, name):
            return FailingCommand()

    monkeypatch.setattr(_runtime, "local", FakeLocal())
    with pytest.raises(RuntimeCommandError, match="port is already allocated"):
        run_command("k3d", "cluster", "create")


def test_run_command_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    class Command:
        def __init__(self) -> None:
            self.args: list[str] = []

        def __getitem__(self, args):
            self.args = list(args)
            return self

        def run(self, env=None, timeout=None):
            return 0, "ok\n", ""

    command = Command()

    class FakeLocal:
        def __getitem__(self, name):
            return command

    monkeypatch.setattr(_runtime, "local", FakeLocal())
    assert run_command("k3d", "version") == "ok\n"
    assert command.args == ["version"]
