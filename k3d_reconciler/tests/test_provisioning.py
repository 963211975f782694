"""Unit tests for the cluster provisioning pipeline."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
import yaml

from k3d_reconciler._cluster_models import (
    ClusterIntent,
    CreateManaged,
    ExposureSpec,
    K3dOptions,
    KubeconfigOptions,
    ManagedRegistrySpec,
    RuntimeOptions,
    TaggedValue,
    UseExisting,
)
from k3d_reconciler._kubeconfig import KubeconfigReconciler
from k3d_reconciler._provisioning import (
    TOKEN_LENGTH,
    ClusterProvisioner,
    ProvisioningState,
    delete_cluster,
    read_cluster,
)
from k3d_reconciler._reconciler_errors import (
    AlreadyExists,
    CreationFailed,
    CreationFailedRollbackFailed,
    FilterTargetMissing,
    InvalidConfiguration,
    NotFound,
    RuntimeCommandError,
)

IMAGE = "docker.io/rancher/k3s:v1.31.5-k3s1"


def _make_intent(**overrides: object) -> ClusterIntent:
    defaults: dict[str, object] = {
        "name": "bar",
        "servers": 1,
        "agents": 0,
        "image": IMAGE,
        "exposure": ExposureSpec(host_port=6550),
    }
    defaults.update(overrides)
    return ClusterIntent(**defaults)


def test_bar_scenario_creates_cluster(fake_runtime) -> None:
    provisioner = ClusterProvisioner(fake_runtime)
    result = provisioner.create(_make_intent())

    assert result.identity == "k3d-bar"
    assert result.state.network, "network must be reported after create"
    assert result.state.token, "token must be reported after create"
    assert provisioner.history == [
        ProvisioningState.BUILDING,
        ProvisioningState.TRANSFORMED,
        ProvisioningState.PROCESSED,
        ProvisioningState.VALIDATED,
        ProvisioningState.SUBMITTING,
        ProvisioningState.CREATED,
    ]
    assert read_cluster(fake_runtime, "bar").network == "k3d-bar"


def test_transform_carries_every_intent_field(fake_runtime) -> None:
    intent = _make_intent(
        servers=3,
        agents=2,
        network="shared",
        token="t0ken",
        registries_config="mirrors: {}",
        k3d=K3dOptions(disable_image_volume=True),
        kubeconfig=KubeconfigOptions(update_default_kubeconfig=True),
        runtime=RuntimeOptions(agents_memory="512m"),
    )
    spec = ClusterProvisioner(fake_runtime).transform(intent)

    assert spec.identity == "k3d-bar"
    assert (spec.servers, spec.agents, spec.network, spec.token) == (3, 2, "shared", "t0ken")
    assert spec.registries_config == "mirrors: {}"
    assert spec.k3d.disable_image_volume is True
    assert spec.kubeconfig.update_default_kubeconfig is True
    assert [node.name for node in spec.nodes] == [
        "k3d-bar-server-0",
        "k3d-bar-server-1",
        "k3d-bar-server-2",
        "k3d-bar-agent-0",
        "k3d-bar-agent-1",
        "k3d-bar-serverlb",
    ]


def test_transform_omits_disabled_load_balancer(fake_runtime) -> None:
    spec = ClusterProvisioner(fake_runtime).transform(
        _make_intent(k3d=K3dOptions(disable_load_balancer=True))
    )
    assert all(node.role != "loadbalancer" for node in spec.nodes)


def test_process_fills_defaults_and_places_values(fake_runtime) -> None:
    intent = _make_intent(
        servers=2,
        agents=2,
        env=(TaggedValue("MODE=server"), TaggedValue("MODE_AGENT=1", ("agent[*]",))),
        labels=(TaggedValue("tier=edge", ("agent[1]",)),),
        ports=(TaggedValue(":8080:80/TCP", ("loadbalancer",)),),
        runtime=RuntimeOptions(servers_memory="1g", agents_memory="512m", gpu_request="all"),
    )
    provisioner = ClusterProvisioner(fake_runtime, token_factory=lambda: "generated")
    spec = provisioner.process(provisioner.transform(intent))

    nodes = {node.name: node for node in spec.nodes}
    assert spec.token == "generated"
    assert spec.network == "k3d-bar"
    assert nodes["k3d-bar-server-0"].env == ["MODE=server"]
    assert nodes["k3d-bar-server-1"].env == ["MODE=server"]
    assert nodes["k3d-bar-agent-0"].env == ["MODE_AGENT=1"]
    assert nodes["k3d-bar-agent-1"].labels == {"tier": "edge"}
    assert nodes["k3d-bar-agent-0"].labels == {}
    assert nodes["k3d-bar-serverlb"].ports == [":8080:80/TCP"]
    assert nodes["k3d-bar-server-0"].memory == "1g"
    assert nodes["k3d-bar-agent-1"].memory == "512m"
    assert nodes["k3d-bar-agent-1"].gpu_request == "all"
    assert nodes["k3d-bar-serverlb"].memory == ""


def test_generated_token_is_random(fake_runtime) -> None:
    first = ClusterProvisioner(fake_runtime)
    second = ClusterProvisioner(fake_runtime)
    token_a = first.process(first.transform(_make_intent())).token
    token_b = second.process(second.transform(_make_intent())).token
    assert len(token_a) == TOKEN_LENGTH
    assert token_a != token_b


def test_process_rejects_missing_filter_target(fake_runtime) -> None:
    provisioner = ClusterProvisioner(fake_runtime)
    spec = provisioner.transform(_make_intent(env=(TaggedValue("A=1", ("agent[0]",)),)))
    with pytest.raises(FilterTargetMissing):
        provisioner.process(spec)
    assert fake_runtime.calls == []


@pytest.mark.parametrize(
    ("overrides", "fragment"),
    [
        ({"servers": 0}, "servers must be at least 1"),
        ({"agents": -1}, "agents must not be negative"),
        (
            {
                "ports": (
                    TaggedValue(":8080:80/TCP", ("loadbalancer",)),
                    TaggedValue(":8080:8080/TCP", ("loadbalancer",)),
                )
            },
            "duplicate host port 8080/TCP",
        ),
        ({"ports": (TaggedValue(":6550:443/TCP", ("loadbalancer",)),)}, "the kube API"),
        ({"ports": (TaggedValue(":8080:0/TCP", ("loadbalancer",)),)}, "container port 0"),
        ({"exposure": ExposureSpec(host_port=70000)}, "kube API host port 70000"),
        ({"volumes": (TaggedValue("data:relative/path"),)}, "absolute path"),
        (
            {
                "registry": CreateManaged(
                    ManagedRegistrySpec(name="reg", host="reg", image="registry:2", host_port=5001),
                    use=("reg",),
                )
            },
            "both created and listed",
        ),
        (
            {
                "registry": CreateManaged(
                    ManagedRegistrySpec(name="reg", host="reg", image="registry:2", host_port=6550),
                ),
                "exposure": ExposureSpec(host_port=6550),
                "ports": (TaggedValue(":6550:80/TCP", ("loadbalancer",)),),
            },
            "duplicate host port 6550/TCP",
        ),
        ({"registry": UseExisting(addresses=("",))}, "must not be empty"),
    ],
)
def test_validation_fails_before_side_effects(fake_runtime, overrides: dict, fragment: str) -> None:
    provisioner = ClusterProvisioner(fake_runtime)
    with pytest.raises(InvalidConfiguration) as excinfo:
        provisioner.create(_make_intent(**overrides))
    assert fragment in str(excinfo.value)
    assert fake_runtime.calls == [], "validation must not touch the runtime"
    assert provisioner.state is ProvisioningState.PROCESSED


def test_same_port_on_different_protocols_is_allowed(fake_runtime) -> None:
    intent = _make_intent(
        ports=(
            TaggedValue(":5353:53/TCP", ("loadbalancer",)),
            TaggedValue(":5353:53/UDP", ("loadbalancer",)),
        )
    )
    assert ClusterProvisioner(fake_runtime).create(intent).identity == "k3d-bar"


def test_existing_cluster_is_rejected(fake_runtime) -> None:
    ClusterProvisioner(fake_runtime).create(_make_intent())
    fake_runtime.calls.clear()

    with pytest.raises(AlreadyExists):
        ClusterProvisioner(fake_runtime).create(_make_intent())
    assert ("cluster_create", "bar") not in fake_runtime.calls


def test_failed_create_rolls_back_same_identity(fake_runtime) -> None:
    fake_runtime.create_error = RuntimeCommandError("port is already allocated")
    provisioner = ClusterProvisioner(fake_runtime)

    with pytest.raises(CreationFailed) as excinfo:
        provisioner.create(_make_intent())

    create_index = fake_runtime.calls.index(("cluster_create", "bar"))
    assert fake_runtime.calls[create_index + 1] == ("cluster_delete", "bar")
    assert "port is already allocated" in str(excinfo.value)
    assert excinfo.value.identity == "k3d-bar"
    assert provisioner.history[-2:] == [ProvisioningState.ROLLING_BACK, ProvisioningState.ROLLED_BACK]
    with pytest.raises(NotFound):
        fake_runtime.cluster_get("bar")


def test_failed_create_without_leftovers_counts_as_rolled_back(fake_runtime) -> None:
    fake_runtime.create_error = RuntimeCommandError("image pull failed")
    fake_runtime.leave_partial_cluster = False
    provisioner = ClusterProvisioner(fake_runtime)

    with pytest.raises(CreationFailed):
        provisioner.create(_make_intent())
    assert provisioner.state is ProvisioningState.ROLLED_BACK


def test_failed_rollback_escalates(fake_runtime) -> None:
    fake_runtime.create_error = RuntimeCommandError("port is already allocated")
    fake_runtime.delete_error = RuntimeCommandError("docker daemon unreachable")
    provisioner = ClusterProvisioner(fake_runtime)

    with pytest.raises(CreationFailedRollbackFailed) as excinfo:
        provisioner.create(_make_intent())

    error = excinfo.value
    assert not isinstance(error, CreationFailed), "rollback failure must not look like a plain failure"
    assert error.fatal is True
    assert "port is already allocated" in str(error)
    assert "docker daemon unreachable" in str(error)
    assert provisioner.state is ProvisioningState.ROLLBACK_FAILED


def test_create_syncs_kubeconfig_when_requested(fake_runtime, tmp_path: Path) -> None:
    target = tmp_path / "config"
    provisioner = ClusterProvisioner(
        fake_runtime,
        kubeconfig=KubeconfigReconciler(fake_runtime, target),
    )
    provisioner.create(
        _make_intent(
            kubeconfig=KubeconfigOptions(update_default_kubeconfig=True, switch_current_context=True)
        )
    )
    document = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert document["current-context"] == "k3d-bar"


def test_create_skips_kubeconfig_by_default(fake_runtime, tmp_path: Path) -> None:
    target = tmp_path / "config"
    ClusterProvisioner(fake_runtime, kubeconfig=KubeconfigReconciler(fake_runtime, target)).create(
        _make_intent()
    )
    assert not target.exists()


def test_kubeconfig_failure_does_not_fail_create(fake_runtime, tmp_path: Path) -> None:
    from k3d_reconciler._reconciler_errors import CredentialSyncWarning

    fake_runtime.kubeconfig_error = RuntimeCommandError("kubeconfig unavailable")
    provisioner = ClusterProvisioner(
        fake_runtime,
        kubeconfig=KubeconfigReconciler(fake_runtime, tmp_path / "config"),
    )
    with pytest.warns(CredentialSyncWarning):
        result = provisioner.create(
            _make_intent(kubeconfig=KubeconfigOptions(update_default_kubeconfig=True))
        )
    assert provisioner.state is ProvisioningState.CREATED
    assert result.identity == "k3d-bar"


def test_read_and_delete_propagate_not_found(fake_runtime) -> None:
    with pytest.raises(NotFound):
        read_cluster(fake_runtime, "missing")
    with pytest.raises(NotFound):
        delete_cluster(fake_runtime, "missing")


def test_delete_removes_cluster(fake_runtime) -> None:
    ClusterProvisioner(fake_runtime).create(_make_intent())
    delete_cluster(fake_runtime, "bar")
    with pytest.raises(NotFound):
        read_cluster(fake_runtime, "bar")


def test_provisioner_is_single_use(fake_runtime) -> None:
    provisioner = ClusterProvisioner(fake_runtime)
    provisioner.create(_make_intent())
    with pytest.raises(RuntimeError):
        provisioner.create(replace(_make_intent(), name="baz"))
