"""Cluster provisioning pipeline.

A :class:`ClusterProvisioner` drives one cluster creation through these
states::

    BUILDING -> TRANSFORMED -> PROCESSED -> VALIDATED -> SUBMITTING
        SUBMITTING -> CREATED
        SUBMITTING -> ROLLING_BACK -> ROLLED_BACK | ROLLBACK_FAILED

Everything up to ``VALIDATED`` is free of side effects: a configuration
problem raises :class:`InvalidConfiguration` before the runtime is touched.
Once the runtime's create call fails, the provisioner deletes whatever was
created under the same name. A successful rollback raises
:class:`CreationFailed`; a failed one raises the fatal
:class:`CreationFailedRollbackFailed`, which callers must not treat as an
ordinary creation failure because runtime objects may be orphaned.

Examples
--------
>>> ProvisioningState.ROLLBACK_FAILED.terminal
True
"""

from __future__ import annotations

import enum
import logging
import posixpath
import secrets
import string
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from k3d_reconciler._attributes import flatten_port, flatten_volume
from k3d_reconciler._cluster_models import (
    DEFAULT_PROTOCOL,
    ROLE_AGENT,
    ROLE_LOADBALANCER,
    ROLE_SERVER,
    ClusterIntent,
    ClusterSpec,
    ClusterState,
    CreateManaged,
    NodeSpec,
    TaggedValue,
    UseExisting,
)
from k3d_reconciler._identity import derive_id
from k3d_reconciler._kubeconfig import KubeconfigReconciler
from k3d_reconciler._node_filters import build_topology, resolve_node_filters
from k3d_reconciler._ports import is_valid_port
from k3d_reconciler._reconciler_errors import (
    AlreadyExists,
    CreationFailed,
    CreationFailedRollbackFailed,
    InvalidConfiguration,
    NotFound,
)
from k3d_reconciler._runtime import ClusterRuntime

logger = logging.getLogger(__name__)

TOKEN_LENGTH = 20
_TOKEN_ALPHABET = string.ascii_letters + string.digits


class ProvisioningState(enum.Enum):
    """States of a cluster creation."""

    BUILDING = "building"
    TRANSFORMED = "transformed"
    PROCESSED = "processed"
    VALIDATED = "validated"
    SUBMITTING = "submitting"
    CREATED = "created"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        ProvisioningState.CREATED,
        ProvisioningState.ROLLED_BACK,
        ProvisioningState.ROLLBACK_FAILED,
    }
)

_TRANSITIONS: dict[ProvisioningState, frozenset[ProvisioningState]] = {
    ProvisioningState.BUILDING: frozenset({ProvisioningState.TRANSFORMED}),
    ProvisioningState.TRANSFORMED: frozenset({ProvisioningState.PROCESSED}),
    ProvisioningState.PROCESSED: frozenset({ProvisioningState.VALIDATED}),
    ProvisioningState.VALIDATED: frozenset({ProvisioningState.SUBMITTING}),
    ProvisioningState.SUBMITTING: frozenset(
        {ProvisioningState.CREATED, ProvisioningState.ROLLING_BACK}
    ),
    ProvisioningState.ROLLING_BACK: frozenset(
        {ProvisioningState.ROLLED_BACK, ProvisioningState.ROLLBACK_FAILED}
    ),
}


def generate_token(length: int = TOKEN_LENGTH) -> str:
    """Return a random alphanumeric cluster token."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def default_network(cluster_name: str) -> str:
    """Return the network a cluster joins when none is configured.

    Examples
    --------
    >>> default_network("bar")
    'k3d-bar'
    """
    return derive_id("cluster", cluster_name)


@dataclass(frozen=True, slots=True)
class ProvisioningResult:
    """Outcome of a successful cluster creation."""

    identity: str
    spec: ClusterSpec
    state: ClusterState


class ClusterProvisioner:
    """Create a single cluster with compensating rollback.

    A provisioner is single-use: its ``history`` records every state the
    creation passed through.

    Parameters
    ----------
    runtime
        Runtime client every external call goes through.
    kubeconfig
        Merges credentials after creation when the cluster asks for it.
    token_factory
        Produces a token for clusters configured without one.
    """

    def __init__(
        self,
        runtime: ClusterRuntime,
        *,
        kubeconfig: KubeconfigReconciler | None = None,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.runtime = runtime
        self.kubeconfig = kubeconfig
        self._token_factory = token_factory
        self.state = ProvisioningState.BUILDING
        self.history: list[ProvisioningState] = [ProvisioningState.BUILDING]

    def _advance(self, state: ProvisioningState, name: str) -> None:
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            msg = f"cannot move cluster {name!r} from {self.state.value} to {state.value}"
            raise RuntimeError(msg)
        self.state = state
        self.history.append(state)
        logger.info("Cluster %s: %s", name, state.value)

    def transform(self, intent: ClusterIntent) -> ClusterSpec:
        """Map ``intent`` onto a cluster spec holding the node topology."""
        topology = build_topology(
            intent.servers,
            intent.agents,
            intent.name,
            load_balancer=not intent.k3d.disable_load_balancer,
        )
        nodes = [
            NodeSpec(
                name=ref.name,
                role=ref.role,
                index=ref.index,
                image="" if ref.role == ROLE_LOADBALANCER else intent.image,
            )
            for ref in topology
        ]
        spec = ClusterSpec(
            name=intent.name,
            identity=derive_id("cluster", intent.name),
            servers=intent.servers,
            agents=intent.agents,
            image=intent.image,
            network=intent.network,
            token=intent.token,
            nodes=nodes,
            env=intent.env,
            labels=intent.labels,
            volumes=intent.volumes,
            ports=intent.ports,
            k3s_args=intent.k3s.extra_args,
            exposure=intent.exposure,
            registry=intent.registry,
            registries_config=intent.registries_config,
            k3d=intent.k3d,
            kubeconfig=intent.kubeconfig,
            runtime=intent.runtime,
        )
        self._advance(ProvisioningState.TRANSFORMED, spec.name)
        return spec

    def process(self, spec: ClusterSpec) -> ClusterSpec:
        """Fill computed defaults and attach scoped values to concrete nodes.

        Raises
        ------
        NodeFilterError
            If a value's node filters cannot be resolved.
        """
        if not spec.token:
            spec.token = self._token_factory()
        if not spec.network:
            spec.network = default_network(spec.name)

        topology = spec.topology()

        def place(values: Iterable[TaggedValue[str]], attach: Callable[[NodeSpec, str], None]) -> None:
            for tagged in values:
                for ref in resolve_node_filters(tagged.node_filters, topology):
                    attach(spec.node(ref), tagged.value)

        def attach_label(node: NodeSpec, encoded: str) -> None:
            key, _, value = encoded.partition("=")
            node.labels[key] = value

        place(spec.env, lambda node, value: node.env.append(value))
        place(spec.labels, attach_label)
        place(spec.volumes, lambda node, value: node.volumes.append(value))
        place(spec.ports, lambda node, value: node.ports.append(value))
        place(spec.k3s_args, lambda node, value: node.args.append(value))

        for node in spec.nodes:
            if node.role == ROLE_SERVER:
                node.memory = spec.runtime.servers_memory
            elif node.role == ROLE_AGENT:
                node.memory = spec.runtime.agents_memory
            if node.role in (ROLE_SERVER, ROLE_AGENT):
                node.gpu_request = spec.runtime.gpu_request

        self._advance(ProvisioningState.PROCESSED, spec.name)
        return spec

    def validate(self, spec: ClusterSpec) -> ClusterSpec:
        """Check cross-field invariants.

        Raises
        ------
        InvalidConfiguration
            Describing the first problem found.
        """
        problems = list(_validation_problems(spec))
        if problems:
            msg = f"invalid configuration for cluster {spec.name!r}: {problems[0]}"
            raise InvalidConfiguration(msg)
        self._advance(ProvisioningState.VALIDATED, spec.name)
        return spec

    def submit(self, spec: ClusterSpec) -> None:
        """Create the cluster in the runtime, rolling back on failure.

        Raises
        ------
        AlreadyExists
            If a cluster with the same name is already present.
        CreationFailed
            If creation failed and the rollback removed every trace.
        CreationFailedRollbackFailed
            If creation failed and so did the rollback.
        """
        self._advance(ProvisioningState.SUBMITTING, spec.name)
        try:
            self.runtime.cluster_get(spec.name)
        except NotFound:
            pass
        else:
            msg = f"failed to create cluster {spec.identity!r}: a cluster with that name already exists"
            raise AlreadyExists(msg)

        try:
            self.runtime.cluster_create(spec)
        except Exception as exc:
            self._roll_back(spec, exc)
        self._advance(ProvisioningState.CREATED, spec.name)

    def _roll_back(self, spec: ClusterSpec, cause: Exception) -> None:
        logger.warning("Cluster %s creation failed, rolling back: %s", spec.name, cause)
        self._advance(ProvisioningState.ROLLING_BACK, spec.name)
        try:
            self.runtime.cluster_delete(spec.name)
        except NotFound:
            logger.info("Cluster %s left nothing to roll back", spec.name)
        except Exception as rollback_exc:
            self._advance(ProvisioningState.ROLLBACK_FAILED, spec.name)
            logger.error(
                "Cluster %s creation FAILED, also FAILED to roll back: %s",
                spec.name,
                rollback_exc,
            )
            raise CreationFailedRollbackFailed(spec.identity, cause, rollback_exc) from cause
        self._advance(ProvisioningState.ROLLED_BACK, spec.name)
        raise CreationFailed(spec.identity, cause) from cause

    def create(self, intent: ClusterIntent) -> ProvisioningResult:
        """Run the whole pipeline for ``intent`` and read the cluster back."""
        spec = self.validate(self.process(self.transform(intent)))
        self.submit(spec)
        if spec.kubeconfig.update_default_kubeconfig and self.kubeconfig is not None:
            self.kubeconfig.sync(
                spec.name,
                switch_context=spec.kubeconfig.switch_current_context,
            )
        return ProvisioningResult(
            identity=spec.identity,
            spec=spec,
            state=read_cluster(self.runtime, spec.name),
        )


def read_cluster(runtime: ClusterRuntime, name: str) -> ClusterState:
    """Return the runtime's view of cluster ``name``; raises :class:`NotFound`."""
    return runtime.cluster_get(name)


def delete_cluster(runtime: ClusterRuntime, name: str) -> None:
    """Delete cluster ``name``; raises :class:`NotFound` when it is absent."""
    runtime.cluster_delete(name)
    logger.info("Deleted cluster %s", name)


def _port_problems(label: str, value: int) -> Iterable[str]:
    if not is_valid_port(value):
        yield f"{label} {value} is outside 1-65535"


def _validation_problems(spec: ClusterSpec) -> Iterable[str]:
    if spec.servers < 1:
        yield f"servers must be at least 1, got {spec.servers}"
    if spec.agents < 0:
        yield f"agents must not be negative, got {spec.agents}"

    yield from _port_problems("kube API host port", spec.exposure.host_port)
    reserved: dict[tuple[int, str], str] = {
        (spec.exposure.host_port, DEFAULT_PROTOCOL): "the kube API",
    }
    registry = spec.registry
    if isinstance(registry, CreateManaged):
        yield from _port_problems("registry host port", registry.spec.host_port)
        key = (registry.spec.host_port, DEFAULT_PROTOCOL)
        if key in reserved:
            yield (
                f"duplicate host port {registry.spec.host_port}/{DEFAULT_PROTOCOL} for "
                f"registry {registry.spec.name!r}, already used by {reserved[key]}"
            )
        else:
            reserved[key] = f"registry {registry.spec.name!r}"

    for tagged in spec.ports:
        try:
            port = flatten_port(tagged.value)
        except InvalidConfiguration as exc:
            yield str(exc)
            continue
        yield from _port_problems("host port", port["host_port"])
        yield from _port_problems("container port", port["container_port"])
        key = (port["host_port"], port["protocol"])
        if key in reserved:
            yield (
                f"duplicate host port {port['host_port']}/{port['protocol']} in "
                f"{tagged.value!r}, already used by {reserved[key]}"
            )
            continue
        reserved[key] = f"port mapping {tagged.value!r}"

    if isinstance(registry, CreateManaged):
        if any(not address for address in registry.use):
            yield "registries.use entries must not be empty"
        if registry.spec.name in registry.use:
            yield f"registry {registry.spec.name!r} is both created and listed in registries.use"
    elif isinstance(registry, UseExisting) and any(not address for address in registry.addresses):
        yield "registries.use entries must not be empty"

    for tagged in spec.volumes:
        destination = flatten_volume(tagged.value)["destination"]
        if not posixpath.isabs(destination):
            yield f"volume destination {destination!r} must be an absolute path"


__all__ = [
    "TOKEN_LENGTH",
    "ClusterProvisioner",
    "ProvisioningResult",
    "ProvisioningState",
    "default_network",
    "delete_cluster",
    "generate_token",
    "read_cluster",
]
