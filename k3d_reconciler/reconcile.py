"""Reconcile k3d clusters, nodes and registries from attribute files.

Each command reads a resource's flat attributes from a YAML or JSON file,
runs one operation against the local ``k3d`` installation and prints the
resulting ID and attributes as JSON:

- ``create KIND FILE`` provisions the resource;
- ``read KIND FILE`` reads it back;
- ``delete KIND FILE`` removes it;
- ``lookup KIND FILE`` queries the data source of an existing object.

Exit status is 0 on success, 1 for reconciler errors and 3 when a cluster
creation failed and its rollback failed too.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Annotated, Any

import yaml
from cyclopts import App, Parameter

from k3d_reconciler._image_defaults import DefaultImage
from k3d_reconciler._kubeconfig import KubeconfigReconciler
from k3d_reconciler._reconciler_errors import (
    CreationFailedRollbackFailed,
    InvalidConfiguration,
    ReconcilerError,
)
from k3d_reconciler._resources import (
    ClusterDataSource,
    ClusterResource,
    NodeDataSource,
    NodeResource,
    RegistryDataSource,
    RegistryResource,
    ResourceResult,
)
from k3d_reconciler._runtime import ClusterRuntime, K3dCli
from k3d_reconciler._settings import (
    ReconcilerSettings,
    configure_logging,
    resolve_settings,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLBACK_FAILED = 3

app = App(help="Reconcile k3d clusters, nodes and registries.")

RuntimeFactory = Callable[[ReconcilerSettings], ClusterRuntime]

BinaryOption = Annotated[str | None, Parameter(help="k3d executable; defaults to $K3D_BINARY or k3d.")]
KubeconfigOption = Annotated[Path | None, Parameter(help="Kubeconfig to merge credentials into.")]
ImageOption = Annotated[str | None, Parameter(help="k3s image used when none is configured.")]
LogLevelOption = Annotated[str | None, Parameter(help="Logging level name.")]
TimeoutOption = Annotated[float | None, Parameter(help="Seconds before a k3d call is abandoned.")]


def build_runtime(settings: ReconcilerSettings) -> ClusterRuntime:
    return K3dCli(settings.k3d_binary, timeout=settings.command_timeout)


def build_resource(kind: str, runtime: ClusterRuntime, settings: ReconcilerSettings) -> Any:
    """Return the resource handler for ``kind``.

    Raises
    ------
    InvalidConfiguration
        If ``kind`` is not a known resource kind.
    """
    default_image = DefaultImage(runtime, settings.default_image)
    if kind == "cluster":
        return ClusterResource(
            runtime,
            default_image=default_image,
            kubeconfig=KubeconfigReconciler(runtime, settings.kubeconfig),
        )
    if kind == "node":
        return NodeResource(runtime, default_image=default_image)
    if kind == "registry":
        return RegistryResource(runtime)
    msg = f"unknown resource kind {kind!r}; expected cluster, node or registry"
    raise InvalidConfiguration(msg)


def build_data_source(kind: str, runtime: ClusterRuntime) -> Any:
    sources = {
        "cluster": ClusterDataSource,
        "node": NodeDataSource,
        "registry": RegistryDataSource,
    }
    try:
        return sources[kind](runtime)
    except KeyError as exc:
        msg = f"unknown data source kind {kind!r}; expected cluster, node or registry"
        raise InvalidConfiguration(msg) from exc


def load_attributes(path: Path) -> dict[str, Any]:
    """Load a resource's flat attributes from a YAML or JSON file.

    Raises
    ------
    InvalidConfiguration
        If the file cannot be read or does not hold a mapping.
    """
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"cannot read attribute file {path}: {exc}"
        raise InvalidConfiguration(msg) from exc
    except yaml.YAMLError as exc:
        msg = f"attribute file {path} is not valid YAML or JSON: {exc}"
        raise InvalidConfiguration(msg) from exc
    if not isinstance(document, Mapping):
        msg = f"attribute file {path} must contain a mapping"
        raise InvalidConfiguration(msg)
    return dict(document)


def _emit(result: ResourceResult | None) -> None:
    if result is None:
        return
    json.dump({"id": result.id, "attributes": result.attributes}, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def run_operation(
    operation: str,
    kind: str,
    attributes: Path,
    settings: ReconcilerSettings,
    runtime_factory: RuntimeFactory = build_runtime,
) -> int:
    """Run ``operation`` for ``kind`` and map failures to exit codes."""
    try:
        raw = load_attributes(attributes)
        runtime = runtime_factory(settings)
        if operation == "lookup":
            result = build_data_source(kind, runtime).read(raw)
        else:
            handler = build_resource(kind, runtime, settings)
            result = getattr(handler, operation)(raw)
    except CreationFailedRollbackFailed as exc:
        logger.critical("%s", exc)
        return EXIT_ROLLBACK_FAILED
    except ReconcilerError as exc:
        logger.error("%s", exc)
        return EXIT_FAILED
    _emit(result)
    return EXIT_OK


def _settings(
    k3d_binary: str | None,
    kubeconfig: Path | None,
    default_image: str | None,
    log_level: str | None,
    timeout: float | None,
) -> ReconcilerSettings | None:
    try:
        settings = resolve_settings(
            k3d_binary=k3d_binary,
            kubeconfig=kubeconfig,
            default_image=default_image,
            log_level=log_level,
            command_timeout=timeout,
        )
    except InvalidConfiguration as exc:
        logging.basicConfig()
        logger.error("%s", exc)
        return None
    configure_logging(settings)
    return settings


def _run(operation: str, kind: str, attributes: Path, **options: Any) -> int:
    settings = _settings(**options)
    if settings is None:
        return EXIT_FAILED
    return run_operation(operation, kind, attributes, settings)


@app.command()
def create(
    kind: str,
    attributes: Path,
    *,
    k3d_binary: BinaryOption = None,
    kubeconfig: KubeconfigOption = None,
    default_image: ImageOption = None,
    log_level: LogLevelOption = None,
    timeout: TimeoutOption = None,
) -> int:
    """Create a cluster, node or registry from an attribute file."""
    return _run(
        "create",
        kind,
        attributes,
        k3d_binary=k3d_binary,
        kubeconfig=kubeconfig,
        default_image=default_image,
        log_level=log_level,
        timeout=timeout,
    )


@app.command()
def read(
    kind: str,
    attributes: Path,
    *,
    k3d_binary: BinaryOption = None,
    log_level: LogLevelOption = None,
    timeout: TimeoutOption = None,
) -> int:
    """Read a resource back and print its computed attributes."""
    return _run(
        "read",
        kind,
        attributes,
        k3d_binary=k3d_binary,
        kubeconfig=None,
        default_image=None,
        log_level=log_level,
        timeout=timeout,
    )


@app.command()
def delete(
    kind: str,
    attributes: Path,
    *,
    k3d_binary: BinaryOption = None,
    log_level: LogLevelOption = None,
    timeout: TimeoutOption = None,
) -> int:
    """Delete a resource."""
    return _run(
        "delete",
        kind,
        attributes,
        k3d_binary=k3d_binary,
        kubeconfig=None,
        default_image=None,
        log_level=log_level,
        timeout=timeout,
    )


@app.command()
def lookup(
    kind: str,
    attributes: Path,
    *,
    k3d_binary: BinaryOption = None,
    log_level: LogLevelOption = None,
    timeout: TimeoutOption = None,
) -> int:
    """Look up an existing cluster, node or registry by name."""
    return _run(
        "lookup",
        kind,
        attributes,
        k3d_binary=k3d_binary,
        kubeconfig=None,
        default_image=None,
        log_level=log_level,
        timeout=timeout,
    )


def cli() -> None:  # pragma: no cover - console script entrypoint
    raise SystemExit(app())


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
