"""Reconciler settings resolved from CLI parameters and the environment."""

from __future__ import annotations

import logging
import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

from k3d_reconciler._reconciler_errors import InvalidConfiguration

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True, slots=True)
class InputResolution:
    """Configuration for resolving an input from multiple sources."""

    env_key: str
    default: str | Path | None = None
    required: bool = False
    as_path: bool = False


def resolve_input(
    param_value: str | Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> str | Path | None:
    """Resolve input from parameter, environment variable, or default.

    Empty environment values count as unset, and a missing required input
    raises :class:`InvalidConfiguration` so the CLI reports it like any other
    configuration error.

    Examples
    --------
    >>> resolve_input(None, InputResolution("K3D_BINARY", default="k3d"), env={})
    'k3d'
    >>> resolve_input(None, InputResolution("K3D_BINARY"), env={"K3D_BINARY": "/opt/k3d"})
    '/opt/k3d'
    """
    if param_value is not None:
        return param_value

    env_value = (os.environ if env is None else env).get(resolution.env_key)
    if env_value:
        return Path(env_value) if resolution.as_path else env_value

    if resolution.required:
        msg = f"{resolution.env_key} is required"
        raise InvalidConfiguration(msg)

    return resolution.default


BINARY = InputResolution(env_key="K3D_BINARY", default="k3d")
KUBECONFIG = InputResolution(env_key="KUBECONFIG", as_path=True)
DEFAULT_IMAGE = InputResolution(env_key="K3D_DEFAULT_K3S_IMAGE")
LOG_LEVEL = InputResolution(env_key="K3D_RECONCILER_LOG_LEVEL", default="INFO")
COMMAND_TIMEOUT = InputResolution(env_key="K3D_COMMAND_TIMEOUT")


@dataclass(frozen=True, slots=True)
class ReconcilerSettings:
    """Process-wide settings for one reconciler invocation.

    Attributes
    ----------
    k3d_binary
        Name or path of the ``k3d`` executable.
    kubeconfig
        Kubeconfig credentials are merged into; ``None`` uses the default.
    default_image
        k3s image overriding the runtime's default.
    log_level
        Name of the root logging level.
    command_timeout
        Seconds before a single ``k3d`` call is abandoned.
    """

    k3d_binary: str = "k3d"
    kubeconfig: Path | None = None
    default_image: str | None = None
    log_level: str = "INFO"
    command_timeout: float | None = None


def _parse_timeout(value: str | Path | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        timeout = float(value)
    except ValueError as exc:
        msg = f"K3D_COMMAND_TIMEOUT must be a number of seconds, got {value!r}"
        raise InvalidConfiguration(msg) from exc
    if timeout <= 0:
        msg = f"K3D_COMMAND_TIMEOUT must be positive, got {value!r}"
        raise InvalidConfiguration(msg)
    return timeout


def _parse_log_level(value: str | Path | None) -> str:
    level = str(value or "INFO").upper()
    if level not in LOG_LEVELS:
        msg = f"K3D_RECONCILER_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {value!r}"
        raise InvalidConfiguration(msg)
    return level


def _first_kubeconfig(value: str | Path | None) -> Path | None:
    if value is None:
        return None
    for entry in str(value).split(os.pathsep):
        if entry:
            return Path(entry).expanduser()
    return None


def resolve_settings(
    *,
    k3d_binary: str | None = None,
    kubeconfig: Path | None = None,
    default_image: str | None = None,
    log_level: str | None = None,
    command_timeout: float | None = None,
    env: cabc.Mapping[str, str] | None = None,
) -> ReconcilerSettings:
    """Resolve settings, preferring explicit values over the environment.

    Raises
    ------
    InvalidConfiguration
        If an environment value cannot be parsed.
    """
    timeout = (
        command_timeout
        if command_timeout is not None
        else _parse_timeout(resolve_input(None, COMMAND_TIMEOUT, env))
    )
    return ReconcilerSettings(
        k3d_binary=str(resolve_input(k3d_binary, BINARY, env)),
        kubeconfig=_first_kubeconfig(resolve_input(kubeconfig, KUBECONFIG, env)),
        default_image=(
            str(image) if (image := resolve_input(default_image, DEFAULT_IMAGE, env)) else None
        ),
        log_level=_parse_log_level(resolve_input(log_level, LOG_LEVEL, env)),
        command_timeout=timeout,
    )


def configure_logging(settings: ReconcilerSettings) -> None:
    """Configure root logging at the resolved level."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "InputResolution",
    "ReconcilerSettings",
    "configure_logging",
    "resolve_input",
    "resolve_settings",
]
