"""Lazily resolved default k3s image.

The default image tag depends on the installed k3d release, so it is looked
up on first use rather than at import time. A failed lookup raises
:class:`ImageLookupError` for the operation that needed the default and is
retried on the next call.
"""

from __future__ import annotations

import logging
import threading

from k3d_reconciler._cluster_models import DEFAULT_K3S_IMAGE_REPO
from k3d_reconciler._reconciler_errors import ImageLookupError, ReconcilerError
from k3d_reconciler._runtime import ClusterRuntime

logger = logging.getLogger(__name__)


def image_for_version(version: str) -> str:
    """Return the k3s image reference for a k3s version.

    k3s release versions use ``+`` where image tags use ``-``.

    Examples
    --------
    >>> image_for_version("v1.31.5+k3s1")
    'docker.io/rancher/k3s:v1.31.5-k3s1'
    """
    return f"{DEFAULT_K3S_IMAGE_REPO}:{version.replace('+', '-')}"


class DefaultImage:
    """Resolve and cache the default k3s image.

    Parameters
    ----------
    runtime
        Queried for its default k3s version when no override is set.
    override
        Image reference to use instead of asking the runtime.
    """

    def __init__(self, runtime: ClusterRuntime, override: str | None = None) -> None:
        self._runtime = runtime
        self._override = override or None
        self._resolved: str | None = None
        self._lock = threading.Lock()

    def __call__(self) -> str:
        return self.get()

    def get(self) -> str:
        """Return the default image, resolving it on first use.

        Raises
        ------
        ImageLookupError
            If the runtime cannot report its k3s version.
        """
        with self._lock:
            if self._resolved is None:
                self._resolved = self._override or self._lookup()
            return self._resolved

    def _lookup(self) -> str:
        try:
            version = self._runtime.k3s_version().strip()
        except ReconcilerError as exc:
            msg = f"failed to resolve the default k3s image: {exc}"
            raise ImageLookupError(msg) from exc
        if not version:
            msg = "failed to resolve the default k3s image: runtime reported no k3s version"
            raise ImageLookupError(msg)
        image = image_for_version(version)
        logger.info("Resolved default k3s image %s", image)
        return image


__all__ = ["DefaultImage", "image_for_version"]
