"""Ephemeral host port allocation.

Ports are picked by binding port 0 and reading back the kernel's choice. The
socket is closed straight away, so another process may take the port before
the runtime binds it; the allocation only guarantees the port was free at
the allocation instant. Within one process the allocator never returns the
same port twice.
"""

from __future__ import annotations

import logging
import socket
import threading

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
_MAX_ATTEMPTS = 32


def is_valid_port(value: int) -> bool:
    """Return ``True`` when ``value`` is a usable TCP/UDP port number.

    Examples
    --------
    >>> is_valid_port(6443), is_valid_port(0), is_valid_port(70000)
    (True, False, False)
    """
    return MIN_PORT <= value <= MAX_PORT


def _bind_free_port(host: str = "") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


class EphemeralPortAllocator:
    """Hand out free host ports, never repeating one within the process."""

    def __init__(self) -> None:
        self._issued: set[int] = set()
        self._lock = threading.Lock()

    def allocate(self) -> int:
        """Return a port that was free at the time of the call."""
        with self._lock:
            for _ in range(_MAX_ATTEMPTS):
                port = _bind_free_port()
                if port not in self._issued:
                    self._issued.add(port)
                    logger.debug("Allocated ephemeral host port %d", port)
                    return port
        msg = f"no unused ephemeral port found after {_MAX_ATTEMPTS} attempts"
        raise OSError(msg)

    @property
    def issued(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._issued)


default_allocator = EphemeralPortAllocator()


__all__ = [
    "MAX_PORT",
    "MIN_PORT",
    "EphemeralPortAllocator",
    "default_allocator",
    "is_valid_port",
]
