"""Free port discovery."""

from __future__ import annotations

import socket
from typing import Protocol, runtime_checkable

from .environment import ArtifactError


class PortAllocationError(ArtifactError):
    """Raised when no unused local port could be obtained."""


@runtime_checkable
class PortAllocator(Protocol):
    def acquire_free_port(self) -> int:
        """Return a port that is unused at the time of the call."""


class SocketPortAllocator:
    """Asks the OS for an ephemeral port by binding port 0.

    The socket is closed before the port is returned, so another process may
    claim it before PostgreSQL binds; callers retry ``start`` in that case.
    """

    def __init__(self, host: str = "localhost") -> None:
        self._host = host

    def acquire_free_port(self) -> int:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self._host, 0))
                return int(sock.getsockname()[1])
        except OSError as exc:
            raise PortAllocationError(f"Unable to allocate a free port on '{self._host}': {exc}") from exc


def find_free_port(host: str = "localhost") -> int:
    return SocketPortAllocator(host).acquire_free_port()


__all__ = ["PortAllocationError", "PortAllocator", "SocketPortAllocator", "find_free_port"]
