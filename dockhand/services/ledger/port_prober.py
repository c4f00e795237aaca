"""
Host-level port liveness probing.

The ledger's idea of which ports are used goes stale whenever something binds
a port behind its back (a container started by hand, a crashed deploy, an
unrelated daemon). Before a port is handed out it is checked against the host
itself, in order:

1. TCP bind on the IPv4 wildcard
2. TCP bind on the IPv6 wildcard (runtimes often publish on ``::`` only)
3. Host ports published by any container, running or stopped
4. The OS listening-socket table (psutil)

The first check that reports the port busy wins.
"""
import errno
import logging
import socket
from typing import Optional, Set

import psutil

from dockhand.core.config import settings
from dockhand.core.exceptions import DomainException
from dockhand.services.runtime.runtime_base import ContainerRuntime

logger = logging.getLogger(__name__)


def _bind_free(family: int, host: str, port: int) -> bool:
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError:
        # Address family unsupported on this host, nothing can be bound there
        return True

    with sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, errno.EACCES):
                return False
            # e.g. EADDRNOTAVAIL when the stack is disabled; says nothing about the port
            logger.debug(f"Bind probe on {host}:{port} inconclusive: {e}")
    return True


class PortProber:
    """Decides whether a port is actually free on the host."""

    def __init__(
        self,
        runtime: Optional[ContainerRuntime] = None,
        socket_scan: Optional[bool] = None,
    ):
        """
        Args:
            runtime: Container runtime consulted for published ports (skipped if None)
            socket_scan: Whether to consult the OS socket table (default from settings)
        """
        self.runtime = runtime
        self.socket_scan = settings.PROBE_SOCKET_SCAN if socket_scan is None else socket_scan

    def ipv4_free(self, port: int) -> bool:
        return _bind_free(socket.AF_INET, "0.0.0.0", port)

    def ipv6_free(self, port: int) -> bool:
        if not socket.has_ipv6:
            return True
        return _bind_free(socket.AF_INET6, "::", port)

    async def runtime_ports(self) -> Set[int]:
        """Host ports reserved by containers; empty if the runtime cannot be queried."""
        if self.runtime is None:
            return set()
        try:
            containers = await self.runtime.list_containers()
        except DomainException as e:
            logger.warning(f"Could not list container ports: {e.message}")
            return set()
        return {port for c in containers for port in c.host_ports}

    def listening_ports(self) -> Set[int]:
        """Local ports in LISTEN state according to the OS."""
        ports = set()
        try:
            for conn in psutil.net_connections(kind="inet"):
                if conn.laddr and conn.status == psutil.CONN_LISTEN:
                    ports.add(conn.laddr.port)
        except psutil.AccessDenied:
            logger.debug("Socket table scan not permitted, skipping")
        return ports

    async def is_free(self, port: int) -> bool:
        """Return True only if every check agrees the port is free."""
        if not self.ipv4_free(port):
            logger.debug(f"Port {port} busy: IPv4 bind failed")
            return False
        if not self.ipv6_free(port):
            logger.debug(f"Port {port} busy: IPv6 bind failed")
            return False
        if port in await self.runtime_ports():
            logger.debug(f"Port {port} busy: published by a container")
            return False
        if self.socket_scan and port in self.listening_ports():
            logger.debug(f"Port {port} busy: listening socket found")
            return False
        return True
