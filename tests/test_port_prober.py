"""
Tests for the host liveness prober.

Run with: pytest tests/test_port_prober.py -v
"""
import socket
from collections import namedtuple
from unittest.mock import patch

import pytest

Addr = namedtuple("Addr", ["ip", "port"])
Conn = namedtuple("Conn", ["laddr", "status"])


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("0.0.0.0", 0))
        return sock.getsockname()[1]


class TestPortProber:
    """Tests for PortProber checks."""

    @pytest.mark.asyncio
    async def test_free_port_is_free(self):
        from dockhand.services.ledger.port_prober import PortProber

        prober = PortProber(runtime=None, socket_scan=False)

        assert await prober.is_free(_free_port()) is True

    @pytest.mark.asyncio
    async def test_listening_ipv4_socket_is_busy(self):
        from dockhand.services.ledger.port_prober import PortProber

        prober = PortProber(runtime=None, socket_scan=False)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("0.0.0.0", 0))
            sock.listen(1)
            port = sock.getsockname()[1]

            assert prober.ipv4_free(port) is False
            assert await prober.is_free(port) is False

    @pytest.mark.asyncio
    async def test_port_published_by_stopped_container_is_busy(self, runtime):
        """Stopped containers still reserve their mapping."""
        from dockhand.services.ledger.port_prober import PortProber

        port = _free_port()
        runtime.add("sleeper", ports=[port], running=False)
        prober = PortProber(runtime=runtime, socket_scan=False)

        assert await prober.is_free(port) is False

    @pytest.mark.asyncio
    async def test_runtime_failure_does_not_block(self, runtime):
        from dockhand.core.exceptions import ExternalCommandError
        from dockhand.services.ledger.port_prober import PortProber

        runtime.list_error = ExternalCommandError("docker ps -a", 1, "Cannot connect to the Docker daemon")
        prober = PortProber(runtime=runtime, socket_scan=False)

        assert await prober.runtime_ports() == set()
        assert await prober.is_free(_free_port()) is True

    @pytest.mark.asyncio
    async def test_socket_table_listener_is_busy(self):
        """The OS socket scan catches listeners the bind test cannot see."""
        import psutil

        from dockhand.services.ledger.port_prober import PortProber

        port = _free_port()
        conns = [
            Conn(laddr=Addr("127.0.0.1", port), status=psutil.CONN_LISTEN),
            Conn(laddr=Addr("127.0.0.1", port + 1), status=psutil.CONN_ESTABLISHED),
        ]
        prober = PortProber(runtime=None, socket_scan=True)

        with patch("psutil.net_connections", return_value=conns):
            assert prober.listening_ports() == {port}
            assert await prober.is_free(port) is False

    @pytest.mark.asyncio
    async def test_socket_scan_access_denied_is_ignored(self):
        import psutil

        from dockhand.services.ledger.port_prober import PortProber

        prober = PortProber(runtime=None, socket_scan=True)

        with patch("psutil.net_connections", side_effect=psutil.AccessDenied()):
            assert prober.listening_ports() == set()
            assert await prober.is_free(_free_port()) is True

    def test_unavailable_ipv6_stack_is_inconclusive(self):
        """EADDRNOTAVAIL on the IPv6 wildcard says nothing about the port."""
        import errno

        from dockhand.services.ledger.port_prober import PortProber

        prober = PortProber(runtime=None, socket_scan=False)
        with patch("socket.socket.bind", side_effect=OSError(errno.EADDRNOTAVAIL, "Cannot assign")):
            assert prober.ipv6_free(3320) is True
        with patch("socket.socket.bind", side_effect=OSError(errno.EADDRINUSE, "Address in use")):
            assert prober.ipv4_free(3320) is False
