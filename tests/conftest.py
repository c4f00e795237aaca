"""
Pytest configuration and fixtures for dockhand tests.

This file is automatically loaded by pytest before running tests.
It sets up environment variables and wires every service against
temporary directories and in-memory fakes.
"""
import os
import zipfile

import pytest

# Set environment variables BEFORE any dockhand imports
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LEDGER_LOCK_RETRY_DELAY", "0.01")
os.environ.setdefault("CONTAINER_RUNNING_CHECK_INTERVAL", "0")
os.environ.setdefault("PROBE_SOCKET_SCAN", "false")


@pytest.fixture
def runtime():
    from fakes import FakeRuntime
    return FakeRuntime()


@pytest.fixture
def proxy():
    from fakes import FakeProxy
    return FakeProxy()


@pytest.fixture
def prober():
    from fakes import FakeProber
    return FakeProber()


@pytest.fixture
def ports_file(tmp_path):
    return tmp_path / "data" / "ports.json"


@pytest.fixture
def ledger(ports_file, prober):
    """Port ledger on a temp JSON file, range 3320-3990."""
    from dockhand.services.ledger.port_ledger import PortLedger
    from dockhand.services.ledger.store import JsonFileLedgerStore

    return PortLedger(
        store=JsonFileLedgerStore(str(ports_file)),
        prober=prober,
        port_range_start=3320,
        port_range_end=3990,
        admin_identity="admin",
    )


@pytest.fixture
def build_root(tmp_path):
    path = tmp_path / "builds"
    path.mkdir()
    return path


@pytest.fixture
def dispatcher():
    from dockhand.core.events import EventDispatcher
    return EventDispatcher()


@pytest.fixture
def service(ledger, runtime, proxy, build_root, dispatcher):
    """Deployment service wired to fakes; the diagnostic HTTP probe is stubbed out."""
    from unittest.mock import AsyncMock

    from dockhand.core.retry import RetryPolicy
    from dockhand.services.deployment.deployment_service import DeploymentService

    svc = DeploymentService(
        ledger=ledger,
        runtime=runtime,
        proxy=proxy,
        build_root=str(build_root),
        port_policy=RetryPolicy(max_attempts=5),
        running_policy=RetryPolicy(max_attempts=3),
        dispatcher=dispatcher,
    )
    svc._probe_route = AsyncMock(return_value=200)
    return svc


@pytest.fixture
def make_zip(tmp_path):
    """Factory writing a ZIP archive from a {entry_name: content} mapping."""
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    counter = {"n": 0}

    def _make(files=None, name=None):
        counter["n"] += 1
        path = uploads / (name or f"upload-{counter['n']}.zip")
        if files is None:
            files = {"index.html": "<h1>hello</h1>", "assets/app.js": "console.log(1);"}
        with zipfile.ZipFile(path, "w") as archive:
            for entry, content in files.items():
                archive.writestr(entry, content)
        return str(path)

    return _make
