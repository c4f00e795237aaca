"""
Tests for ledger-driven reconciliation.

Tests cover:
- Orphan and mismatched config removal before regeneration
- Regeneration of routes for static and container apps
- Release of static apps whose files are gone (and in-flight deploys left alone)
- Zombie container removal and orphaned directory pruning
- Reload failures and idempotent repeated sweeps

Run with: pytest tests/test_reconciler.py -v
"""
from unittest.mock import AsyncMock, patch

import pytest


@pytest.fixture
def reconciler(ledger, runtime, proxy, build_root, dispatcher):
    from dockhand.services.reconciler import Reconciler

    return Reconciler(
        ledger=ledger,
        runtime=runtime,
        proxy=proxy,
        build_root=str(build_root),
        port_range_start=3320,
        port_range_end=3990,
        dispatcher=dispatcher,
    )


async def _static_app(ledger, build_root, name, port, owner="alice"):
    from dockhand.schemas.allocation import PortAllocation

    (build_root / name).mkdir()
    (build_root / name / "index.html").write_text(f"<h1>{name}</h1>")
    await ledger.set_metadata(name, PortAllocation(port=port, owner=owner))


async def _container_app(ledger, name, port, owner="alice"):
    from dockhand.schemas.allocation import AppCategory, AppKind, PortAllocation

    await ledger.set_metadata(
        name,
        PortAllocation(port=port, owner=owner, kind=AppKind.CONTAINER, category=AppCategory.BACKEND),
    )


class TestConfigConvergence:
    """Tests for proxy config convergence."""

    @pytest.mark.asyncio
    async def test_routes_follow_the_ledger(self, reconciler, ledger, proxy, runtime, build_root):
        await _static_app(ledger, build_root, "demo-app", 3320)
        await _container_app(ledger, "demo-api", 3321)
        runtime.add("demo-api", ports=[3321])
        proxy.listen.update({"ghost-app": 3320, "demo-app": 3325, "demo-api": 3321})
        proxy.routes.update({"gone-app": 3330, "demo-app": 3325})

        report = await reconciler.reconcile()

        assert proxy.listen == {"demo-app": 3320}
        assert proxy.routes == {"demo-app": 3320, "demo-api": 3321}
        assert sorted(report.removed_orphans) == ["ghost-app", "gone-app"]
        assert sorted(report.removed_mismatched) == ["demo-api", "demo-app"]
        assert sorted(report.regenerated) == ["demo-api", "demo-app"]
        assert report.reloaded is True
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_no_two_configs_share_a_port(self, reconciler, ledger, proxy, build_root):
        await _static_app(ledger, build_root, "demo-app", 3320)
        await _static_app(ledger, build_root, "other-app", 3321)
        # Stale state: other-app's config claims demo-app's port
        proxy.listen.update({"other-app": 3320})

        await reconciler.reconcile()

        ports = list(proxy.listen.values())
        assert len(ports) == len(set(ports))
        assert proxy.listen == {"demo-app": 3320, "other-app": 3321}

    @pytest.mark.asyncio
    async def test_second_sweep_changes_nothing(self, reconciler, ledger, proxy, build_root):
        await _static_app(ledger, build_root, "demo-app", 3320)
        proxy.listen["ghost-app"] = 3321

        await reconciler.reconcile()
        state = (dict(proxy.listen), dict(proxy.routes), await ledger.list_all())
        report = await reconciler.reconcile()

        assert (dict(proxy.listen), dict(proxy.routes), await ledger.list_all()) == state
        assert report.removed_orphans == []
        assert report.removed_mismatched == []


class TestDrift:
    """Tests for static apps whose files disappeared."""

    @pytest.mark.asyncio
    async def test_missing_build_releases_app(self, reconciler, ledger, proxy, build_root):
        await _static_app(ledger, build_root, "demo-app", 3320)
        (build_root / "demo-app" / "index.html").unlink()
        proxy.listen["demo-app"] = 3320
        proxy.routes["demo-app"] = 3320

        report = await reconciler.reconcile()

        assert report.released_drifted == ["demo-app"]
        assert await ledger.get_metadata("demo-app") is None
        assert proxy.listen == {}
        assert proxy.routes == {}

    @pytest.mark.asyncio
    async def test_deploy_in_progress_is_left_alone(self, reconciler, ledger, build_root):
        from dockhand.schemas.allocation import PortAllocation

        await ledger.set_metadata("demo-app", PortAllocation(port=3320, owner="alice"))
        (build_root / ".temp-demo-app-1700000000000").mkdir()

        report = await reconciler.reconcile()

        assert report.released_drifted == []
        assert await ledger.get_port("demo-app") == 3320


class TestRuntimeAndFilesystem:
    """Tests for zombie removal and directory pruning."""

    @pytest.mark.asyncio
    async def test_zombie_containers_removed(self, reconciler, ledger, runtime):
        await _container_app(ledger, "demo-api", 3321)
        runtime.add("demo-api", ports=[3321])
        runtime.add("zombie-api", ports=[3400], running=False)
        runtime.add("postgres", ports=[5432])
        runtime.add("worker", ports=[])

        report = await reconciler.reconcile()

        assert report.removed_zombies == ["zombie-api"]
        assert sorted(runtime.containers) == ["demo-api", "postgres", "worker"]

    @pytest.mark.asyncio
    async def test_orphaned_directories_pruned(self, reconciler, ledger, proxy, build_root):
        await _static_app(ledger, build_root, "demo-app", 3320)
        (build_root / "stale-app").mkdir()
        (build_root / ".backups").mkdir()
        proxy.routes["stale-app"] = 3330

        report = await reconciler.reconcile()

        assert report.pruned_dirs == ["stale-app"]
        assert not (build_root / "stale-app").exists()
        assert (build_root / ".backups").exists()
        assert (build_root / "demo-app").exists()
        assert "stale-app" not in proxy.routes

    @pytest.mark.asyncio
    async def test_runtime_unavailable_is_reported(self, reconciler, ledger, runtime, build_root, proxy):
        from dockhand.core.exceptions import ExternalCommandError

        await _static_app(ledger, build_root, "demo-app", 3320)
        runtime.list_error = ExternalCommandError("docker ps -a", 1, "Cannot connect to the Docker daemon")

        report = await reconciler.reconcile()

        assert any(error.startswith("runtime:") for error in report.errors)
        assert proxy.listen == {"demo-app": 3320}
        assert report.reloaded is True


class TestReload:
    """Tests for the final proxy reload and reporting."""

    @pytest.mark.asyncio
    async def test_reload_failure_is_recorded(self, reconciler, ledger, proxy, build_root):
        await _static_app(ledger, build_root, "demo-app", 3320)
        proxy.reload_failures = 1

        report = await reconciler.reconcile()

        assert report.reloaded is False
        assert any(error.startswith("reload:") for error in report.errors)

        # The next sweep does not depend on the previous one having worked
        report = await reconciler.reconcile()
        assert report.reloaded is True

    @pytest.mark.asyncio
    async def test_completed_event(self, reconciler, dispatcher):
        from dockhand.core.events import ReconcileCompletedEvent

        received = []

        def on_completed(event):
            received.append(event)

        dispatcher.register(ReconcileCompletedEvent, on_completed)

        await reconciler.reconcile()

        assert received[0].summary["reloaded"] == 1
        assert received[0].summary["errors"] == 0

    @pytest.mark.asyncio
    async def test_scheduled_sweep_never_raises(self):
        from dockhand.services import reconciler as reconciler_module

        with patch.object(
            reconciler_module.reconciler, "reconcile", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            await reconciler_module.run_reconcile()
