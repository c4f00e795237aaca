"""
Tests for the container image pipeline.

Tests cover:
- Deploy with port-conflict retry on fresh ports
- Bounded retries and non-port start failures
- Rollback when the container never reaches running
- Switching an app from a static bundle to a container
- Loading image archives before deploying
- The diagnostic route check never failing a deploy

Run with: pytest tests/test_deployment_container.py -v
"""
import os

import pytest


class TestContainerDeploy:
    """Tests for DeploymentService.deploy_container."""

    @pytest.mark.asyncio
    async def test_deploy(self, service, runtime, proxy, ledger):
        from dockhand.schemas.allocation import AppKind

        result = await service.deploy_container("demo-api", "demo-api:latest", "alice", internal_port=8080)

        assert result.port == 3320
        assert result.path == "/demo-api/"
        spec = runtime.specs["demo-api"]
        assert spec.host_port == 3320
        assert spec.container_port == 8080
        assert spec.image == "demo-api:latest"
        assert proxy.routes == {"demo-api": 3320}
        assert proxy.listen == {}
        assert proxy.reloads == 1
        record = await ledger.get_metadata("demo-api")
        assert record.kind == AppKind.CONTAINER
        assert record.category.value == "backend"

    @pytest.mark.asyncio
    async def test_port_conflict_moves_to_fresh_ports(self, service, runtime, ledger, proxy):
        """Host ports 3320 and 3321 are taken by something the ledger does not know."""
        runtime.busy_ports.update({3320, 3321})

        result = await service.deploy_container("demo-api", "demo-api:latest", "alice")

        assert result.port == 3322
        assert runtime.run_ports == [3320, 3321, 3322]
        assert await ledger.get_port("demo-api") == 3322
        assert proxy.routes == {"demo-api": 3322}
        assert runtime.containers["demo-api"].running is True

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, service, runtime, ledger, proxy):
        from dockhand.core.exceptions import ContainerStartError

        runtime.busy_ports.update(range(3320, 3330))

        with pytest.raises(ContainerStartError) as exc_info:
            await service.deploy_container("demo-api", "demo-api:latest", "alice")

        assert exc_info.value.port_conflict is True
        # Five attempts, never the same port twice
        assert runtime.run_ports == [3320, 3321, 3322, 3323, 3324]
        assert await ledger.get_metadata("demo-api") is None
        assert "demo-api" not in runtime.containers
        assert proxy.routes == {}

    @pytest.mark.asyncio
    async def test_other_start_failure_is_not_retried(self, service, runtime, ledger):
        from dockhand.core.exceptions import ContainerStartError

        runtime.run_errors.append("Unable to find image 'nope:latest' locally")

        with pytest.raises(ContainerStartError):
            await service.deploy_container("demo-api", "nope:latest", "alice")

        assert runtime.run_ports == [3320]
        assert await ledger.get_metadata("demo-api") is None

    @pytest.mark.asyncio
    async def test_not_running_restores_previous_port(self, service, runtime, ledger, proxy):
        """A redeploy that reallocated and then failed puts the old record back."""
        from dockhand.core.exceptions import ContainerNotRunningError

        await service.deploy_container("demo-api", "demo-api:1", "alice")
        record_before = await ledger.get_metadata("demo-api")
        runtime.busy_ports.add(3320)
        runtime.starts_running = False

        with pytest.raises(ContainerNotRunningError) as exc_info:
            await service.deploy_container("demo-api", "demo-api:2", "alice")

        assert str(exc_info.value) == "Container failed to start or stopped unexpectedly"
        assert runtime.run_ports[-2:] == [3320, 3321]
        assert await ledger.get_metadata("demo-api") == record_before
        assert "demo-api" not in runtime.containers
        assert proxy.routes == {}

    @pytest.mark.asyncio
    async def test_static_app_becomes_container(self, service, proxy, make_zip):
        """Replacing a static bundle drops its listening config on the shared port."""
        await service.deploy_static("demo-app", make_zip(), "alice")
        proxy.listen["ghost-app"] = 3320

        result = await service.deploy_container("demo-app", "demo-app:latest", "alice")

        assert result.port == 3320
        assert proxy.listen == {}
        assert proxy.routes == {"demo-app": 3320}

    @pytest.mark.asyncio
    async def test_other_owner_is_refused(self, service, runtime):
        from dockhand.core.exceptions import OwnershipConflictError

        await service.deploy_container("demo-api", "demo-api:1", "alice")

        with pytest.raises(OwnershipConflictError):
            await service.deploy_container("demo-api", "evil:latest", "bob")

        assert runtime.specs["demo-api"].image == "demo-api:1"
        assert runtime.containers["demo-api"].running is True

    @pytest.mark.asyncio
    async def test_deployed_event_carries_image(self, service, dispatcher):
        from dockhand.core.events import AppDeployedEvent

        received = []

        def on_deployed(event):
            received.append(event)

        dispatcher.register(AppDeployedEvent, on_deployed)

        await service.deploy_container("demo-api", "demo-api:latest", "alice", category="frontend")

        assert received[0].details == {"image": "demo-api:latest", "category": "frontend"}


class TestRouteCheck:
    """Tests for the one-shot gateway route check after a container deploy."""

    @pytest.mark.asyncio
    async def test_malformed_gateway_url_returns_none(self, service, monkeypatch):
        from dockhand.core.config import settings
        from dockhand.services.deployment.deployment_service import DeploymentService

        monkeypatch.setattr(settings, "GATEWAY_BASE_URL", "http://[::1")

        assert await DeploymentService._probe_route(service, "demo-api") is None

    @pytest.mark.asyncio
    async def test_malformed_gateway_url_does_not_fail_deploy(self, service, runtime, ledger, dispatcher, monkeypatch):
        """The route check is diagnostic: a committed deploy stays a success."""
        from dockhand.core.config import settings
        from dockhand.core.events import AppDeploymentFailedEvent

        monkeypatch.setattr(settings, "GATEWAY_BASE_URL", "http://[::1")
        del service._probe_route
        failures = []
        dispatcher.register(AppDeploymentFailedEvent, failures.append)

        result = await service.deploy_container("demo-api", "demo-api:latest", "alice")

        assert result.port == 3320
        assert runtime.containers["demo-api"].running is True
        assert await ledger.get_port("demo-api") == 3320
        assert failures == []


class TestLoadAndDeploy:
    """Tests for DeploymentService.load_and_deploy_container."""

    @pytest.fixture
    def image_archive(self, tmp_path):
        path = tmp_path / "demo-api.tar"
        path.write_bytes(b"image layers")
        return str(path)

    @pytest.mark.asyncio
    async def test_load_and_deploy(self, service, runtime, image_archive):
        runtime.loaded_image = "demo-api:latest"
        runtime.images.add("demo-api:latest")

        result = await service.load_and_deploy_container("demo-api", image_archive, "alice")

        assert result.port == 3320
        assert runtime.specs["demo-api"].image == "demo-api:latest"
        assert not os.path.exists(image_archive)

    @pytest.mark.asyncio
    async def test_unverified_image_is_rejected(self, service, runtime, ledger, image_archive):
        from dockhand.core.exceptions import ImageLoadError

        runtime.loaded_image = "demo-api:latest"

        with pytest.raises(ImageLoadError):
            await service.load_and_deploy_container("demo-api", image_archive, "alice")

        assert await ledger.get_metadata("demo-api") is None
        assert not os.path.exists(image_archive)

    @pytest.mark.asyncio
    async def test_load_failure(self, service, image_archive):
        from dockhand.core.exceptions import ImageLoadError

        with pytest.raises(ImageLoadError) as exc_info:
            await service.load_and_deploy_container("demo-api", image_archive, "alice")

        assert "unexpected EOF" in str(exc_info.value)
        assert not os.path.exists(image_archive)
