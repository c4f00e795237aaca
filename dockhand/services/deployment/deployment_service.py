"""
Deployment orchestration service.

Coordinates between:
- PortLedger for port ownership
- ContainerRuntime for container-kind apps
- ProxySynthesizer for listening configs and gateway routes
- the local build root for static-kind apps

Every pipeline is a sequence of reversible steps (see ``steps.py``); any
failure unwinds what the attempt did, restores the ledger to its
pre-attempt record, and re-raises the original error.
"""
import asyncio
import logging
import os
import shutil
import stat
import time
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Union

import httpx

from dockhand.core.config import settings
from dockhand.core.events import (
    AppDeployedEvent,
    AppDeploymentFailedEvent,
    AppRemovedEvent,
    ContainerActionEvent,
    EventDispatcher,
    event_dispatcher,
)
from dockhand.core.exceptions import (
    ContainerNotFoundError,
    ContainerNotRunningError,
    ContainerStartError,
    DeploymentVerificationError,
    DomainException,
    ImageLoadError,
    InvalidActionError,
    NotAppOwnerError,
)
from dockhand.core.retry import RetryPolicy
from dockhand.schemas.allocation import (
    AppCategory,
    AppKind,
    AppRemovalResult,
    ContainerActionResult,
    DeploymentResult,
    PortAllocation,
)
from dockhand.services.deployment.steps import DeploymentAttempt, StepRunner
from dockhand.services.deployment.validator import (
    extract_archive,
    validate_app_name,
    validate_archive,
)
from dockhand.services.ledger.port_ledger import PortLedger, port_ledger
from dockhand.services.proxy.nginx_proxy import NginxProxySynthesizer
from dockhand.services.proxy.proxy_base import ProxySynthesizer
from dockhand.services.runtime.docker_runtime import DockerRuntime
from dockhand.services.runtime.runtime_base import ContainerRuntime, RunSpec

logger = logging.getLogger(__name__)

CONTAINER_ACTIONS = ("start", "stop")


def _timestamp() -> int:
    return int(time.time() * 1000)


def _make_world_readable(root: Path) -> None:
    """chmod -R a+rX: readable by everyone, directories traversable."""
    for dirpath, dirnames, filenames in os.walk(root):
        mode = os.stat(dirpath).st_mode
        os.chmod(dirpath, mode | 0o555)
        for filename in filenames:
            path = os.path.join(dirpath, filename)
            if os.path.islink(path):
                continue
            mode = os.stat(path).st_mode
            extra = 0o444
            if mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
                extra |= 0o111
            os.chmod(path, mode | extra)


class DeploymentService:
    """
    Orchestration service for app deployments.

    Provides the public pipeline operations: static and container deploys,
    container lifecycle control, status lookup and app removal.
    """

    def __init__(
        self,
        ledger: PortLedger = None,
        runtime: ContainerRuntime = None,
        proxy: ProxySynthesizer = None,
        build_root: str = None,
        backup_root: str = None,
        port_policy: RetryPolicy = None,
        running_policy: RetryPolicy = None,
        dispatcher: EventDispatcher = None,
    ):
        """
        Initialize with collaborator instances (defaults built from settings).

        Args:
            ledger: Port ledger
            runtime: Container runtime
            proxy: Proxy config synthesizer
            build_root: Directory holding live static trees
            backup_root: Directory receiving the previous tree during a swap
            port_policy: Bound on container start attempts after port conflicts
            running_policy: Poll schedule for the container running-state check
            dispatcher: Event dispatcher receiving domain events
        """
        self.runtime = runtime or DockerRuntime()
        self.ledger = ledger or port_ledger
        self.proxy = proxy or NginxProxySynthesizer()
        self.build_root = Path(build_root or settings.BUILD_ROOT)
        if backup_root:
            self.backup_root = Path(backup_root)
        elif build_root:
            self.backup_root = self.build_root / ".backups"
        else:
            self.backup_root = Path(settings.get_backup_root())
        self.port_policy = port_policy or RetryPolicy(max_attempts=settings.CONTAINER_PORT_ATTEMPTS)
        self.running_policy = running_policy or RetryPolicy(
            max_attempts=settings.CONTAINER_RUNNING_CHECKS,
            delay=settings.CONTAINER_RUNNING_CHECK_INTERVAL,
        )
        self.dispatcher = dispatcher or event_dispatcher
        self._app_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        """Per-app lock serializing pipelines for one name within this process."""
        return self._app_locks.setdefault(name, asyncio.Lock())

    # =========================================================================
    # Shared step helpers
    # =========================================================================

    async def _restore_ledger(self, attempt: DeploymentAttempt) -> None:
        if attempt.previous is not None:
            await self.ledger.set_metadata(attempt.app_name, attempt.previous)
        else:
            await self.ledger.release(attempt.app_name)

    async def _reload_if_touched(self, attempt: DeploymentAttempt) -> None:
        if attempt.proxy_touched:
            await self.proxy.reload()

    async def _install_routes(self, name: str, record: PortAllocation) -> None:
        if record.kind == AppKind.STATIC:
            await self.proxy.generate_listen_config(name, record.port)
        await self.proxy.install_gateway_route(name, record.port)

    async def _restore_routes(self, attempt: DeploymentAttempt) -> None:
        """Drop whatever routing the attempt wrote; put back a previous static app's routes."""
        await self.proxy.remove_all_configs(attempt.app_name)
        previous = attempt.previous
        if previous is not None and previous.kind == AppKind.STATIC:
            await self._install_routes(attempt.app_name, previous)

    async def _remove_container_quietly(self, name: str) -> None:
        try:
            await self.runtime.remove(name)
        except DomainException as e:
            logger.warning(f"[{name}] Could not remove container: {e.message}")

    @staticmethod
    def _remove_file(path: str, name: str) -> None:
        try:
            if os.path.exists(path):
                os.remove(path)
                logger.info(f"[{name}] Cleaned up upload {path}")
        except OSError as e:
            logger.warning(f"[{name}] Could not remove upload {path}: {e}")

    async def _emit(self, event) -> None:
        await self.dispatcher.dispatch_async(event)

    # =========================================================================
    # Static bundles
    # =========================================================================

    async def _extract(self, archive_path: str, attempt: DeploymentAttempt) -> None:
        await asyncio.to_thread(extract_archive, archive_path, str(attempt.temp_path))

    async def _remove_temp(self, attempt: DeploymentAttempt) -> None:
        if attempt.temp_path is not None and attempt.temp_path.exists():
            await asyncio.to_thread(shutil.rmtree, attempt.temp_path)

    async def _swap_live_directory(self, attempt: DeploymentAttempt, live_path: Path, stamp: int) -> None:
        if live_path.exists():
            self.backup_root.mkdir(parents=True, exist_ok=True)
            backup_path = self.backup_root / f"{attempt.app_name}-{stamp}"
            logger.info(f"[{attempt.app_name}] Backing up existing build to {backup_path}")
            shutil.move(str(live_path), str(backup_path))
            attempt.backup_path = backup_path

        os.rename(attempt.temp_path, live_path)
        attempt.live_installed = True

        try:
            await asyncio.to_thread(_make_world_readable, live_path)
        except OSError as e:
            logger.warning(f"[{attempt.app_name}] Could not make build directory readable: {e}")

    async def _restore_live_directory(self, attempt: DeploymentAttempt, live_path: Path) -> None:
        if attempt.backup_path is not None and attempt.backup_path.exists():
            if live_path.exists():
                await asyncio.to_thread(shutil.rmtree, live_path)
            shutil.move(str(attempt.backup_path), str(live_path))
            logger.info(f"[{attempt.app_name}] Restored previous build")
        elif attempt.live_installed and live_path.exists():
            await asyncio.to_thread(shutil.rmtree, live_path)
            logger.info(f"[{attempt.app_name}] Removed new build directory")

    @staticmethod
    def _verify_entry_point(name: str, live_path: Path) -> None:
        entry_point = settings.ENTRY_POINT_FILE
        if not (live_path / entry_point).is_file():
            raise DeploymentVerificationError(
                name, f"{entry_point} not found at build root after extraction"
            )

    async def _install_static_routes(self, attempt: DeploymentAttempt) -> None:
        attempt.proxy_touched = True
        attempt.route_installed = True
        await self.proxy.generate_listen_config(attempt.app_name, attempt.port)
        await self.proxy.install_gateway_route(attempt.app_name, attempt.port)

    async def deploy_static(self, name: str, archive_path: str, owner: str) -> DeploymentResult:
        """
        Deploy a static bundle.

        Args:
            name: App name
            archive_path: Uploaded ZIP archive (deleted afterwards, success or not)
            owner: Identity deploying the app

        Returns:
            DeploymentResult with the port and the public gateway path

        Raises:
            ValidationError: Bad name or archive; nothing was changed
            OwnershipConflictError: The name belongs to someone else
            OperationError: A pipeline step failed; everything was unwound
        """
        async with self._lock_for(name):
            try:
                return await self._deploy_static(name, archive_path, owner)
            except Exception as e:
                await self._emit(AppDeploymentFailedEvent(
                    app_name=name, owner=owner, kind=AppKind.STATIC.value, error_message=str(e),
                ))
                raise
            finally:
                self._remove_file(archive_path, name)

    async def _deploy_static(self, name: str, archive_path: str, owner: str) -> DeploymentResult:
        logger.info(f"[{name}] Validating...")
        validate_app_name(name)
        validate_archive(archive_path)

        attempt = DeploymentAttempt(app_name=name, owner=owner, kind=AppKind.STATIC)
        attempt.previous = await self.ledger.get_metadata(name)
        live_path = self.build_root / name
        stamp = _timestamp()
        self.build_root.mkdir(parents=True, exist_ok=True)
        attempt.temp_path = self.build_root / f".temp-{name}-{stamp}"

        async with StepRunner(name) as steps:
            # Created before the ledger can name a static app with no build yet,
            # so a reconcile sweep treats the app as in flight and not as drift
            await steps.run(
                "create staging directory", attempt.temp_path.mkdir,
                undo=partial(self._remove_temp, attempt),
            )
            attempt.port = await steps.run(
                "allocate port",
                self.ledger.allocate, name, owner,
                kind=AppKind.STATIC, category=AppCategory.FRONTEND,
            )
            steps.on_failure("restore port allocation", partial(self._restore_ledger, attempt))
            steps.on_failure("reload proxy", partial(self._reload_if_touched, attempt))

            await steps.run("remove same-name container", self._remove_container_quietly, name)
            await steps.run("extract archive", self._extract, archive_path, attempt)
            await steps.run(
                "swap live directory", self._swap_live_directory, attempt, live_path, stamp,
                undo=partial(self._restore_live_directory, attempt, live_path),
            )
            await steps.run("verify entry point", self._verify_entry_point, name, live_path)
            await steps.run(
                "install routes", self._install_static_routes, attempt,
                undo=partial(self._restore_routes, attempt),
            )
            await steps.run("reload proxy", self.proxy.reload)

        if attempt.backup_path is not None and attempt.backup_path.exists():
            try:
                await asyncio.to_thread(shutil.rmtree, attempt.backup_path)
            except OSError as e:
                logger.warning(f"[{name}] Could not remove backup {attempt.backup_path}: {e}")

        logger.info(f"[{name}] Deployed successfully on port {attempt.port}")
        await self._emit(AppDeployedEvent(
            app_name=name, owner=owner, kind=AppKind.STATIC.value, port=attempt.port,
        ))
        return DeploymentResult(name=name, port=attempt.port, path=f"/{name}/")

    # =========================================================================
    # Containers
    # =========================================================================

    async def _clear_container_configs(self, attempt: DeploymentAttempt) -> None:
        attempt.proxy_touched = True
        await self.proxy.remove_all_configs(attempt.app_name)
        await self.proxy.remove_configs_listening_on_port(attempt.port)

    async def _start_container(
        self,
        attempt: DeploymentAttempt,
        image: str,
        internal_port: int,
        category: AppCategory,
    ) -> str:
        """
        Start the container, moving to a fresh port whenever the host port is taken.

        Each retry excludes every port tried so far.
        """
        name = attempt.app_name
        for attempt_no in self.port_policy.attempts():
            attempt.attempted_ports.append(attempt.port)
            logger.info(
                f"[{name}] Starting container (attempt {attempt_no}/{self.port_policy.max_attempts}): "
                f"{image} on port {attempt.port}:{internal_port}"
            )
            spec = RunSpec(
                name=name,
                image=image,
                host_port=attempt.port,
                container_port=internal_port,
                memory_limit=settings.DOCKER_MEMORY_LIMIT,
                cpu_limit=settings.DOCKER_CPU_LIMIT,
                restart_policy=settings.DOCKER_RESTART_POLICY,
            )
            try:
                return await self.runtime.run(spec)
            except ContainerStartError as e:
                await self._remove_container_quietly(name)
                if not e.port_conflict or self.port_policy.is_last(attempt_no):
                    raise

                logger.warning(f"[{name}] Port {attempt.port} is busy; reallocating a new port and retrying...")
                attempt.port = await self.ledger.allocate(
                    name,
                    attempt.owner,
                    kind=AppKind.CONTAINER,
                    category=category,
                    reuse_existing=False,
                    exclude_ports=attempt.attempted_ports,
                )
                await self.proxy.remove_configs_listening_on_port(attempt.port)
                await self.port_policy.sleep(attempt_no)

        # Unreachable with max_attempts >= 1; kept for type checkers
        raise ContainerNotRunningError(name)

    async def _wait_until_running(self, name: str) -> None:
        for attempt_no in self.running_policy.attempts():
            try:
                if await self.runtime.is_running(name):
                    logger.info(f"[{name}] Container verified as running")
                    return
            except ContainerNotFoundError:
                logger.info(f"[{name}] Container check failed, retrying...")
            if not self.running_policy.is_last(attempt_no):
                await self.running_policy.sleep(attempt_no)

        raise ContainerNotRunningError(name)

    async def _install_gateway_route(self, attempt: DeploymentAttempt) -> None:
        attempt.route_installed = True
        await self.proxy.install_gateway_route(attempt.app_name, attempt.port)

    async def _probe_route(self, name: str) -> Optional[int]:
        """
        Request the new gateway route once, for the operator's benefit only.

        Returns:
            HTTP status code, or None if the request failed
        """
        url = f"{settings.GATEWAY_BASE_URL.rstrip('/')}/{name}/"
        try:
            async with httpx.AsyncClient(timeout=settings.ROUTE_PROBE_TIMEOUT) as client:
                response = await client.get(url)
        except Exception as e:
            # Includes malformed gateway URLs, which httpx reports outside HTTPError
            logger.warning(f"[{name}] Could not verify route {url}: {e}")
            return None

        if response.status_code in (200, 301, 302):
            logger.info(f"[{name}] Route verified - HTTP {response.status_code}")
        else:
            logger.warning(f"[{name}] Route returned HTTP {response.status_code} - may need manual verification")
        return response.status_code

    async def deploy_container(
        self,
        name: str,
        image: str,
        owner: str,
        internal_port: int = None,
        category: Union[AppCategory, str] = AppCategory.BACKEND,
    ) -> DeploymentResult:
        """
        Deploy a container image.

        Args:
            name: App name, also used as the container name
            image: Image reference to run
            owner: Identity deploying the app
            internal_port: Port the process listens on inside the container
            category: Display category recorded in the ledger

        Returns:
            DeploymentResult with the port and the public gateway path
        """
        async with self._lock_for(name):
            try:
                return await self._deploy_container(
                    name, image, owner,
                    internal_port or settings.DEFAULT_CONTAINER_PORT,
                    AppCategory(category),
                )
            except Exception as e:
                await self._emit(AppDeploymentFailedEvent(
                    app_name=name, owner=owner, kind=AppKind.CONTAINER.value, error_message=str(e),
                ))
                raise

    async def _deploy_container(
        self,
        name: str,
        image: str,
        owner: str,
        internal_port: int,
        category: AppCategory,
    ) -> DeploymentResult:
        logger.info(f"[{name}] Validating container deployment...")
        validate_app_name(name)

        attempt = DeploymentAttempt(app_name=name, owner=owner, kind=AppKind.CONTAINER)
        attempt.previous = await self.ledger.get_metadata(name)

        async with StepRunner(name) as steps:
            attempt.port = await steps.run(
                "allocate port",
                self.ledger.allocate, name, owner,
                kind=AppKind.CONTAINER, category=category,
            )
            steps.on_failure("restore port allocation", partial(self._restore_ledger, attempt))
            steps.on_failure("reload proxy", partial(self._reload_if_touched, attempt))

            await steps.run("remove existing container", self._remove_container_quietly, name)
            await steps.run(
                "remove stale proxy configs", self._clear_container_configs, attempt,
                undo=partial(self._restore_routes, attempt),
            )
            steps.on_failure("remove new container", partial(self.runtime.remove, name))
            await steps.run(
                "start container", self._start_container, attempt, image, internal_port, category,
            )
            await steps.run("verify running", self._wait_until_running, name)
            await steps.run("install gateway route", self._install_gateway_route, attempt)
            await steps.run("reload proxy", self.proxy.reload)

        await self._probe_route(name)

        logger.info(f"[{name}] Container deployed successfully on port {attempt.port}")
        await self._emit(AppDeployedEvent(
            app_name=name,
            owner=owner,
            kind=AppKind.CONTAINER.value,
            port=attempt.port,
            details={"image": image, "category": category.value},
        ))
        return DeploymentResult(name=name, port=attempt.port, path=f"/{name}/")

    async def load_and_deploy_container(
        self,
        name: str,
        archive_path: str,
        owner: str,
        internal_port: int = None,
        category: Union[AppCategory, str] = AppCategory.BACKEND,
    ) -> DeploymentResult:
        """
        Load an image archive, verify the image, then deploy it.

        The archive is deleted afterwards, whether the deployment succeeded or not.
        """
        try:
            validate_app_name(name)
            logger.info(f"[{name}] Loading image archive {archive_path}...")
            image = await self.runtime.load_image(archive_path)
            if not await self.runtime.image_exists(image):
                raise ImageLoadError(archive_path, f"Image {image} failed verification")
            logger.info(f"[{name}] Image verified: {image}")

            return await self.deploy_container(name, image, owner, internal_port, category)
        finally:
            self._remove_file(archive_path, name)

    # =========================================================================
    # Lifecycle and status
    # =========================================================================

    async def manage_container(self, name: str, action: str) -> ContainerActionResult:
        """
        Start or stop a container; a no-op if it is already in the requested state.

        Raises:
            InvalidActionError: If action is not "start" or "stop"
            ContainerNotFoundError: If the container does not exist
            ExternalCommandError: If the container runtime could not be queried
        """
        if action not in CONTAINER_ACTIONS:
            raise InvalidActionError(action)

        async with self._lock_for(name):
            logger.info(f"[{name}] Attempting to {action} container...")
            running = await self.runtime.is_running(name)

            if action == "stop":
                if not running:
                    logger.info(f"[{name}] Container already stopped")
                    return ContainerActionResult(success=True, message="Already stopped")
                await self.runtime.stop(name)
                message = "Container stopped"
            else:
                if running:
                    logger.info(f"[{name}] Container already running")
                    return ContainerActionResult(success=True, message="Already running")
                await self.runtime.start(name)
                message = "Container started"

        logger.info(f"[{name}] {message}")
        await self._emit(ContainerActionEvent(app_name=name, action=action, message=message))
        return ContainerActionResult(success=True, message=message)

    async def get_process_statuses(self, names: List[str]) -> Dict[str, str]:
        """Map each name to "running" or "stopped"; empty if the runtime is unreachable."""
        if not names:
            return {}
        try:
            running = set(await self.runtime.list_running_names())
        except DomainException as e:
            logger.warning(f"Failed to get container statuses: {e.message}")
            return {}
        return {name: "running" if name in running else "stopped" for name in names}

    async def remove_app(self, name: str, requester: str) -> AppRemovalResult:
        """
        Delete an app: routing, container or build directory, and its port.

        Raises:
            NotAppOwnerError: If the requester is the admin identity or not the owner
        """
        validate_app_name(name)
        if requester == self.ledger.admin_identity:
            raise NotAppOwnerError(name, requester, "Admins are read-only")

        async with self._lock_for(name):
            record = await self.ledger.get_metadata(name)
            if record is not None and record.owner and record.owner != requester:
                raise NotAppOwnerError(name, requester)

            logger.info(f"[{name}] Deleting app (port {record.port if record else 'unknown'})")
            await self.proxy.remove_all_configs(name)
            if record is not None:
                await self.proxy.remove_configs_listening_on_port(record.port)

            if record is not None and record.kind == AppKind.CONTAINER:
                await self._remove_container_quietly(name)
            else:
                live_path = self.build_root / name
                if live_path.exists():
                    await asyncio.to_thread(shutil.rmtree, live_path)
                    logger.info(f"[{name}] Build directory removed")

            await self.ledger.release(name)
            await self.proxy.reload()

        port = record.port if record else None
        await self._emit(AppRemovedEvent(app_name=name, owner=requester, port=port))
        return AppRemovalResult(
            success=True,
            message=f"App '{name}' deleted successfully. Port {port or 'unknown'} has been freed.",
            port=port,
        )


# Singleton instance
deployment_service = DeploymentService()
