"""
Ledger-driven reconciliation.

The port ledger is the desired state. One sweep forces the proxy config
store, the container runtime and the build root back into agreement with it:

1. Remove generated configs with no ledger record (orphans), and listening
   configs whose port or kind disagrees with the ledger (mismatches).
   This runs before anything is regenerated, so two configs never claim the
   same port at once.
2. For every record, regenerate its routing. A static app whose live tree
   or entry point is gone is unrecoverable drift: its routing is removed and
   its record released.
3. Force-remove containers publishing a managed port under a name the
   ledger does not know (zombies).
4. Prune build directories with no ledger record.
5. Reload the proxy.

Every action is idempotent; a sweep never assumes the previous one worked.
"""
import asyncio
import logging
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Set

from dockhand.core.config import settings
from dockhand.core.events import EventDispatcher, ReconcileCompletedEvent, event_dispatcher
from dockhand.core.exceptions import DomainException
from dockhand.schemas.allocation import AppKind, PortAllocation
from dockhand.services.ledger.port_ledger import PortLedger, port_ledger
from dockhand.services.proxy.nginx_proxy import NginxProxySynthesizer
from dockhand.services.proxy.proxy_base import ProxySynthesizer
from dockhand.services.runtime.docker_runtime import DockerRuntime
from dockhand.services.runtime.runtime_base import ContainerRuntime

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """What one reconciliation sweep changed."""

    removed_orphans: List[str] = field(default_factory=list)
    removed_mismatched: List[str] = field(default_factory=list)
    regenerated: List[str] = field(default_factory=list)
    released_drifted: List[str] = field(default_factory=list)
    removed_zombies: List[str] = field(default_factory=list)
    pruned_dirs: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    reloaded: bool = False

    def summary(self) -> Dict[str, int]:
        return {
            key: len(value) if isinstance(value, list) else int(value)
            for key, value in asdict(self).items()
        }


class Reconciler:
    """Recomputes routing and runtime state from the port ledger."""

    def __init__(
        self,
        ledger: PortLedger = None,
        runtime: ContainerRuntime = None,
        proxy: ProxySynthesizer = None,
        build_root: str = None,
        port_range_start: int = None,
        port_range_end: int = None,
        dispatcher: EventDispatcher = None,
    ):
        self.runtime = runtime or DockerRuntime()
        self.ledger = ledger or port_ledger
        self.proxy = proxy or NginxProxySynthesizer()
        self.build_root = Path(build_root or settings.BUILD_ROOT)
        self.port_range_start = port_range_start or settings.PORT_RANGE_START
        self.port_range_end = port_range_end or settings.PORT_RANGE_END
        self.dispatcher = dispatcher or event_dispatcher

    def _in_range(self, port: int) -> bool:
        return self.port_range_start <= port <= self.port_range_end

    async def _remove_stray_configs(
        self, records: Dict[str, PortAllocation], report: ReconcileReport
    ) -> None:
        for name, port in (await self.proxy.list_listen_configs()).items():
            record = records.get(name)
            try:
                if record is None:
                    logger.warning(f"[{name}] Removing orphan config (no ledger record)")
                    await self.proxy.remove_all_configs(name)
                    report.removed_orphans.append(name)
                elif record.kind == AppKind.CONTAINER:
                    logger.warning(f"[{name}] Removing listening config of a container app")
                    await self.proxy.remove_listen_config(name)
                    report.removed_mismatched.append(name)
                elif port != record.port:
                    logger.warning(
                        f"[{name}] Removing mismatched config (listens on {port}, ledger says {record.port})"
                    )
                    await self.proxy.remove_listen_config(name)
                    report.removed_mismatched.append(name)
            except (DomainException, OSError) as e:
                logger.error(f"[{name}] Could not remove config: {e}")
                report.errors.append(f"{name}: {e}")

        for name in (await self.proxy.list_gateway_routes()):
            if name in records or name in report.removed_orphans:
                continue
            try:
                logger.warning(f"[{name}] Removing orphan gateway route (no ledger record)")
                await self.proxy.remove_all_configs(name)
                report.removed_orphans.append(name)
            except (DomainException, OSError) as e:
                logger.error(f"[{name}] Could not remove gateway route: {e}")
                report.errors.append(f"{name}: {e}")

    async def _converge_record(self, name: str, record: PortAllocation, report: ReconcileReport) -> None:
        if record.kind == AppKind.CONTAINER:
            await self.proxy.remove_listen_config(name)
            await self.proxy.install_gateway_route(name, record.port)
            report.regenerated.append(name)
            return

        entry_point = self.build_root / name / settings.ENTRY_POINT_FILE
        if not entry_point.is_file():
            if any(self.build_root.glob(f".temp-{name}-*")):
                logger.info(f"[{name}] Deployment in progress, leaving it alone")
                return
            logger.warning(f"[{name}] Build files missing ({entry_point}); releasing app")
            await self.proxy.remove_all_configs(name)
            await self.ledger.release(name)
            report.released_drifted.append(name)
            return

        await self.proxy.generate_listen_config(name, record.port)
        await self.proxy.install_gateway_route(name, record.port)
        report.regenerated.append(name)

    async def _remove_zombies(self, known: Set[str], report: ReconcileReport) -> None:
        try:
            containers = await self.runtime.list_containers()
        except DomainException as e:
            logger.warning(f"Skipping zombie scan, runtime unavailable: {e.message}")
            report.errors.append(f"runtime: {e.message}")
            return

        for container in containers:
            if container.name in known:
                continue
            if not any(self._in_range(port) for port in container.host_ports):
                continue
            try:
                logger.warning(
                    f"[{container.name}] Removing zombie container on ports {container.host_ports}"
                )
                await self.runtime.remove(container.name)
                report.removed_zombies.append(container.name)
            except DomainException as e:
                logger.error(f"[{container.name}] Could not remove zombie container: {e.message}")
                report.errors.append(f"{container.name}: {e.message}")

    async def _prune_directories(self, known: Set[str], report: ReconcileReport) -> None:
        if not self.build_root.is_dir():
            logger.debug("Build root not found, skipping pruning")
            return

        for path in sorted(self.build_root.iterdir()):
            # Dot-directories hold backups and staging trees
            if not path.is_dir() or path.name.startswith(".") or path.name in known:
                continue
            try:
                logger.warning(f"[{path.name}] Pruning orphaned directory {path}")
                await asyncio.to_thread(shutil.rmtree, path)
                await self.proxy.remove_all_configs(path.name)
                report.pruned_dirs.append(path.name)
            except (DomainException, OSError) as e:
                logger.error(f"[{path.name}] Could not prune directory: {e}")
                report.errors.append(f"{path.name}: {e}")

    async def reconcile(self) -> ReconcileReport:
        """Run one sweep and report what changed."""
        logger.info("Starting reconciliation...")
        report = ReconcileReport()
        records = await self.ledger.list_all()

        await self._remove_stray_configs(records, report)

        for name, record in records.items():
            try:
                await self._converge_record(name, record, report)
            except (DomainException, OSError) as e:
                logger.error(f"[{name}] Reconciliation failed: {e}")
                report.errors.append(f"{name}: {e}")

        known = set(records) - set(report.released_drifted)
        await self._remove_zombies(known, report)
        await self._prune_directories(known, report)

        try:
            await self.proxy.reload()
            report.reloaded = True
        except DomainException as e:
            logger.error(f"Proxy reload after reconciliation failed: {e.message}")
            report.errors.append(f"reload: {e.message}")

        logger.info(f"Reconciliation complete: {report.summary()}")
        await self.dispatcher.dispatch_async(ReconcileCompletedEvent(summary=report.summary()))
        return report


# Singleton instance
reconciler = Reconciler()


async def run_reconcile() -> None:
    """Scheduler entry point; a failed sweep is logged and retried next interval."""
    try:
        await reconciler.reconcile()
    except Exception as e:
        logger.error(f"Reconciliation failed: {e}")
