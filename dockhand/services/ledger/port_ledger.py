"""
Port ledger: the authority for which app owns which port.

Every mutation runs inside one store transaction, so the check (owner, used
ports, liveness) and the write happen under the same inter-process lock.
"""
import logging
from typing import Any, Dict, Iterable, Optional, Set

from pydantic import ValidationError as SchemaValidationError

from dockhand.core.config import settings
from dockhand.core.exceptions import (
    OwnershipConflictError,
    PortAllocationError,
    PortConflictError,
)
from dockhand.schemas.allocation import AppCategory, AppKind, PortAllocation, utcnow
from dockhand.services.ledger.port_prober import PortProber
from dockhand.services.ledger.store import JsonFileLedgerStore, LedgerStore
from dockhand.services.runtime.docker_runtime import DockerRuntime

logger = logging.getLogger(__name__)


def _parse_record(app_name: str, value: Any) -> Optional[PortAllocation]:
    try:
        return PortAllocation.from_stored(value)
    except SchemaValidationError as e:
        logger.warning(f"[{app_name}] Ignoring unreadable ledger record: {e}")
        return None


def _claimed_ports(data: Dict[str, Any], skip: Optional[str] = None) -> Dict[int, str]:
    claimed = {}
    for name, value in data.items():
        if name == skip:
            continue
        record = _parse_record(name, value)
        if record is not None:
            claimed[record.port] = name
    return claimed


class PortLedger:
    """
    Durable app name -> port allocation mapping.

    Allocates from a configured range, skipping ports held by other records
    and ports the prober reports busy on the host.
    """

    def __init__(
        self,
        store: LedgerStore = None,
        prober: PortProber = None,
        port_range_start: int = None,
        port_range_end: int = None,
        admin_identity: str = None,
    ):
        """
        Initialize the ledger.

        Args:
            store: Backing store (default: JSON file at settings.PORTS_FILE)
            prober: Host liveness prober (default: Docker-aware prober)
            port_range_start: Start of port range (default from settings)
            port_range_end: End of port range, inclusive (default from settings)
            admin_identity: Identity allowed to redeploy any app (default from settings)
        """
        self.store = store or JsonFileLedgerStore()
        self.prober = prober or PortProber(runtime=DockerRuntime())
        self.port_range_start = port_range_start or settings.PORT_RANGE_START
        self.port_range_end = port_range_end or settings.PORT_RANGE_END
        self.admin_identity = admin_identity or settings.ADMIN_IDENTITY

    async def allocate(
        self,
        app_name: str,
        owner: str,
        kind: AppKind = AppKind.STATIC,
        category: AppCategory = AppCategory.FRONTEND,
        reuse_existing: bool = True,
        exclude_ports: Optional[Iterable[int]] = None,
    ) -> int:
        """
        Allocate (or reuse) a port for an app.

        Args:
            app_name: App name, the ledger key
            owner: Identity requesting the allocation
            kind: Artifact kind recorded with the allocation
            category: Display category recorded with the allocation
            reuse_existing: Keep the app's current port if it has one
            exclude_ports: Ports that must not be handed out (e.g. already tried)

        Returns:
            Allocated port number

        Raises:
            OwnershipConflictError: If the app belongs to another non-admin identity
            PortAllocationError: If no port in the range is free
            LedgerLockError: If the ledger lock could not be acquired
        """
        excluded: Set[int] = set(exclude_ports or ())

        async with self.store.transaction() as data:
            existing = _parse_record(app_name, data[app_name]) if app_name in data else None

            if existing is not None and existing.owner and existing.owner != owner \
                    and owner != self.admin_identity:
                logger.warning(
                    f"[{app_name}] Allocation refused: owned by {existing.owner}, requested by {owner}"
                )
                raise OwnershipConflictError(app_name, existing.owner)

            # An admin acting on someone else's app does not take it over
            record_owner = existing.owner if existing is not None and existing.owner else owner

            if existing is not None and reuse_existing and existing.port not in excluded:
                data[app_name] = PortAllocation(
                    port=existing.port,
                    owner=record_owner,
                    kind=kind,
                    category=category,
                    allocated_at=utcnow(),
                ).to_stored()
                logger.info(f"[{app_name}] Reusing port {existing.port}")
                return existing.port

            data.pop(app_name, None)
            used = _claimed_ports(data)

            for port in range(self.port_range_start, self.port_range_end + 1):
                if port in used or port in excluded:
                    continue
                if not await self.prober.is_free(port):
                    continue

                data[app_name] = PortAllocation(
                    port=port,
                    owner=record_owner,
                    kind=kind,
                    category=category,
                ).to_stored()
                logger.info(f"[{app_name}] Allocated port {port} for {record_owner}")
                return port

            # Raised inside the transaction so the pop above is not written
            raise PortAllocationError(self.port_range_start, self.port_range_end)

    async def release(self, app_name: str) -> bool:
        """
        Delete an app's allocation.

        Returns:
            True if a record existed and was removed
        """
        async with self.store.transaction() as data:
            removed = data.pop(app_name, None)

        if removed is None:
            return False
        logger.info(f"[{app_name}] Released port allocation")
        return True

    async def get_metadata(self, app_name: str) -> Optional[PortAllocation]:
        value = self.store.snapshot().get(app_name)
        if value is None:
            return None
        return _parse_record(app_name, value)

    async def set_metadata(self, app_name: str, record: Optional[PortAllocation]) -> None:
        """
        Write back an exact record, or delete it when ``record`` is None.

        Used to restore the pre-deployment snapshot during rollback.

        Raises:
            PortConflictError: If another app holds the record's port by now
        """
        async with self.store.transaction() as data:
            if record is None:
                data.pop(app_name, None)
                logger.info(f"[{app_name}] Cleared ledger record")
                return

            holder = _claimed_ports(data, skip=app_name).get(record.port)
            if holder is not None:
                raise PortConflictError(record.port, holder)

            data[app_name] = record.to_stored()
            logger.info(f"[{app_name}] Restored ledger record on port {record.port}")

    async def list_all(self) -> Dict[str, PortAllocation]:
        records = {}
        for name, value in self.store.snapshot().items():
            record = _parse_record(name, value)
            if record is not None:
                records[name] = record
        return records

    async def get_port(self, app_name: str) -> Optional[int]:
        record = await self.get_metadata(app_name)
        return record.port if record else None

    async def get_owner(self, app_name: str) -> Optional[str]:
        record = await self.get_metadata(app_name)
        return record.owner if record else None


# Singleton instance
port_ledger = PortLedger()
