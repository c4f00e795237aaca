"""
Port ledger services.

This package provides the durable app -> port mapping, its backing stores,
and the host liveness prober consulted before a port is handed out.
"""
from dockhand.services.ledger.store import (
    JsonFileLedgerStore,
    LedgerStore,
    MemoryLedgerStore,
)
from dockhand.services.ledger.port_prober import PortProber
from dockhand.services.ledger.port_ledger import PortLedger, port_ledger

__all__ = [
    "JsonFileLedgerStore",
    "LedgerStore",
    "MemoryLedgerStore",
    "PortProber",
    "PortLedger",
    "port_ledger",
]
