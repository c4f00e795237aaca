"""
Reversible deployment steps.

A deployment is a sequence of named steps. Each step may carry an undo
action; if any step raises, the runner executes the collected undo actions
in reverse order and re-raises the original error.

Example:
    async with StepRunner("demo-app") as steps:
        port = await steps.run("allocate port", ledger.allocate, name, owner,
                               undo=restore_ledger)
        await steps.run("install routes", install, port, undo=remove_routes)
"""
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from dockhand.schemas.allocation import AppKind, PortAllocation

logger = logging.getLogger(__name__)


@dataclass
class DeploymentAttempt:
    """
    In-memory record of one pipeline invocation, used to drive rollback.

    Never persisted; discarded when the call returns.
    """

    app_name: str
    owner: str
    kind: AppKind
    previous: Optional[PortAllocation] = None  # ledger record before the attempt
    port: Optional[int] = None
    temp_path: Optional[Path] = None    # staging directory for extraction
    backup_path: Optional[Path] = None  # where the previous live directory was moved
    live_installed: bool = False        # staged directory was moved into the live path
    route_installed: bool = False
    proxy_touched: bool = False         # any proxy config written or removed
    attempted_ports: List[int] = field(default_factory=list)


async def _call(func: Callable, *args, **kwargs) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class StepRunner:
    """
    Executes named steps and unwinds them on failure.

    An undo action is armed *before* its step runs, so it must tolerate a
    step that was only partially applied, or not applied at all. Each undo is
    best-effort: a failing undo is logged and the remaining ones still run.
    """

    def __init__(self, label: str):
        self.label = label
        self.completed: List[str] = []
        self.failed_step: Optional[str] = None
        self.undo_failures: List[str] = []
        self._undo_stack: List[Tuple[str, Callable]] = []

    async def __aenter__(self) -> "StepRunner":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if isinstance(exc, Exception):
            await self.unwind(exc)
        return False

    def on_failure(self, name: str, undo: Callable) -> None:
        """Arm an undo action that is not tied to a step of its own."""
        self._undo_stack.append((name, undo))

    async def run(self, name: str, action: Callable, *args, undo: Callable = None, **kwargs) -> Any:
        """
        Run one step.

        Args:
            name: Step name used in logs
            action: Sync or async callable performing the step
            undo: Optional sync or async callable reverting the step

        Returns:
            Whatever ``action`` returns
        """
        if undo is not None:
            self.on_failure(name, undo)

        logger.info(f"[{self.label}] {name}")
        try:
            result = await _call(action, *args, **kwargs)
        except Exception:
            self.failed_step = name
            raise

        self.completed.append(name)
        return result

    async def unwind(self, error: Exception) -> None:
        """Run every armed undo action in reverse order."""
        logger.error(
            f"[{self.label}] Step '{self.failed_step or 'unknown'}' failed: {error}. Rolling back..."
        )
        while self._undo_stack:
            name, undo = self._undo_stack.pop()
            try:
                await _call(undo)
                logger.info(f"[{self.label}] Rolled back: {name}")
            except Exception as e:
                self.undo_failures.append(name)
                logger.error(f"[{self.label}] Rollback of '{name}' failed: {e}")

        if self.undo_failures:
            logger.warning(
                f"[{self.label}] Rollback finished with failures in: {', '.join(self.undo_failures)}"
            )
        else:
            logger.info(f"[{self.label}] Rollback complete")
