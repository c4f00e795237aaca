"""
Domain event system for loose coupling between services.

This module provides a simple in-process event dispatcher that allows
the deployment engine to announce what happened without depending on
whoever listens (deployment history, notifications, metrics).

Handlers are called in registration order; a failing handler is logged
and never affects the operation that emitted the event.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Any, Optional, Type
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


# =============================================================================
# Base Event Classes
# =============================================================================

@dataclass
class DomainEvent:
    """Base class for all domain events."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_type(self) -> str:
        """Return the event type name."""
        return self.__class__.__name__


# =============================================================================
# Deployment Events
# =============================================================================

@dataclass
class AppDeployedEvent(DomainEvent):
    """Emitted when an app goes live."""
    app_name: str = None
    owner: str = None
    kind: str = None
    port: int = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AppDeploymentFailedEvent(DomainEvent):
    """Emitted after a failed deployment has been unwound."""
    app_name: str = None
    owner: str = None
    kind: str = None
    error_message: str = None


@dataclass
class AppRemovedEvent(DomainEvent):
    """Emitted when an app and its resources are deleted."""
    app_name: str = None
    owner: str = None
    port: Optional[int] = None


@dataclass
class ContainerActionEvent(DomainEvent):
    """Emitted when a container is started or stopped on request."""
    app_name: str = None
    action: str = None
    message: Optional[str] = None


@dataclass
class ReconcileCompletedEvent(DomainEvent):
    """Emitted at the end of every reconciliation sweep."""
    summary: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Event Dispatcher
# =============================================================================

class EventDispatcher:
    """
    Simple in-process event dispatcher.

    Handlers are registered per event type and called when events are dispatched.
    """

    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[Callable]] = {}

    def register(
        self,
        event_type: Type[DomainEvent],
        handler: Callable[[DomainEvent], Any],
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The event class to handle
            handler: Callable (sync or async) that takes the event as argument
        """
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)
        logger.debug(f"Registered handler {handler.__name__} for {event_type.__name__}")

    def unregister(
        self,
        event_type: Type[DomainEvent],
        handler: Callable[[DomainEvent], Any],
    ) -> None:
        """Unregister a handler for an event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    async def dispatch_async(self, event: DomainEvent) -> None:
        """
        Dispatch an event to all registered handlers.

        Handlers can be either sync or async functions.

        Args:
            event: The event to dispatch
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type, [])

        logger.debug(f"Dispatching {event_type.__name__} to {len(handlers)} handlers")

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.__name__}: {e}"
                )

    def clear(self) -> None:
        """Clear all registered handlers."""
        self._handlers.clear()


# Global event dispatcher instance
event_dispatcher = EventDispatcher()


def handles(event_type: Type[DomainEvent]):
    """
    Decorator to register a function as an event handler.

    Example:
        @handles(AppDeployedEvent)
        async def record_history(event: AppDeployedEvent):
            await history.log("upload", event.app_name, event.owner, {"port": event.port})
    """
    def decorator(func: Callable):
        event_dispatcher.register(event_type, func)
        return func
    return decorator
