"""
Custom exception hierarchy for domain-specific errors.

This module provides a clean separation between domain errors and transport concerns.
Services raise domain exceptions; whatever surface sits in front of the engine maps
them to responses. ``str(exc)`` is always the human-readable message.
"""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(DomainException):
    """Base class for resource not found errors."""
    pass


class ContainerNotFoundError(NotFoundError):
    """Container does not exist."""

    def __init__(self, name: str):
        super().__init__(f"Container {name} not found or inaccessible", {"name": name})


# =============================================================================
# Conflict Errors
# =============================================================================

class AlreadyExistsError(DomainException):
    """Base class for resource already exists errors."""
    pass


class OwnershipConflictError(AlreadyExistsError):
    """App name is already owned by a different identity."""

    def __init__(self, app_name: str, owner: Optional[str]):
        super().__init__(
            f'App name "{app_name}" is already owned by {owner}. '
            f"You cannot redeploy another user's app.",
            {"app_name": app_name, "owner": owner},
        )


class PortConflictError(AlreadyExistsError):
    """A record cannot be written because its port belongs to another app."""

    def __init__(self, port: int, holder: str):
        super().__init__(
            f"Port {port} is already allocated to {holder}",
            {"port": port, "holder": holder},
        )


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(DomainException):
    """Base class for validation errors."""
    pass


class InvalidAppNameError(ValidationError):
    """App name does not match the naming grammar."""

    def __init__(self, name: str, reason: str):
        super().__init__(reason, {"name": name, "reason": reason})


class InvalidArchiveError(ValidationError):
    """Uploaded archive is oversized, malformed, or unsafe."""

    def __init__(self, path: str, reason: str):
        super().__init__(reason, {"path": path, "reason": reason})


class InvalidActionError(ValidationError):
    """Unsupported container lifecycle action."""

    def __init__(self, action: str):
        super().__init__(f"Invalid action: {action}", {"action": action})


# =============================================================================
# Authorization Errors
# =============================================================================

class AuthorizationError(DomainException):
    """Base class for authorization errors."""
    pass


class NotAppOwnerError(AuthorizationError):
    """The requester may not modify this app."""

    def __init__(self, app_name: str, requester: str, reason: Optional[str] = None):
        super().__init__(
            reason or "Forbidden: You do not own this app",
            {"app_name": app_name, "requester": requester},
        )


# =============================================================================
# Operation Errors
# =============================================================================

class OperationError(DomainException):
    """Base class for operation failures."""
    pass


class PortAllocationError(OperationError):
    """No available ports in range."""

    def __init__(self, port_range_start: int, port_range_end: int):
        super().__init__(
            f"No available ports in range {port_range_start}-{port_range_end}",
            {"port_range_start": port_range_start, "port_range_end": port_range_end}
        )


class LedgerLockError(OperationError):
    """The ledger lock could not be acquired within the retry budget."""

    def __init__(self, path: str, attempts: int):
        super().__init__(
            f"Could not acquire ledger lock on {path} after {attempts} attempts",
            {"path": path, "attempts": attempts},
        )


class LedgerCorruptedError(OperationError):
    """The ledger backing store could not be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Corrupted port ledger {path}: {reason}", {"path": path, "reason": reason})


class ExternalCommandError(OperationError):
    """An external command (container runtime, proxy) exited unsuccessfully."""

    def __init__(self, command: str, returncode: int, stderr: str, message: Optional[str] = None):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            message or f"Command failed ({returncode}): {command}: {stderr}",
            {"command": command, "returncode": returncode, "stderr": stderr},
        )


class ContainerStartError(ExternalCommandError):
    """The container runtime refused to create or start a container."""

    PORT_CONFLICT_MARKERS = (
        "address already in use",
        "failed to bind host port",
        "port is already allocated",
        "Bind for 0.0.0.0",
    )

    def __init__(self, name: str, port: int, command: str, returncode: int, stderr: str):
        self.name = name
        self.port = port
        super().__init__(
            command,
            returncode,
            stderr,
            message=f"Container {name} failed to start on port {port}: {stderr or 'unknown error'}",
        )
        self.details.update({"name": name, "port": port})

    @property
    def port_conflict(self) -> bool:
        """True when the failure was the host port already being bound."""
        return any(marker in self.stderr for marker in self.PORT_CONFLICT_MARKERS)


class ProxyReloadError(OperationError):
    """Proxy configuration test or activation failed."""

    def __init__(self, reason: str):
        super().__init__(f"Nginx reload failed: {reason}", {"reason": reason})


class ContainerNotRunningError(OperationError):
    """Container never reached the running state."""

    def __init__(self, name: str):
        super().__init__("Container failed to start or stopped unexpectedly", {"name": name})


class DeploymentVerificationError(OperationError):
    """A materialized artifact failed post-deployment verification."""

    def __init__(self, app_name: str, reason: str):
        super().__init__(f"Deployment invalid: {reason}", {"app_name": app_name, "reason": reason})


class ImageLoadError(OperationError):
    """A container image archive could not be loaded or verified."""

    def __init__(self, path: str, reason: str):
        super().__init__(reason, {"path": path, "reason": reason})
