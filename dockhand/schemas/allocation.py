"""
Pydantic schemas for port allocations and deployment results.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class AppKind(str, Enum):
    """Kind of deployed artifact."""
    STATIC = "static"        # Pre-built file tree served by the proxy
    CONTAINER = "container"  # Container image that binds the port itself


class AppCategory(str, Enum):
    """Display category of an app."""
    FRONTEND = "frontend"
    BACKEND = "backend"


# Older ledgers recorded the artifact kind under "type" with these values
_LEGACY_KINDS = {"zip": AppKind.STATIC, "docker": AppKind.CONTAINER}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PortAllocation(BaseModel):
    """One ledger record, keyed by app name in the backing store."""

    port: int = Field(..., ge=1, le=65535)
    owner: Optional[str] = None
    kind: AppKind = Field(
        default=AppKind.STATIC,
        validation_alias=AliasChoices("kind", "type"),
    )
    category: AppCategory = AppCategory.FRONTEND
    allocated_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("allocated_at", "uploadedAt"),
    )

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str) and value in _LEGACY_KINDS:
            return _LEGACY_KINDS[value]
        return value

    @classmethod
    def from_stored(cls, value: Any) -> "PortAllocation":
        """Parse a stored ledger value; a bare integer is a legacy port-only entry."""
        if isinstance(value, int):
            return cls(port=value)
        return cls.model_validate(value)

    def to_stored(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class DeploymentResult(BaseModel):
    """Success payload of a deployment pipeline."""
    name: str
    port: int
    path: str  # public gateway path, e.g. "/demo-app/"


class ContainerActionResult(BaseModel):
    """Result of a container lifecycle action."""
    success: bool
    message: Optional[str] = None


class AppRemovalResult(BaseModel):
    """Result of deleting an app."""
    success: bool
    message: str
    port: Optional[int] = None
