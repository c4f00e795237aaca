"""
Deployment pipeline services.

This package provides the reversible static-bundle and container pipelines,
their step runner, and input validation.
"""
from dockhand.services.deployment.steps import DeploymentAttempt, StepRunner
from dockhand.services.deployment.validator import (
    extract_archive,
    validate_app_name,
    validate_archive,
)
from dockhand.services.deployment.deployment_service import (
    DeploymentService,
    deployment_service,
)

__all__ = [
    "DeploymentAttempt",
    "StepRunner",
    "extract_archive",
    "validate_app_name",
    "validate_archive",
    "DeploymentService",
    "deployment_service",
]
