"""
Container runtime abstraction.

This package provides the command interface the deployment engine uses to
drive containers, and its Docker CLI implementation.
"""
from dockhand.services.runtime.runtime_base import (
    ContainerInfo,
    ContainerRuntime,
    RunSpec,
)
from dockhand.services.runtime.docker_runtime import DockerRuntime

__all__ = [
    "ContainerInfo",
    "ContainerRuntime",
    "RunSpec",
    "DockerRuntime",
]
