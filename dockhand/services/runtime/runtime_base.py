"""
Abstract base class for container runtimes.

Defines the narrow command interface the deployment engine drives:
create/start, force-remove, inspect, list and image loading. The engine's
control flow only ever talks to this interface, so it can be exercised
against an in-memory fake.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class RunSpec:
    """Everything needed to create and start one container."""

    name: str
    image: str
    host_port: int
    container_port: int
    memory_limit: Optional[str] = None  # e.g. "512m"
    cpu_limit: Optional[str] = None     # e.g. "1"
    restart_policy: Optional[str] = None  # e.g. "always"


@dataclass
class ContainerInfo:
    """One entry of the runtime's process table."""

    name: str
    running: bool
    host_ports: List[int] = field(default_factory=list)
    state: Optional[str] = None


class ContainerRuntime(ABC):
    """
    Abstract base class for container runtimes.

    Implementations must provide methods for:
    - Creating and starting containers with a host port mapping
    - Force-removing containers by name (idempotent)
    - Inspecting and toggling running state
    - Listing every container with its published host ports
    - Loading image archives
    """

    @abstractmethod
    async def run(self, spec: RunSpec) -> str:
        """
        Create and start a detached container.

        Args:
            spec: Container name, image, port mapping and resource ceilings

        Returns:
            Container ID reported by the runtime

        Raises:
            ContainerStartError: If the runtime refused to create or start it
        """
        pass

    @abstractmethod
    async def remove(self, name: str) -> bool:
        """
        Force-remove a container by name.

        Returns:
            True if a container was removed, False if none existed
        """
        pass

    @abstractmethod
    async def is_running(self, name: str) -> bool:
        """
        Report whether the named container is in the running state.

        Raises:
            ContainerNotFoundError: If the container does not exist
        """
        pass

    @abstractmethod
    async def start(self, name: str) -> None:
        pass

    @abstractmethod
    async def stop(self, name: str) -> None:
        pass

    @abstractmethod
    async def list_containers(self) -> List[ContainerInfo]:
        """
        List all containers, running or not, with their published host ports.

        Stopped containers are included because their port mapping is still
        reserved and comes back on restart.
        """
        pass

    async def list_running_names(self) -> List[str]:
        """Names of containers currently running."""
        return [c.name for c in await self.list_containers() if c.running]

    @abstractmethod
    async def load_image(self, archive_path: str) -> str:
        """
        Load an image archive into the runtime.

        Returns:
            The image reference reported by the runtime

        Raises:
            ImageLoadError: If the archive could not be loaded
        """
        pass

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        pass
