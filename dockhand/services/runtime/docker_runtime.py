"""
Container runtime backed by the Docker CLI.

Every operation shells out to ``docker`` (or the configured prefix, such as
``sudo docker``) through asyncio subprocesses.
"""
import asyncio
import json
import logging
from typing import Dict, List, Optional, Tuple

from dockhand.core.config import settings
from dockhand.core.exceptions import (
    ContainerNotFoundError,
    ContainerStartError,
    ExternalCommandError,
    ImageLoadError,
)
from dockhand.services.runtime.runtime_base import ContainerInfo, ContainerRuntime, RunSpec

logger = logging.getLogger(__name__)

_MISSING_MARKERS = ("No such container", "No such object")


def parse_published_ports(ports_field: str) -> List[int]:
    """
    Extract host ports from a ``docker ps`` Ports column.

    Handles values like ``0.0.0.0:3320->80/tcp, :::3320->80/tcp`` and port
    ranges like ``0.0.0.0:3320-3322->80-82/tcp``. Exposed-but-unpublished
    ports (``80/tcp``) hold no host port and are skipped.
    """
    ports = set()
    for mapping in ports_field.split(","):
        mapping = mapping.strip()
        if "->" not in mapping:
            continue
        host_part = mapping.split("->")[0]
        port_part = host_part.rsplit(":", 1)[-1]
        try:
            if "-" in port_part:
                first, last = port_part.split("-", 1)
                ports.update(range(int(first), int(last) + 1))
            else:
                ports.add(int(port_part))
        except ValueError:
            continue
    return sorted(ports)


def parse_loaded_image(output: str) -> Optional[str]:
    """Return the image reported by the last ``Loaded image`` line of ``docker load``."""
    image = None
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Loaded image ID:"):
            image = line.split(":", 1)[1].strip()
        elif line.startswith("Loaded image:"):
            image = line.split(":", 1)[1].strip()
    return image


class DockerRuntime(ContainerRuntime):
    """Docker CLI implementation of the container runtime interface."""

    def __init__(
        self,
        docker_command: Optional[List[str]] = None,
        command_timeout: Optional[int] = None,
    ):
        """
        Initialize the runtime.

        Args:
            docker_command: argv prefix for the docker binary (default from settings)
            command_timeout: Per-command timeout in seconds; None waits indefinitely
        """
        self.docker_command = docker_command or settings.get_docker_command()
        self.command_timeout = (
            command_timeout if command_timeout is not None else settings.DOCKER_COMMAND_TIMEOUT
        )

    async def _run_docker_command(self, *args: str) -> Tuple[int, str, str]:
        """
        Run a docker command via subprocess.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        cmd = [*self.docker_command, *args]
        logger.debug(f"Running Docker command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            if self.command_timeout:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.command_timeout
                )
            else:
                stdout, stderr = await process.communicate()

            return (
                process.returncode,
                stdout.decode().strip() if stdout else "",
                stderr.decode().strip() if stderr else "",
            )
        except asyncio.TimeoutError:
            logger.error(f"Docker command timed out: {' '.join(cmd)}")
            return -1, "", "Command timed out"
        except OSError as e:
            logger.error(f"Docker command failed: {e}")
            return -1, "", str(e)

    def _build_run_command(self, spec: RunSpec) -> List[str]:
        args = [
            "run",
            "-d",
            "--name", spec.name,
            "-p", f"{spec.host_port}:{spec.container_port}",
        ]
        if spec.restart_policy:
            args.extend(["--restart", spec.restart_policy])
        if spec.memory_limit:
            args.extend(["--memory", spec.memory_limit])
        if spec.cpu_limit:
            args.extend(["--cpus", str(spec.cpu_limit)])
        args.append(spec.image)
        return args

    async def run(self, spec: RunSpec) -> str:
        args = self._build_run_command(spec)
        return_code, stdout, stderr = await self._run_docker_command(*args)

        if return_code != 0:
            logger.error(f"[{spec.name}] docker run failed on port {spec.host_port}: {stderr}")
            raise ContainerStartError(
                spec.name, spec.host_port, " ".join(self.docker_command + args), return_code, stderr
            )

        container_id = stdout[:64] if stdout else ""
        logger.info(f"[{spec.name}] Started container {container_id[:12]} on port {spec.host_port}")
        return container_id

    async def remove(self, name: str) -> bool:
        return_code, _, stderr = await self._run_docker_command("rm", "-f", name)

        if return_code != 0:
            if any(marker in stderr for marker in _MISSING_MARKERS):
                return False
            raise ExternalCommandError(f"docker rm -f {name}", return_code, stderr)

        logger.info(f"[{name}] Removed container")
        return True

    async def is_running(self, name: str) -> bool:
        return_code, stdout, stderr = await self._run_docker_command(
            "inspect", "-f", "{{.State.Running}}", name
        )
        if return_code != 0:
            if any(marker in stderr for marker in _MISSING_MARKERS):
                raise ContainerNotFoundError(name)
            raise ExternalCommandError(f"docker inspect {name}", return_code, stderr)
        return stdout.strip() == "true"

    async def start(self, name: str) -> None:
        return_code, _, stderr = await self._run_docker_command("start", name)
        if return_code != 0:
            raise ExternalCommandError(f"docker start {name}", return_code, stderr)

    async def stop(self, name: str) -> None:
        return_code, _, stderr = await self._run_docker_command("stop", name)
        if return_code != 0:
            raise ExternalCommandError(f"docker stop {name}", return_code, stderr)

    async def _configured_host_ports(self, names: List[str]) -> Dict[str, List[int]]:
        """
        Read the configured host port bindings of (stopped) containers.

        ``docker ps`` leaves the Ports column empty once a container exits, but
        the binding is still part of its HostConfig and is re-bound on start.
        """
        if not names:
            return {}

        return_code, stdout, stderr = await self._run_docker_command(
            "inspect", "--format", "{{.Name}}\t{{json .HostConfig.PortBindings}}", *names
        )
        if return_code != 0 and not stdout:
            logger.warning(f"Could not inspect port bindings: {stderr}")
            return {}

        bindings: Dict[str, List[int]] = {}
        for line in stdout.splitlines():
            if "\t" not in line:
                continue
            name, raw = line.split("\t", 1)
            try:
                data = json.loads(raw) or {}
            except json.JSONDecodeError:
                continue
            ports = set()
            for entries in data.values():
                for entry in entries or []:
                    try:
                        ports.add(int(entry.get("HostPort")))
                    except (TypeError, ValueError):
                        continue
            bindings[name.lstrip("/")] = sorted(ports)
        return bindings

    async def list_containers(self) -> List[ContainerInfo]:
        return_code, stdout, stderr = await self._run_docker_command(
            "ps", "-a", "--format", "{{.Names}}\t{{.State}}\t{{.Ports}}"
        )
        if return_code != 0:
            raise ExternalCommandError("docker ps -a", return_code, stderr)

        containers = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            parts = line.split("\t")
            name = parts[0].strip()
            state = parts[1].strip() if len(parts) > 1 else ""
            ports = parse_published_ports(parts[2]) if len(parts) > 2 else []
            containers.append(
                ContainerInfo(name=name, running=state == "running", host_ports=ports, state=state)
            )

        stopped = [c.name for c in containers if not c.running and not c.host_ports]
        if stopped:
            configured = await self._configured_host_ports(stopped)
            for container in containers:
                if container.name in configured:
                    container.host_ports = configured[container.name]

        return containers

    async def list_running_names(self) -> List[str]:
        return_code, stdout, stderr = await self._run_docker_command(
            "ps", "--format", "{{.Names}}"
        )
        if return_code != 0:
            raise ExternalCommandError("docker ps", return_code, stderr)
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def load_image(self, archive_path: str) -> str:
        return_code, stdout, stderr = await self._run_docker_command("load", "-i", archive_path)
        if return_code != 0:
            raise ImageLoadError(archive_path, f"Failed to load image archive: {stderr or 'unknown error'}")

        image = parse_loaded_image(stdout)
        if not image:
            raise ImageLoadError(archive_path, "Could not determine image name from docker load output")

        logger.info(f"Loaded image {image} from {archive_path}")
        return image

    async def image_exists(self, image: str) -> bool:
        return_code, _, _ = await self._run_docker_command("image", "inspect", image)
        return return_code == 0
