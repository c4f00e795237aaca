"""
Nginx config synthesizer.

Layout on disk::

    <sites-available>/build-<name>        listening config (static apps)
    <sites-enabled>/build-<name>          symlink to the above
    <gateway-routes>/<name>.conf          gateway location block (all apps)

The gateway server block is expected to ``include <gateway-routes>/*.conf``.
"""
import asyncio
import logging
import os
import re
import shlex
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dockhand.core.config import settings
from dockhand.core.exceptions import ProxyReloadError
from dockhand.services.proxy.proxy_base import ProxySynthesizer

logger = logging.getLogger(__name__)

CONFIG_PREFIX = "build-"
ROUTE_SUFFIX = ".conf"

_LISTEN_RE = re.compile(r"^\s*listen\s+(\d+)\s*;", re.MULTILINE)
_UPSTREAM_RE = re.compile(r"proxy_pass\s+http://localhost:(\d+)/")

LISTEN_TEMPLATE = """server {{
    listen {port};
    server_name {server_name};

    root {root};
    index {entry_point};

    # SPA routing: try file, then directory, then the entry point
    location / {{
        try_files $uri $uri/ /{entry_point};
    }}

    location = /{entry_point} {{
        try_files $uri =404;
    }}

    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;

    location ~* \\.(js|css|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot)$ {{
        expires 1y;
        add_header Cache-Control "public, immutable";
    }}
}}
"""

ROUTE_TEMPLATE = """# Route /{name}/ to localhost:{port}
location /{name}/ {{
    proxy_pass http://localhost:{port}/;
    proxy_http_version 1.1;
    proxy_set_header Host $host;
    proxy_set_header X-Real-IP $remote_addr;
    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
    proxy_set_header X-Forwarded-Proto $scheme;
    proxy_pass_request_headers on;
}}
"""


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class NginxProxySynthesizer(ProxySynthesizer):
    """Writes nginx site configs and gateway route snippets, and reloads nginx."""

    def __init__(
        self,
        sites_available: str = None,
        sites_enabled: str = None,
        gateway_routes: str = None,
        build_root: str = None,
        server_name: str = None,
    ):
        self.sites_available = Path(sites_available or settings.NGINX_SITES_AVAILABLE)
        self.sites_enabled = Path(sites_enabled or settings.NGINX_SITES_ENABLED)
        self.gateway_routes = Path(gateway_routes or settings.NGINX_GATEWAY_ROUTES)
        self.build_root = Path(build_root or settings.BUILD_ROOT)
        self.server_name = server_name or settings.NGINX_SERVER_NAME

    def _listen_path(self, name: str) -> Path:
        return self.sites_available / f"{CONFIG_PREFIX}{name}"

    def _enabled_path(self, name: str) -> Path:
        return self.sites_enabled / f"{CONFIG_PREFIX}{name}"

    def _route_path(self, name: str) -> Path:
        return self.gateway_routes / f"{name}{ROUTE_SUFFIX}"

    def render_listen_config(self, name: str, port: int) -> str:
        return LISTEN_TEMPLATE.format(
            port=port,
            server_name=self.server_name,
            root=(self.build_root / name).resolve(),
            entry_point=settings.ENTRY_POINT_FILE,
        )

    def render_gateway_route(self, name: str, port: int) -> str:
        return ROUTE_TEMPLATE.format(name=name, port=port)

    async def generate_listen_config(self, name: str, port: int) -> None:
        await self.remove_configs_listening_on_port(port, except_name=name)

        _write_atomic(self._listen_path(name), self.render_listen_config(name, port))

        enabled = self._enabled_path(name)
        enabled.parent.mkdir(parents=True, exist_ok=True)
        if enabled.is_symlink() or enabled.exists():
            enabled.unlink()
        enabled.symlink_to(self._listen_path(name))

        logger.info(f"[{name}] Installed listening config on port {port}")

    async def install_gateway_route(self, name: str, port: int) -> None:
        _write_atomic(self._route_path(name), self.render_gateway_route(name, port))
        logger.info(f"[{name}] Installed gateway route /{name}/ -> localhost:{port}")

    async def remove_listen_config(self, name: str) -> bool:
        removed = self._listen_path(name).exists()
        self._listen_path(name).unlink(missing_ok=True)
        self._enabled_path(name).unlink(missing_ok=True)
        if removed:
            logger.info(f"[{name}] Removed listening config")
        return removed

    async def remove_all_configs(self, name: str) -> None:
        await self.remove_listen_config(name)
        self._route_path(name).unlink(missing_ok=True)
        logger.info(f"[{name}] Removed proxy configs")

    async def remove_configs_listening_on_port(
        self, port: int, except_name: Optional[str] = None
    ) -> List[str]:
        removed = []
        for name, listen_port in (await self.list_listen_configs()).items():
            if listen_port != port or name == except_name:
                continue
            self._listen_path(name).unlink(missing_ok=True)
            self._enabled_path(name).unlink(missing_ok=True)
            removed.append(name)
            logger.warning(f"[{name}] Removed stale listening config claiming port {port}")
        return removed

    async def list_listen_configs(self) -> Dict[str, Optional[int]]:
        configs: Dict[str, Optional[int]] = {}
        if not self.sites_available.is_dir():
            return configs
        for path in sorted(self.sites_available.glob(f"{CONFIG_PREFIX}*")):
            if not path.is_file():
                continue
            match = _LISTEN_RE.search(path.read_text(encoding="utf-8", errors="replace"))
            configs[path.name[len(CONFIG_PREFIX):]] = int(match.group(1)) if match else None
        return configs

    async def list_gateway_routes(self) -> Dict[str, Optional[int]]:
        routes: Dict[str, Optional[int]] = {}
        if not self.gateway_routes.is_dir():
            return routes
        for path in sorted(self.gateway_routes.glob(f"*{ROUTE_SUFFIX}")):
            if not path.is_file():
                continue
            match = _UPSTREAM_RE.search(path.read_text(encoding="utf-8", errors="replace"))
            routes[path.name[: -len(ROUTE_SUFFIX)]] = int(match.group(1)) if match else None
        return routes

    async def _run_command(self, command: str) -> Tuple[int, str, str]:
        """
        Run a shell-free command from its configured string form.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        cmd = shlex.split(command)
        logger.debug(f"Running proxy command: {command}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            return -1, "", str(e)

        return (
            process.returncode,
            stdout.decode().strip() if stdout else "",
            stderr.decode().strip() if stderr else "",
        )

    async def reload(self) -> None:
        return_code, _, stderr = await self._run_command(settings.NGINX_TEST_COMMAND)
        if return_code != 0:
            logger.error(f"Nginx configuration test failed: {stderr}")
            raise ProxyReloadError(stderr or "configuration test failed")

        return_code, _, stderr = await self._run_command(settings.NGINX_RELOAD_COMMAND)
        if return_code != 0:
            logger.error(f"Nginx reload failed: {stderr}")
            raise ProxyReloadError(stderr or "reload command failed")

        _, stdout, _ = await self._run_command(settings.NGINX_STATUS_COMMAND)
        if stdout.strip() != "active":
            raise ProxyReloadError("Nginx is not active after reload")

        logger.info("Nginx reloaded")
