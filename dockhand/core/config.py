"""
Application configuration using Pydantic Settings.
"""
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Application
    APP_NAME: str = "dockhand"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"

    # Port ledger
    PORT_RANGE_START: int = 3320
    PORT_RANGE_END: int = 3990
    PORTS_FILE: str = "./data/ports.json"
    LEDGER_LOCK_RETRIES: int = 5
    LEDGER_LOCK_RETRY_DELAY: float = 0.1  # seconds, doubled after each failed attempt
    ADMIN_IDENTITY: str = "admin"

    # File roots
    BUILD_ROOT: str = "./builds"
    BACKUP_ROOT: Optional[str] = None  # defaults to BUILD_ROOT/.backups

    # Static bundles
    ENTRY_POINT_FILE: str = "index.html"
    MAX_ARCHIVE_SIZE: int = 1073741824  # 1GB in bytes

    # Container runtime
    DOCKER_COMMAND: str = "docker"  # e.g. "sudo docker"
    DOCKER_MEMORY_LIMIT: str = "512m"
    DOCKER_CPU_LIMIT: str = "1"
    DOCKER_RESTART_POLICY: str = "always"
    DOCKER_COMMAND_TIMEOUT: Optional[int] = None  # seconds; None waits indefinitely
    DEFAULT_CONTAINER_PORT: int = 80
    CONTAINER_PORT_ATTEMPTS: int = 5
    CONTAINER_RUNNING_CHECKS: int = 5
    CONTAINER_RUNNING_CHECK_INTERVAL: float = 1.0

    # Reverse proxy (nginx)
    NGINX_SITES_AVAILABLE: str = "/etc/nginx/sites-available"
    NGINX_SITES_ENABLED: str = "/etc/nginx/sites-enabled"
    NGINX_GATEWAY_ROUTES: str = "/etc/nginx/gateway-routes"
    NGINX_SERVER_NAME: str = "localhost"
    NGINX_TEST_COMMAND: str = "nginx -t"
    NGINX_RELOAD_COMMAND: str = "systemctl reload nginx"
    NGINX_STATUS_COMMAND: str = "systemctl is-active nginx"
    GATEWAY_BASE_URL: str = "http://localhost"
    ROUTE_PROBE_TIMEOUT: float = 5.0

    # Liveness probing
    PROBE_SOCKET_SCAN: bool = True

    # Reconciler
    RECONCILE_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 300
    RECONCILE_STARTUP_DELAY_SECONDS: int = 2

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("PORT_RANGE_END")
    @classmethod
    def validate_port_range(cls, value: int, info) -> int:
        start = info.data.get("PORT_RANGE_START")
        if start is not None and value < start:
            raise ValueError(f"PORT_RANGE_END ({value}) must be >= PORT_RANGE_START ({start})")
        return value

    def get_backup_root(self) -> str:
        """Resolve the backup directory, defaulting to a hidden folder under BUILD_ROOT."""
        return self.BACKUP_ROOT or f"{self.BUILD_ROOT.rstrip('/')}/.backups"

    def get_docker_command(self) -> List[str]:
        """Split DOCKER_COMMAND into argv form (supports a "sudo docker" prefix)."""
        return self.DOCKER_COMMAND.split()


settings = Settings()
