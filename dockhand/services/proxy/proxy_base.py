"""
Abstract base class for reverse-proxy config synthesizers.

The deployment engine treats the proxy as a set of idempotent side effects
keyed by app name: a per-app listening config (static apps only) and a
path-prefixed gateway route (every app). Only the reconciler reads configs
back, to detect drift.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional


class ProxySynthesizer(ABC):
    """
    Abstract base class for proxy config synthesizers.

    All methods must be safe to call repeatedly with the same arguments.
    """

    @abstractmethod
    async def generate_listen_config(self, name: str, port: int) -> None:
        """
        Install the listening config serving the app's live directory on ``port``.

        Any other generated listening config that declares the same port is
        removed first, so two site configs never claim one port.
        """
        pass

    @abstractmethod
    async def install_gateway_route(self, name: str, port: int) -> None:
        """Install the ``/<name>/`` gateway route forwarding to ``localhost:<port>``."""
        pass

    @abstractmethod
    async def remove_listen_config(self, name: str) -> bool:
        """
        Remove only the app's listening config.

        Returns:
            True if a config was removed
        """
        pass

    @abstractmethod
    async def remove_all_configs(self, name: str) -> None:
        """Remove the app's listening config and its gateway route."""
        pass

    @abstractmethod
    async def remove_configs_listening_on_port(
        self, port: int, except_name: Optional[str] = None
    ) -> List[str]:
        """
        Remove generated listening configs declaring ``port``.

        Args:
            port: Listening port to clear
            except_name: App whose config is kept

        Returns:
            Names of the apps whose configs were removed
        """
        pass

    @abstractmethod
    async def reload(self) -> None:
        """
        Test and activate the current configuration.

        Raises:
            ProxyReloadError: If the config test or the activation fails
        """
        pass

    @abstractmethod
    async def list_listen_configs(self) -> Dict[str, Optional[int]]:
        """Map app name -> declared listening port for every generated listening config."""
        pass

    @abstractmethod
    async def list_gateway_routes(self) -> Dict[str, Optional[int]]:
        """Map app name -> upstream port for every installed gateway route."""
        pass
