"""
Reverse-proxy configuration services.
"""
from dockhand.services.proxy.proxy_base import ProxySynthesizer
from dockhand.services.proxy.nginx_proxy import NginxProxySynthesizer

__all__ = [
    "ProxySynthesizer",
    "NginxProxySynthesizer",
]
