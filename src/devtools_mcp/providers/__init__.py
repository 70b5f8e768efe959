"""
Built-in provider groups.

Each group is a declarative tool table over one introspection source of
the host process.
"""

from .asgi_routes import AsgiRouteTools
from .base import ProviderGroup, always, best_effort, requires
from .standard import StandardTools
from .wsgi_routes import WsgiRouteTools

__all__ = [
    "AsgiRouteTools",
    "ProviderGroup",
    "StandardTools",
    "WsgiRouteTools",
    "always",
    "best_effort",
    "requires",
]
