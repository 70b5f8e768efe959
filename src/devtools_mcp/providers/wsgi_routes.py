"""
Route table tools for Flask-style WSGI hosts.

Active only when the capability detector found an application exposing a
Werkzeug ``url_map`` on the host.
"""

from typing import Any, Dict, List

from ..capabilities import Capability
from ..host import HostContext
from ..tool_registry import ToolDefinition
from .base import ProviderGroup, best_effort, requires


class WsgiRouteTools:
    """Reads the url_map of the host's WSGI application."""

    def __init__(self, host: HostContext):
        self.host = host

    @best_effort("Reading WSGI routes")
    def get_wsgi_routes(self) -> List[Dict[str, Any]]:
        app = self.host.wsgi_app
        view_functions = getattr(app, "view_functions", None) or {}
        endpoints: List[Dict[str, Any]] = []

        for rule in app.url_map.iter_rules():
            view = view_functions.get(rule.endpoint)
            endpoints.append(
                {
                    "path": rule.rule,
                    "methods": sorted(rule.methods or []) or ["ALL"],
                    "endpoint": rule.endpoint,
                    "view": (
                        f"{view.__module__}.{view.__qualname__}"
                        if view is not None and hasattr(view, "__qualname__")
                        else None
                    ),
                    "arguments": sorted(getattr(rule, "arguments", None) or []),
                }
            )

        return sorted(endpoints, key=lambda entry: entry["path"])

    def provider_group(self) -> ProviderGroup:
        """Declarative tool table for this group."""
        return ProviderGroup(
            name="wsgi_routes",
            description="URL map of a Flask/Werkzeug application",
            activation_predicate=requires(Capability.WSGI_ROUTES),
            tools=[
                ToolDefinition(
                    name="get_wsgi_routes",
                    description="Gets all URL rules of the WSGI application",
                    handler=self.get_wsgi_routes,
                ),
            ],
        )
