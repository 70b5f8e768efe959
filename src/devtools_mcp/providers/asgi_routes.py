"""
Route table tools for ASGI hosts (Starlette / FastAPI).

Active only when the capability detector found an ASGI application with a
route table on the host.
"""

from typing import Any, Dict, List

from ..capabilities import Capability
from ..host import HostContext
from ..tool_registry import ToolDefinition
from .base import ProviderGroup, best_effort, requires


def _endpoint_name(endpoint: Any) -> str:
    if endpoint is None:
        return ""
    module = getattr(endpoint, "__module__", None)
    qualname = getattr(endpoint, "__qualname__", None) or type(endpoint).__name__
    return f"{module}.{qualname}" if module else qualname


def _convertor_type(convertor: Any) -> str:
    return type(convertor).__name__.replace("Convertor", "").lower() or "str"


def _include_prefix(route: Any) -> str:
    """Prefix given to ``include_router`` for a lazily included router."""
    context = getattr(route, "include_context", None)
    if isinstance(context, dict):
        prefix = context.get("prefix")
    else:
        prefix = getattr(context, "prefix", None)
    if prefix is None:
        prefix = getattr(route, "prefix", None)
    return prefix or ""


class AsgiRouteTools:
    """Reads the route table of the host's ASGI application."""

    def __init__(self, host: HostContext):
        self.host = host

    def _collect(self, routes: Any, prefix: str) -> List[Dict[str, Any]]:
        endpoints: List[Dict[str, Any]] = []

        for route in routes:
            # Newer FastAPI keeps included routers as a single entry
            included = getattr(route, "original_router", None)
            if included is not None:
                endpoints.extend(self._collect(included.routes, prefix + _include_prefix(route)))
                continue

            path = prefix + (getattr(route, "path", "") or "")
            nested = getattr(route, "routes", None)

            # Mounted sub-applications carry their own route table
            if nested is not None and getattr(route, "endpoint", None) is None:
                endpoints.extend(self._collect(nested, path))
                continue

            methods = getattr(route, "methods", None)
            convertors = getattr(route, "param_convertors", None) or {}

            entry: Dict[str, Any] = {
                "path": path,
                "methods": sorted(methods) if methods else ["ALL"],
                "kind": type(route).__name__,
                "name": getattr(route, "name", None),
                "endpoint": _endpoint_name(getattr(route, "endpoint", None)),
                "parameters": [
                    {"name": name, "type": _convertor_type(convertor)}
                    for name, convertor in convertors.items()
                ],
            }

            tags = getattr(route, "tags", None)
            if tags:
                entry["tags"] = [str(tag) for tag in tags]

            endpoints.append(entry)

        return endpoints

    @best_effort("Reading ASGI routes")
    def get_asgi_routes(self) -> List[Dict[str, Any]]:
        return self._collect(self.host.asgi_app.routes, "")

    def provider_group(self) -> ProviderGroup:
        """Declarative tool table for this group."""
        return ProviderGroup(
            name="asgi_routes",
            description="Route table of a Starlette/FastAPI application",
            activation_predicate=requires(Capability.ASGI_ROUTES),
            tools=[
                ToolDefinition(
                    name="get_asgi_routes",
                    description="Gets all HTTP and WebSocket endpoints of the ASGI application",
                    handler=self.get_asgi_routes,
                ),
            ],
        )
