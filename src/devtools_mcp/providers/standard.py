"""
Standard introspection tools available in every host process.

Standard tools:
- get_components / get_component_details: registered host components
- get_active_profiles: active profile names
- get_properties: settings and environment, sensitive values masked
- get_health_info: interpreter, OS, memory and thread statistics
- get_dependency_info: installed distributions
"""

import gc
import inspect
import os
import platform
import threading
import time
from datetime import datetime, timezone
from importlib import metadata
from typing import Any, Dict, List, Optional

import psutil

from ..host import HostContext
from ..tool_registry import ToolDefinition, ToolParameter, ToolParameterType
from .base import ProviderGroup, always, best_effort

MASKED_VALUE = "******"
MB = 1024 * 1024
SENSITIVE_MARKERS = ("password", "secret", "key", "token")


def _qualified_name(obj: Any) -> str:
    return f"{getattr(obj, '__module__', '?')}.{getattr(obj, '__qualname__', repr(obj))}"


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


class StandardTools:
    """Tools that only need the host context itself."""

    def __init__(self, host: HostContext):
        self.host = host

    @best_effort("Listing components")
    def get_components(self) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for name in self.host.component_names():
            try:
                component = self.host.get_component(name)
                result[name] = _qualified_name(type(component))
            except Exception as e:
                result[name] = f"Error loading component: {e}"
        return result

    @best_effort("Reading component details")
    def get_component_details(self, component_name: str) -> Dict[str, Any]:
        if not self.host.has_component(component_name):
            return {"error": f"Component not found: {component_name}"}

        component = self.host.get_component(component_name)
        component_class = component if inspect.isclass(component) else type(component)

        return {
            "name": component_name,
            "class": _qualified_name(component_class),
            "type": component_class.__name__,
            "bases": [
                _qualified_name(base) for base in component_class.__mro__[1:] if base is not object
            ],
            "module": getattr(component_class, "__module__", None),
            "is_class": inspect.isclass(component),
            "callable": callable(component),
        }

    @best_effort("Listing active profiles")
    def get_active_profiles(self) -> List[str]:
        return self.host.active_profiles

    @best_effort("Reading properties")
    def get_properties(self, prefix: Optional[str] = None) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for name in self.host.property_names():
            if prefix and not name.startswith(prefix):
                continue
            value = self.host.get_property(name)
            if value is None:
                continue
            result[name] = MASKED_VALUE if _is_sensitive(name) else str(value)
        return result

    @best_effort("Collecting health information")
    def get_health_info(self) -> Dict[str, Any]:
        health_info: Dict[str, Any] = {}

        process = psutil.Process(os.getpid())
        system_memory = psutil.virtual_memory()
        memory_info: Dict[str, Any] = {
            "usedMemory": f"{process.memory_info().rss // MB} MB",
            "totalMemory": f"{system_memory.total // MB} MB",
            "freeMemory": f"{system_memory.available // MB} MB",
        }
        memory_info["gcCounts"] = list(gc.get_count())
        memory_info["trackedObjects"] = len(gc.get_objects())
        health_info["memory"] = memory_info

        health_info["processors"] = os.cpu_count()
        health_info["pid"] = os.getpid()
        health_info["pythonVersion"] = platform.python_version()
        health_info["pythonImplementation"] = platform.python_implementation()
        health_info["osName"] = platform.system()
        health_info["osVersion"] = platform.release()
        health_info["startTime"] = datetime.fromtimestamp(
            self.host.started_at, tz=timezone.utc
        ).isoformat()
        health_info["uptime"] = f"{int(time.time() - self.host.started_at)} seconds"
        health_info["loadedModules"] = len(self.host.loaded_modules)

        threads = threading.enumerate()
        health_info["threads"] = {
            "threadCount": len(threads),
            "daemonThreadCount": sum(1 for thread in threads if thread.daemon),
            "threadNames": sorted(thread.name for thread in threads),
        }

        return health_info

    @best_effort("Retrieving dependency information")
    def get_dependency_info(self) -> List[Dict[str, Any]]:
        packages_by_dist: Dict[str, List[str]] = {}
        for package, dist_names in metadata.packages_distributions().items():
            for dist_name in dist_names:
                packages_by_dist.setdefault(dist_name, []).append(package)

        dependencies: Dict[str, Dict[str, Any]] = {}
        for dist in metadata.distributions():
            name = dist.metadata["Name"]
            if not name or name in dependencies:
                continue
            dependencies[name] = {
                "name": name,
                "version": dist.version or "unknown",
                "packages": sorted(set(packages_by_dist.get(name, []))),
            }

        return [dependencies[name] for name in sorted(dependencies, key=str.lower)]

    def provider_group(self) -> ProviderGroup:
        """Declarative tool table for this group."""
        return ProviderGroup(
            name="standard",
            description="Components, profiles, properties, health and dependencies",
            activation_predicate=always,
            tools=[
                ToolDefinition(
                    name="get_components",
                    description="Gets all components registered with the host application",
                    handler=self.get_components,
                ),
                ToolDefinition(
                    name="get_component_details",
                    description="Gets details about a specific host component by name",
                    handler=self.get_component_details,
                    parameters=[
                        ToolParameter(
                            name="component_name",
                            type=ToolParameterType.STRING,
                            description="name of the component",
                            required=True,
                        )
                    ],
                ),
                ToolDefinition(
                    name="get_active_profiles",
                    description="Gets all active profiles of the host application",
                    handler=self.get_active_profiles,
                ),
                ToolDefinition(
                    name="get_properties",
                    description=(
                        "Gets properties from the host settings and environment, "
                        "optionally filtered by prefix. Sensitive values are masked."
                    ),
                    handler=self.get_properties,
                    parameters=[
                        ToolParameter(
                            name="prefix",
                            type=ToolParameterType.STRING,
                            description="only return properties whose name starts with this prefix",
                            required=False,
                        )
                    ],
                ),
                ToolDefinition(
                    name="get_health_info",
                    description="Gets health information about the application process",
                    handler=self.get_health_info,
                ),
                ToolDefinition(
                    name="get_dependency_info",
                    description="Gets information about installed application dependencies",
                    handler=self.get_dependency_info,
                ),
            ],
        )
