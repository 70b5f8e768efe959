"""
Host process facade.

HostContext is everything the built-in provider groups are allowed to know
about the process they run in: named components, active profiles, settings
and the web applications whose route tables can be inspected.
"""

import os
import sys
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional

from common.config import Config


class HostContext:
    """Registry of host-process facts exposed through the devtools tools."""

    def __init__(
        self,
        name: str = "devtools-host",
        components: Optional[Mapping[str, Any]] = None,
        profiles: Optional[Iterable[str]] = None,
        settings: Optional[Mapping[str, Any]] = None,
        asgi_app: Any = None,
        wsgi_app: Any = None,
        include_environment: bool = True,
        started_at: Optional[float] = None,
    ):
        self.name = name
        self._components: Dict[str, Any] = dict(components or {})
        self._profiles: List[str] = list(profiles or [])
        self._settings: Dict[str, Any] = dict(settings or {})
        self.asgi_app = asgi_app
        self.wsgi_app = wsgi_app
        self.include_environment = include_environment
        self.started_at = started_at if started_at is not None else time.time()

    @classmethod
    def from_config(cls, config: Config, **overrides: Any) -> "HostContext":
        """Build a host context for standalone mode from the loaded configuration."""
        kwargs: Dict[str, Any] = {
            "name": config.host.name,
            "profiles": config.host.profiles,
            "settings": config.host.settings,
            "components": {"config": config},
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # Components

    def register_component(self, name: str, component: Any) -> None:
        """Register a named component before the server is assembled."""
        self._components[name] = component

    def component_names(self) -> List[str]:
        return sorted(self._components)

    def has_component(self, name: str) -> bool:
        return name in self._components

    def get_component(self, name: str) -> Any:
        """Return a registered component, raising KeyError when absent."""
        return self._components[name]

    # Profiles

    @property
    def active_profiles(self) -> List[str]:
        return list(self._profiles)

    # Settings

    def property_names(self) -> List[str]:
        """Names of all visible properties; explicit settings shadow the environment."""
        names = set(self._settings)
        if self.include_environment:
            names.update(os.environ)
        return sorted(names)

    def get_property(self, name: str) -> Optional[Any]:
        if name in self._settings:
            return self._settings[name]
        if self.include_environment:
            return os.environ.get(name)
        return None

    # Runtime

    @property
    def loaded_modules(self) -> List[str]:
        return sorted(sys.modules)
