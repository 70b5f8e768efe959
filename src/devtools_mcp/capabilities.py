"""
Capability detection.

Probes the host process once at startup for optional subsystems. A probe
that raises is treated as "capability absent" so that a missing subsystem
never prevents the server from starting with the remaining tools.
"""

from enum import Enum
from typing import Callable, Dict, FrozenSet, Mapping

from common.logging import get_logger
from .errors import ErrorKind
from .host import HostContext

logger = get_logger(__name__)

Probe = Callable[[], bool]


class Capability(str, Enum):
    """Optional subsystems a host process may have."""

    # Routing subsystem of kind A: Starlette / FastAPI router
    ASGI_ROUTES = "asgi_routes"
    # Routing subsystem of kind B: Flask / Werkzeug url_map
    WSGI_ROUTES = "wsgi_routes"


class CapabilityDetector:
    """Evaluates a fixed table of probes against the host process."""

    def __init__(self, probes: Mapping[Capability, Probe]):
        self.probes: Dict[Capability, Probe] = dict(probes)

    def detect(self) -> FrozenSet[Capability]:
        """Run every probe and return the set of capabilities that are present."""
        detected = set()

        for capability, probe in self.probes.items():
            try:
                present = bool(probe())
            except Exception as e:
                logger.warning(
                    event="capability_probe_failed",
                    capability=capability.value,
                    error_kind=ErrorKind.CAPABILITY_PROBE_FAILED.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                present = False

            if present:
                detected.add(capability)

        logger.info(
            event="capabilities_detected",
            capabilities=sorted(c.value for c in detected),
            probed=sorted(c.value for c in self.probes),
        )

        return frozenset(detected)


def probe_asgi_routes(host: HostContext) -> bool:
    """True when the host exposes an ASGI application with a route table."""
    if host.asgi_app is None:
        return False
    # Starlette and FastAPI expose the router's routes on the app itself
    return isinstance(list(host.asgi_app.routes), list)


def probe_wsgi_routes(host: HostContext) -> bool:
    """True when the host exposes a Flask-style application with a url_map."""
    if host.wsgi_app is None:
        return False
    return isinstance(list(host.wsgi_app.url_map.iter_rules()), list)


def default_detector(host: HostContext) -> CapabilityDetector:
    """Detector wired with the built-in probes for the given host."""
    return CapabilityDetector(
        {
            Capability.ASGI_ROUTES: lambda: probe_asgi_routes(host),
            Capability.WSGI_ROUTES: lambda: probe_wsgi_routes(host),
        }
    )
