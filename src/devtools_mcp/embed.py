"""
Embedding API.

Two explicit steps: ``build_server`` detects capabilities, assembles the
registry and returns an unbound Listener; ``Listener.start`` binds the port.
``start_server`` does both for the common case.

    host = HostContext(name="orders", asgi_app=app, profiles=["dev"])
    with start_server(host, port=0) as handle:
        print(handle.ws_url)
"""

from typing import Iterable, Optional

from common.config import Config
from common.logging import get_logger
from gateway.listener import Listener, ListenerHandle
from .assembly import build_registry
from .capabilities import CapabilityDetector
from .host import HostContext
from .providers import ProviderGroup
from .server import DevToolsMCPServer

logger = get_logger(__name__)


def build_server(
    host: HostContext,
    config: Optional[Config] = None,
    groups: Optional[Iterable[ProviderGroup]] = None,
    detector: Optional[CapabilityDetector] = None,
    instructions: Optional[str] = None,
) -> Listener:
    """
    Assemble the tool registry for a host and wrap it in an unbound Listener.

    Raises:
        AssemblyError: If two active provider groups declare the same tool name
    """
    config = config or Config()
    registry = build_registry(host, groups, detector)
    mcp_server = DevToolsMCPServer(registry, config.server, instructions)

    logger.info(
        event="server_built",
        host_name=host.name,
        tools_count=len(registry),
        groups=registry.groups(),
    )

    return Listener(config, mcp_server)


def start_server(
    host: HostContext,
    config: Optional[Config] = None,
    groups: Optional[Iterable[ProviderGroup]] = None,
    port: Optional[int] = None,
) -> ListenerHandle:
    """Build and start in one call; see build_server and Listener.start."""
    return build_server(host, config, groups).start(port=port)
