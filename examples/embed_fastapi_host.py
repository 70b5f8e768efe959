#!/usr/bin/env python3
"""
Embedding Example

Starts the devtools MCP server inside a process that hosts its own FastAPI
application, registers a component and a custom tool group, and serves
until Ctrl-C.

Usage:
    python examples/embed_fastapi_host.py
    python examples/websocket_client.py   # in another terminal
"""

import sys
import time
from pathlib import Path

from fastapi import FastAPI

# Add src to Python path for local testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.config import Config  # noqa: E402
from common.logging import setup_logging  # noqa: E402
from devtools_mcp.assembly import default_provider_groups  # noqa: E402
from devtools_mcp.embed import build_server  # noqa: E402
from devtools_mcp.host import HostContext  # noqa: E402
from devtools_mcp.providers import ProviderGroup  # noqa: E402
from devtools_mcp.tool_registry import ToolDefinition, ToolParameter, ToolParameterType  # noqa: E402

app = FastAPI(title="Orders")


@app.get("/orders/{order_id}")
async def get_order(order_id: int):
    return {"id": order_id}


class OrderCache:
    """Component whose state we want to inspect remotely."""

    def __init__(self):
        self.entries = {"1001": "shipped", "1002": "pending"}

    def warm(self, limit: int = 10, context=None):
        for index, key in enumerate(list(self.entries)[:limit], start=1):
            context.progress(index, total=len(self.entries), message=f"warming {key}")
            time.sleep(0.2)
        return {"warmed": min(limit, len(self.entries))}


def main() -> None:
    config = Config(server={"port": 9999})
    setup_logging(config)

    cache = OrderCache()
    host = HostContext(name="orders", asgi_app=app, profiles=["dev"])
    host.register_component("order_cache", cache)

    groups = default_provider_groups(host) + [
        ProviderGroup(
            name="orders",
            description="Order cache maintenance",
            tools=[
                ToolDefinition(
                    name="warm_order_cache",
                    description="Warms the order cache, reporting progress",
                    handler=cache.warm,
                    parameters=[ToolParameter(name="limit", type=ToolParameterType.INTEGER)],
                    uses_context=True,
                )
            ],
        )
    ]

    with build_server(host, config, groups).start() as handle:
        print(f"Devtools MCP server listening on {handle.ws_url}")
        print(f"SSE endpoint: {handle.url}/sse")
        try:
            handle.wait()
        except KeyboardInterrupt:
            print("Stopping")


if __name__ == "__main__":
    main()
