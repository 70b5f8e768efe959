#!/usr/bin/env python3
"""
WebSocket Client Example

Connects to a running devtools MCP server, negotiates a session, lists the
tools and calls a few of them, printing notification events as they arrive.

Usage:
    python examples/websocket_client.py [ws://127.0.0.1:9999/mcp/ws]
"""

import asyncio
import json
import sys
from itertools import count

import websockets


class DevtoolsClient:
    """Minimal JSON-RPC client over one WebSocket session."""

    def __init__(self, ws):
        self.ws = ws
        self._ids = count(1)

    async def request(self, method: str, params: dict = None):
        request_id = next(self._ids)
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        await self.ws.send(json.dumps(message))

        # Notification events for this call arrive before its response
        while True:
            reply = json.loads(await self.ws.recv())
            if reply.get("id") == request_id:
                return reply
            print(f"   event {reply.get('method')}: {reply.get('params')}")


async def run(url: str) -> None:
    print(f"Connecting to {url}")
    print("=" * 60)

    async with websockets.connect(url) as ws:
        client = DevtoolsClient(ws)

        init = await client.request(
            "initialize",
            {"protocolVersion": "2025-06-18", "clientInfo": {"name": "example", "version": "1.0"}},
        )
        server_info = init["result"]["serverInfo"]
        print(f"Connected to {server_info['name']} {server_info['version']}")
        print(f"Features: {init['result']['features']}")

        tools = (await client.request("tools/list"))["result"]["tools"]
        print(f"\n{len(tools)} tools:")
        for tool in tools:
            params = ", ".join(
                f"{p['name']}{'' if p['required'] else '?'}: {p['type']}" for p in tool["parameters"]
            )
            print(f" - {tool['name']}({params})")

        for name, arguments in (
            ("get_active_profiles", {}),
            ("get_properties", {"prefix": "app."}),
            ("get_component_details", {"component_name": "order_cache"}),
            ("warm_order_cache", {"limit": 2}),
            ("no_such_tool", {}),
        ):
            print(f"\n-> {name} {arguments}")
            result = (await client.request("tools/call", {"name": name, "arguments": arguments}))["result"]
            if result["ok"]:
                print(f"   {json.dumps(result['value'], indent=2)[:400]}")
            else:
                print(f"   {result['errorKind']}: {result['message']}")

        await client.request("shutdown")
        print("\nSession closed")


if __name__ == "__main__":
    asyncio.run(run(sys.argv[1] if len(sys.argv) > 1 else "ws://127.0.0.1:9999/mcp/ws"))
