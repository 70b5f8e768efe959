"""
Devtools Model Context Protocol (MCP) server.

Exposes the internal state of a running Python process as discoverable,
callable tools: provider groups are assembled into a read-only registry at
startup and served to remote callers over WebSocket and Server-Sent Events.
"""
