"""
Tests for the JSON-RPC protocol layer.
"""

import pytest

from devtools_mcp.jsonrpc import (
    LATEST_PROTOCOL_VERSION,
    JSONRPCErrorResponse,
    JSONRPCHandler,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    MCPToolsCallParams,
    ServerFeatures,
    negotiate_features,
    negotiate_protocol_version,
)


class TestJSONRPCProtocol:
    """Test JSON-RPC 2.0 protocol compliance."""

    def test_create_request(self):
        """Test JSON-RPC request creation."""
        request = JSONRPCHandler.create_request(id="test-123", method="tools/list")

        assert request.jsonrpc == "2.0"
        assert request.id == "test-123"
        assert request.method == "tools/list"

    def test_create_error_response(self):
        """Test JSON-RPC error response creation."""
        error_response = JSONRPCHandler.create_error_response(
            id=None, code=-32700, message="Parse error"
        )

        assert error_response.model_dump() == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32700, "message": "Parse error", "data": None},
        }

    def test_create_notification(self):
        """Test JSON-RPC notification creation."""
        notification = JSONRPCHandler.create_notification(
            method="notifications/progress", params={"progress": 1}
        )

        assert notification.model_dump() == {
            "jsonrpc": "2.0",
            "method": "notifications/progress",
            "params": {"progress": 1},
        }

    @pytest.mark.parametrize(
        "data, expected",
        [
            ({"jsonrpc": "2.0", "id": 1, "method": "ping"}, JSONRPCRequest),
            ({"jsonrpc": "2.0", "method": "notifications/initialized"}, JSONRPCNotification),
            ({"jsonrpc": "2.0", "id": 1, "result": {}}, JSONRPCResponse),
            (
                {"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "x"}},
                JSONRPCErrorResponse,
            ),
        ],
    )
    def test_parse_message(self, data, expected):
        """Test parsing each message kind."""
        assert isinstance(JSONRPCHandler.parse_message(data), expected)

    @pytest.mark.parametrize(
        "data",
        [
            {"jsonrpc": "2.0"},
            {"jsonrpc": "1.0", "id": 1, "method": "ping"},
            "ping",
        ],
    )
    def test_parse_invalid_message(self, data):
        """Test that invalid messages raise ValueError."""
        with pytest.raises(ValueError):
            JSONRPCHandler.parse_message(data)

    def test_is_batch(self):
        """Test batch detection."""
        assert JSONRPCHandler.is_batch([]) is True
        assert JSONRPCHandler.is_batch({}) is False

    def test_tools_call_meta_alias(self):
        """Test that _meta is read through its alias."""
        params = MCPToolsCallParams.model_validate(
            {"name": "ping", "_meta": {"progressToken": "abc"}}
        )

        assert params.meta == {"progressToken": "abc"}


class TestNegotiation:
    """Test protocol version and feature negotiation."""

    def test_supported_version_kept(self):
        """Test that a supported caller version is used."""
        assert negotiate_protocol_version("2025-03-26") == "2025-03-26"

    def test_newer_unknown_version(self):
        """Test that an unknown newer version falls back to the latest."""
        assert negotiate_protocol_version("2099-01-01") == LATEST_PROTOCOL_VERSION

    def test_between_versions(self):
        """Test that an unknown version picks the newest older one."""
        assert negotiate_protocol_version("2025-01-01") == "2024-11-05"

    def test_missing_version(self):
        """Test that no version means the latest."""
        assert negotiate_protocol_version(None) == LATEST_PROTOCOL_VERSION

    def test_features_default_to_all(self):
        """Test that omitting features negotiates every server feature."""
        assert negotiate_features(None) == ServerFeatures.ALL

    def test_features_intersection(self):
        """Test that unknown caller features are dropped."""
        assert negotiate_features(["tools.call", "sampling"]) == frozenset({"tools.call"})
