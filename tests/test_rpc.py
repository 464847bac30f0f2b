import pytest

from gtm_mcp import config
from gtm_mcp.registry import ToolRegistry, ok_text
from gtm_mcp.rpc import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    handle_message,
    handle_payload,
)


def _req(method, rpc_id=1, **params):
    msg = {"jsonrpc": "2.0", "id": rpc_id, "method": method}
    if params:
        msg["params"] = params
    return msg


def test_initialize_echoes_client_protocol(ctx):
    resp = handle_message(_req("initialize", protocolVersion="2025-06-18"), ctx)
    assert resp["id"] == 1
    result = resp["result"]
    assert result["protocolVersion"] == "2025-06-18"
    assert result["serverInfo"] == {"name": config.SERVER_NAME, "version": config.SERVER_VERSION}
    assert result["capabilities"] == {"tools": {"listChanged": True}}


def test_initialize_without_protocol_uses_fallback(ctx):
    resp = handle_message(_req("initialize"), ctx)
    assert resp["result"]["protocolVersion"] == config.MCP_PROTOCOL_VERSION_FALLBACK


def test_notifications_get_no_response(ctx):
    assert handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}, ctx) is None
    assert handle_message({"jsonrpc": "2.0", "method": "tools/list"}, ctx) is None


def test_ping(ctx):
    assert handle_message(_req("ping", rpc_id="abc"), ctx) == {"jsonrpc": "2.0", "id": "abc", "result": {}}


def test_tools_list(ctx):
    tools = handle_message(_req("tools/list"), ctx)["result"]["tools"]
    names = [t["name"] for t in tools]
    assert "gtm_tag" in names
    assert all(set(t) == {"name", "description", "inputSchema"} for t in tools)


def test_tools_call_errors_stay_in_result(ctx):
    resp = handle_message(_req("tools/call", name="gtm_nope", arguments={}), ctx)
    assert "error" not in resp
    assert resp["result"]["isError"] is True


def test_unknown_method(ctx):
    resp = handle_message(_req("resources/list", rpc_id=7), ctx)
    assert resp["id"] == 7
    assert resp["error"]["code"] == METHOD_NOT_FOUND


def test_invalid_request(ctx):
    assert handle_message({"id": 3, "method": "ping"}, ctx)["error"]["code"] == INVALID_REQUEST
    assert handle_message("ping", ctx)["error"]["code"] == INVALID_REQUEST


def test_batch(ctx):
    out = handle_payload([
        _req("ping", rpc_id=1),
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        _req("ping", rpc_id=2),
    ], ctx)
    assert [r["id"] for r in out] == [1, 2]


def test_batch_edge_cases(ctx):
    assert handle_payload([], ctx)["error"]["code"] == INVALID_REQUEST
    assert handle_payload([{"jsonrpc": "2.0", "method": "notifications/cancelled"}], ctx) is None


def test_custom_registry(ctx):
    registry = ToolRegistry()

    @registry.tool("echo", "Echo the arguments back.", {"type": "object", "properties": {}})
    def echo(_ctx, args):
        return ok_text("echo", args)

    listed = handle_message(_req("tools/list"), ctx, registry)["result"]["tools"]
    assert [t["name"] for t in listed] == ["echo"]

    resp = handle_message(_req("tools/call", name="echo", arguments={"a": 1}), ctx, registry)
    assert resp["result"]["content"][0]["text"] == 'echo\n{\n  "a": 1\n}'


def test_method_must_be_a_string(ctx):
    resp = handle_message({"jsonrpc": "2.0", "id": 1, "method": 5}, ctx)
    assert resp == {"jsonrpc": "2.0", "id": 1, "error": {"code": INVALID_REQUEST, "message": "Invalid Request"}}


@pytest.mark.parametrize("method", ["initialize", "tools/call", "ping"])
def test_params_must_be_an_object(ctx, method):
    resp = handle_message({"jsonrpc": "2.0", "id": 4, "method": method, "params": ["gtm_tag"]}, ctx)
    assert resp["id"] == 4
    assert resp["error"]["code"] == INVALID_REQUEST


def test_tools_call_argument_shapes(ctx):
    resp = handle_message(_req("tools/call", name=["gtm_tag"]), ctx)
    assert resp["error"]["code"] == INVALID_PARAMS

    resp = handle_message(_req("tools/call", name="gtm_tag", arguments="action=list"), ctx)
    assert resp["error"]["code"] == INVALID_PARAMS


def test_notification_with_bad_params_is_ignored(ctx):
    assert handle_message({"jsonrpc": "2.0", "method": "notifications/cancelled", "params": "x"}, ctx) is None
