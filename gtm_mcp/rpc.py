"""MCP JSON-RPC dispatch shared by the HTTP and stdio transports."""
import logging
import time

from . import config
from .models import ToolContext
from .tools import TOOLS

log = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


def rpc_error_obj(rpc_id, code, message, data=None):
    err = {"jsonrpc": "2.0", "id": rpc_id, "error": {"code": code, "message": message}}
    if data is not None:
        err["error"]["data"] = data
    return err


def server_info():
    return {"name": config.SERVER_NAME, "version": config.SERVER_VERSION}


def handle_message(payload, ctx: ToolContext, registry=TOOLS):
    """Handle one JSON-RPC message. Returns the response dict, or None for notifications."""
    if not isinstance(payload, dict) or payload.get("jsonrpc") != "2.0" \
            or not isinstance(payload.get("method"), str) or not payload["method"]:
        rpc_id = payload.get("id") if isinstance(payload, dict) else None
        return rpc_error_obj(rpc_id, INVALID_REQUEST, "Invalid Request")

    t0 = time.time()
    rpc_id = payload.get("id")
    method = payload.get("method")
    params = payload.get("params")
    is_notification = "id" not in payload

    def rpc_result(result_obj):
        log.info("OK %s in %dms", method, int((time.time() - t0) * 1000))
        return {"jsonrpc": "2.0", "id": rpc_id, "result": result_obj}

    if method.startswith("notifications/") or is_notification:
        log.info("Notification %s", method)
        return None

    if params is None:
        params = {}
    if not isinstance(params, dict):
        return rpc_error_obj(rpc_id, INVALID_REQUEST, "Invalid Request: params must be an object")

    if method == "initialize":
        client_proto = params.get("protocolVersion") or config.MCP_PROTOCOL_VERSION_FALLBACK
        return rpc_result({
            "protocolVersion": client_proto,
            "serverInfo": server_info(),
            "capabilities": {"tools": {"listChanged": True}},
        })

    if method == "ping":
        return rpc_result({})

    if method == "tools/list":
        return rpc_result({"tools": registry.descriptors()})

    if method == "tools/call":
        name = params.get("name")
        args = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(args, dict):
            return rpc_error_obj(rpc_id, INVALID_PARAMS, "Invalid params: name must be a string and arguments an object")
        result = registry.call(name, args, ctx)
        if result.get("isError"):
            log.warning("ERR tools/call %s in %dms", name, int((time.time() - t0) * 1000))
        return rpc_result(result)

    log.warning("ERR %s: method not found", method)
    return rpc_error_obj(rpc_id, METHOD_NOT_FOUND, f"Method '{method}' not found")


def handle_payload(payload, ctx: ToolContext, registry=TOOLS):
    """Single message or batch. Returns None when nothing needs to be sent back."""
    if isinstance(payload, list):
        if not payload:
            return rpc_error_obj(None, INVALID_REQUEST, "Invalid Request")
        out = [r for r in (handle_message(p, ctx, registry) for p in payload) if r is not None]
        return out or None
    return handle_message(payload, ctx, registry)
