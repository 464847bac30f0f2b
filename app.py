import json
import logging
import queue
import threading
import time
import uuid

import requests
from flask import Flask, Response, g, jsonify, redirect, request, stream_with_context

from gtm_mcp import config
from gtm_mcp.errors import OAuthError, UpstreamAuthError
from gtm_mcp.models import Props, ServerEnv, ToolContext
from gtm_mcp.oauth_provider import OAuthProvider
from gtm_mcp.rpc import PARSE_ERROR, handle_payload, rpc_error_obj
from gtm_mcp.upstream_oauth import (
    fetch_upstream_auth_token,
    fetch_upstream_user_info,
    get_upstream_authorize_url,
    handle_token_exchange_callback,
    revoke_upstream_token,
)

app = Flask(__name__)

SSE_PING_SECONDS = 25

# -------------------- Logging --------------------
logging.basicConfig(level=config.LOG_LEVEL)
log = app.logger

# -------------------- OAuth provider --------------------
provider = OAuthProvider(
    token_exchange_callback=handle_token_exchange_callback,
    revoke_upstream=revoke_upstream_token,
)

# Legacy SSE transport: sessionId -> (outbound queue, grant id)
_sse_sessions = {}
_sse_lock = threading.Lock()


# -------------------- Utilities --------------------
def _base_url():
    return (config.WORKER_HOST or request.host_url).rstrip("/")


def _redirect_uri():
    return f"{_base_url()}/callback"


def _bearer_grant():
    auth = request.headers.get("Authorization") or ""
    token = auth[7:].strip() if auth.lower().startswith("bearer ") else None
    return provider.resolve_access_token(token)


def _unauthorized():
    resp = jsonify({"error": "invalid_token", "error_description": "Missing or invalid access token"})
    resp.status_code = 401
    resp.headers["WWW-Authenticate"] = (
        f'Bearer realm="OAuth", error="invalid_token", '
        f'resource_metadata="{_base_url()}/.well-known/oauth-protected-resource"'
    )
    return resp


def _google_authorize_url(auth_request, force_consent=False):
    """Stash the client's request and build the Google consent URL carrying its state."""
    existing = provider.find_grant(auth_request.client_id)
    has_refresh_token = bool(existing and existing.props.refresh_token) and not force_consent
    auth_request.upstream_consent = not has_refresh_token
    state = provider.stash_auth_request(auth_request)
    return get_upstream_authorize_url(
        upstream_url=config.GOOGLE_AUTHORIZE_URL,
        client_id=config.GOOGLE_CLIENT_ID,
        scope=" ".join(config.OAUTH_SCOPES),
        redirect_uri=_redirect_uri(),
        state=state,
        hosted_domain=config.GOOGLE_HOSTED_DOMAIN or None,
        has_refresh_token=has_refresh_token,
    )


def _tool_context(grant):
    return ToolContext(props=grant.props, env=ServerEnv(worker_host=_base_url(), provider=provider))


def _note_protocol(payload):
    # remember the negotiated protocol so the response header matches it
    msgs = payload if isinstance(payload, list) else [payload]
    for m in msgs:
        if isinstance(m, dict) and m.get("method") == "initialize":
            params = m.get("params")
            version = params.get("protocolVersion") if isinstance(params, dict) else None
            g.mcp_protocol = version or config.MCP_PROTOCOL_VERSION_FALLBACK
            return True
    return False


@app.errorhandler(OAuthError)
def _oauth_error(e):
    log.warning("OAuth error %s on %s: %s", e.error, request.path, e.description)
    resp = jsonify(e.to_dict())
    resp.status_code = e.status
    resp.headers["Cache-Control"] = "no-store"
    return resp


# -------------------- Logging & CORS --------------------
@app.before_request
def _log_req():
    auth = "bearer" if (request.headers.get("Authorization") or "").lower().startswith("bearer ") else "none"
    log.info("REQ %s %s auth=%s", request.method, request.path, auth)


@app.after_request
def _cors_and_log(resp):
    allow_headers = request.headers.get(
        "Access-Control-Request-Headers",
        "Content-Type, Authorization, MCP-Protocol-Version, Mcp-Protocol-Version, Mcp-Session-Id",
    )
    origin = request.headers.get("Origin", "*")
    resp.headers["Access-Control-Allow-Origin"] = origin
    resp.headers["Vary"] = "Origin"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = allow_headers
    resp.headers["Access-Control-Expose-Headers"] = "Mcp-Session-Id, MCP-Protocol-Version, WWW-Authenticate"

    proto = request.headers.get("Mcp-Protocol-Version") or getattr(g, "mcp_protocol", None) or config.MCP_PROTOCOL_VERSION_FALLBACK
    resp.headers["MCP-Protocol-Version"] = proto
    log.info("RESP %s %s -> %s", request.method, request.path, resp.status)
    return resp


# -------------------- Health & discovery --------------------
@app.route("/healthz", methods=["GET"], strict_slashes=False)
@app.route("/health", methods=["GET"], strict_slashes=False)
def healthz():
    return jsonify({"ok": True, "version": config.SERVER_VERSION}), 200


@app.get("/.well-known/oauth-authorization-server")
def oauth_metadata():
    return jsonify(provider.authorization_server_metadata(_base_url()))


@app.get("/.well-known/oauth-protected-resource")
@app.get("/.well-known/oauth-protected-resource/mcp")
def resource_metadata():
    return jsonify(provider.protected_resource_metadata(_base_url()))


@app.get("/")
def root_get():
    return jsonify({
        "ok": True,
        "name": config.SERVER_NAME,
        "version": config.SERVER_VERSION,
        "message": "MCP server. Use POST /mcp (or GET /sse) with an OAuth bearer token; see /.well-known/oauth-authorization-server",
    }), 200


# -------------------- OAuth endpoints --------------------
@app.post("/register")
def register():
    body = request.get_json(silent=True) or {}
    return jsonify(provider.register_client(body)), 201


@app.get("/authorize")
def authorize():
    if not config.GOOGLE_CLIENT_ID or not config.GOOGLE_CLIENT_SECRET:
        raise OAuthError("server_error", "Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.", 500)

    auth_request = provider.parse_auth_request(request.args)
    return redirect(_google_authorize_url(auth_request))


@app.get("/callback")
def callback():
    if request.args.get("error"):
        raise OAuthError("access_denied", f"Google authorization failed: {request.args.get('error')}")

    auth_request = provider.pop_auth_request(request.args.get("state"))
    if not auth_request:
        raise OAuthError("invalid_request", "Invalid or expired state")

    try:
        token = fetch_upstream_auth_token(
            code=request.args.get("code"),
            upstream_url=config.GOOGLE_TOKEN_URL,
            client_id=config.GOOGLE_CLIENT_ID,
            client_secret=config.GOOGLE_CLIENT_SECRET,
            redirect_uri=_redirect_uri(),
            grant_type="authorization_code",
        )
        user = fetch_upstream_user_info(token["access_token"])
    except UpstreamAuthError as e:
        return Response(str(e), status=e.status, mimetype="text/plain")
    except requests.RequestException:
        log.exception("Google token or userinfo request failed")
        return Response("Failed to fetch access token", status=500, mimetype="text/plain")

    user_id = str(user.get("id") or "")
    if not user_id:
        return Response("Missing user id", status=500, mimetype="text/plain")

    refresh_token = token.get("refresh_token")
    if not refresh_token:
        # no consent prompt this time, so Google kept the refresh token it issued before
        previous = provider.find_grant(auth_request.client_id, user_id)
        refresh_token = previous.props.refresh_token if previous else None
    if not refresh_token and not auth_request.upstream_consent:
        # consent was skipped on the strength of another user's grant on this client
        log.info("No Google refresh token for user %s, asking for consent again", user_id)
        return redirect(_google_authorize_url(auth_request, force_consent=True))

    expires_in = token.get("expires_in")
    props = Props(
        access_token=token["access_token"],
        client_id=auth_request.client_id,
        user_id=user_id,
        name=user.get("name"),
        email=user.get("email"),
        refresh_token=refresh_token,
        expires_at=int(time.time()) + int(expires_in) if expires_in else None,
    )
    redirect_to = provider.complete_authorization(
        auth_request, user_id=user_id, props=props, metadata={"label": user.get("name")},
    )
    return redirect(redirect_to)


@app.post("/token")
def token():
    result = provider.handle_token_request(request.form, request.headers.get("Authorization"))
    resp = jsonify(result)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.get("/remove")
def remove():
    client_id = request.args.get("clientId")
    user_id = request.args.get("userId")
    access_token = request.args.get("accessToken")
    if not client_id or not user_id or not access_token:
        raise OAuthError("invalid_request", "clientId, userId and accessToken are required")
    provider.remove_user_data(client_id, user_id, access_token)
    return jsonify({"ok": True}), 200


# -------------------- Streamable HTTP MCP endpoint --------------------
@app.post("/mcp")
def mcp_post():
    grant = _bearer_grant()
    if not grant:
        return _unauthorized()

    payload = request.get_json(force=True, silent=True)
    if payload is None:
        return jsonify(rpc_error_obj(None, PARSE_ERROR, "Parse error")), 400
    log.info("MCP POST user=%s method=%s", grant.user_id,
             "batch" if isinstance(payload, list) else (payload.get("method") if isinstance(payload, dict) else None))

    initializing = _note_protocol(payload)
    result = handle_payload(payload, _tool_context(grant))
    if result is None:
        return ("", 202)
    resp = jsonify(result)
    if initializing:
        resp.headers["Mcp-Session-Id"] = uuid.uuid4().hex
    return resp


@app.get("/mcp")
def mcp_get():
    if not _bearer_grant():
        return _unauthorized()
    if "text/event-stream" not in (request.headers.get("Accept") or ""):
        return jsonify({"error": "GET /mcp only serves text/event-stream"}), 405

    def _stream():
        yield ": connected\n\n"
        while True:
            time.sleep(SSE_PING_SECONDS)
            yield ": ping\n\n"
    headers = {"Cache-Control": "no-store", "Connection": "keep-alive"}
    return Response(stream_with_context(_stream()), mimetype="text/event-stream", headers=headers)


@app.delete("/mcp")
def mcp_delete():
    if not _bearer_grant():
        return _unauthorized()
    return ("", 204)


# -------------------- Legacy SSE transport --------------------
@app.get("/sse")
def sse_connect():
    grant = _bearer_grant()
    if not grant:
        return _unauthorized()

    session_id = uuid.uuid4().hex
    outbound = queue.Queue()
    with _sse_lock:
        _sse_sessions[session_id] = (outbound, grant.id)
    log.info("SSE session %s opened for user %s", session_id, grant.user_id)

    def _stream():
        try:
            yield f"event: endpoint\ndata: /sse/message?sessionId={session_id}\n\n"
            while True:
                try:
                    msg = outbound.get(timeout=SSE_PING_SECONDS)
                except queue.Empty:
                    yield ": ping\n\n"
                    continue
                yield f"event: message\ndata: {json.dumps(msg, ensure_ascii=False)}\n\n"
        finally:
            with _sse_lock:
                _sse_sessions.pop(session_id, None)
            log.info("SSE session %s closed", session_id)

    headers = {"Cache-Control": "no-store", "Connection": "keep-alive"}
    return Response(stream_with_context(_stream()), mimetype="text/event-stream", headers=headers)


@app.post("/sse/message")
def sse_message():
    grant = _bearer_grant()
    if not grant:
        return _unauthorized()

    session_id = request.args.get("sessionId")
    with _sse_lock:
        entry = _sse_sessions.get(session_id)
    if not entry or entry[1] != grant.id:
        return jsonify({"error": "Session not found"}), 404

    payload = request.get_json(force=True, silent=True)
    if payload is None:
        return jsonify(rpc_error_obj(None, PARSE_ERROR, "Parse error")), 400

    result = handle_payload(payload, _tool_context(grant))
    if result is not None:
        entry[0].put(result)
    return ("Accepted", 202)


def main():
    app.run(host="0.0.0.0", port=config.PORT, threaded=True)


if __name__ == "__main__":
    main()
