"""OAuth authorization server that fronts the MCP endpoints.

MCP clients register themselves, get sent through Google's consent screen,
and receive provider-issued tokens. Each grant carries the session Props
(Google tokens and expiry), so a bearer token presented on /mcp resolves
straight to the props the tools need.

State is kept in memory; tokens are stored only as SHA-256 hashes.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlencode

from . import config
from .errors import AuthError, OAuthError
from .models import Props

log = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
AUTH_METHODS = ("client_secret_basic", "client_secret_post", "none")
PKCE_METHODS = ("S256", "plain")


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and hmac.compare_digest(a, b)


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _append_query(url: str, params: Dict[str, Any]) -> str:
    params = {k: v for k, v in params.items() if v is not None}
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


@dataclass
class ClientInfo:
    client_id: str
    redirect_uris: List[str]
    client_secret_hash: Optional[str] = None
    client_name: Optional[str] = None
    token_endpoint_auth_method: str = "client_secret_basic"
    registered_at: int = 0


@dataclass
class AuthRequest:
    client_id: str
    redirect_uri: str
    scope: List[str] = field(default_factory=list)
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    # set once Google has been asked to show its consent screen for this request
    upstream_consent: bool = False


@dataclass
class Grant:
    id: str
    client_id: str
    user_id: str
    props: Props
    scope: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    redirect_uri: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    auth_code_hash: Optional[str] = None
    auth_code_expires_at: int = 0
    refresh_token_hash: Optional[str] = None
    previous_refresh_token_hash: Optional[str] = None


@dataclass
class _AccessTokenRecord:
    grant_id: str
    expires_at: int


TokenExchangeCallback = Callable[[str, Optional[Props]], Optional[Dict[str, Any]]]


class OAuthProvider:
    def __init__(self, token_exchange_callback: Optional[TokenExchangeCallback] = None,
                 revoke_upstream: Optional[Callable[[str], bool]] = None,
                 access_token_ttl: int = config.MCP_ACCESS_TOKEN_TTL,
                 clock: Callable[[], float] = time.time):
        self.token_exchange_callback = token_exchange_callback
        self.revoke_upstream = revoke_upstream
        self.access_token_ttl = access_token_ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._clients: Dict[str, ClientInfo] = {}
        self._pending: Dict[str, Tuple[AuthRequest, int]] = {}
        self._grants: Dict[str, Grant] = {}
        self._access_tokens: Dict[str, _AccessTokenRecord] = {}

    def _now(self) -> int:
        return int(self._clock())

    # ---------------- Client registration ----------------
    def register_client(self, metadata: Mapping[str, Any]) -> Dict[str, Any]:
        redirect_uris = metadata.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris \
                or not all(isinstance(u, str) and u for u in redirect_uris):
            raise OAuthError("invalid_redirect_uri", "redirect_uris must be a non-empty list of URLs")

        method = metadata.get("token_endpoint_auth_method") or "client_secret_basic"
        if method not in AUTH_METHODS:
            raise OAuthError("invalid_client_metadata", f"Unsupported token_endpoint_auth_method '{method}'")

        client_id = secrets.token_urlsafe(16)
        secret = None if method == "none" else secrets.token_urlsafe(32)
        client = ClientInfo(
            client_id=client_id,
            redirect_uris=list(redirect_uris),
            client_secret_hash=_hash(secret) if secret else None,
            client_name=metadata.get("client_name"),
            token_endpoint_auth_method=method,
            registered_at=self._now(),
        )
        with self._lock:
            self._clients[client_id] = client
        log.info("Registered OAuth client %s (%s)", client_id, client.client_name or "unnamed")

        resp = {
            "client_id": client_id,
            "redirect_uris": client.redirect_uris,
            "client_name": client.client_name,
            "token_endpoint_auth_method": method,
            "grant_types": list(SUPPORTED_GRANT_TYPES),
            "response_types": ["code"],
            "client_id_issued_at": client.registered_at,
        }
        if secret:
            resp["client_secret"] = secret
            resp["client_secret_expires_at"] = 0
        return resp

    def lookup_client(self, client_id: Optional[str]) -> Optional[ClientInfo]:
        if not client_id:
            return None
        with self._lock:
            return self._clients.get(client_id)

    # ---------------- Authorization ----------------
    def parse_auth_request(self, args: Mapping[str, str]) -> AuthRequest:
        if args.get("response_type") != "code":
            raise OAuthError("unsupported_response_type", "Only response_type=code is supported")

        client = self.lookup_client(args.get("client_id"))
        if not client:
            raise OAuthError("invalid_client", "Unknown client_id")

        redirect_uri = args.get("redirect_uri")
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if redirect_uri not in client.redirect_uris:
            raise OAuthError("invalid_request", "Invalid redirect URI")

        challenge = args.get("code_challenge") or None
        method = None
        if challenge:
            method = args.get("code_challenge_method") or "plain"
            if method not in PKCE_METHODS:
                raise OAuthError("invalid_request", f"Unsupported code_challenge_method '{method}'")

        return AuthRequest(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            scope=(args.get("scope") or "").split(),
            state=args.get("state"),
            code_challenge=challenge,
            code_challenge_method=method,
        )

    def stash_auth_request(self, auth_request: AuthRequest) -> str:
        """Park an authorization request while the user is at Google; returns the upstream state."""
        state = secrets.token_urlsafe(32)
        with self._lock:
            self._purge_expired()
            self._pending[state] = (auth_request, self._now() + config.AUTH_REQUEST_TTL)
        return state

    def pop_auth_request(self, state: Optional[str]) -> Optional[AuthRequest]:
        if not state:
            return None
        with self._lock:
            entry = self._pending.pop(state, None)
        if not entry:
            return None
        auth_request, expires_at = entry
        if self._now() > expires_at:
            return None
        return auth_request

    def find_grant(self, client_id: str, user_id: Optional[str] = None) -> Optional[Grant]:
        """Most recent grant for the client (and user, if given)."""
        with self._lock:
            grants = [g for g in self._grants.values()
                      if g.client_id == client_id and (user_id is None or g.user_id == user_id)]
        if not grants:
            return None
        return max(grants, key=lambda g: g.created_at)

    def complete_authorization(self, auth_request: AuthRequest, user_id: str, props: Props,
                               scope: Optional[List[str]] = None,
                               metadata: Optional[Dict[str, Any]] = None) -> str:
        grant_id = secrets.token_urlsafe(16)
        code = f"{user_id}:{grant_id}:{secrets.token_urlsafe(32)}"
        now = self._now()
        grant = Grant(
            id=grant_id,
            client_id=auth_request.client_id,
            user_id=str(user_id),
            props=props,
            scope=list(scope if scope is not None else auth_request.scope),
            metadata=dict(metadata or {}),
            created_at=now,
            redirect_uri=auth_request.redirect_uri,
            code_challenge=auth_request.code_challenge,
            code_challenge_method=auth_request.code_challenge_method,
            auth_code_hash=_hash(code),
            auth_code_expires_at=now + config.AUTH_CODE_TTL,
        )
        with self._lock:
            self._purge_expired()
            self._grants[grant_id] = grant
        log.info("Authorization completed for user %s (client %s)", user_id, auth_request.client_id)
        return _append_query(auth_request.redirect_uri, {"code": code, "state": auth_request.state})

    # ---------------- Token endpoint ----------------
    def handle_token_request(self, form: Mapping[str, str], authorization: Optional[str] = None) -> Dict[str, Any]:
        grant_type = form.get("grant_type")
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise OAuthError("unsupported_grant_type", f"Grant type '{grant_type}' is not supported")

        client = self.authenticate_client(form, authorization)
        try:
            if grant_type == "authorization_code":
                return self._exchange_authorization_code(client, form)
            return self._exchange_refresh_token(client, form)
        finally:
            with self._lock:
                self._purge_expired()

    def authenticate_client(self, form: Mapping[str, str], authorization: Optional[str] = None) -> ClientInfo:
        client_id, secret = form.get("client_id"), form.get("client_secret")
        if authorization and authorization.lower().startswith("basic "):
            try:
                decoded = base64.b64decode(authorization[6:].strip()).decode("utf-8")
            except ValueError:
                raise OAuthError("invalid_client", "Malformed Basic authorization header", 401)
            raw_id, _, raw_secret = decoded.partition(":")
            client_id, secret = unquote(raw_id), unquote(raw_secret)

        client = self.lookup_client(client_id)
        if not client:
            raise OAuthError("invalid_client", "Client not found", 401)
        if client.token_endpoint_auth_method != "none":
            if not secret or not _same(_hash(secret), client.client_secret_hash):
                raise OAuthError("invalid_client", "Invalid client credentials", 401)
        return client

    def _grant_for_token(self, token: str) -> Optional[Grant]:
        parts = token.rsplit(":", 2)
        if len(parts) != 3:
            return None
        return self._grants.get(parts[1])

    def _exchange_authorization_code(self, client: ClientInfo, form: Mapping[str, str]) -> Dict[str, Any]:
        code = form.get("code")
        if not code:
            raise OAuthError("invalid_request", "Missing code")

        with self._lock:
            grant = self._grant_for_token(code)
            if not grant or not _same(_hash(code), grant.auth_code_hash):
                raise OAuthError("invalid_grant", "Invalid authorization code")
            if grant.client_id != client.client_id:
                raise OAuthError("invalid_grant", "Client ID mismatch")
            if self._now() > grant.auth_code_expires_at:
                self._drop_grant(grant.id)
                raise OAuthError("invalid_grant", "Authorization code expired")

            redirect_uri = form.get("redirect_uri")
            if redirect_uri and redirect_uri != grant.redirect_uri:
                raise OAuthError("invalid_grant", "Redirect URI mismatch")

            if grant.code_challenge:
                verifier = form.get("code_verifier")
                if not verifier:
                    raise OAuthError("invalid_request", "Missing code_verifier")
                expected = _s256(verifier) if grant.code_challenge_method == "S256" else verifier
                if not _same(expected, grant.code_challenge):
                    raise OAuthError("invalid_grant", "Invalid PKCE code_verifier")

            # single use
            grant.auth_code_hash = None
            grant_id, props = grant.id, grant.props

        ttl, new_props = self._run_callback("authorization_code", grant_id, props)

        with self._lock:
            grant = self._grants.get(grant_id)
            if not grant:
                raise OAuthError("invalid_grant", "Grant was revoked")
            return self._issue_tokens(grant, ttl, new_props)

    def _exchange_refresh_token(self, client: ClientInfo, form: Mapping[str, str]) -> Dict[str, Any]:
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise OAuthError("invalid_request", "Missing refresh_token")
        token_hash = _hash(refresh_token)

        with self._lock:
            grant = self._valid_refresh_grant(refresh_token, token_hash)
            if grant.client_id != client.client_id:
                raise OAuthError("invalid_grant", "Client ID mismatch")
            grant_id, props = grant.id, grant.props

        # unlocked: the callback may call Google
        ttl, new_props = self._run_callback("refresh_token", grant_id, props)

        with self._lock:
            grant = self._valid_refresh_grant(refresh_token, token_hash)
            return self._issue_tokens(grant, ttl, new_props, used_refresh_hash=token_hash)

    def _valid_refresh_grant(self, refresh_token: str, token_hash: str) -> Grant:
        grant = self._grant_for_token(refresh_token)
        if not grant or not (_same(token_hash, grant.refresh_token_hash)
                             or _same(token_hash, grant.previous_refresh_token_hash)):
            raise OAuthError("invalid_grant", "Invalid refresh token")
        return grant

    def _run_callback(self, grant_type: str, grant_id: str, props: Props) -> Tuple[int, Optional[Props]]:
        if not self.token_exchange_callback:
            return self.access_token_ttl, None
        try:
            result = self.token_exchange_callback(grant_type, props)
        except AuthError as e:
            log.warning("Token exchange callback rejected %s for grant %s: %s", grant_type, grant_id, e)
            raise OAuthError("invalid_grant", str(e))
        result = result or {}
        return int(result.get("access_token_ttl") or self.access_token_ttl), result.get("new_props")

    def _issue_tokens(self, grant: Grant, ttl: int, new_props: Optional[Props] = None,
                      used_refresh_hash: Optional[str] = None) -> Dict[str, Any]:
        if new_props is not None:
            grant.props = new_props
        access_token = f"{grant.user_id}:{grant.id}:{secrets.token_urlsafe(32)}"
        refresh_token = f"{grant.user_id}:{grant.id}:{secrets.token_urlsafe(32)}"
        self._access_tokens[_hash(access_token)] = _AccessTokenRecord(grant.id, self._now() + ttl)
        # the refresh token just used stays valid until the new one is first presented
        grant.previous_refresh_token_hash = used_refresh_hash
        grant.refresh_token_hash = _hash(refresh_token)
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": ttl,
            "refresh_token": refresh_token,
            "scope": " ".join(grant.scope),
        }

    # ---------------- Resource access ----------------
    def resolve_access_token(self, token: Optional[str]) -> Optional[Grant]:
        if not token:
            return None
        with self._lock:
            key = _hash(token)
            record = self._access_tokens.get(key)
            if not record:
                return None
            if self._now() >= record.expires_at:
                del self._access_tokens[key]
                return None
            return self._grants.get(record.grant_id)

    def remove_user_data(self, client_id: str, user_id: str, access_token: str) -> None:
        """Revoke Google access and forget everything held for this client/user."""
        with self._lock:
            grants = [g for g in self._grants.values() if g.client_id == client_id and g.user_id == user_id]
        if not grants:
            raise OAuthError("invalid_request", "No session found for this client and user", 404)
        if not any(_same(g.props.access_token, access_token) for g in grants):
            raise OAuthError("access_denied", "Access token does not match the session", 403)

        if self.revoke_upstream:
            revoked = set()
            for g in grants:
                token = g.props.refresh_token or g.props.access_token
                if token and token not in revoked:
                    self.revoke_upstream(token)
                    revoked.add(token)

        with self._lock:
            for g in grants:
                self._drop_grant(g.id)
            self._clients.pop(client_id, None)
        log.info("Removed MCP server data for user %s (client %s)", user_id, client_id)

    def _drop_grant(self, grant_id: str) -> None:
        self._grants.pop(grant_id, None)
        for key in [k for k, r in self._access_tokens.items() if r.grant_id == grant_id]:
            del self._access_tokens[key]

    def _purge_expired(self) -> None:
        now = self._now()
        for state in [s for s, (_, exp) in self._pending.items() if now > exp]:
            del self._pending[state]
        for key in [k for k, r in self._access_tokens.items() if now >= r.expires_at]:
            del self._access_tokens[key]
        # grants whose code was never redeemed
        for grant_id in [g.id for g in self._grants.values()
                         if g.refresh_token_hash is None and now > g.auth_code_expires_at]:
            self._drop_grant(grant_id)

    # ---------------- Discovery ----------------
    @staticmethod
    def authorization_server_metadata(issuer: str) -> Dict[str, Any]:
        issuer = issuer.rstrip("/")
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "registration_endpoint": f"{issuer}/register",
            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "token_endpoint_auth_methods_supported": list(AUTH_METHODS),
            "code_challenge_methods_supported": list(PKCE_METHODS),
        }

    @staticmethod
    def protected_resource_metadata(issuer: str) -> Dict[str, Any]:
        issuer = issuer.rstrip("/")
        return {
            "resource": f"{issuer}/mcp",
            "authorization_servers": [issuer],
            "bearer_methods_supported": ["header"],
        }
