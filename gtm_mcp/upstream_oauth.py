"""Google (upstream) side of the OAuth flow."""
from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Dict, Optional

import requests
from google_auth_oauthlib.flow import Flow

from . import config
from .errors import AuthError, UpstreamAuthError
from .models import Props

log = logging.getLogger(__name__)

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


def get_upstream_authorize_url(upstream_url: str, client_id: str, scope: str, redirect_uri: str,
                               state: Optional[str] = None, hosted_domain: Optional[str] = None,
                               has_refresh_token: bool = False) -> str:
    client_config = {
        "web": {
            "client_id": client_id,
            "auth_uri": upstream_url,
            "token_uri": config.GOOGLE_TOKEN_URL,
            "redirect_uris": [redirect_uri],
        }
    }
    # PKCE towards Google is off: the code is exchanged server-side with the client secret
    flow = Flow.from_client_config(client_config, scopes=scope.split(), redirect_uri=redirect_uri,
                                   autogenerate_code_verifier=False)

    extra = {}
    if hosted_domain:
        extra["hd"] = hosted_domain
    # Google only hands out a refresh token on an explicit consent screen
    if not has_refresh_token:
        extra["prompt"] = "consent"
    url, _ = flow.authorization_url(access_type="offline", state=state, **extra)
    return url


def fetch_upstream_auth_token(code: Optional[str], upstream_url: str, client_id: str, client_secret: str,
                              redirect_uri: str, grant_type: str = "authorization_code") -> Dict[str, Any]:
    """Exchange an authorization code at Google's token endpoint.

    Raises UpstreamAuthError with the HTTP status the caller should answer with.
    """
    if not code:
        raise UpstreamAuthError("Missing code", status=400)

    resp = requests.post(
        upstream_url,
        headers=FORM_HEADERS,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": grant_type,
        },
        timeout=config.UPSTREAM_TIMEOUT,
    )
    if not resp.ok:
        log.warning("Upstream token exchange failed (%s): %s", resp.status_code, resp.text)
        raise UpstreamAuthError("Failed to fetch access token", status=500, detail=resp.text)

    body = resp.json()
    if not body.get("access_token"):
        raise UpstreamAuthError("Missing access token", status=400)
    return body


def refresh_upstream_auth_token(client_id: str, client_secret: str, refresh_token: str,
                                upstream_url: str = config.GOOGLE_TOKEN_URL) -> Dict[str, Any]:
    resp = requests.post(
        upstream_url,
        headers=FORM_HEADERS,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
        timeout=config.UPSTREAM_TIMEOUT,
    )
    if not resp.ok:
        raise UpstreamAuthError(resp.text, status=resp.status_code)

    body = resp.json()
    if not body.get("access_token"):
        raise UpstreamAuthError("Missing access token in refresh response")
    return body


def fetch_upstream_user_info(access_token: str) -> Dict[str, Any]:
    resp = requests.get(
        config.GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=config.UPSTREAM_TIMEOUT,
    )
    if not resp.ok:
        log.warning("Userinfo request failed (%s): %s", resp.status_code, resp.text)
        raise UpstreamAuthError("Failed to fetch user info", status=500, detail=resp.text)
    return resp.json()


def revoke_upstream_token(token: str) -> bool:
    resp = requests.post(
        config.GOOGLE_REVOKE_URL,
        headers=FORM_HEADERS,
        data={"token": token},
        timeout=config.UPSTREAM_TIMEOUT,
    )
    if not resp.ok:
        log.warning("Upstream token revoke failed (%s): %s", resp.status_code, resp.text)
    return resp.ok


def handle_token_exchange_callback(grant_type: str, props: Optional[Props],
                                   now: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Called by the provider whenever it issues MCP tokens.

    On refresh, the upstream Google token is renewed when fewer than
    REFRESH_THRESHOLD seconds remain, and the grant's props are replaced.
    """
    now = int(time.time()) if now is None else now

    if grant_type == "authorization_code":
        return {"access_token_ttl": config.MCP_ACCESS_TOKEN_TTL}

    if grant_type == "refresh_token":
        if props is None or not props.refresh_token:
            raise AuthError("Missing Google refresh token. Please re-authenticate.")

        expires_at = props.expires_at or 0
        if expires_at >= now + config.REFRESH_THRESHOLD:
            return {"access_token_ttl": config.MCP_ACCESS_TOKEN_TTL}

        try:
            token = refresh_upstream_auth_token(
                client_id=config.GOOGLE_CLIENT_ID,
                client_secret=config.GOOGLE_CLIENT_SECRET,
                refresh_token=props.refresh_token,
                upstream_url=config.GOOGLE_TOKEN_URL,
            )
        except (UpstreamAuthError, requests.RequestException) as e:
            raise AuthError(f"Google refresh failed: {e}. Please re-authenticate.") from e

        log.info("Refreshed upstream Google token for user %s", props.user_id)
        new_props = dataclasses.replace(
            props,
            access_token=token["access_token"],
            expires_at=now + int(token.get("expires_in") or 0),
            refresh_token=token.get("refresh_token") or props.refresh_token,
        )
        return {"new_props": new_props, "access_token_ttl": config.MCP_ACCESS_TOKEN_TTL}

    return None
