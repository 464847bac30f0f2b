import time
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from gtm_mcp.errors import TokenExpiredError
from gtm_mcp.models import Props
from gtm_mcp.tagmanager import (
    container_path,
    get_tagmanager_client,
    gtm_error_payload,
    workspace_path,
)


def test_expired_token_is_rejected_before_building():
    props = Props(access_token="ya29.old", expires_at=int(time.time()) - 1)
    with patch("gtm_mcp.tagmanager.build") as build:
        with pytest.raises(TokenExpiredError, match="Access token expired"):
            get_tagmanager_client(props)
    build.assert_not_called()


@pytest.mark.parametrize("expires_at", [None, int(time.time()) + 600])
def test_client_uses_bearer_token(expires_at):
    props = Props(access_token="ya29.live", expires_at=expires_at)
    with patch("gtm_mcp.tagmanager.build") as build:
        svc = get_tagmanager_client(props)

    assert svc is build.return_value
    args, kwargs = build.call_args
    assert args == ("tagmanager", "v2")
    assert kwargs["cache_discovery"] is False
    assert kwargs["credentials"].token == "ya29.live"


def test_build_failure_propagates():
    with patch("gtm_mcp.tagmanager.build", side_effect=RuntimeError("discovery down")):
        with pytest.raises(RuntimeError, match="discovery down"):
            get_tagmanager_client(Props(access_token="t"))


def test_paths():
    assert container_path("1", "2") == "accounts/1/containers/2"
    assert workspace_path(1, 2, 3) == "accounts/1/containers/2/workspaces/3"


def test_error_payload_for_http_error():
    err = HttpError(
        resp=MagicMock(status=404, reason="Not Found"),
        content=b'{"error": {"code": 404, "message": "Tag not found", "status": "NOT_FOUND"}}',
    )
    assert gtm_error_payload("tools/call.gtm_tag", err) == {
        "where": "tools/call.gtm_tag",
        "status": 404,
        "reason": "NOT_FOUND",
        "message": "Tag not found",
    }


def test_error_payload_for_other_errors():
    assert gtm_error_payload("x", KeyError("boom")) == {"where": "x", "message": "'boom'"}
