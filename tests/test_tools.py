import json
import time
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from gtm_mcp.models import Props, ServerEnv, ToolContext
from gtm_mcp.tools import REMOVED_TEXT, TOOLS

WS = {"accountId": "6000", "containerId": "7000", "workspaceId": "3"}
WS_PATH = "accounts/6000/containers/7000/workspaces/3"


@pytest.fixture
def svc():
    service = MagicMock()
    with patch("gtm_mcp.tools.get_tagmanager_client", return_value=service):
        yield service


def _tags(service):
    return service.accounts.return_value.containers.return_value.workspaces.return_value.tags.return_value


def _text(result):
    return result["content"][0]["text"]


def _walk_schema(node):
    if isinstance(node, dict):
        yield node
        for v in node.values():
            yield from _walk_schema(v)
    elif isinstance(node, list):
        for v in node:
            yield from _walk_schema(v)


def test_every_tool_schema_is_flat():
    for desc in TOOLS.descriptors():
        schema = desc["inputSchema"]
        assert schema["type"] == "object"
        for prop in schema["properties"].values():
            assert prop["type"] in ("string", "boolean", "number", "array")
            if prop["type"] == "array":
                assert prop["items"] == {"type": "string"}
        assert not any("$ref" in n for n in _walk_schema(schema))


def test_expected_tools_registered():
    names = set(TOOLS.names())
    assert {"gtm_account", "gtm_container", "gtm_workspace", "gtm_tag", "gtm_trigger", "gtm_variable",
            "gtm_version", "gtm_remove_mcp_server_data"} <= names


def test_tag_create_decodes_json_fields(ctx, svc):
    _tags(svc).create.return_value.execute.return_value = {"tagId": "12", "name": "GA4"}
    args = dict(WS, action="create", name="GA4", type="gaawc",
                parameter=json.dumps([{"type": "template", "key": "measurementId", "value": "G-1"}]),
                firingTriggerId=["2147479553"])

    result = TOOLS.call("gtm_tag", args, ctx)

    assert "isError" not in result
    assert _text(result).startswith("GTM tag create\n")
    assert json.loads(_text(result).split("\n", 1)[1]) == {"tagId": "12", "name": "GA4"}
    _tags(svc).create.assert_called_once_with(parent=WS_PATH, body={
        "name": "GA4",
        "type": "gaawc",
        "parameter": [{"type": "template", "key": "measurementId", "value": "G-1"}],
        "firingTriggerId": ["2147479553"],
    })


def test_invalid_json_field_is_invalid_input(ctx, svc):
    result = TOOLS.call("gtm_tag", dict(WS, action="create", name="x", parameter="[not json"), ctx)
    assert result["isError"] is True
    assert _text(result).startswith("Invalid input")
    assert "Field 'parameter' must be a valid JSON string" in _text(result)
    _tags(svc).create.assert_not_called()


def test_missing_entity_id(ctx, svc):
    result = TOOLS.call("gtm_tag", dict(WS, action="get"), ctx)
    assert result["isError"] is True
    assert "Missing required argument(s) tagId for action 'get'" in _text(result)


def test_missing_parent_ids(ctx, svc):
    result = TOOLS.call("gtm_trigger", {"action": "list", "accountId": "6000"}, ctx)
    assert "containerId, workspaceId" in _text(result)


def test_unsupported_action(ctx, svc):
    result = TOOLS.call("gtm_gtag_config", dict(WS, action="revert", gtagConfigId="1"), ctx)
    assert result["isError"] is True
    assert "Unsupported action 'revert'" in _text(result)


def test_list_passes_page_token_only_when_given(ctx, svc):
    TOOLS.call("gtm_tag", dict(WS, action="list"), ctx)
    _tags(svc).list.assert_called_with(parent=WS_PATH)

    TOOLS.call("gtm_tag", dict(WS, action="list", pageToken="p2"), ctx)
    _tags(svc).list.assert_called_with(parent=WS_PATH, pageToken="p2")


def test_remove_reports_deleted_path(ctx, svc):
    result = TOOLS.call("gtm_tag", dict(WS, action="remove", tagId="12"), ctx)
    _tags(svc).delete.assert_called_once_with(path=WS_PATH + "/tags/12")
    assert json.loads(_text(result).split("\n", 1)[1]) == {"deleted": WS_PATH + "/tags/12"}


def test_update_sends_fingerprint(ctx, svc):
    TOOLS.call("gtm_tag", dict(WS, action="update", tagId="12", name="renamed", fingerprint="fp"), ctx)
    _tags(svc).update.assert_called_once_with(path=WS_PATH + "/tags/12", body={"name": "renamed"}, fingerprint="fp")


def test_account_list(ctx, svc):
    svc.accounts.return_value.list.return_value.execute.return_value = {"account": [{"accountId": "6000"}]}
    result = TOOLS.call("gtm_account", {"action": "list"}, ctx)
    svc.accounts.return_value.list.assert_called_once_with()
    assert "6000" in _text(result)


def test_built_in_variable_create(ctx, svc):
    coll = svc.accounts.return_value.containers.return_value.workspaces.return_value.built_in_variables.return_value
    TOOLS.call("gtm_built_in_variable", dict(WS, action="create", type=["pageUrl", "clickId"]), ctx)
    coll.create.assert_called_once_with(parent=WS_PATH, type=["pageUrl", "clickId"])


def test_built_in_variable_requires_type(ctx, svc):
    result = TOOLS.call("gtm_built_in_variable", dict(WS, action="remove"), ctx)
    assert "Missing required argument(s) type" in _text(result)


def test_version_publish(ctx, svc):
    coll = svc.accounts.return_value.containers.return_value.versions.return_value
    TOOLS.call("gtm_version", {"action": "publish", "accountId": "6000", "containerId": "7000",
                               "containerVersionId": "5"}, ctx)
    coll.publish.assert_called_once_with(path="accounts/6000/containers/7000/versions/5")


def test_http_error_becomes_tool_failure(ctx, svc):
    _tags(svc).get.return_value.execute.side_effect = HttpError(
        resp=MagicMock(status=403, reason="Forbidden"),
        content=b'{"error": {"message": "The caller does not have permission", "status": "PERMISSION_DENIED"}}',
    )
    result = TOOLS.call("gtm_tag", dict(WS, action="get", tagId="1"), ctx)

    assert result["isError"] is True
    text = _text(result)
    assert text.startswith("Tool call failed")
    payload = json.loads(text.split("\n", 1)[1])
    assert payload["where"] == "tools/call.gtm_tag"
    assert payload["status"] == 403
    assert payload["reason"] == "PERMISSION_DENIED"


def test_expired_token_is_authentication_error():
    ctx = ToolContext(props=Props(access_token="ya29.old", expires_at=int(time.time()) - 5))
    result = TOOLS.call("gtm_account", {"action": "list"}, ctx)
    assert result["isError"] is True
    assert _text(result).startswith("Authentication error")
    assert "Access token expired" in _text(result)


def test_unknown_tool(ctx):
    result = TOOLS.call("gtm_nope", {}, ctx)
    assert result == {"isError": True, "content": [{"type": "text", "text": "Unsupported tool 'gtm_nope'"}]}


# -------------------- session removal --------------------
def test_remove_data_refused_in_adc_mode(ctx):
    result = TOOLS.call("gtm_remove_mcp_server_data", {}, ctx)
    assert result["isError"] is True
    assert _text(result).startswith("Invalid mode: ")


def test_remove_data_requires_oauth_user(props):
    props.user_id = None
    ctx = ToolContext(props=props, env=ServerEnv(worker_host="https://gtm.example.com", provider=MagicMock()))
    result = TOOLS.call("gtm_remove_mcp_server_data", {}, ctx)
    assert _text(result).startswith("Invalid credentials: ")
    ctx.env.provider.remove_user_data.assert_not_called()


def test_remove_data_calls_provider(props):
    provider = MagicMock()
    ctx = ToolContext(props=props, env=ServerEnv(worker_host="https://gtm.example.com", provider=provider))

    result = TOOLS.call("gtm_remove_mcp_server_data", {}, ctx)

    provider.remove_user_data.assert_called_once_with("client-1", "1234567890", "ya29.google-token")
    assert result == {"content": [{"type": "text", "text": REMOVED_TEXT}]}


def test_remove_data_failure(props):
    provider = MagicMock()
    provider.remove_user_data.side_effect = RuntimeError("kv down")
    ctx = ToolContext(props=props, env=ServerEnv(worker_host="https://gtm.example.com", provider=provider))

    result = TOOLS.call("gtm_remove_mcp_server_data", {}, ctx)

    assert result["isError"] is True
    assert _text(result).startswith("Unknown error: ")
    assert "client-1" in _text(result)
