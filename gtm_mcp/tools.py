"""GTM tools: one tool per Tag Manager resource, selected by an `action` argument."""
import logging

from . import schemas
from .models import ToolContext
from .registry import ToolRegistry, error_response, ok_text
from .tagmanager import account_path, container_path, get_tagmanager_client, workspace_path

log = logging.getLogger(__name__)

TOOLS = ToolRegistry()

TAG_MANAGER_REMOVE_MCP_SERVER_DATA = "gtm_remove_mcp_server_data"

REMOVED_TEXT = (
    "The MCP server data was removed. 1. Close your MCP client. "
    "2. Clear cache `rm -rf ~/.mcp-auth` (more info https://github.com/geelen/mcp-remote#readme). "
    "3. Open MCP client again to run authentication flow."
)

LIST_EXTRA = {"pageToken": {"type": "string", "description": "Continuation token for fetching the next page of results."}}
FINGERPRINT_EXTRA = {"fingerprint": {"type": "string", "description": "When provided, must match the entity's current fingerprint."}}


def _need(args, *names, action=None):
    missing = [n for n in names if args.get(n) in (None, "")]
    if missing:
        raise ValueError(f"Missing required argument(s) {', '.join(missing)} for action '{action}'")
    return [str(args[n]) for n in names]


def _kw(**kw):
    return {k: v for k, v in kw.items() if v not in (None, "")}


def _walk(svc, chain):
    node = svc
    for seg in chain:
        node = getattr(node, seg)()
    return node


def _parent(level, args, action):
    if level == "account":
        return account_path(*_need(args, "accountId", action=action))
    if level == "container":
        return container_path(*_need(args, "accountId", "containerId", action=action))
    return workspace_path(*_need(args, "accountId", "containerId", "workspaceId", action=action))


def _crud(coll, action, parent, item, body, args):
    """Standard create/get/list/update/remove/revert calls shared by most resources."""
    if action == "list":
        return coll.list(**_kw(parent=parent, pageToken=args.get("pageToken"))).execute()
    if action == "get":
        return coll.get(path=item()).execute()
    if action == "create":
        return coll.create(parent=parent, body=schemas.parse_body(args, body)).execute()
    if action == "update":
        return coll.update(**_kw(path=item(), body=schemas.parse_body(args, body), fingerprint=args.get("fingerprint"))).execute()
    if action == "remove":
        coll.delete(path=item()).execute()
        return {"deleted": item()}
    if action == "revert":
        return coll.revert(**_kw(path=item(), fingerprint=args.get("fingerprint"))).execute()
    raise ValueError(f"Unsupported action '{action}'")


def _action(args, actions):
    action = args.get("action")
    if action not in actions:
        raise ValueError(f"Unsupported action '{action}'. Valid actions: {', '.join(actions)}")
    return action


# -------------------- Workspace entities --------------------
def _workspace_entity(name, label, segment, id_arg, body, actions=("create", "get", "list", "update", "remove", "revert")):
    schema = schemas.tool_input_schema(
        actions, ["accountId", "containerId", "workspaceId", id_arg], body,
        required=["accountId", "containerId", "workspaceId"],
        extra=dict(LIST_EXTRA, **FINGERPRINT_EXTRA),
    )
    description = (f"Manage GTM {label}s in a workspace. Actions: {', '.join(actions)}. "
                   "Complex fields are passed as JSON strings.")

    def handler(ctx: ToolContext, args):
        action = _action(args, actions)
        parent = _parent("workspace", args, action)
        item = lambda: f"{parent}/{segment}/{_need(args, id_arg, action=action)[0]}"
        svc = get_tagmanager_client(ctx.props)
        coll = _walk(svc, ("accounts", "containers", "workspaces", segment))
        res = _crud(coll, action, parent, item, body, args)
        return ok_text(f"GTM {label} {action}", res)

    TOOLS.tool(name, description, schema)(handler)
    return handler


_workspace_entity("gtm_tag", "tag", "tags", "tagId", schemas.TAG)
_workspace_entity("gtm_trigger", "trigger", "triggers", "triggerId", schemas.TRIGGER)
_workspace_entity("gtm_variable", "variable", "variables", "variableId", schemas.VARIABLE)
_workspace_entity("gtm_client", "client", "clients", "clientId", schemas.CLIENT)
_workspace_entity("gtm_zone", "zone", "zones", "zoneId", schemas.ZONE)
_workspace_entity("gtm_transformation", "transformation", "transformations", "transformationId", schemas.TRANSFORMATION)
_workspace_entity("gtm_template", "custom template", "templates", "templateId", schemas.TEMPLATE)
_workspace_entity("gtm_gtag_config", "Google tag config", "gtag_config", "gtagConfigId", schemas.GTAG_CONFIG,
                  actions=("create", "get", "list", "update", "remove"))


# -------------------- Folders --------------------
FOLDER_ACTIONS = ("create", "get", "list", "update", "remove", "revert", "entities", "moveEntitiesToFolder")


@TOOLS.tool(
    "gtm_folder",
    "Manage GTM folders in a workspace, list a folder's entities, or move tags/triggers/variables into a folder.",
    schemas.tool_input_schema(
        FOLDER_ACTIONS, ["accountId", "containerId", "workspaceId", "folderId"], schemas.FOLDER,
        required=["accountId", "containerId", "workspaceId"],
        extra=dict(LIST_EXTRA, **FINGERPRINT_EXTRA,
                   tagId={"type": "array", "items": {"type": "string"}, "description": "Tags to move to the folder."},
                   triggerId={"type": "array", "items": {"type": "string"}, "description": "Triggers to move to the folder."},
                   variableId={"type": "array", "items": {"type": "string"}, "description": "Variables to move to the folder."}),
    ),
)
def gtm_folder(ctx: ToolContext, args):
    action = _action(args, FOLDER_ACTIONS)
    parent = _parent("workspace", args, action)
    item = lambda: f"{parent}/folders/{_need(args, 'folderId', action=action)[0]}"
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "workspaces", "folders"))

    if action == "entities":
        res = coll.entities(**_kw(path=item(), pageToken=args.get("pageToken"))).execute()
    elif action == "moveEntitiesToFolder":
        res = coll.move_entities_to_folder(**_kw(
            path=item(), body={},
            tagId=args.get("tagId"), triggerId=args.get("triggerId"), variableId=args.get("variableId"),
        )).execute()
        res = res or {"moved": True}
    else:
        res = _crud(coll, action, parent, item, schemas.FOLDER, args)
    return ok_text(f"GTM folder {action}", res)


# -------------------- Built-in variables --------------------
BUILT_IN_ACTIONS = ("create", "list", "remove", "revert")


@TOOLS.tool(
    "gtm_built_in_variable",
    "Enable, list, disable or revert GTM built-in variables in a workspace.",
    schemas.tool_input_schema(
        BUILT_IN_ACTIONS, ["accountId", "containerId", "workspaceId"],
        required=["accountId", "containerId", "workspaceId"],
        extra=dict(LIST_EXTRA,
                   type={"type": "array", "items": {"type": "string"},
                         "description": "Built-in variable types, e.g. pageUrl, clickId. 'revert' uses the first entry."}),
    ),
)
def gtm_built_in_variable(ctx: ToolContext, args):
    action = _action(args, BUILT_IN_ACTIONS)
    parent = _parent("workspace", args, action)
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "workspaces", "built_in_variables"))
    types = args.get("type") or []
    if isinstance(types, str):
        types = [types]
    if action != "list" and not types:
        raise ValueError(f"Missing required argument(s) type for action '{action}'")

    if action == "list":
        res = coll.list(**_kw(parent=parent, pageToken=args.get("pageToken"))).execute()
    elif action == "create":
        res = coll.create(parent=parent, type=types).execute()
    elif action == "remove":
        coll.delete(path=f"{parent}/built_in_variables", type=types).execute()
        res = {"deleted": types}
    else:
        res = coll.revert(path=f"{parent}/built_in_variables", type=types[0]).execute()
    return ok_text(f"GTM built-in variable {action}", res)


# -------------------- Accounts --------------------
ACCOUNT_ACTIONS = ("get", "list", "update")


@TOOLS.tool(
    "gtm_account",
    "List GTM accounts the user has access to, or get/update one account.",
    schemas.tool_input_schema(ACCOUNT_ACTIONS, ["accountId"], schemas.ACCOUNT,
                              extra=dict(LIST_EXTRA, **FINGERPRINT_EXTRA)),
)
def gtm_account(ctx: ToolContext, args):
    action = _action(args, ACCOUNT_ACTIONS)
    coll = get_tagmanager_client(ctx.props).accounts()
    if action == "list":
        res = coll.list(**_kw(pageToken=args.get("pageToken"))).execute()
    else:
        item = lambda: account_path(*_need(args, "accountId", action=action))
        res = _crud(coll, action, None, item, schemas.ACCOUNT, args)
    return ok_text(f"GTM account {action}", res)


# -------------------- Containers --------------------
CONTAINER_ACTIONS = ("create", "get", "list", "update", "remove", "snippet")


@TOOLS.tool(
    "gtm_container",
    "Manage GTM containers in an account. 'snippet' returns the container's install snippet.",
    schemas.tool_input_schema(CONTAINER_ACTIONS, ["accountId", "containerId"], schemas.CONTAINER,
                              required=["accountId"], extra=dict(LIST_EXTRA, **FINGERPRINT_EXTRA)),
)
def gtm_container(ctx: ToolContext, args):
    action = _action(args, CONTAINER_ACTIONS)
    parent = _parent("account", args, action)
    item = lambda: container_path(*_need(args, "accountId", "containerId", action=action))
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers"))
    if action == "snippet":
        res = coll.snippet(path=item()).execute()
    else:
        res = _crud(coll, action, parent, item, schemas.CONTAINER, args)
    return ok_text(f"GTM container {action}", res)


# -------------------- Workspaces --------------------
WORKSPACE_ACTIONS = ("create", "get", "list", "update", "remove", "getStatus", "sync", "createVersion", "quickPreview")


@TOOLS.tool(
    "gtm_workspace",
    "Manage GTM workspaces. 'getStatus' shows pending changes, 'sync' merges the latest version, "
    "'createVersion' snapshots the workspace into a container version (name/notes apply to the version).",
    schemas.tool_input_schema(WORKSPACE_ACTIONS, ["accountId", "containerId", "workspaceId"], schemas.WORKSPACE,
                              required=["accountId", "containerId"],
                              extra=dict(LIST_EXTRA, **FINGERPRINT_EXTRA,
                                         notes={"type": "string", "description": "Version notes for 'createVersion'."})),
)
def gtm_workspace(ctx: ToolContext, args):
    action = _action(args, WORKSPACE_ACTIONS)
    parent = _parent("container", args, action)
    item = lambda: f"{parent}/workspaces/{_need(args, 'workspaceId', action=action)[0]}"
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "workspaces"))

    if action == "getStatus":
        res = coll.getStatus(path=item()).execute()
    elif action == "sync":
        res = coll.sync(path=item()).execute()
    elif action == "createVersion":
        res = coll.create_version(path=item(), body=schemas.parse_body(args, schemas.VERSION)).execute()
    elif action == "quickPreview":
        res = coll.quick_preview(path=item()).execute()
    else:
        res = _crud(coll, action, parent, item, schemas.WORKSPACE, args)
    return ok_text(f"GTM workspace {action}", res)


# -------------------- Versions --------------------
VERSION_ACTIONS = ("get", "live", "publish", "remove", "setLatest", "undelete", "update")


@TOOLS.tool(
    "gtm_version",
    "Get, publish, delete, restore or update GTM container versions. 'live' returns the published version.",
    schemas.tool_input_schema(VERSION_ACTIONS, ["accountId", "containerId", "containerVersionId"], schemas.VERSION,
                              required=["accountId", "containerId"], extra=FINGERPRINT_EXTRA),
)
def gtm_version(ctx: ToolContext, args):
    action = _action(args, VERSION_ACTIONS)
    parent = _parent("container", args, action)
    item = lambda: f"{parent}/versions/{_need(args, 'containerVersionId', action=action)[0]}"
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "versions"))

    if action == "live":
        res = coll.live(parent=parent).execute()
    elif action == "publish":
        res = coll.publish(**_kw(path=item(), fingerprint=args.get("fingerprint"))).execute()
    elif action == "setLatest":
        res = coll.set_latest(path=item()).execute()
    elif action == "undelete":
        res = coll.undelete(path=item()).execute()
    else:
        res = _crud(coll, action, parent, item, schemas.VERSION, args)
    return ok_text(f"GTM container version {action}", res)


VERSION_HEADER_ACTIONS = ("list", "latest")


@TOOLS.tool(
    "gtm_version_header",
    "List container version headers or fetch the latest one.",
    schemas.tool_input_schema(VERSION_HEADER_ACTIONS, ["accountId", "containerId"],
                              required=["accountId", "containerId"],
                              extra=dict(LIST_EXTRA, includeDeleted={"type": "boolean", "description": "Also return deleted versions."})),
)
def gtm_version_header(ctx: ToolContext, args):
    action = _action(args, VERSION_HEADER_ACTIONS)
    parent = _parent("container", args, action)
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "version_headers"))
    if action == "latest":
        res = coll.latest(parent=parent).execute()
    else:
        res = coll.list(**_kw(parent=parent, includeDeleted=args.get("includeDeleted"), pageToken=args.get("pageToken"))).execute()
    return ok_text(f"GTM version header {action}", res)


# -------------------- Environments --------------------
ENVIRONMENT_ACTIONS = ("create", "get", "list", "update", "remove", "reauthorize")


@TOOLS.tool(
    "gtm_environment",
    "Manage GTM environments of a container. 'reauthorize' regenerates the environment's authorization code.",
    schemas.tool_input_schema(ENVIRONMENT_ACTIONS, ["accountId", "containerId", "environmentId"], schemas.ENVIRONMENT,
                              required=["accountId", "containerId"], extra=dict(LIST_EXTRA, **FINGERPRINT_EXTRA)),
)
def gtm_environment(ctx: ToolContext, args):
    action = _action(args, ENVIRONMENT_ACTIONS)
    parent = _parent("container", args, action)
    item = lambda: f"{parent}/environments/{_need(args, 'environmentId', action=action)[0]}"
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "environments"))
    if action == "reauthorize":
        res = coll.reauthorize(path=item(), body=schemas.parse_body(args, schemas.ENVIRONMENT)).execute()
    else:
        res = _crud(coll, action, parent, item, schemas.ENVIRONMENT, args)
    return ok_text(f"GTM environment {action}", res)


# -------------------- Destinations --------------------
DESTINATION_ACTIONS = ("get", "list", "link")


@TOOLS.tool(
    "gtm_destination",
    "List, get or link Google tag destinations of a container.",
    schemas.tool_input_schema(DESTINATION_ACTIONS, ["accountId", "containerId", "destinationId"],
                              required=["accountId", "containerId"],
                              extra={"allowUserPermissionFeatureUpdate": {
                                  "type": "boolean",
                                  "description": "Allow the link to change the container's user permission features."}}),
)
def gtm_destination(ctx: ToolContext, args):
    action = _action(args, DESTINATION_ACTIONS)
    parent = _parent("container", args, action)
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "containers", "destinations"))
    if action == "list":
        res = coll.list(parent=parent).execute()
    elif action == "get":
        res = coll.get(path=f"{parent}/destinations/{_need(args, 'destinationId', action=action)[0]}").execute()
    else:
        destination_id, = _need(args, "destinationId", action=action)
        res = coll.link(**_kw(parent=parent, destinationId=destination_id,
                              allowUserPermissionFeatureUpdate=args.get("allowUserPermissionFeatureUpdate"))).execute()
    return ok_text(f"GTM destination {action}", res)


# -------------------- User permissions --------------------
PERMISSION_ACTIONS = ("create", "get", "list", "update", "remove")


@TOOLS.tool(
    "gtm_user_permission",
    "Manage user access to a GTM account and its containers.",
    schemas.tool_input_schema(PERMISSION_ACTIONS, ["accountId", "permissionId"], schemas.USER_PERMISSION,
                              required=["accountId"], extra=LIST_EXTRA),
)
def gtm_user_permission(ctx: ToolContext, args):
    action = _action(args, PERMISSION_ACTIONS)
    parent = _parent("account", args, action)
    item = lambda: f"{parent}/user_permissions/{_need(args, 'permissionId', action=action)[0]}"
    coll = _walk(get_tagmanager_client(ctx.props), ("accounts", "user_permissions"))
    res = _crud(coll, action, parent, item, schemas.USER_PERMISSION, args)
    return ok_text(f"GTM user permission {action}", res)


# -------------------- Session removal (OAuth mode) --------------------
@TOOLS.tool(
    TAG_MANAGER_REMOVE_MCP_SERVER_DATA,
    "Clear client data from MCP server and revoke google auth access (SSE/OAuth mode only)",
    {"type": "object", "properties": {}},
)
def remove_mcp_server_data(ctx: ToolContext, args):
    env, props = ctx.env, ctx.props

    # This tool needs the HTTP server holding the OAuth grants
    if env is None or not env.worker_host:
        return error_response(
            "This tool is only available in SSE/OAuth mode on the HTTP server, not for local ADC mode.",
            "Invalid mode",
        )

    if not props.user_id:
        return error_response("This tool requires OAuth authentication.", "Invalid credentials")

    try:
        env.provider.remove_user_data(props.client_id, props.user_id, props.access_token)
    except Exception:
        log.exception("Failed to remove MCP server data for client %s", props.client_id)
        return error_response(
            f"Error removing client in the {TAG_MANAGER_REMOVE_MCP_SERVER_DATA} tool for client {props.client_id}",
            "Unknown error",
        )
    return {"content": [{"type": "text", "text": REMOVED_TEXT}]}
