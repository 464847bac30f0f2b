"""Flat JSON Schemas for tool input.

Gemini-style structured calling chokes on recursive schemas ($ref, nested
objects referencing themselves), and GTM's Parameter type is recursive. So
every nested GTM structure is taken as a JSON string and decoded by the
handler before it goes to the API.
"""
from __future__ import annotations

import json
from collections import namedtuple
from typing import Any, Dict, Iterable, Mapping

Body = namedtuple("Body", "properties json_fields")


def _s(desc=None, **extra):
    d = {"type": "string"}
    if desc:
        d["description"] = desc
    d.update(extra)
    return d


def _json(desc):
    return _s(f"{desc} (JSON string).")


def _b(desc):
    return {"type": "boolean", "description": desc}


def _n(desc):
    return {"type": "number", "description": desc}


def _list(desc):
    return {"type": "array", "items": {"type": "string"}, "description": desc}


def _body(plain: Mapping[str, Any], json_fields: Mapping[str, str]) -> Body:
    props = dict(plain)
    props.update({k: _json(v) for k, v in json_fields.items()})
    return Body(props, frozenset(json_fields))


ACCOUNT = _body(
    {"name": _s("Account display name."),
     "shareData": _b("Whether the account shares data anonymously with Google and others.")},
    {},
)

CONTAINER = _body(
    {"name": _s("Container display name."),
     "usageContext": _list("List of usage contexts: web, android, ios, amp, server."),
     "domainName": _list("List of domain names associated with the container."),
     "taggingServerUrls": _list("List of server-side container URLs."),
     "notes": _s("Container notes.")},
    {},
)

WORKSPACE = _body(
    {"name": _s("Workspace display name."),
     "description": _s("Workspace description.")},
    {},
)

VERSION = _body(
    {"name": _s("Container version display name."),
     "notes": _s("User notes on how to apply this container version.")},
    {},
)

TAG = _body(
    {"name": _s("Tag display name."),
     "type": _s("GTM Tag Type."),
     "liveOnly": _b("If set to true, this tag will only fire in the live environment."),
     "notes": _s("User notes on how to apply this tag in the container."),
     "scheduleStartMs": _s("The start timestamp in milliseconds to schedule a tag."),
     "scheduleEndMs": _s("The end timestamp in milliseconds to schedule a tag."),
     "firingTriggerId": _list("Firing trigger IDs."),
     "blockingTriggerId": _list("Blocking trigger IDs."),
     "parentFolderId": _s("Parent folder id."),
     "tagFiringOption": _s("Option to fire this tag.",
                           enum=["tagFiringOptionUnspecified", "unlimited", "oncePerEvent", "oncePerLoad"]),
     "paused": _b("Indicates whether the tag is paused."),
     "monitoringMetadataTagNameKey": _s("The key to use for tag display name in monitoring metadata.")},
    {"priority": "User defined numeric priority of the tag",
     "parameter": "The tag's parameters as an array",
     "setupTag": "The list of setup tags as an array",
     "teardownTag": "The list of teardown tags as an array",
     "monitoringMetadata": "A map of key-value pairs of tag metadata",
     "consentSettings": "Consent settings of a tag"},
)

_TRIGGER_PARAMS = (
    "uniqueTriggerId", "eventName", "interval", "limit", "selector", "intervalSeconds",
    "maxTimerLengthSeconds", "verticalScrollPercentageList", "horizontalScrollPercentageList",
    "visibilitySelector", "visiblePercentageMin", "visiblePercentageMax",
    "continuousTimeMinMilliseconds", "totalTimeMinMilliseconds",
)

TRIGGER = _body(
    {"name": _s("Trigger display name."),
     "type": _s("Trigger type."),
     "notes": _s("User notes on how to apply this trigger."),
     "parentFolderId": _s("Parent folder id.")},
    dict(
        {"filter": "The trigger's filter conditions as an array",
         "autoEventFilter": "The trigger's auto event filter conditions as an array",
         "customEventFilter": "The trigger's custom event filter conditions as an array",
         "parameter": "Additional parameters for the trigger as an array",
         "waitForTags": "Whether to delay form submissions until tags fire",
         "checkValidation": "Whether to only fire tags if event is not cancelled",
         "waitForTagsTimeout": "How long to wait (in ms) for tags to fire"},
        **{k: f"Trigger parameter '{k}'" for k in _TRIGGER_PARAMS}
    ),
)

VARIABLE = _body(
    {"name": _s("Variable display name."),
     "type": _s("Variable type."),
     "notes": _s("User notes on how to apply this variable."),
     "parentFolderId": _s("Parent folder id.")},
    {"parameter": "The variable's parameters as an array"},
)

CLIENT = _body(
    {"name": _s("Client display name."),
     "type": _s("Client type."),
     "priority": _n("Priority determines firing order."),
     "parentFolderId": _s("Parent folder id."),
     "notes": _s("User notes on how to apply this client.")},
    {"parameter": "The client's parameters as an array"},
)

ZONE = _body(
    {"name": _s("Zone display name."),
     "notes": _s("User notes on how to apply this zone.")},
    {"boundary": "The zone's boundary conditions",
     "childContainer": "The zone's child containers as an array",
     "typeRestriction": "The zone's type restrictions"},
)

TRANSFORMATION = _body(
    {"name": _s("Transformation display name."),
     "type": _s("Transformation type."),
     "notes": _s("User notes on how to apply this transformation.")},
    {"parameter": "The transformation's parameters as an array"},
)

GTAG_CONFIG = _body(
    {"type": _s("Google tag config type.")},
    {"parameter": "The configuration's parameters as an array"},
)

FOLDER = _body(
    {"name": _s("Folder display name."),
     "notes": _s("User notes on how to apply this folder.")},
    {},
)

ENVIRONMENT = _body(
    {"name": _s("Environment display name."),
     "description": _s("Environment description."),
     "url": _s("Default preview page url for the environment."),
     "enableDebug": _b("Whether or not to enable debug by default for the environment.")},
    {},
)

TEMPLATE = _body(
    {"name": _s("Template display name."),
     "templateData": _s("The custom template in text format.")},
    {"galleryReference": "A reference to the Community Template Gallery entry"},
)

USER_PERMISSION = _body(
    {"emailAddress": _s("User's email address.")},
    {"accountAccess": "GTM account access permissions",
     "containerAccess": "GTM container access permissions as an array"},
)

ID_DESCRIPTIONS = {
    "accountId": "The GTM account ID.",
    "containerId": "The GTM container ID.",
    "workspaceId": "The GTM workspace ID.",
    "containerVersionId": "The GTM container version ID.",
    "environmentId": "The GTM environment ID.",
    "permissionId": "The GTM user permission ID.",
    "destinationId": "The destination ID (e.g. a GA4 measurement ID).",
    "folderId": "The GTM folder ID.",
}


def tool_input_schema(actions: Iterable[str], ids: Iterable[str], body: Body = None,
                      required: Iterable[str] = (), extra: Mapping[str, Any] = None) -> Dict[str, Any]:
    props = {"action": _s("The operation to perform.", enum=list(actions))}
    for id_name in ids:
        props[id_name] = _s(ID_DESCRIPTIONS.get(id_name, f"The {id_name}."))
    if body:
        props.update(body.properties)
    if extra:
        props.update(extra)
    return {"type": "object", "properties": props, "required": ["action", *required]}


def parse_body(args: Mapping[str, Any], body: Body) -> Dict[str, Any]:
    """Pick the body fields out of the tool arguments and decode the JSON-string ones."""
    out = {}
    for key in body.properties:
        if key not in args or args[key] is None:
            continue
        value = args[key]
        if key in body.json_fields and isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise ValueError(f"Field '{key}' must be a valid JSON string: {e}") from e
        out[key] = value
    return out
