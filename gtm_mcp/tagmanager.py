import json
import logging
import time

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import TokenExpiredError
from .models import Props

log = logging.getLogger(__name__)


def get_tagmanager_client(props: Props):
    """Tag Manager v2 service that sends `Authorization: Bearer <props.access_token>`."""
    if props.expires_at:
        if int(time.time()) >= props.expires_at:
            raise TokenExpiredError("Access token expired. Please refresh your connection or re-authenticate.")

    try:
        creds = Credentials(token=props.access_token)
        return build("tagmanager", "v2", credentials=creds, cache_discovery=False)
    except Exception:
        log.exception("Error creating Tag Manager client")
        raise


# ---- GTM resource paths ----
def account_path(account_id):
    return f"accounts/{account_id}"


def container_path(account_id, container_id):
    return f"accounts/{account_id}/containers/{container_id}"


def workspace_path(account_id, container_id, workspace_id):
    return f"accounts/{account_id}/containers/{container_id}/workspaces/{workspace_id}"


def gtm_error_payload(where: str, err: Exception):
    if isinstance(err, HttpError):
        try:
            j = json.loads(err.content.decode("utf-8"))
        except (ValueError, AttributeError):
            j = {"error": {"message": str(err)}}
        e = j.get("error", {}) if isinstance(j, dict) else {}
        return {"where": where, "status": getattr(err, "status_code", None), "reason": e.get("status"), "message": e.get("message")}
    return {"where": where, "message": str(err)}
