"""Application-default credentials for local (stdio) sessions.

Lookup order: CUSTOM_ADC_PATH, GOOGLE_APPLICATION_CREDENTIALS, then the file
written by `gcloud auth application-default login`. With none of them present
google-auth falls back to the metadata server.
"""
from __future__ import annotations

import calendar
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import google.auth
from google.auth.transport.requests import Request

from . import config
from .errors import AuthError
from .models import Props

log = logging.getLogger(__name__)

GCLOUD_ADC_RELPATH = os.path.join(".config", "gcloud", "application_default_credentials.json")


@dataclass
class ADCResult:
    credentials: Optional[Dict[str, Any]]  # parsed file contents, None for metadata server
    file_path: Optional[str]
    access_token: str
    google_credentials: Any = None


def find_adc_path() -> Optional[str]:
    for var in ("CUSTOM_ADC_PATH", "GOOGLE_APPLICATION_CREDENTIALS"):
        path = os.getenv(var)
        if path:
            if not os.path.isfile(path):
                raise AuthError(f"{var} is set but file not found: {path}")
            return path

    home = os.getenv("HOME")
    if home:
        gcloud_path = os.path.join(home, GCLOUD_ADC_RELPATH)
        if os.path.isfile(gcloud_path):
            return gcloud_path

    return None


def _expiry_epoch(creds) -> Optional[int]:
    # google-auth keeps expiry as a naive UTC datetime
    expiry = getattr(creds, "expiry", None)
    if expiry is None:
        return None
    return calendar.timegm(expiry.utctimetuple())


def authenticate_with_adc() -> ADCResult:
    file_path = find_adc_path()
    info = None

    if file_path:
        log.info("Using ADC credentials from: %s", file_path)
        with open(file_path, "r", encoding="utf-8") as fh:
            info = json.load(fh)
        log.info("ADC type: %s (client_id: %s)", info.get("type"), info.get("client_id"))
        creds, _ = google.auth.load_credentials_from_file(file_path, scopes=config.GTM_SCOPES)
    else:
        log.info("No ADC file found - using metadata server (GCE/GKE) or default ADC")
        creds, _ = google.auth.default(scopes=config.GTM_SCOPES)

    creds.refresh(Request())
    if not creds.token:
        raise AuthError("Failed to obtain access token from ADC")

    log.info("Successfully obtained access token from ADC")
    return ADCResult(credentials=info, file_path=file_path, access_token=creds.token, google_credentials=creds)


def props_from_adc(result: ADCResult) -> Props:
    info = result.credentials or {}
    return Props(
        access_token=result.access_token,
        client_id=info.get("client_id"),
        refresh_token=info.get("refresh_token"),
        expires_at=_expiry_epoch(result.google_credentials),
    )


def refresh_adc_props(result: ADCResult, props: Props) -> Props:
    """Refresh the live ADC credentials if they went stale and mirror them into props."""
    creds = result.google_credentials
    if creds is None or creds.valid:
        return props
    log.info("ADC access token expired, refreshing")
    creds.refresh(Request())
    if not creds.token:
        raise AuthError("Failed to refresh access token from ADC")
    result.access_token = creds.token
    props.access_token = creds.token
    props.expires_at = _expiry_epoch(creds)
    return props
