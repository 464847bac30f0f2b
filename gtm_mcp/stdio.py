"""Stdio transport for local use with application-default credentials.

Each line on stdin is one JSON-RPC message; responses go to stdout, one per
line. Logging goes to stderr so it never corrupts the protocol stream.
"""
import json
import logging
import sys

from google.auth.exceptions import GoogleAuthError

from . import config
from .adc_auth import authenticate_with_adc, props_from_adc, refresh_adc_props
from .errors import AuthError
from .models import ToolContext
from .rpc import INTERNAL_ERROR, PARSE_ERROR, handle_payload, rpc_error_obj

log = logging.getLogger(__name__)

ADC_MISSING_MESSAGE = (
    "ADC credentials file not found. Please set CUSTOM_ADC_PATH, GOOGLE_APPLICATION_CREDENTIALS, "
    "or run 'gcloud auth application-default login'."
)


def serve(stdin, stdout, ctx: ToolContext, refresh=None):
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            resp = rpc_error_obj(None, PARSE_ERROR, "Parse error")
        else:
            if refresh:
                try:
                    refresh()
                except (AuthError, GoogleAuthError):
                    # the next API call reports the expired token to the agent
                    log.exception("Could not refresh ADC access token")
            try:
                resp = handle_payload(payload, ctx)
            except Exception:
                log.exception("Unhandled error dispatching message")
                rpc_id = payload.get("id") if isinstance(payload, dict) else None
                resp = rpc_error_obj(rpc_id, INTERNAL_ERROR, "Internal error")
        if resp is not None:
            stdout.write(json.dumps(resp, ensure_ascii=False) + "\n")
            stdout.flush()


def run(stdin=None, stdout=None):
    adc = authenticate_with_adc()
    if not adc.credentials:
        raise AuthError(ADC_MISSING_MESSAGE)

    props = props_from_adc(adc)
    ctx = ToolContext(props=props, env=None)
    log.info("%s %s serving on stdio", config.SERVER_NAME, config.SERVER_VERSION)
    serve(stdin or sys.stdin, stdout or sys.stdout, ctx, refresh=lambda: refresh_adc_props(adc, props))


def main():
    logging.basicConfig(level=config.LOG_LEVEL, stream=sys.stderr)
    try:
        run()
    except KeyboardInterrupt:
        pass
    except Exception:
        log.exception("Fatal error starting server")
        sys.exit(1)


if __name__ == "__main__":
    main()
