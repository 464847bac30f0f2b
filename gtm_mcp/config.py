import os

# -------------------- Server --------------------
SERVER_NAME = "google-tag-manager-mcp-server"
SERVER_VERSION = "1.0.0"
MCP_PROTOCOL_VERSION_FALLBACK = "2024-11-05"

PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Public base URL of the HTTP server. Tools treat its presence as OAuth mode.
WORKER_HOST = os.getenv("WORKER_HOST", "").strip()

# -------------------- Google OAuth client --------------------
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "").strip()
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "").strip()
GOOGLE_HOSTED_DOMAIN = os.getenv("GOOGLE_HOSTED_DOMAIN", "").strip()

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# ADC (stdio) sessions only need to edit containers.
GTM_SCOPES = ["https://www.googleapis.com/auth/tagmanager.edit.containers"]

OAUTH_SCOPES = [
    "email",
    "profile",
    "https://www.googleapis.com/auth/tagmanager.manage.accounts",
    "https://www.googleapis.com/auth/tagmanager.edit.containers",
    "https://www.googleapis.com/auth/tagmanager.delete.containers",
    "https://www.googleapis.com/auth/tagmanager.edit.containerversions",
    "https://www.googleapis.com/auth/tagmanager.manage.users",
    "https://www.googleapis.com/auth/tagmanager.publish",
]

UPSTREAM_TIMEOUT = 30

# -------------------- Token lifetimes (seconds) --------------------
MCP_ACCESS_TOKEN_TTL = 1800
REFRESH_THRESHOLD = 900
AUTH_CODE_TTL = 600
AUTH_REQUEST_TTL = 600
