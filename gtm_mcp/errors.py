from typing import Any, Dict, Optional


class AuthError(RuntimeError):
    """Raised when the session cannot produce a usable Google token."""


class TokenExpiredError(AuthError):
    pass


class UpstreamAuthError(AuthError):
    """A call to Google's OAuth endpoints failed."""

    def __init__(self, message: str, status: int = 500, detail: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class OAuthError(Exception):
    """Error returned to MCP clients by the OAuth provider endpoints."""

    def __init__(self, error: str, description: str = "", status: int = 400):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        d = {"error": self.error}
        if self.description:
            d["error_description"] = self.description
        return d
