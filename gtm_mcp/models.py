from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class Props:
    """Per-session properties carried alongside every tool invocation.

    In OAuth mode these live on the provider grant and survive across
    requests; in ADC mode they are built once from the local credentials
    file (user_id, name and email stay empty there).
    """

    access_token: str
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch seconds


@dataclass
class ServerEnv:
    """What the tools know about the HTTP server hosting them."""

    worker_host: str
    provider: Any = None


@dataclass
class ToolContext:
    props: Props
    env: Optional[ServerEnv] = None
