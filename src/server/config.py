"""Relay settings read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from src.webhook.whatsapp import GRAPH_API_BASE

# Values the service cannot run without, by environment variable name
REQUIRED_ENV = ("CHAT_BACKEND_URL", "WEBHOOK_VERIFY_TOKEN")

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    chat_backend_url: str = ""
    webhook_verify_token: str = ""
    referrer: str = ""
    app_secret: str | None = None
    graph_api_base: str = GRAPH_API_BASE
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    config_cache_seconds: float = 300
    dedup_window_seconds: float = 300
    session_idle_seconds: float = 300
    session_sweep_seconds: float = 300
    typing_indicator: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ
        return cls(
            chat_backend_url=env.get("CHAT_BACKEND_URL", ""),
            webhook_verify_token=env.get("WEBHOOK_VERIFY_TOKEN", ""),
            referrer=env.get("REFERRER", ""),
            app_secret=env.get("WHATSAPP_APP_SECRET") or None,
            graph_api_base=env.get("GRAPH_API_BASE", GRAPH_API_BASE),
            request_timeout=float(env.get("REQUEST_TIMEOUT_SECONDS", "30")),
            connect_timeout=float(env.get("CONNECT_TIMEOUT_SECONDS", "10")),
            config_cache_seconds=float(env.get("CONFIG_CACHE_SECONDS", "300")),
            dedup_window_seconds=float(env.get("DEDUP_WINDOW_SECONDS", "300")),
            session_idle_seconds=float(env.get("SESSION_IDLE_SECONDS", "300")),
            session_sweep_seconds=float(env.get("SESSION_SWEEP_SECONDS", "300")),
            typing_indicator=env.get("TYPING_INDICATOR", "true").lower() in _TRUE_VALUES,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    def missing(self) -> list[str]:
        """Names of required environment variables that are not set."""
        values = {
            "CHAT_BACKEND_URL": self.chat_backend_url,
            "WEBHOOK_VERIFY_TOKEN": self.webhook_verify_token,
        }
        return [name for name in REQUIRED_ENV if not values[name]]
