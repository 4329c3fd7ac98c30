"""
W-2 Refund Estimator - Settings
===============================
Environment-driven configuration for the API and the widget.

Widget values and the OpenAI key resolve in this order (highest -> lowest):
  1) Streamlit secrets (for deployed widgets)
  2) Environment variables
  3) Built-in defaults
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from refund_constants import (
    DEFAULT_ALLOWED_ORIGINS,
    DEFAULT_CACHE_DIR,
    DEFAULT_VISION_MODEL,
    MAX_UPLOAD_BYTES,
)


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _secret_or_env(key: str) -> Optional[str]:
    """Get a value from Streamlit secrets, falling back to the environment."""
    try:
        import streamlit as st
        if hasattr(st, "secrets") and key in st.secrets:
            return str(st.secrets[key])
    except Exception:
        # No secrets.toml outside of a Streamlit deployment
        pass
    return _env(key)


def _env_flag(key: str) -> bool:
    return (_env(key) or "").lower() in ("1", "true", "yes", "on")


def parse_origins(raw: Optional[str]) -> List[str]:
    """Split a comma-separated origin list, dropping blanks."""
    if not raw:
        return []
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_VISION_MODEL
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    api_bearer_token: Optional[str] = None
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    port: int = 3000
    debug: bool = False


@dataclass(frozen=True)
class WidgetSettings:
    api_base_url: str = "http://localhost:3000"
    bearer_token: Optional[str] = None
    cache_dir: str = DEFAULT_CACHE_DIR


def load_settings() -> Settings:
    """
    API settings from env vars:
      - OPENAI_API_KEY (Streamlit secrets first, when available) / OPENAI_MODEL
      - ALLOWED_ORIGINS (comma-separated, appended to the built-in list)
      - API_BEARER_TOKEN
      - MAX_UPLOAD_BYTES
      - PORT
      - DEBUG (1, true, yes or on)
    """
    origins = list(DEFAULT_ALLOWED_ORIGINS)
    for origin in parse_origins(_env("ALLOWED_ORIGINS")):
        if origin not in origins:
            origins.append(origin)

    return Settings(
        openai_api_key=_secret_or_env("OPENAI_API_KEY"),
        openai_model=_env("OPENAI_MODEL") or DEFAULT_VISION_MODEL,
        allowed_origins=origins,
        api_bearer_token=_env("API_BEARER_TOKEN"),
        max_upload_bytes=int(_env("MAX_UPLOAD_BYTES") or MAX_UPLOAD_BYTES),
        port=int(_env("PORT") or 3000),
        debug=_env_flag("DEBUG"),
    )


def load_widget_settings() -> WidgetSettings:
    """Widget settings: REFUND_API_URL, REFUND_API_TOKEN, REFUND_CACHE_DIR."""
    return WidgetSettings(
        api_base_url=_secret_or_env("REFUND_API_URL") or "http://localhost:3000",
        bearer_token=_secret_or_env("REFUND_API_TOKEN"),
        cache_dir=_secret_or_env("REFUND_CACHE_DIR") or DEFAULT_CACHE_DIR,
    )
