"""
Configuration for SEO Autopilot.

Secrets and endpoints come from environment variables; tunables come from
dataclasses that can be loaded from JSON files.  Data paths are module-level
constants so tests can redirect them with monkeypatch.

Environment:
    ANTHROPIC_API_KEY        Generation backend key
    SEO_AUTOPILOT_MODEL      Anthropic model override
    SERPER_API_KEY           Research provider key
    WP_URL                   Publishing target, e.g. https://example.com
    WP_USERNAME              WordPress user
    WP_APP_PASSWORD          WordPress application password
    WP_PUBLISH_STATUS        publish | draft (default publish)
    SEO_AUTOPILOT_DATA_DIR   Where checkpoints and history live
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("SEO_AUTOPILOT_DATA_DIR") or BASE_DIR / "data")

# Anthropic model identifiers
MODEL_SONNET = "claude-sonnet-4-20250514"
MODEL_HAIKU = "claude-haiku-4-5-20251001"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class Settings:
    """Credentials and endpoints for the external collaborators."""

    anthropic_api_key: str = ""
    model: str = MODEL_SONNET
    serper_api_key: str = ""
    wp_url: str = ""
    wp_username: str = ""
    wp_app_password: str = ""
    wp_publish_status: str = "publish"
    data_dir: Path = DATA_DIR

    @property
    def has_generator(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def has_research(self) -> bool:
        return bool(self.serper_api_key)

    @property
    def has_publisher(self) -> bool:
        return bool(self.wp_url and self.wp_username)

    def __repr__(self) -> str:
        return (
            f"Settings(generator={self.has_generator}, research={self.has_research}, "
            f"publisher={self.has_publisher}, data_dir={str(self.data_dir)!r})"
        )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from *env* (defaults to ``os.environ``)."""
    if env is None:
        env = os.environ
    data_dir = env.get("SEO_AUTOPILOT_DATA_DIR")
    return Settings(
        anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
        model=env.get("SEO_AUTOPILOT_MODEL") or MODEL_SONNET,
        serper_api_key=env.get("SERPER_API_KEY", ""),
        wp_url=env.get("WP_URL", "").rstrip("/"),
        wp_username=env.get("WP_USERNAME", ""),
        wp_app_password=env.get("WP_APP_PASSWORD", ""),
        wp_publish_status=env.get("WP_PUBLISH_STATUS") or "publish",
        data_dir=Path(data_dir) if data_dir else DATA_DIR,
    )


def load_json_config(path: Path) -> Dict[str, Any]:
    """Read a JSON object from *path*.

    Unlike the state loaders, a missing or malformed config file is an error:
    the operator asked for it explicitly.
    """
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data
