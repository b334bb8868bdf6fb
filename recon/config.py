"""Matching and remote-call settings read from the environment."""

import os

from pydantic import BaseModel, Field

__all__ = ["MatchSettings", "load_settings"]


class MatchSettings(BaseModel):
    match_window_days: int = Field(default=5, ge=0)
    api_page_size: int = Field(default=50, ge=1)
    api_max_pages: int = Field(default=20, ge=1)
    api_timeout: float = Field(default=60.0, gt=0)


def load_settings() -> MatchSettings:
    """Build settings from RECON_* environment variables (defaults otherwise)."""
    values: dict[str, str] = {}
    env_names = {
        "match_window_days": "RECON_MATCH_WINDOW_DAYS",
        "api_page_size": "RECON_API_PAGE_SIZE",
        "api_max_pages": "RECON_API_MAX_PAGES",
        "api_timeout": "RECON_API_TIMEOUT",
    }
    for field_name, env_name in env_names.items():
        raw = os.getenv(env_name)
        if raw:
            values[field_name] = raw
    return MatchSettings.model_validate(values)
