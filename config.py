"""
Runtime settings for the filler, read from the environment.

A `.env` file next to the working directory is loaded first, so local
deployments can keep secrets out of the shell:

    DOROFILL_DATA_DIR        -  where override tables and autosave snapshots live
    DOROFILL_FONT_PATH       -  TTF used for Korean text (falls back to fonts/)
    DOROFILL_GLYPH_POLICY    -  "substitute" (default) or "fail"
    DOROFILL_JWT_SECRET      -  HS256 secret; enables bearer auth on /api/*
    DOROFILL_JWKS_URL        -  JWKS endpoint for asymmetric tokens
    DOROFILL_GEMINI_API_KEY  -  enables template analysis
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "DOROFILL_"

GLYPH_POLICIES = ("substitute", "fail")


class Settings(BaseModel):
    data_dir: Path = Path("data")
    fonts_dir: Path = Path("fonts")
    font_path: Path | None = None
    bold_font_path: Path | None = None
    glyph_policy: str = "substitute"
    log_level: str = "INFO"
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )

    jwt_secret: str = ""
    jwks_url: str = ""

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_endpoint: str = "https://generativelanguage.googleapis.com/v1beta/models"
    analysis_timeout_sec: float = 60.0

    @field_validator("glyph_policy")
    @classmethod
    def _check_policy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in GLYPH_POLICIES:
            raise ValueError(f"glyph_policy must be one of {GLYPH_POLICIES}, got {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.jwt_secret or self.jwks_url)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        values: dict = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if name == "cors_origins":
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw
        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings (loaded once)."""
    load_dotenv()
    return Settings.from_env()
