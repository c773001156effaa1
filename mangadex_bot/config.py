"""
Configuration: environment variables (and an optional ``.env``) validated into
:class:`Settings`, plus the YAML tracking file.

Every variable may be given with the ``MANGADEX_BOT_`` prefix or without it; the
prefixed form wins.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .infra.scheduler import validate_cron_expression
from .mangadex import parse_manga_id
from .models import TrackedManga
from .sinks import BACKENDS

logger = logging.getLogger(__name__)

ENV_PREFIX = "MANGADEX_BOT_"


class Settings(BaseModel):
    """Runtime settings, loaded once at startup."""

    discord_token: Optional[str] = None
    guild_id: Optional[int] = None
    telegram_token: Optional[str] = None
    notifier_backend: str = "discord"

    database_path: str = "db/mangadex_bot.db"
    tracking_file: str = "tracking.yml"

    scan_period: int = 21600
    scan_jitter: int = 60
    fetch_limit: int = 10
    languages: List[str] = ["en"]
    content_ratings: List[str] = ["safe", "suggestive"]
    request_delay: float = 0.25

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    max_rate_limit_waits: int = 3
    backoff_cooldown: float = 300.0

    notify_max_attempts: int = 3
    notify_concurrency: int = 4
    deliver_backlog: bool = False
    max_backlog: int = 25

    retention_days: int = 180
    prune_cron: str = "0 4 * * *"
    shutdown_grace: float = 5.0
    timezone: str = "UTC"
    log_level: str = "INFO"

    @field_validator("languages", "content_ratings", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("notifier_backend", "log_level", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator(
        "scan_period", "fetch_limit", "max_retries", "notify_max_attempts", "notify_concurrency"
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator(
        "scan_jitter",
        "request_delay",
        "base_delay",
        "max_delay",
        "max_rate_limit_waits",
        "backoff_cooldown",
        "max_backlog",
        "retention_days",
        "shutdown_grace",
    )
    @classmethod
    def _non_negative(cls, value):
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("prune_cron")
    @classmethod
    def _cron(cls, value: str) -> str:
        if not validate_cron_expression(value):
            raise ValueError(f"invalid cron expression {value!r}")
        return value

    @model_validator(mode="after")
    def _backend_credentials(self) -> "Settings":
        backend = self.notifier_backend.lower()
        if backend not in BACKENDS:
            raise ValueError(f"notifier_backend must be one of {', '.join(BACKENDS)}")
        self.notifier_backend = backend
        if backend == "discord" and not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required for the discord backend")
        if backend == "telegram" and not self.telegram_token:
            raise ValueError("TELEGRAM_TOKEN is required for the telegram backend")
        if not self.languages:
            raise ValueError("at least one language is required")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``environ`` (``os.environ`` after ``load_dotenv``)."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        values: Dict[str, str] = {}
        for name in cls.model_fields:
            key = name.upper()
            raw = environ.get(f"{ENV_PREFIX}{key}", environ.get(key))
            if raw is not None and raw != "":
                values[name] = raw

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigError(f"Invalid configuration: {problems}") from e


def load_tracking_file(path: str) -> List[TrackedManga]:
    """Load the manga to track from a YAML file.

    Example::

        manga:
          - id: https://mangadex.org/title/a96676e5-8ae2-425e-b549-7f15dd34a6d8
            title: Komi Can't Communicate
            channels: ["123456789012345678"]
    """
    file = Path(path)
    if not file.exists():
        logger.info(f"Tracking file not found: {path}")
        return []

    try:
        with file.open() as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read tracking file {path}: {e}") from e

    entries = data.get("manga") if isinstance(data, dict) else None
    if entries is None:
        logger.warning(f"No 'manga' key found in {path}")
        return []
    if not isinstance(entries, list):
        raise ConfigError(f"'manga' in {path} must be a list")

    result: List[TrackedManga] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"Entry {index} in {path} must be a mapping")
        manga_id = parse_manga_id(str(entry.get("id", "")))
        if manga_id is None:
            raise ConfigError(f"Entry {index} in {path} has no valid manga id or url")
        channels = entry.get("channels") or []
        if isinstance(channels, (str, int)):
            channels = [channels]
        result.append(
            TrackedManga(
                id=manga_id,
                title=str(entry.get("title") or manga_id),
                channels=[str(channel) for channel in channels],
            )
        )
    return result
