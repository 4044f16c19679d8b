"""
Runtime settings for the KidBook pipeline.

Values come from keyword arguments, a YAML file, or ``KIDBOOK_*`` environment
variables, in that order of precedence for the loaders below.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_NAMESPACE = "childrens-book-saas"
DEFAULT_IMAGE_MODEL = "black-forest-labs/flux-kontext-dev"
DEFAULT_STORY_MODEL = "gpt-4o"

_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "namespace": ("KIDBOOK_NAMESPACE", "KIDBOOK_DEMO_ID"),
    "story_model": ("KIDBOOK_STORY_MODEL", "OPENAI_STORY_MODEL", "LITELLM_MODEL"),
    "image_model": ("KIDBOOK_IMAGE_MODEL", "REPLICATE_MODEL"),
    "poll_interval": ("KIDBOOK_POLL_INTERVAL",),
    "max_polls": ("KIDBOOK_MAX_POLLS",),
    "item_attempts": ("KIDBOOK_ITEM_ATTEMPTS",),
    "item_backoff": ("KIDBOOK_ITEM_BACKOFF",),
    "daily_limit": ("KIDBOOK_DAILY_LIMIT",),
    "storage_root": ("KIDBOOK_STORAGE_ROOT",),
    "public_base_url": ("KIDBOOK_PUBLIC_BASE_URL",),
    "database_path": ("KIDBOOK_DB_PATH",),
    "request_timeout": ("KIDBOOK_REQUEST_TIMEOUT",),
    "workers": ("KIDBOOK_WORKERS",),
}


@dataclass(frozen=True)
class PipelineSettings:
    """
    Tunables shared by the orchestrator, adapters and the command-line runner.

    Attributes
    ----------
    namespace:
        Tenant namespace every record and artifact lives under.
    poll_interval / max_polls:
        Image generation polling cadence (seconds) and upper bound on polls.
    item_attempts / item_backoff:
        Attempts per sub-item and the backoff schedule (seconds) between them.
    daily_limit:
        Books an owner may create in the trailing 24 hours.
    """

    namespace: str = DEFAULT_NAMESPACE
    story_model: str = DEFAULT_STORY_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    poll_interval: float = 2.0
    max_polls: int = 90
    item_attempts: int = 2
    item_backoff: tuple[float, ...] = (2.0, 5.0, 12.0)
    daily_limit: int = 3
    storage_root: str = "~/.kidbook/artifacts"
    public_base_url: str | None = None
    database_path: str = "~/.kidbook/kidbook.db"
    request_timeout: float = 30.0
    workers: int = 2

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PipelineSettings":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings keys: {', '.join(unknown)}.")
        return cls(**{key: _coerce(key, value) for key, value in data.items()})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineSettings":
        return cls().with_env_overrides(environ)

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "PipelineSettings":
        """
        Load settings from a YAML file, then apply environment overrides.
        """
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ValueError("Settings YAML must deserialize to a mapping.")
        return cls.from_mapping(data).with_env_overrides(environ)

    def with_env_overrides(
        self,
        environ: Mapping[str, str] | None = None,
    ) -> "PipelineSettings":
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for key, names in _ENV_KEYS.items():
            for name in names:
                raw = env.get(name)
                if raw is not None and raw.strip():
                    overrides[key] = _coerce(key, raw.strip())
                    break
        return replace(self, **overrides) if overrides else self


def _coerce(key: str, value: Any) -> Any:
    try:
        if key in {"poll_interval", "request_timeout"}:
            return float(value)
        if key in {"max_polls", "item_attempts", "daily_limit", "workers"}:
            return int(value)
        if key == "item_backoff":
            if isinstance(value, str):
                parts = [part.strip() for part in value.split(",")]
                return tuple(float(part) for part in parts if part)
            return tuple(float(part) for part in value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for setting '{key}': {value!r}") from exc
    return value
