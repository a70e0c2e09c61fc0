"""Sync backend configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import voluptuous as vol

from ..const import (
    CONF_SYNC_API_KEY,
    CONF_SYNC_BASE_URL,
    CONF_SYNC_INTERVAL,
    CONF_SYNC_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_SYNC_TIMEOUT,
    ENV_SYNC_API_KEY,
    ENV_SYNC_BASE_URL,
    MIN_SYNC_INTERVAL,
)
from .events import SyncError


class ConfigError(SyncError):
    """Raised when sync options fail validation."""


def _optional_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise vol.Invalid("expected a string")
    return value.strip()


def _base_url(value: Any) -> str:
    text = _optional_text(value)
    if text and not text.startswith(("http://", "https://")):
        raise vol.Invalid("base URL must start with http:// or https://")
    return text.rstrip("/")


OPTIONS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_SYNC_BASE_URL, default=""): _base_url,
        vol.Optional(CONF_SYNC_API_KEY, default=""): _optional_text,
        vol.Optional(CONF_SYNC_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(
            vol.Coerce(int), vol.Range(min=MIN_SYNC_INTERVAL)
        ),
        vol.Optional(CONF_SYNC_TIMEOUT, default=DEFAULT_SYNC_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class SyncConfig:
    """Where the remote backend lives and how often to talk to it.

    A config without both a base URL and an API key selects local-only mode.
    """

    base_url: str = ""
    api_key: str = ""
    interval: int = DEFAULT_SYNC_INTERVAL
    timeout: float = DEFAULT_SYNC_TIMEOUT

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None) -> SyncConfig:
        try:
            data = OPTIONS_SCHEMA(dict(options or {}))
        except vol.Invalid as err:
            raise ConfigError(f"invalid sync options: {err}") from err
        return cls(
            base_url=data[CONF_SYNC_BASE_URL],
            api_key=data[CONF_SYNC_API_KEY],
            interval=data[CONF_SYNC_INTERVAL],
            timeout=data[CONF_SYNC_TIMEOUT],
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> SyncConfig:
        env = os.environ if environ is None else environ
        options: dict[str, Any] = {
            CONF_SYNC_BASE_URL: env.get(ENV_SYNC_BASE_URL, ""),
            CONF_SYNC_API_KEY: env.get(ENV_SYNC_API_KEY, ""),
        }
        options.update({key: value for key, value in overrides.items() if value is not None})
        return cls.from_options(options)

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def to_options(self) -> dict[str, Any]:
        return {
            CONF_SYNC_BASE_URL: self.base_url,
            CONF_SYNC_API_KEY: self.api_key,
            CONF_SYNC_INTERVAL: self.interval,
            CONF_SYNC_TIMEOUT: self.timeout,
        }


__all__ = ["ConfigError", "OPTIONS_SCHEMA", "SyncConfig"]
