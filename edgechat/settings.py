"""Persisted generation parameters and UI toggles, backed by a small sqlite table."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import config
from .engines.base import SessionOptions
from .observable import Observable

logger = logging.getLogger("edgechat")

KEY_SELECTED_MODEL = "selected_model"
KEY_TOP_K = "top_k"
KEY_TOP_P = "top_p"
KEY_TEMPERATURE = "temperature"
KEY_VISION_ENABLED = "vision_enabled"
KEY_AUTO_SCROLL = "auto_scroll"


def _parse_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return fallback


@dataclass(frozen=True)
class SessionConfig:
    """Sampling controls and modality flag applied when a session is (re)built."""

    top_k: int = config.DEFAULT_TOP_K
    top_p: float = config.DEFAULT_TOP_P
    temperature: float = config.DEFAULT_TEMPERATURE
    vision_enabled: bool = config.DEFAULT_VISION_ENABLED

    def validate(self) -> None:
        """Raise ``ValueError`` when any field is out of range."""
        if isinstance(self.top_k, bool) or not isinstance(self.top_k, int) or self.top_k < 1:
            raise ValueError(f"top_k must be a positive integer; got {self.top_k!r}.")
        if not 0.0 <= float(self.top_p) <= 1.0:
            raise ValueError(f"top_p must be within [0, 1]; got {self.top_p!r}.")
        if not 0.0 <= float(self.temperature) <= 2.0:
            raise ValueError(f"temperature must be within [0, 2]; got {self.temperature!r}.")

    def to_session_options(self, system_prompt: str = config.SYSTEM_PROMPT) -> SessionOptions:
        return SessionOptions(
            top_k=self.top_k,
            top_p=float(self.top_p),
            temperature=float(self.temperature),
            vision_enabled=self.vision_enabled,
            system_prompt=system_prompt,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            KEY_TOP_K: self.top_k,
            KEY_TOP_P: self.top_p,
            KEY_TEMPERATURE: self.temperature,
            KEY_VISION_ENABLED: self.vision_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        """Build a config from persisted strings, falling back per field on bad values."""
        defaults = cls()
        try:
            top_k = int(data.get(KEY_TOP_K, defaults.top_k))
        except (TypeError, ValueError):
            top_k = defaults.top_k
        if top_k < 1:
            top_k = defaults.top_k

        try:
            top_p = float(data.get(KEY_TOP_P, defaults.top_p))
        except (TypeError, ValueError):
            top_p = defaults.top_p
        if not 0.0 <= top_p <= 1.0:
            top_p = defaults.top_p

        try:
            temperature = float(data.get(KEY_TEMPERATURE, defaults.temperature))
        except (TypeError, ValueError):
            temperature = defaults.temperature
        if not 0.0 <= temperature <= 2.0:
            temperature = defaults.temperature

        vision_enabled = _parse_bool(
            data.get(KEY_VISION_ENABLED, defaults.vision_enabled), defaults.vision_enabled
        )
        return cls(
            top_k=top_k, top_p=top_p, temperature=temperature, vision_enabled=vision_enabled
        )


class SettingsStore:
    """Key/value settings persisted on every write.

    Changes to the session config do not reach a live session by themselves; the
    controller's ``apply_settings`` rebuilds the session from ``get()``.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = path
        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        self._tune_pragmas()
        self._init_schema()
        self.changes: Observable[SessionConfig] = Observable()

    def _tune_pragmas(self) -> None:
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")

    def _init_schema(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def _read_all(self) -> dict[str, str]:
        rows = self.conn.execute("SELECT key, value FROM settings").fetchall()
        return {str(row["key"]): str(row["value"]) for row in rows}

    def _write(self, values: dict[str, Any]) -> None:
        self.conn.executemany(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            [(key, str(value)) for key, value in values.items()],
        )
        self.conn.commit()

    def get(self) -> SessionConfig:
        return SessionConfig.from_dict(self._read_all())

    def set(self, session_config: SessionConfig) -> None:
        """Validate and persist *session_config* immediately."""
        session_config.validate()
        self._write(session_config.to_dict())
        logger.debug("[EdgeChat Settings] Saved %s", session_config)
        self.changes.emit(session_config)

    @property
    def auto_scroll(self) -> bool:
        raw = self._read_all().get(KEY_AUTO_SCROLL)
        if raw is None:
            return config.DEFAULT_AUTO_SCROLL
        return _parse_bool(raw, config.DEFAULT_AUTO_SCROLL)

    @auto_scroll.setter
    def auto_scroll(self, enabled: bool) -> None:
        self._write({KEY_AUTO_SCROLL: bool(enabled)})

    @property
    def selected_model(self) -> str | None:
        return self._read_all().get(KEY_SELECTED_MODEL)

    @selected_model.setter
    def selected_model(self, value: str | None) -> None:
        if value is None:
            self.conn.execute("DELETE FROM settings WHERE key = ?", (KEY_SELECTED_MODEL,))
            self.conn.commit()
            return
        self._write({KEY_SELECTED_MODEL: value})

    def reset_to_defaults(self) -> SessionConfig:
        """Write the fixed default config and UI toggles; returns the defaults."""
        defaults = SessionConfig()
        self._write({**defaults.to_dict(), KEY_AUTO_SCROLL: config.DEFAULT_AUTO_SCROLL})
        self.changes.emit(defaults)
        return defaults

    def __repr__(self) -> str:
        return f"SettingsStore(path={self.path!r})"
