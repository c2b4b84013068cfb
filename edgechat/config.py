"""Runtime configuration: paths, defaults, timeouts, and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path

ENV_MODELS_DIR = "EDGECHAT_MODELS_DIR"
ENV_DATA_DIR = "EDGECHAT_DATA_DIR"
SETTINGS_DB_FILENAME = "settings.sqlite3"

DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.9
DEFAULT_TEMPERATURE = 0.9
DEFAULT_VISION_ENABLED = True
DEFAULT_AUTO_SCROLL = True

DEFAULT_MAX_TOKENS = 1000
DEFAULT_MAX_IMAGES = 1

STREAM_FIRST_CHUNK_TIMEOUT_SECONDS = 60.0
STREAM_CHUNK_IDLE_TIMEOUT_SECONDS = 30.0
STREAM_WORKER_JOIN_TIMEOUT_SECONDS = 0.4

THINKING_PLACEHOLDER = "thinking..."

SYSTEM_PROMPT = """You are a helpful assistant embedded in an on-device app for generating SVG images via a chat interface.

IMPORTANT RULES - FOLLOW THESE STRICTLY:
1. Your output MUST be a valid JSON object with the following structure:
   {
     "svg": "<svg>...</svg>",  // optional
     "response": "Your response text."  // REQUIRED
   }
2. NEVER output anything outside this JSON object. No prose, no markdown, no code blocks.
3. The "response" field is ALWAYS required. The "svg" field is OPTIONAL - include it ONLY if the user asked for a drawing.
4. The "svg" field must contain a valid, renderable SVG string when used.

You may respond freely in the "response" field. If the user asks you to "draw" something, generate an SVG and include it in the "svg" field. Otherwise, omit the "svg" field.

ALWAYS output a valid JSON object with AT LEAST the "response" field. NO CODE BLOCKS, NO MARKDOWN, JUST VALID JSON."""

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def data_dir() -> Path:
    """Resolve the app-local data directory (settings database lives here)."""
    override = os.environ.get(ENV_DATA_DIR)
    path = Path(override).expanduser() if override else Path.home() / ".edgechat"
    path.mkdir(parents=True, exist_ok=True)
    return path


def models_dir() -> Path:
    """Resolve the directory scanned for installed model files."""
    override = os.environ.get(ENV_MODELS_DIR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".edgechat" / "models"


def settings_db_path() -> Path:
    return data_dir() / SETTINGS_DB_FILENAME


def configure_logging(verbose: bool = False) -> None:
    """Attach a stderr handler to the ``edgechat`` logger."""
    logger = logging.getLogger("edgechat")
    level = logging.DEBUG if verbose else logging.WARNING
    logger.setLevel(level)
    if not any(getattr(h, "_edgechat_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._edgechat_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
