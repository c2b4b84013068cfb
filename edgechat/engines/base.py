"""
Inference engine protocol — the opaque on-device capability EdgeChat drives.

An engine loads model weights into an engine handle, opens sessions against that
handle, accepts prompt chunks/images, and streams text fragments. Concrete adapters
live next to this module; the orchestrator only ever speaks this protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .. import config

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@dataclass(frozen=True)
class EngineOptions:
    """Options fixed for the lifetime of an engine handle."""

    max_tokens: int = config.DEFAULT_MAX_TOKENS
    vision_encoder_path: Path | None = None
    vision_adapter_path: Path | None = None
    max_images: int = config.DEFAULT_MAX_IMAGES
    vision_chat_handler: str | None = None


@dataclass(frozen=True)
class SessionOptions:
    """Sampling and modality options for one session."""

    top_k: int = config.DEFAULT_TOP_K
    top_p: float = config.DEFAULT_TOP_P
    temperature: float = config.DEFAULT_TEMPERATURE
    vision_enabled: bool = config.DEFAULT_VISION_ENABLED
    system_prompt: str = config.SYSTEM_PROMPT


@runtime_checkable
class InferenceEngine(Protocol):
    """Capabilities consumed by the lifecycle manager and the session controller.

    Every method except ``stream_response`` may block; callers run them off the
    event loop. ``stream_response`` returns a finite, non-restartable async iterator
    of delta fragments and is driven on a dedicated worker thread.
    """

    def load_engine(self, model_path: Path | None, options: EngineOptions) -> Any: ...

    def create_session(self, engine: Any, options: SessionOptions) -> Any: ...

    def add_text_chunk(self, session: Any, text: str) -> None: ...

    def add_image(self, session: Any, image: bytes) -> None: ...

    def stream_response(self, session: Any) -> AsyncIterator[str]: ...

    def count_tokens(self, session: Any, text: str) -> int: ...

    def last_generation_duration_seconds(self, session: Any) -> float | None: ...

    def engine_initialization_duration_seconds(self, engine: Any) -> float: ...

    def release_session(self, session: Any) -> None: ...

    def release_engine(self, engine: Any) -> None: ...
