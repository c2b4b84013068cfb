"""
Apple Foundation Models engine adapter — the on-device system model via ``apple_fm_sdk``.

There is no backing model file: availability is whatever the OS reports. The SDK
streams cumulative snapshots; this adapter turns them into delta fragments.
"""

from __future__ import annotations

import importlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import EngineError, ModelLoadError, SessionCreateError
from .base import EngineOptions, SessionOptions

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger("edgechat.engine")

_TOKEN_ESTIMATE_RE = re.compile(r"\w+|[^\w\s]")


def _import_apple_fm() -> Any:
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError as exc:
        raise ModelLoadError(
            "apple-fm-sdk is not installed. This backend requires the Apple Foundation "
            "Models SDK (macOS 26+ on Apple silicon): pip install 'edgechat[apple]'"
        ) from exc


def system_model_available() -> bool:
    """Probe used by the catalog: is the OS system model usable right now?"""
    try:
        fm = _import_apple_fm()
    except ModelLoadError:
        return False
    try:
        available, reason = fm.SystemLanguageModel().is_available()
    except Exception:
        logger.debug("[EdgeChat Engine] Apple FM availability probe failed.", exc_info=True)
        return False
    if not available:
        logger.info("[EdgeChat Engine] Apple system model unavailable: %s", reason)
    return bool(available)


@dataclass
class AppleEngineHandle:
    model: Any
    init_seconds: float
    released: bool = False


@dataclass
class AppleSession:
    engine: AppleEngineHandle
    session: Any
    pending_text: list[str] = field(default_factory=list)
    last_duration: float | None = None
    released: bool = False


class AppleFMEngine:
    """``InferenceEngine`` backed by the Apple Foundation Models SDK.

    Sampling knobs are not forwarded: the system model picks its own decoding
    configuration. Images are rejected.
    """

    def load_engine(self, model_path: Path | None, options: EngineOptions) -> AppleEngineHandle:
        fm = _import_apple_fm()
        start = time.perf_counter()
        try:
            model = fm.SystemLanguageModel()
            available, reason = model.is_available()
        except Exception as exc:
            raise ModelLoadError(f"Apple Foundation Model failed to initialize: {exc}") from exc
        if not available:
            raise ModelLoadError(f"Foundation Model is not available: {reason}")
        elapsed = time.perf_counter() - start
        return AppleEngineHandle(model=model, init_seconds=elapsed)

    def engine_initialization_duration_seconds(self, engine: AppleEngineHandle) -> float:
        return engine.init_seconds

    def release_engine(self, engine: AppleEngineHandle) -> None:
        engine.released = True
        engine.model = None

    def create_session(self, engine: AppleEngineHandle, options: SessionOptions) -> AppleSession:
        if engine.released:
            raise SessionCreateError("Cannot open a session on a released engine.")
        fm = _import_apple_fm()
        try:
            session = fm.LanguageModelSession(
                model=engine.model, instructions=options.system_prompt
            )
        except Exception as exc:
            raise SessionCreateError(f"Apple Foundation Model rejected the session: {exc}") from exc
        return AppleSession(engine=engine, session=session)

    def release_session(self, session: AppleSession) -> None:
        session.released = True
        session.pending_text.clear()
        session.session = None

    def _ensure_live(self, session: AppleSession) -> None:
        if session.released or session.engine.released:
            raise EngineError("Session has been released.")

    def add_text_chunk(self, session: AppleSession, text: str) -> None:
        self._ensure_live(session)
        session.pending_text.append(text)

    def add_image(self, session: AppleSession, image: bytes) -> None:
        raise EngineError("The Apple system model does not accept image input.")

    async def stream_response(self, session: AppleSession) -> AsyncIterator[str]:
        self._ensure_live(session)
        prompt = "".join(session.pending_text)
        session.pending_text.clear()
        if not prompt:
            raise EngineError("Nothing to respond to: no prompt chunk was added.")

        emitted = ""
        start = time.perf_counter()
        try:
            async for snapshot in session.session.stream_response(prompt):
                self._ensure_live(session)
                text = str(snapshot)
                # Snapshots are cumulative; forward only the unseen tail.
                delta = text[len(emitted) :]
                emitted = text
                if delta:
                    yield delta
        except EngineError:
            raise
        except Exception as exc:
            raise EngineError(f"Apple Foundation Model generation failed: {exc}") from exc
        finally:
            session.last_duration = time.perf_counter() - start

    def count_tokens(self, session: AppleSession, text: str) -> int:
        # The SDK exposes no tokenizer; words and punctuation approximate tokens.
        return len(_TOKEN_ESTIMATE_RE.findall(text))

    def last_generation_duration_seconds(self, session: AppleSession) -> float | None:
        return session.last_duration
