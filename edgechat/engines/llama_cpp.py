"""
llama.cpp engine adapter — runs GGUF model files through ``llama-cpp-python``.

The engine handle owns the loaded weights (one ``Llama`` instance). A session owns
its own transcript and sampling options, so rebuilding a session never reloads
weights. Only one stream drives a given ``Llama`` at a time: a superseded stream
keeps the handle's lock until it observes cancellation and closes.
"""

from __future__ import annotations

import base64
import importlib
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..exceptions import EngineError, ModelLoadError, SessionCreateError
from .base import EngineOptions, SessionOptions

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger("edgechat.engine")
_RELEASE_LOCK_TIMEOUT_SECONDS = 5.0
_DEFAULT_VISION_CHAT_HANDLER = "Llava15ChatHandler"

_IMAGE_SIGNATURES: list[tuple[bytes, str]] = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
]


def _import_llama_cpp() -> Any:
    try:
        return importlib.import_module("llama_cpp")
    except ImportError as exc:
        raise ModelLoadError(
            "llama-cpp-python is not installed. "
            "Install it with: pip install 'edgechat[llama]'"
        ) from exc


def image_mime_type(image: bytes) -> str:
    """Sniff the mime type of an encoded image, defaulting to PNG."""
    for signature, mime in _IMAGE_SIGNATURES:
        if image.startswith(signature):
            return mime
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def image_data_uri(image: bytes) -> str:
    encoded = base64.b64encode(image).decode("ascii")
    return f"data:{image_mime_type(image)};base64,{encoded}"


def _delta_text(chunk: Any) -> str:
    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


@dataclass
class LlamaEngineHandle:
    llm: Any
    model_path: Path
    options: EngineOptions
    init_seconds: float
    supports_vision: bool
    lock: threading.Lock = field(default_factory=threading.Lock)
    released: bool = False


@dataclass
class LlamaSession:
    engine: LlamaEngineHandle
    options: SessionOptions
    vision_enabled: bool
    transcript: list[dict[str, Any]] = field(default_factory=list)
    pending_text: list[str] = field(default_factory=list)
    pending_images: list[bytes] = field(default_factory=list)
    last_duration: float | None = None
    released: bool = False


class LlamaCppEngine:
    """``InferenceEngine`` backed by llama-cpp-python."""

    def __init__(self, n_gpu_layers: int = -1, verbose: bool = False) -> None:
        self.n_gpu_layers = n_gpu_layers
        self.verbose = verbose

    # -- engine handles ------------------------------------------------------

    def load_engine(self, model_path: Path | None, options: EngineOptions) -> LlamaEngineHandle:
        if model_path is None or not Path(model_path).is_file():
            raise ModelLoadError(f"Model file not found: {model_path}")
        for label, extra in (
            ("vision encoder", options.vision_encoder_path),
            ("vision adapter", options.vision_adapter_path),
        ):
            if extra is not None and not Path(extra).is_file():
                raise ModelLoadError(f"{label.capitalize()} file not found: {extra}")

        llama_cpp = _import_llama_cpp()
        start = time.perf_counter()
        try:
            chat_handler = None
            if options.vision_encoder_path is not None:
                chat_handler = self._vision_chat_handler(llama_cpp, model_path, options)
            llm = llama_cpp.Llama(
                model_path=str(model_path),
                n_ctx=options.max_tokens,
                n_gpu_layers=self.n_gpu_layers,
                chat_handler=chat_handler,
                verbose=self.verbose,
            )
        except Exception as exc:
            raise ModelLoadError(f"llama.cpp failed to load {model_path}: {exc}") from exc
        elapsed = time.perf_counter() - start

        if options.vision_adapter_path is not None:
            logger.debug(
                "[EdgeChat Engine] llama.cpp folds the vision adapter into the projector; "
                "ignoring %s",
                options.vision_adapter_path,
            )
        logger.info("[EdgeChat Engine] Loaded %s in %.3fs.", Path(model_path).name, elapsed)
        return LlamaEngineHandle(
            llm=llm,
            model_path=Path(model_path),
            options=options,
            init_seconds=elapsed,
            supports_vision=chat_handler is not None,
        )

    def _vision_chat_handler(
        self, llama_cpp: Any, model_path: Path, options: EngineOptions
    ) -> Any | None:
        """Build the projector-backed chat handler, or None to fall back to text-only.

        Without a handler, ``Llama`` formats turns with the chat template embedded
        in the GGUF file, which is the right one for text.
        """
        name = options.vision_chat_handler or _DEFAULT_VISION_CHAT_HANDLER
        handler_cls = getattr(llama_cpp.llama_chat_format, name, None)
        if handler_cls is None:
            logger.warning(
                "[EdgeChat Engine] This llama-cpp-python has no %s; loading %s text-only.",
                name,
                Path(model_path).name,
            )
            return None
        return handler_cls(clip_model_path=str(options.vision_encoder_path), verbose=self.verbose)

    def engine_initialization_duration_seconds(self, engine: LlamaEngineHandle) -> float:
        return engine.init_seconds

    def release_engine(self, engine: LlamaEngineHandle) -> None:
        if engine.released:
            return
        # A stream still holding the lock stops at its next chunk once this is set.
        engine.released = True
        acquired = engine.lock.acquire(timeout=_RELEASE_LOCK_TIMEOUT_SECONDS)
        try:
            close = getattr(engine.llm, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:
                    logger.warning(
                        "[EdgeChat Engine] Error while closing llama.cpp.", exc_info=True
                    )
            engine.llm = None
        finally:
            if acquired:
                engine.lock.release()

    # -- sessions ------------------------------------------------------------

    def create_session(self, engine: LlamaEngineHandle, options: SessionOptions) -> LlamaSession:
        if engine.released:
            raise SessionCreateError("Cannot open a session on a released engine.")
        if options.top_k < 1:
            raise SessionCreateError(f"top_k must be >= 1; got {options.top_k}.")
        if not 0.0 <= options.top_p <= 1.0:
            raise SessionCreateError(f"top_p must be within [0, 1]; got {options.top_p}.")
        if not 0.0 <= options.temperature <= 2.0:
            raise SessionCreateError(
                f"temperature must be within [0, 2]; got {options.temperature}."
            )

        vision_enabled = options.vision_enabled
        if vision_enabled and not engine.supports_vision:
            logger.info(
                "[EdgeChat Engine] %s has no vision encoder; session is text-only.",
                engine.model_path.name,
            )
            vision_enabled = False

        transcript: list[dict[str, Any]] = []
        if options.system_prompt:
            transcript.append({"role": "system", "content": options.system_prompt})
        return LlamaSession(
            engine=engine,
            options=options,
            vision_enabled=vision_enabled,
            transcript=transcript,
        )

    def release_session(self, session: LlamaSession) -> None:
        session.released = True
        session.pending_text.clear()
        session.pending_images.clear()

    def _ensure_live(self, session: LlamaSession) -> None:
        if session.released or session.engine.released:
            raise EngineError("Session has been released.")

    def add_text_chunk(self, session: LlamaSession, text: str) -> None:
        self._ensure_live(session)
        session.pending_text.append(text)

    def add_image(self, session: LlamaSession, image: bytes) -> None:
        self._ensure_live(session)
        if not session.vision_enabled:
            raise EngineError("Vision modality is disabled for this session.")
        if len(session.pending_images) >= session.engine.options.max_images:
            raise EngineError(
                f"At most {session.engine.options.max_images} image(s) per turn are supported."
            )
        session.pending_images.append(image)

    def _take_user_turn(self, session: LlamaSession) -> dict[str, Any]:
        text = "".join(session.pending_text)
        images = list(session.pending_images)
        session.pending_text.clear()
        session.pending_images.clear()
        if not images:
            return {"role": "user", "content": text}
        parts: list[dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": image_data_uri(image)}} for image in images
        ]
        if text:
            parts.append({"type": "text", "text": text})
        return {"role": "user", "content": parts}

    async def stream_response(self, session: LlamaSession) -> AsyncIterator[str]:
        self._ensure_live(session)
        if not session.pending_text and not session.pending_images:
            raise EngineError("Nothing to respond to: no prompt chunk was added.")
        user_turn = self._take_user_turn(session)

        pieces: list[str] = []
        with session.engine.lock:
            self._ensure_live(session)
            # A superseded stream appends its assistant turn before releasing the
            # lock, so user and assistant turns stay paired in the transcript.
            session.transcript.append(user_turn)
            start = time.perf_counter()
            try:
                stream = session.engine.llm.create_chat_completion(
                    messages=list(session.transcript),
                    stream=True,
                    top_k=session.options.top_k,
                    top_p=session.options.top_p,
                    temperature=session.options.temperature,
                )
                for chunk in stream:
                    self._ensure_live(session)
                    delta = _delta_text(chunk)
                    if delta:
                        pieces.append(delta)
                        yield delta
            except EngineError:
                raise
            except Exception as exc:
                raise EngineError(f"llama.cpp generation failed: {exc}") from exc
            finally:
                session.last_duration = time.perf_counter() - start
                session.transcript.append({"role": "assistant", "content": "".join(pieces)})

    def count_tokens(self, session: LlamaSession, text: str) -> int:
        self._ensure_live(session)
        try:
            return len(session.engine.llm.tokenize(text.encode("utf-8"), add_bos=False))
        except Exception as exc:
            raise EngineError(f"llama.cpp token counting failed: {exc}") from exc

    def last_generation_duration_seconds(self, session: LlamaSession) -> float | None:
        return session.last_duration

    def __repr__(self) -> str:
        return f"LlamaCppEngine(n_gpu_layers={self.n_gpu_layers}, verbose={self.verbose})"
