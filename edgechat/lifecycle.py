"""
Model lifecycle — owns the single live (engine handle, session handle) pair.

The pair, the identifier it was loaded for, and the engine init duration change
together: ``current`` is one immutable ``LoadedModel`` snapshot that is swapped as a
whole. Sessions never reference the manager; the controller captures a snapshot
and talks to ``snapshot.engine`` directly.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from . import config
from .exceptions import EdgeChatError, ModelLoadError, SessionCreateError

if TYPE_CHECKING:
    from .catalog import Backend, ModelCatalog, ModelIdentifier
    from .engines.base import InferenceEngine
    from .settings import SessionConfig

logger = logging.getLogger("edgechat")

T = TypeVar("T")


async def _run_blocking(
    func: Callable[..., T], /, *args: Any, on_abandon: Callable[[T], None] | None = None
) -> T:
    """Run blocking engine work off the loop.

    If the awaiting coroutine is cancelled, the work still finishes in its thread;
    *on_abandon* then receives the result so handles are never leaked.
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, functools.partial(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        if on_abandon is not None:

            def _cleanup(done: asyncio.Future) -> None:
                if done.cancelled() or done.exception() is not None:
                    return
                try:
                    on_abandon(done.result())
                except Exception:
                    logger.warning(
                        "[EdgeChat Lifecycle] Cleanup of abandoned handle failed.", exc_info=True
                    )

            future.add_done_callback(_cleanup)
        raise


@dataclass(frozen=True)
class LoadedModel:
    identifier: ModelIdentifier
    engine: InferenceEngine
    engine_handle: Any
    session_handle: Any | None
    init_seconds: float

    @property
    def has_session(self) -> bool:
        return self.session_handle is not None


class ModelLifecycleManager:
    """Loads, rebuilds and releases the model+session pair for catalog entries."""

    def __init__(
        self,
        catalog: ModelCatalog,
        engines: dict[Backend, InferenceEngine],
        system_prompt: str = config.SYSTEM_PROMPT,
    ) -> None:
        self.catalog = catalog
        self.engines = engines
        self.system_prompt = system_prompt
        self._current: LoadedModel | None = None

    @property
    def current(self) -> LoadedModel | None:
        return self._current

    @property
    def current_identifier(self) -> ModelIdentifier | None:
        return None if self._current is None else self._current.identifier

    @property
    def last_init_duration_seconds(self) -> float:
        return 0.0 if self._current is None else self._current.init_seconds

    @property
    def is_ready(self) -> bool:
        """True when a session is live and generation may start."""
        return self._current is not None and self._current.has_session

    def _engine_for(self, identifier: ModelIdentifier) -> InferenceEngine:
        engine = self.engines.get(identifier.backend)
        if engine is None:
            raise ModelLoadError(
                f"No engine configured for {identifier.display_name} ({identifier.backend.value})."
            )
        return engine

    async def load(self, identifier: ModelIdentifier, session_config: SessionConfig) -> LoadedModel:
        """Release whatever is loaded, then build engine and session for *identifier*.

        Raises ``ModelLoadError`` or ``SessionCreateError``; either way nothing is
        loaded afterwards.
        """
        self.release()
        engine = self._engine_for(identifier)
        if not self.catalog.is_available(identifier):
            raise ModelLoadError(f"{identifier.display_name} is not installed.")

        model_path = self.catalog.model_path(identifier)
        engine_options = self.catalog.engine_options(identifier)
        logger.info("[EdgeChat Lifecycle] Loading %s from %s", identifier.value, model_path)
        try:
            handle = await _run_blocking(
                engine.load_engine, model_path, engine_options, on_abandon=engine.release_engine
            )
        except EdgeChatError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load {identifier.display_name}: {exc}") from exc

        try:
            session = await _run_blocking(
                engine.create_session,
                handle,
                session_config.to_session_options(self.system_prompt),
                on_abandon=engine.release_session,
            )
        except asyncio.CancelledError:
            engine.release_engine(handle)
            raise
        except Exception as exc:
            engine.release_engine(handle)
            if isinstance(exc, EdgeChatError):
                raise
            raise SessionCreateError(
                f"{identifier.display_name} rejected the session options: {exc}"
            ) from exc

        init_seconds = float(engine.engine_initialization_duration_seconds(handle))
        self._current = LoadedModel(
            identifier=identifier,
            engine=engine,
            engine_handle=handle,
            session_handle=session,
            init_seconds=init_seconds,
        )
        logger.info(
            "[EdgeChat Lifecycle] %s ready (engine init %.3fs).", identifier.value, init_seconds
        )
        return self._current

    async def reinitialize_session(self, session_config: SessionConfig) -> LoadedModel:
        """Rebuild only the session with new options; weights stay loaded.

        On failure the model stays loaded without a session (not ready).
        """
        current = self._current
        if current is None:
            raise SessionCreateError("No model is loaded.")
        if current.session_handle is not None:
            current.engine.release_session(current.session_handle)
        detached = replace(current, session_handle=None)
        self._current = detached

        engine = current.engine
        try:
            session = await _run_blocking(
                engine.create_session,
                current.engine_handle,
                session_config.to_session_options(self.system_prompt),
                on_abandon=engine.release_session,
            )
        except EdgeChatError:
            raise
        except Exception as exc:
            raise SessionCreateError(f"Session rebuild failed: {exc}") from exc

        if self._current is not detached:
            # Released or replaced while the session was being built.
            engine.release_session(session)
            raise SessionCreateError("Model changed while the session was being rebuilt.")
        self._current = replace(detached, session_handle=session)
        logger.info("[EdgeChat Lifecycle] Session rebuilt for %s.", current.identifier.value)
        return self._current

    def release(self) -> None:
        """Drop both handles. Safe to call repeatedly."""
        current = self._current
        if current is None:
            return
        self._current = None
        try:
            if current.session_handle is not None:
                current.engine.release_session(current.session_handle)
        finally:
            current.engine.release_engine(current.engine_handle)
        logger.info("[EdgeChat Lifecycle] Released %s.", current.identifier.value)
