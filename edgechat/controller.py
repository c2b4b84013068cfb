"""
Generation session controller — the orchestrator behind the chat surface.

Owns the single-flight generation task, streams engine fragments into the chat
history, computes post-hoc statistics, and reconciles model switches and settings
applications with the live session.

All public methods run on one asyncio event loop (the "UI loop"). Engine streaming
runs on a worker thread; fragments come back through ``call_soon_threadsafe`` and
are applied to history on the UI loop, in stream order.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from . import config
from .catalog import ModelIdentifier
from .exceptions import (
    CatalogEmptyError,
    GenerationError,
    ModelLoadError,
    SessionCreateError,
)
from .lifecycle import _run_blocking
from .messages import Message
from .observable import Observable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .catalog import ModelCatalog
    from .engines.base import InferenceEngine
    from .history import ChatHistory
    from .lifecycle import LoadedModel, ModelLifecycleManager
    from .settings import SessionConfig, SettingsStore

logger = logging.getLogger("edgechat")


class GenerationState(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {GenerationState.COMPLETED, GenerationState.CANCELLED, GenerationState.FAILED}
)


@dataclass(frozen=True)
class GenerationStats:
    token_count: int
    duration_seconds: float
    tokens_per_second: float


def compute_throughput(token_count: int, duration_seconds: float) -> float:
    """Tokens per second, or 0.0 when the engine reported no positive duration."""
    if duration_seconds > 0:
        return token_count / duration_seconds
    return 0.0


@dataclass(eq=False)
class GenerationTask:
    """One in-flight reply. ``cancel_token`` is the cooperative stop signal."""

    target_slot_index: int
    serial: int = 0
    started_at: float = field(default_factory=time.monotonic)
    cancel_token: threading.Event = field(default_factory=threading.Event)
    state: GenerationState = GenerationState.IDLE
    task: asyncio.Task | None = None
    _wakeup: Callable[[], None] | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancel_token.set()
        if self._wakeup is not None:
            self._wakeup()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> GenerationState:
        """Wait until the task has reached Idle; returns its final task-local state."""
        if self.task is not None:
            await asyncio.wait({self.task})
        return self.state

    def __repr__(self) -> str:
        return (
            f"GenerationTask(serial={self.serial}, slot={self.target_slot_index}, "
            f"state={self.state.value}, cancelled={self.cancelled})"
        )


@dataclass(frozen=True)
class StateTransition:
    task: GenerationTask
    state: GenerationState


class GenerationSessionController:
    """Entry points for the presentation layer.

    ``send_message``, ``stop_generation``, ``switch_model``, ``apply_settings``,
    ``reset_settings_to_defaults`` and ``clear_chat`` are the only ways in.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        lifecycle: ModelLifecycleManager,
        history: ChatHistory,
        settings: SettingsStore,
        *,
        first_chunk_timeout: float = config.STREAM_FIRST_CHUNK_TIMEOUT_SECONDS,
        chunk_idle_timeout: float = config.STREAM_CHUNK_IDLE_TIMEOUT_SECONDS,
    ) -> None:
        self.catalog = catalog
        self.lifecycle = lifecycle
        self.history = history
        self.settings = settings
        self.first_chunk_timeout = first_chunk_timeout
        self.chunk_idle_timeout = chunk_idle_timeout

        self.state = GenerationState.IDLE
        self.stats: GenerationStats | None = None
        self.critical_error: str | None = None
        self.state_changes: Observable[StateTransition] = Observable()
        self.status_changes: Observable[str] = Observable()

        self._catalog_fatal = False
        self._active: GenerationTask | None = None
        self._serials = itertools.count(1)
        self._pending_loads = 0
        self._pending_applies = 0
        self._history_epoch = 0
        self._model_lock = asyncio.Lock()

    # -- published state -----------------------------------------------------

    @property
    def is_model_loading(self) -> bool:
        return self._pending_loads > 0

    @property
    def is_applying_settings(self) -> bool:
        return self._pending_applies > 0

    @property
    def is_thinking(self) -> bool:
        return self._active is not None

    @property
    def active_task(self) -> GenerationTask | None:
        return self._active

    @property
    def is_ready(self) -> bool:
        """Generation entry points are open: a live session and nothing blocking."""
        return (
            self.critical_error is None
            and not self.is_model_loading
            and not self.is_applying_settings
            and self.lifecycle.is_ready
        )

    @property
    def show_stats(self) -> bool:
        return self.stats is not None

    @property
    def model_initialization_seconds(self) -> float:
        return self.lifecycle.last_init_duration_seconds

    @property
    def available_models(self) -> list[ModelIdentifier]:
        return self.catalog.available_models()

    @property
    def selected_model(self) -> ModelIdentifier | None:
        return self.lifecycle.current_identifier

    def _set_critical_error(self, message: str | None) -> None:
        if self._catalog_fatal:
            return
        self.critical_error = message
        self.status_changes.emit("error")

    def _transition(self, task: GenerationTask, state: GenerationState) -> None:
        task.state = state
        if task is self._active:
            self.state = state
        self.state_changes.emit(StateTransition(task, state))

    def _finish(self, task: GenerationTask, terminal: GenerationState) -> None:
        was_active = task is self._active
        self._transition(task, terminal)
        if was_active:
            self._active = None
            self.state = GenerationState.IDLE
        task.state = GenerationState.IDLE
        self.state_changes.emit(StateTransition(task, GenerationState.IDLE))

    def _supersede(self, reason: str) -> None:
        """Cancel the alive task and detach it; its own cleanup finishes later."""
        task = self._active
        if task is None:
            return
        task.cancel()
        self._active = None
        self.state = GenerationState.IDLE
        logger.info("[EdgeChat Session] Cancelled generation #%d (%s).", task.serial, reason)

    def _reset_history(self) -> None:
        self._history_epoch += 1
        self.history.clear()

    def _post_status(self, epoch: int, message: Message, slot: int | None = None) -> int | None:
        """Append or replace a status message, unless history was reset after *epoch*."""
        if epoch != self._history_epoch:
            logger.debug("[EdgeChat Session] Dropping stale status message: %s", message.content)
            return None
        if slot is None:
            return self.history.append(message)
        self.history.replace(slot, message)
        return slot

    # -- startup and model switching ------------------------------------------

    def _initial_model(self, models: list[ModelIdentifier]) -> ModelIdentifier:
        persisted = self.settings.selected_model
        if persisted:
            try:
                identifier = ModelIdentifier.parse(persisted)
            except ValueError:
                logger.warning("[EdgeChat Session] Ignoring unknown persisted model %r.", persisted)
            else:
                if identifier in models:
                    return identifier
        return models[0]

    async def start(self) -> bool:
        """Discover the catalog and load the persisted (or first available) model."""
        try:
            models = self.catalog.require_available()
        except CatalogEmptyError as exc:
            logger.error("[EdgeChat Session] %s", exc)
            self.critical_error = str(exc)
            self._catalog_fatal = True
            self.status_changes.emit("error")
            return False
        identifier = self._initial_model(models)
        self.settings.selected_model = identifier.value
        self._pending_loads += 1
        self.status_changes.emit("loading")
        return await self._load_model(identifier)

    async def switch_model(self, identifier: ModelIdentifier) -> bool:
        """Cancel generation, clear the chat, release the old model, load *identifier*.

        History is empty as soon as this yields control, apart from the loading
        notice the reload appends.
        """
        if self._catalog_fatal:
            return False
        if not self.catalog.is_available(identifier):
            logger.warning("[EdgeChat Session] %s is not installed.", identifier.value)
            return False
        self._supersede("model switch")
        self._reset_history()
        self.settings.selected_model = identifier.value
        self._pending_loads += 1
        self.status_changes.emit("loading")
        return await self._load_model(identifier)

    async def _load_model(self, identifier: ModelIdentifier) -> bool:
        """Load under the model lock; the caller has already bumped ``_pending_loads``."""
        epoch = self._history_epoch
        try:
            async with self._model_lock:
                self.lifecycle.release()
                name = identifier.display_name
                placeholder = Message.assistant(f"Loading {name}...")
                slot = self._post_status(epoch, placeholder)
                try:
                    loaded = await self.lifecycle.load(identifier, self.settings.get())
                except (ModelLoadError, SessionCreateError) as exc:
                    logger.error("[EdgeChat Session] Loading %s failed: %s", identifier.value, exc)
                    self._set_critical_error(str(exc))
                    failed = placeholder.with_content(f"Failed to load {name}: {exc}")
                    if slot is not None:
                        self._post_status(epoch, failed, slot)
                    return False
                self._set_critical_error(None)
                if slot is not None:
                    ready = f"{name} is ready (initialized in {loaded.init_seconds:.3f} s)."
                    self._post_status(epoch, placeholder.with_content(ready), slot)
                return True
        finally:
            self._pending_loads -= 1
            self.status_changes.emit("loading")

    # -- settings --------------------------------------------------------------

    async def apply_settings(self, session_config: SessionConfig | None = None) -> bool:
        """Persist settings, cancel generation, clear history, rebuild the session.

        Raises ``ValueError`` for an invalid *session_config* before touching anything.
        """
        if session_config is not None:
            self.settings.set(session_config)
        if self._catalog_fatal:
            return False
        current_config = self.settings.get()
        self._pending_applies += 1
        self.status_changes.emit("applying")
        try:
            self._supersede("settings applied")
            self._reset_history()
            epoch = self._history_epoch
            async with self._model_lock:
                try:
                    if self.lifecycle.current is None:
                        identifier = self._initial_model(self.catalog.require_available())
                        await self.lifecycle.load(identifier, current_config)
                    else:
                        await self.lifecycle.reinitialize_session(current_config)
                except (CatalogEmptyError, ModelLoadError, SessionCreateError) as exc:
                    logger.error("[EdgeChat Session] Applying settings failed: %s", exc)
                    self._set_critical_error(str(exc))
                    self._post_status(epoch, Message.assistant(f"Failed to apply settings: {exc}"))
                    return False
                self._set_critical_error(None)
                # A switch or clear that ran while this waited owns the history now.
                done = Message.assistant("Settings applied. The chat has been reset.")
                self._post_status(epoch, done)
                return True
        finally:
            self._pending_applies -= 1
            self.status_changes.emit("applying")

    async def reset_settings_to_defaults(self) -> bool:
        self.settings.reset_to_defaults()
        return await self.apply_settings()

    # -- chat ------------------------------------------------------------------

    def clear_chat(self) -> None:
        self._supersede("chat cleared")
        self._reset_history()

    def stop_generation(self) -> None:
        """Signal the alive task to stop. Returns immediately; watch ``state_changes``."""
        task = self._active
        if task is None:
            return
        task.cancel()
        logger.info("[EdgeChat Session] Stop requested for generation #%d.", task.serial)

    def send_message(self, text: str, image: bytes | None = None) -> GenerationTask | None:
        """Start a reply to *text* (and *image*). Must be called on the UI loop.

        Returns the new task, or None when the turn was rejected (empty input or
        no live session).
        """
        if not text.strip() and image is None:
            return None
        if not self.is_ready:
            logger.info("[EdgeChat Session] Rejected message: no live session.")
            return None
        loaded = self.lifecycle.current
        if loaded is None:
            return None

        self._supersede("superseded by a new message")
        self.history.append(Message.user(text, image))
        placeholder = Message.assistant(config.THINKING_PLACEHOLDER)
        slot = self.history.append(placeholder)

        task = GenerationTask(target_slot_index=slot, serial=next(self._serials))
        self._active = task
        self._transition(task, GenerationState.THINKING)
        task.task = asyncio.get_running_loop().create_task(
            self._run_generation(task, loaded, text, image, placeholder),
            name=f"edgechat-generation-{task.serial}",
        )
        return task

    async def _run_generation(
        self,
        task: GenerationTask,
        loaded: LoadedModel,
        text: str,
        image: bytes | None,
        placeholder: Message,
    ) -> None:
        engine = loaded.engine
        session = loaded.session_handle
        accumulated = ""
        received = False
        try:
            if image is not None:
                # The engine ties image context to the next text turn.
                await _run_blocking(engine.add_image, session, image)
            if task.cancelled:
                self._end_cancelled(task, accumulated)
                return
            await _run_blocking(engine.add_text_chunk, session, text)
            if task.cancelled:
                self._end_cancelled(task, accumulated)
                return

            stream = self._stream_on_worker(engine, session, task)
            try:
                async for fragment in stream:
                    if task.cancelled:
                        break
                    accumulated += fragment
                    received = True
                    partial = placeholder.with_content(accumulated)
                    self.history.replace(task.target_slot_index, partial)
                    if task.state is GenerationState.THINKING:
                        self._transition(task, GenerationState.STREAMING)
            finally:
                await stream.aclose()

            if task.cancelled:
                self._end_cancelled(task, accumulated)
                return
            if not received:
                self.history.replace(task.target_slot_index, placeholder.with_content(""))

            token_count = await _run_blocking(engine.count_tokens, session, accumulated)
            duration = engine.last_generation_duration_seconds(session) or 0.0
            if task.cancelled:
                self._end_cancelled(task, accumulated)
                return
            self.stats = GenerationStats(
                token_count=int(token_count),
                duration_seconds=float(duration),
                tokens_per_second=compute_throughput(int(token_count), float(duration)),
            )
            logger.info(
                "[EdgeChat Session] Generation #%d completed: %d tokens in %.3fs (%.2f tok/s).",
                task.serial,
                self.stats.token_count,
                self.stats.duration_seconds,
                self.stats.tokens_per_second,
            )
            self.status_changes.emit("stats")
            self._finish(task, GenerationState.COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            self._finish(task, GenerationState.CANCELLED)
            raise
        except Exception as exc:
            if task.cancelled:
                logger.info(
                    "[EdgeChat Session] Generation #%d failed after cancellation: %s",
                    task.serial,
                    exc,
                )
                self._finish(task, GenerationState.CANCELLED)
                return
            logger.error(
                "[EdgeChat Session] Generation #%d failed: %s", task.serial, exc, exc_info=True
            )
            self.history.append(Message.assistant(f"Error: {exc}"))
            self._finish(task, GenerationState.FAILED)

    def _end_cancelled(self, task: GenerationTask, accumulated: str) -> None:
        logger.info(
            "[EdgeChat Session] Generation #%d cancelled after %d chars.",
            task.serial,
            len(accumulated),
        )
        self._finish(task, GenerationState.CANCELLED)

    async def _stream_on_worker(
        self, engine: InferenceEngine, session: Any, task: GenerationTask
    ) -> AsyncIterator[str]:
        """Drive the engine stream on a worker thread and forward fragments to this loop."""
        ui_loop = asyncio.get_running_loop()
        event_queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        stop_event = threading.Event()
        worker_done = threading.Event()

        def post(kind: str, payload: Any) -> None:
            # The UI loop may already be closed when a late worker finishes.
            with contextlib.suppress(RuntimeError):
                ui_loop.call_soon_threadsafe(event_queue.put_nowait, (kind, payload))

        def producer_sync() -> None:
            async def producer() -> None:
                stream = engine.stream_response(session)
                try:
                    async for fragment in stream:
                        if task.cancelled or stop_event.is_set():
                            break
                        post("chunk", str(fragment))
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()

            try:
                asyncio.run(producer())
            except Exception as exc:
                post("error", exc)
            else:
                post("done", None)
            finally:
                worker_done.set()

        worker_thread = threading.Thread(
            target=producer_sync,
            name="edgechat-stream-worker",
            daemon=True,
        )
        worker_thread.start()
        first_chunk_seen = False
        # Cancellation wakes the consumer without waiting for the next fragment.
        task._wakeup = lambda: event_queue.put_nowait(("cancelled", None))

        try:
            while not task.cancelled:
                timeout = self.chunk_idle_timeout if first_chunk_seen else self.first_chunk_timeout
                try:
                    kind, payload = await asyncio.wait_for(event_queue.get(), timeout=timeout)
                except TimeoutError as exc:
                    label = "response stream" if first_chunk_seen else "first response chunk"
                    raise GenerationError(
                        f"Timed out waiting for {label} after {timeout:.0f}s."
                    ) from exc
                if kind == "chunk":
                    first_chunk_seen = True
                    yield payload
                    continue
                if kind == "error":
                    if isinstance(payload, Exception):
                        raise payload
                    raise GenerationError(str(payload))
                break
        finally:
            task._wakeup = None
            stop_event.set()
            with contextlib.suppress(Exception):
                await asyncio.to_thread(worker_done.wait, config.STREAM_WORKER_JOIN_TIMEOUT_SECONDS)

    # -- teardown --------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop generation, wait for it to wind down, and release the model."""
        task = self._active
        self._supersede("shutdown")
        if task is not None:
            await task.wait()
        self.lifecycle.release()
