"""
Shared test fixtures for EdgeChat.

``FakeEngine`` implements the inference engine protocol in memory: scripted
fragments per stream call, optional gates that hold a stream open, and failure
injection at every stage. Model "files" are empty placeholders in a tmp directory.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import pytest

from edgechat.catalog import Backend, ModelCatalog, ModelIdentifier
from edgechat.controller import GenerationSessionController
from edgechat.engines.base import EngineOptions, SessionOptions
from edgechat.history import ChatHistory
from edgechat.lifecycle import ModelLifecycleManager
from edgechat.settings import SettingsStore


@dataclass
class FakeHandle:
    number: int
    model_path: Any
    options: EngineOptions
    released: bool = False


@dataclass
class FakeSession:
    number: int
    handle: FakeHandle
    options: SessionOptions
    chunks: list[str] = field(default_factory=list)
    images: list[bytes] = field(default_factory=list)
    released: bool = False


class FakeEngine:
    """Scripted in-memory engine.

    ``scripts`` is consumed one entry per ``stream_response`` call; when it runs
    out, ``fragments`` is used. ``gates[n]`` holds the n-th stream (0-based) before
    its first fragment until the event is set.
    """

    def __init__(
        self,
        fragments: list[str] | None = None,
        *,
        duration: float | None = 0.5,
        init_seconds: float = 0.25,
        token_count: int | None = None,
    ) -> None:
        self.fragments = list(fragments) if fragments is not None else ["Hello", "!"]
        self.scripts: list[list[str]] = []
        self.gates: dict[int, threading.Event] = {}
        self.duration = duration
        self.init_seconds = init_seconds
        self.token_count = token_count
        self.chunk_delay = 0.0
        self.session_delay = 0.0

        self.fail_load: Exception | None = None
        self.fail_session: Exception | None = None
        self.fail_stream: Exception | None = None
        self.fail_stream_after = 0

        self.handles: list[FakeHandle] = []
        self.sessions: list[FakeSession] = []
        self.released_handles: list[FakeHandle] = []
        self.released_sessions: list[FakeSession] = []
        self.prompts: list[str] = []
        self._numbers = itertools.count(1)
        self._stream_calls = itertools.count()

    def load_engine(self, model_path, options: EngineOptions) -> FakeHandle:
        if self.fail_load is not None:
            raise self.fail_load
        handle = FakeHandle(next(self._numbers), model_path, options)
        self.handles.append(handle)
        return handle

    def create_session(self, engine: FakeHandle, options: SessionOptions) -> FakeSession:
        if self.session_delay:
            time.sleep(self.session_delay)
        if self.fail_session is not None:
            raise self.fail_session
        session = FakeSession(next(self._numbers), engine, options)
        self.sessions.append(session)
        return session

    def add_text_chunk(self, session: FakeSession, text: str) -> None:
        session.chunks.append(text)

    def add_image(self, session: FakeSession, image: bytes) -> None:
        session.images.append(image)

    async def stream_response(self, session: FakeSession):
        call = next(self._stream_calls)
        self.prompts.append("".join(session.chunks))
        session.chunks.clear()
        fragments = self.scripts.pop(0) if self.scripts else list(self.fragments)
        gate = self.gates.get(call)
        if gate is not None:
            while not gate.is_set():
                await asyncio.sleep(0.005)
        for index, fragment in enumerate(fragments):
            if self.fail_stream is not None and index >= self.fail_stream_after:
                raise self.fail_stream
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield fragment
        if self.fail_stream is not None and self.fail_stream_after >= len(fragments):
            raise self.fail_stream

    def count_tokens(self, session: FakeSession, text: str) -> int:
        if self.token_count is not None:
            return self.token_count
        return len(text.split())

    def last_generation_duration_seconds(self, session: FakeSession) -> float | None:
        return self.duration

    def engine_initialization_duration_seconds(self, engine: FakeHandle) -> float:
        return self.init_seconds

    def release_session(self, session: FakeSession) -> None:
        session.released = True
        self.released_sessions.append(session)

    def release_engine(self, engine: FakeHandle) -> None:
        engine.released = True
        self.released_handles.append(engine)


def install_model_files(models_dir, *identifiers: ModelIdentifier) -> None:
    models_dir.mkdir(parents=True, exist_ok=True)
    for identifier in identifiers:
        (models_dir / identifier.filename).write_bytes(b"GGUF")


@pytest.fixture
def models_dir(tmp_path):
    directory = tmp_path / "models"
    install_model_files(directory, ModelIdentifier.GEMMA3N_E2B, ModelIdentifier.GEMMA3_1B)
    return directory


@pytest.fixture
def catalog(models_dir):
    return ModelCatalog(models_dir, probes={})


@pytest.fixture
def fake_engine():
    engine = FakeEngine()
    yield engine
    for gate in engine.gates.values():
        gate.set()


@pytest.fixture
def settings(tmp_path):
    store = SettingsStore(tmp_path / "data" / "settings.sqlite3")
    yield store
    store.close()


@pytest.fixture
def history():
    return ChatHistory()


@pytest.fixture
def lifecycle(catalog, fake_engine):
    return ModelLifecycleManager(catalog, {Backend.LLAMA_CPP: fake_engine}, system_prompt="sys")


@pytest.fixture
def controller(catalog, lifecycle, history, settings):
    return GenerationSessionController(
        catalog,
        lifecycle,
        history,
        settings,
        first_chunk_timeout=2.0,
        chunk_idle_timeout=2.0,
    )


@pytest.fixture
async def ready_controller(controller):
    assert await controller.start()
    yield controller
    await controller.shutdown()
