"""Tests for edgechat.lifecycle (ModelLifecycleManager)."""

import asyncio
import threading

import pytest

from edgechat.catalog import Backend, ModelCatalog, ModelIdentifier
from edgechat.exceptions import ModelLoadError, SessionCreateError
from edgechat.lifecycle import ModelLifecycleManager, _run_blocking
from edgechat.settings import SessionConfig

# ========================================================================
# load
# ========================================================================


class TestLoad:
    async def test_load_builds_engine_and_session(self, lifecycle, fake_engine, models_dir):
        loaded = await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig(top_k=7))

        assert lifecycle.current is loaded
        assert lifecycle.is_ready
        assert lifecycle.current_identifier is ModelIdentifier.GEMMA3_1B
        assert lifecycle.last_init_duration_seconds == 0.25
        assert loaded.engine_handle is fake_engine.handles[0]
        assert loaded.session_handle is fake_engine.sessions[0]
        assert fake_engine.handles[0].model_path == models_dir / ModelIdentifier.GEMMA3_1B.filename
        assert fake_engine.sessions[0].options.top_k == 7
        assert fake_engine.sessions[0].options.system_prompt == "sys"

    async def test_text_only_model_gets_no_image_budget(self, lifecycle, fake_engine):
        await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())
        options = fake_engine.handles[0].options
        assert options.vision_encoder_path is None
        assert options.max_images == 0

    async def test_load_releases_previous_model_first(self, lifecycle, fake_engine):
        await lifecycle.load(ModelIdentifier.GEMMA3N_E2B, SessionConfig())
        first_handle = fake_engine.handles[0]
        first_session = fake_engine.sessions[0]

        await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())

        assert first_handle in fake_engine.released_handles
        assert first_session in fake_engine.released_sessions
        assert lifecycle.current_identifier is ModelIdentifier.GEMMA3_1B

    async def test_missing_model_file(self, lifecycle, fake_engine):
        with pytest.raises(ModelLoadError, match="not installed"):
            await lifecycle.load(ModelIdentifier.GEMMA3N_E4B, SessionConfig())
        assert fake_engine.handles == []
        assert lifecycle.current is None

    async def test_no_engine_for_backend(self, models_dir, fake_engine):
        catalog = ModelCatalog(models_dir, probes={Backend.APPLE_FM: lambda: True})
        lifecycle = ModelLifecycleManager(catalog, {Backend.LLAMA_CPP: fake_engine})
        with pytest.raises(ModelLoadError, match="No engine configured"):
            await lifecycle.load(ModelIdentifier.APPLE_SYSTEM, SessionConfig())

    async def test_unexpected_load_error_is_wrapped(self, lifecycle, fake_engine):
        fake_engine.fail_load = RuntimeError("mmap failed")
        with pytest.raises(ModelLoadError, match="mmap failed") as excinfo:
            await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert lifecycle.current is None

    async def test_session_failure_releases_engine(self, lifecycle, fake_engine):
        fake_engine.fail_session = RuntimeError("top_k too large")
        with pytest.raises(SessionCreateError, match="top_k too large"):
            await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())
        assert fake_engine.released_handles == fake_engine.handles
        assert lifecycle.current is None
        assert not lifecycle.is_ready


# ========================================================================
# reinitialize_session
# ========================================================================


class TestReinitializeSession:
    async def test_rebuilds_only_the_session(self, lifecycle, fake_engine):
        first = await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())

        rebuilt = await lifecycle.reinitialize_session(SessionConfig(temperature=0.1))

        assert rebuilt.engine_handle is first.engine_handle
        assert rebuilt.session_handle is not first.session_handle
        assert first.session_handle in fake_engine.released_sessions
        assert fake_engine.released_handles == []
        assert rebuilt.session_handle.options.temperature == 0.1
        assert len(fake_engine.handles) == 1

    async def test_failure_leaves_model_loaded_without_session(self, lifecycle, fake_engine):
        await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())
        fake_engine.fail_session = SessionCreateError("rejected")

        with pytest.raises(SessionCreateError, match="rejected"):
            await lifecycle.reinitialize_session(SessionConfig())

        assert lifecycle.current is not None
        assert not lifecycle.current.has_session
        assert not lifecycle.is_ready

    async def test_requires_a_loaded_model(self, lifecycle):
        with pytest.raises(SessionCreateError, match="No model is loaded"):
            await lifecycle.reinitialize_session(SessionConfig())


# ========================================================================
# release
# ========================================================================


class TestRelease:
    async def test_release_is_idempotent(self, lifecycle, fake_engine):
        await lifecycle.load(ModelIdentifier.GEMMA3_1B, SessionConfig())
        lifecycle.release()
        lifecycle.release()

        assert lifecycle.current is None
        assert lifecycle.last_init_duration_seconds == 0.0
        assert len(fake_engine.released_handles) == 1
        assert len(fake_engine.released_sessions) == 1

    def test_release_without_model(self, lifecycle):
        lifecycle.release()
        assert lifecycle.current is None


# ========================================================================
# _run_blocking
# ========================================================================


class TestRunBlocking:
    async def test_returns_result(self):
        assert await _run_blocking(sum, [1, 2, 3]) == 6

    async def test_abandoned_result_is_cleaned_up(self):
        started = threading.Event()
        proceed = threading.Event()
        abandoned = []

        def slow():
            started.set()
            proceed.wait(2.0)
            return "handle"

        task = asyncio.ensure_future(_run_blocking(slow, on_abandon=abandoned.append))
        await asyncio.to_thread(started.wait, 2.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        proceed.set()
        for _ in range(100):
            if abandoned:
                break
            await asyncio.sleep(0.01)
        assert abandoned == ["handle"]
