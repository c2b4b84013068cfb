"""Tests for edgechat.settings (SessionConfig, SettingsStore)."""

import pytest

from edgechat import config
from edgechat.settings import SessionConfig, SettingsStore


class TestSessionConfig:
    def test_defaults(self):
        cfg = SessionConfig()
        assert cfg.top_k == 40
        assert cfg.top_p == 0.9
        assert cfg.temperature == 0.9
        assert cfg.vision_enabled is True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"top_k": 0},
            {"top_k": True},
            {"top_p": 1.5},
            {"top_p": -0.1},
            {"temperature": 2.5},
        ],
    )
    def test_validate_rejects_out_of_range(self, kwargs):
        with pytest.raises(ValueError):
            SessionConfig(**kwargs).validate()

    def test_to_session_options_carries_system_prompt(self):
        options = SessionConfig(top_k=3).to_session_options("be brief")
        assert options.top_k == 3
        assert options.system_prompt == "be brief"

    def test_default_system_prompt(self):
        assert SessionConfig().to_session_options().system_prompt == config.SYSTEM_PROMPT

    def test_from_dict_parses_persisted_strings(self):
        cfg = SessionConfig.from_dict(
            {"top_k": "12", "top_p": "0.5", "temperature": "1.25", "vision_enabled": "False"}
        )
        assert cfg == SessionConfig(top_k=12, top_p=0.5, temperature=1.25, vision_enabled=False)

    def test_from_dict_falls_back_per_field(self):
        cfg = SessionConfig.from_dict(
            {"top_k": "many", "top_p": "7", "temperature": "0.2", "vision_enabled": "maybe"}
        )
        assert cfg.top_k == 40
        assert cfg.top_p == 0.9
        assert cfg.temperature == 0.2
        assert cfg.vision_enabled is True


class TestSettingsStore:
    def test_empty_store_returns_defaults(self, settings):
        assert settings.get() == SessionConfig()
        assert settings.auto_scroll is True
        assert settings.selected_model is None

    def test_set_persists_across_reopen(self, tmp_path):
        path = tmp_path / "settings.sqlite3"
        store = SettingsStore(path)
        store.set(SessionConfig(top_k=5, vision_enabled=False))
        store.close()

        reopened = SettingsStore(path)
        try:
            assert reopened.get() == SessionConfig(top_k=5, vision_enabled=False)
        finally:
            reopened.close()

    def test_invalid_config_is_not_written(self, settings):
        with pytest.raises(ValueError):
            settings.set(SessionConfig(temperature=3.0))
        assert settings.get() == SessionConfig()

    def test_set_notifies_subscribers(self, settings):
        seen = []
        settings.changes.subscribe(seen.append)
        settings.set(SessionConfig(top_p=0.4))
        assert seen == [SessionConfig(top_p=0.4)]

    def test_auto_scroll_round_trip(self, settings):
        settings.auto_scroll = False
        assert settings.auto_scroll is False

    def test_selected_model_can_be_cleared(self, settings):
        settings.selected_model = "gemma3-1b"
        assert settings.selected_model == "gemma3-1b"
        settings.selected_model = None
        assert settings.selected_model is None

    def test_reset_to_defaults(self, settings):
        settings.set(SessionConfig(top_k=1, temperature=0.0))
        settings.auto_scroll = False
        settings.selected_model = "gemma3-1b"
        seen = []
        settings.changes.subscribe(seen.append)

        defaults = settings.reset_to_defaults()

        assert defaults == SessionConfig()
        assert settings.get() == SessionConfig()
        assert settings.auto_scroll is True
        assert settings.selected_model == "gemma3-1b"
        assert seen == [SessionConfig()]

    def test_in_memory_path(self):
        store = SettingsStore(":memory:")
        try:
            store.set(SessionConfig(top_k=2))
            assert store.get().top_k == 2
        finally:
            store.close()
