"""Tests for configuration storage, pipeline settings and log modes."""

import logging

import pytest

import transync.config as config
import transync.core.database as db
import transync.logger as app_logger
from transync.config import PipelineSettings


@pytest.fixture
def restore_log_mode():
    yield
    app_logger.set_log_mode("off")


class TestConfig:

    def test_initialize_app_writes_defaults(self, temp_db):
        config.initialize_app()

        loaded = config.load_config()
        assert loaded["pipeline"]["refine_batch_size"] == 5
        assert loaded["service"]["api_key"] == config.API_KEY_PLACEHOLDER

    def test_missing_keys_are_merged_from_defaults(self, temp_db):
        db.set_app_config("config", '{"pipeline": {"refine_batch_size": 3}}')

        loaded = config.load_config()

        assert loaded["pipeline"]["refine_batch_size"] == 3
        assert loaded["pipeline"]["auto_approve_threshold"] == 85
        assert loaded["log_mode"] == "off"

    def test_unreadable_config_falls_back_to_defaults(self, temp_db):
        db.set_app_config("config", "{not json")
        assert config.load_config() == config.DEFAULT_CONFIG

    def test_defaults_are_not_shared(self, temp_db):
        loaded = config.load_config()
        loaded["pipeline"]["refine_batch_size"] = 99
        assert config.DEFAULT_CONFIG["pipeline"]["refine_batch_size"] == 5

    def test_factory_reset(self, temp_db):
        db.upsert_language("fr", "French")

        config.factory_reset()

        assert db.get_languages() == []
        assert config.load_config()["log_mode"] == "off"


class TestPipelineSettings:

    def test_defaults_match_default_config(self):
        settings = PipelineSettings.from_config(config.DEFAULT_CONFIG)
        assert settings == PipelineSettings()

    def test_unknown_keys_are_ignored(self):
        settings = PipelineSettings.from_config({"pipeline": {"refine_batch_size": 2, "legacy": True}})
        assert settings.refine_batch_size == 2

    @pytest.mark.parametrize("name, value", [
        ("refine_batch_size", "five"),
        ("refine_batch_size", 2.5),
        ("refine_batch_size", True),
        ("visibility_threshold", None),
        ("tov_content", 3),
    ])
    def test_wrong_value_types_are_rejected(self, name, value):
        with pytest.raises(ValueError, match=name):
            PipelineSettings.from_config({"pipeline": {name: value}})

    def test_numbers_are_coerced_to_field_type(self):
        settings = PipelineSettings.from_config({"pipeline": {"refine_batch_size": 4.0, "batch_delay_seconds": 2}})

        assert settings.refine_batch_size == 4
        assert isinstance(settings.refine_batch_size, int)
        assert isinstance(settings.batch_delay_seconds, float)

    def test_loaded_from_database(self, temp_db):
        stored = config.load_config()
        stored["pipeline"]["visibility_threshold"] = 0.9
        config.save_config(stored)

        assert PipelineSettings.from_config().visibility_threshold == 0.9


class TestLogMode:

    def test_off_mode_silences_loggers(self, restore_log_mode):
        logger = app_logger.get_logger("transync.tests.off")
        app_logger.set_log_mode("off")
        assert logger.level > logging.CRITICAL

    def test_switching_mode_updates_existing_loggers(self, tmp_path, monkeypatch, restore_log_mode):
        monkeypatch.setattr(app_logger, "LOG_DIR", tmp_path / "logs")
        monkeypatch.setattr(app_logger, "LOG_FILE", tmp_path / "logs" / "app.log")
        logger = app_logger.get_logger("transync.tests.switch")

        app_logger.set_log_mode("debug")

        assert logger.level == logging.DEBUG
        assert any(isinstance(h, logging.FileHandler) for h in logger.handlers)

        app_logger.set_log_mode("off")
        assert not any(isinstance(h, logging.FileHandler) for h in logger.handlers)

    def test_invalid_mode_falls_back_to_off(self, restore_log_mode):
        app_logger.set_log_mode("verbose")
        assert app_logger._get_log_mode() == "off"
