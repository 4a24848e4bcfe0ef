"""Tests for configuration loading."""

import json

import pytest
import yaml

from core.hvac_runtime.exceptions import ConfigurationError
from core.hvac_runtime.settings import AppConfig, EngineSettings, SinkSettings, ServiceSettings, load_config


class TestFromDict:
    def test_camel_case_keys(self):
        settings = EngineSettings.from_dict({"fanTailMs": 45000, "minRuntimeSeconds": 10})
        assert settings.fan_tail_ms == 45000
        assert settings.min_runtime_seconds == 10
        assert settings.max_runtime_seconds == 86400

    def test_unknown_keys_are_ignored(self):
        settings = SinkSettings.from_dict({"statusWebhookUrl": "https://x", "colour": "blue"})
        assert settings.status_webhook_url == "https://x"

    def test_app_config_sections(self):
        config = AppConfig.from_dict({
            "engine": {"sessionTimeoutMs": 1000},
            "service": {"maxWorkers": 2},
        })
        assert config.engine.session_timeout_ms == 1000
        assert config.service.max_workers == 2
        assert config.sinks.max_attempts == 3

    @pytest.mark.parametrize("data", [
        {"tempChangeThreshold": -1},
        {"fanTailMs": -5},
        {"sessionTimeoutMs": 0},
        {"minRuntimeSeconds": 100, "maxRuntimeSeconds": 10},
    ])
    def test_invalid_engine_settings(self, data):
        with pytest.raises(ConfigurationError):
            EngineSettings.from_dict(data)

    def test_invalid_sink_and_service_settings(self):
        with pytest.raises(ConfigurationError):
            SinkSettings.from_dict({"maxAttempts": 0})
        with pytest.raises(ConfigurationError):
            ServiceSettings.from_dict({"maxWorkers": 0})
        with pytest.raises(ConfigurationError):
            ServiceSettings.from_dict({"eventTimeoutSeconds": 0})


class TestLoadConfig:
    def test_options_json(self, clean_env, tmp_path):
        options = tmp_path / "options.json"
        options.write_text(json.dumps({"engine": {"fanTailMs": 1000}, "service": {"databasePath": "x.db"}}))

        config = load_config(options_path=str(options))

        assert config.engine.fan_tail_ms == 1000
        assert config.service.database_path == "x.db"

    def test_options_json_wins_over_yaml(self, clean_env, tmp_path):
        options = tmp_path / "options.json"
        options.write_text(json.dumps({"engine": {"fanTailMs": 1000}}))
        config_yaml = tmp_path / "config.yaml"
        config_yaml.write_text(yaml.safe_dump({"options": {"engine": {"fanTailMs": 2000}}}))

        config = load_config(options_path=str(options), config_path=str(config_yaml))
        assert config.engine.fan_tail_ms == 1000

    def test_yaml_fallback(self, clean_env, tmp_path):
        config_yaml = tmp_path / "config.yaml"
        config_yaml.write_text(yaml.safe_dump({
            "name": "HVAC Runtime Tracker",
            "options": {"sinks": {"coreIngestUrl": "https://core.example"}},
        }))

        config = load_config(options_path=str(tmp_path / "missing.json"), config_path=str(config_yaml))
        assert config.sinks.core_ingest_url == "https://core.example"

    def test_missing_files_give_defaults(self, clean_env, tmp_path):
        config = load_config(options_path=str(tmp_path / "missing.json"))
        assert config == AppConfig()

    def test_environment_overrides(self, clean_env, tmp_path):
        clean_env.setenv("FAN_TAIL_MS", "15000")
        clean_env.setenv("CORE_API_KEY", "secret")
        clean_env.setenv("INGEST_RETRY_DELAY_MS", "500")

        config = load_config(options_path=str(tmp_path / "missing.json"))

        assert config.engine.fan_tail_ms == 15000
        assert config.sinks.core_api_key == "secret"
        assert config.sinks.retry_delay_ms == 500

    def test_invalid_environment_value(self, clean_env, tmp_path):
        clean_env.setenv("FAN_TAIL_MS", "soon")
        with pytest.raises(ConfigurationError, match="FAN_TAIL_MS"):
            load_config(options_path=str(tmp_path / "missing.json"))

    def test_unreadable_options_file(self, clean_env, tmp_path):
        options = tmp_path / "options.json"
        options.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_config(options_path=str(options))
