"""Tests for client configuration."""

import json

import pytest

from beacon_core.config import ClientConfig, DEFAULT_HOST
from beacon_core.errors import ConfigurationError


class TestClientConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BEACON_HOST", raising=False)
        config = ClientConfig(api_key="phc_x")

        assert config.host == DEFAULT_HOST
        assert config.queue.flush_at == 20
        assert config.queue.flush_interval_seconds == 10.0
        assert config.delivery.max_retries == 3
        assert config.delivery.requeue_on_failure is True
        assert config.session.idle_timeout_seconds == 1800
        assert config.flags.only_evaluate_locally is False
        assert config.rate_limit.capacity == 100

    def test_env(self, monkeypatch):
        monkeypatch.setenv("BEACON_API_KEY", "phc_env")
        monkeypatch.setenv("BEACON_HOST", "https://eu.example.com/")
        monkeypatch.setenv("BEACON_DISABLED", "true")

        config = ClientConfig()

        assert config.api_key == "phc_env"
        assert config.host == "https://eu.example.com"
        assert config.disabled is True

    @pytest.mark.parametrize("api_key", [None, "", "   "])
    def test_missing_api_key(self, monkeypatch, api_key):
        monkeypatch.delenv("BEACON_API_KEY", raising=False)
        config = ClientConfig(api_key=api_key)

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_invalid_flush_at(self):
        config = ClientConfig(api_key="phc_x")
        config.queue.flush_at = 0

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_batch_size_raised_to_flush_at(self):
        config = ClientConfig(api_key="phc_x")
        config.queue.flush_at = 50
        config.queue.max_batch_size = 10

        config.validate()

        assert config.queue.max_batch_size == 50

    def test_from_dict(self):
        config = ClientConfig.from_dict({
            "api_key": "phc_x",
            "queue": {"flush_at": 5},
            "flags": {"only_evaluate_locally": True},
            "bootstrap": {"distinct_id": "user-1", "is_identified_id": True},
        })

        assert config.queue.flush_at == 5
        assert config.flags.only_evaluate_locally is True
        assert config.bootstrap.distinct_id == "user-1"
        assert config.bootstrap.is_identified_id is True

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "beacon.yaml"
        path.write_text(
            "api_key: phc_yaml\n"
            "host: https://collector.test\n"
            "delivery:\n"
            "  max_retries: 5\n"
            "  disable_compression: true\n"
        )

        config = ClientConfig.from_yaml(str(path))

        assert config.api_key == "phc_yaml"
        assert config.delivery.max_retries == 5
        assert config.delivery.disable_compression is True

    def test_from_json(self, tmp_path):
        path = tmp_path / "beacon.json"
        path.write_text(json.dumps({"api_key": "phc_json", "session": {"idle_timeout_seconds": 60}}))

        config = ClientConfig.from_json(str(path))

        assert config.session.idle_timeout_seconds == 60
