"""
Tests for runtime settings and secrets.
"""

import pytest
import yaml

from regintel.config.secrets import (
    MissingAPIKeyError,
    get_openai_key,
    get_openai_model,
    header_secret,
    load_extraction_credentials,
)
from regintel.config.settings import Settings, load_ingest_config, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "REGINTEL_CONFIDENCE_MIN",
        "REGINTEL_DOWNLOAD_COOLDOWN_HOURS",
        "REGINTEL_OBJECT_STORE_DIR",
        "REGINTEL_DOWNLOAD_INDEX_PATH",
        "REGINTEL_REPOSITORY_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, data):
    path = tmp_path / "ingest.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestLoadSettings:
    """Tests for load_settings."""

    def test_defaults(self):
        settings = Settings()
        assert settings.confidence_min == 0.7
        assert settings.download_cooldown_seconds == 6 * 3600
        assert settings.worker_concurrency == {"scan": 2, "merge": 1}

    def test_yaml_values(self, tmp_path):
        path = write_config(tmp_path, {
            "validation": {"confidence_min": 0.8, "allowed_domains": ["unece.org"]},
            "download": {"cooldown_hours": 1},
            "retry": {"max_retries": 5, "backoff_seconds": 0.5},
            "storage": {"object_store_dir": "/data/objects", "repository_path": None},
            "workers": {"connector": 8, "concurrency": {"scan": 4}},
            "default_max_results": 10,
        })

        settings = load_settings(path)

        assert settings.confidence_min == 0.8
        assert settings.allowed_domains == ["unece.org"]
        assert settings.download_cooldown_seconds == 3600
        assert settings.max_retries == 5
        assert settings.backoff_seconds == 0.5
        assert settings.object_store_dir == "/data/objects"
        assert settings.repository_path is None
        assert settings.connector_workers == 8
        assert settings.worker_concurrency == {"scan": 4, "merge": 1}
        assert settings.default_max_results == 10

    def test_environment_overrides_yaml(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"validation": {"confidence_min": 0.8}})
        monkeypatch.setenv("REGINTEL_CONFIDENCE_MIN", "0.9")
        monkeypatch.setenv("REGINTEL_DOWNLOAD_COOLDOWN_HOURS", "12")
        monkeypatch.setenv("REGINTEL_OBJECT_STORE_DIR", "/tmp/objects")

        settings = load_settings(path)

        assert settings.confidence_min == 0.9
        assert settings.download_cooldown_hours == 12
        assert settings.object_store_dir == "/tmp/objects"

    def test_non_numeric_environment_value_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REGINTEL_CONFIDENCE_MIN", "high")
        assert load_settings(write_config(tmp_path, {})).confidence_min == 0.7

    def test_missing_config_file(self, tmp_path):
        assert load_ingest_config(str(tmp_path / "missing.yaml")) == {}

    def test_broken_config_file(self, tmp_path):
        path = tmp_path / "ingest.yaml"
        path.write_text("validation: [unclosed")
        assert load_ingest_config(str(path)) == {}


class TestSecrets:
    """Tests for API key lookup."""

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(MissingAPIKeyError):
            get_openai_key()
        with pytest.raises(MissingAPIKeyError):
            load_extraction_credentials()

    def test_key_present(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", " sk-test ")
        assert get_openai_key() == "sk-test"

    def test_model_default_and_override(self, monkeypatch):
        monkeypatch.delenv("OPENAI_MODEL", raising=False)
        assert get_openai_model() == "gpt-4o-mini"
        monkeypatch.setenv("OPENAI_MODEL", "gpt-4.1")
        assert get_openai_model() == "gpt-4.1"

    def test_credentials_hide_key_in_repr(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        monkeypatch.setenv("OPENAI_BASE_URL", "https://llm.internal.example/v1")
        monkeypatch.delenv("OPENAI_MODEL", raising=False)

        credentials = load_extraction_credentials()

        assert credentials.api_key == "sk-secret"
        assert credentials.model == "gpt-4o-mini"
        assert credentials.base_url == "https://llm.internal.example/v1"
        assert "sk-secret" not in repr(credentials)
        assert load_extraction_credentials("gpt-4.1").model == "gpt-4.1"

    def test_header_secret_blank_is_unset(self, monkeypatch):
        monkeypatch.setenv("TEST_GAR_COOKIE", "  ")
        assert header_secret("TEST_GAR_COOKIE") is None
        monkeypatch.setenv("TEST_GAR_COOKIE", "session=abc")
        assert header_secret("TEST_GAR_COOKIE") == "session=abc"
