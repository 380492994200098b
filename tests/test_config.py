"""Tests for config loading and the typed settings views."""

from __future__ import annotations

import yaml

from digestcore.config import (
    DEFAULT_MISSING_CONTENT_NOTICE,
    DEFAULT_SKIP_HOSTS,
    DigestSettings,
    LLMSettings,
    load_config,
)


class TestLoadConfig:
    def test_missing_file_gives_empty_config(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yaml")) == {}

    def test_env_references_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DIGEST_TEST_KEY", "sk-from-env")
        monkeypatch.delenv("DIGEST_UNSET_KEY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.dump(
                {
                    "llm": {"api_key": "${DIGEST_TEST_KEY}", "base_url": "${DIGEST_UNSET_KEY}"},
                    "digest": {"skip_hosts": ["${DIGEST_TEST_KEY}.com"]},
                }
            )
        )

        config = load_config(str(path))

        assert config["llm"] == {"api_key": "sk-from-env", "base_url": ""}
        assert config["digest"]["skip_hosts"] == ["sk-from-env.com"]

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}


class TestDigestSettings:
    def test_defaults(self):
        settings = DigestSettings.from_config({})
        assert settings == DigestSettings()
        assert settings.missing_content_notice == DEFAULT_MISSING_CONTENT_NOTICE
        assert settings.skip_hosts == DEFAULT_SKIP_HOSTS

    def test_values_read(self):
        settings = DigestSettings.from_config(
            {
                "digest": {
                    "max_items": 12,
                    "llm_batch_size": 4,
                    "fulltext_timeout_seconds": "2.5",
                    "timezone": "Asia/Tokyo",
                    "skip_hosts": ["Example.COM"],
                }
            }
        )
        assert settings.digest_max_items == 12
        assert settings.llm_batch_size == 4
        assert settings.fulltext_timeout_seconds == 2.5
        assert settings.timezone == "Asia/Tokyo"
        assert settings.skip_hosts == ("example.com",)

    def test_invalid_values_fall_back(self):
        settings = DigestSettings.from_config(
            {"digest": {"max_items": 0, "fulltext_concurrency": -2, "llm_batch_size": "lots"}}
        )
        defaults = DigestSettings()
        assert settings.digest_max_items == defaults.digest_max_items
        assert settings.fulltext_concurrency == defaults.fulltext_concurrency
        assert settings.llm_batch_size == defaults.llm_batch_size

    def test_null_section(self):
        assert DigestSettings.from_config({"digest": None}) == DigestSettings()


class TestLLMSettings:
    def test_default_is_disabled(self):
        settings = LLMSettings.from_config({})
        assert not settings.enabled
        assert not settings.configured

    def test_unknown_provider_disables(self):
        settings = LLMSettings.from_config({"llm": {"provider": "mystery", "api_key": "k", "model": "m"}})
        assert settings.provider == "none"
        assert not settings.enabled

    def test_configured_rules(self):
        assert LLMSettings(provider="openai_compat", api_key="k", model="m").configured
        assert not LLMSettings(provider="openai_compat", model="m").configured
        assert not LLMSettings(provider="anthropic", api_key="k").configured
        assert LLMSettings(provider="local", model="llama3").configured

    def test_values_read(self):
        settings = LLMSettings.from_config(
            {"llm": {"provider": " Anthropic ", "api_key": "k", "model": "m", "temperature": 0, "max_tokens": -5}}
        )
        assert settings.provider == "anthropic"
        assert settings.temperature == 0.0
        assert settings.max_tokens == LLMSettings().max_tokens
