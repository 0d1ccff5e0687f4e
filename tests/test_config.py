"""Tests for the config module."""

from pathlib import Path

import pytest
from socialcast.capabilities import Platform
from socialcast.config import (
    LinkedInClientConfig,
    SocialcastConfig,
    TwitterClientConfig,
    load_config,
    parse_platform_config,
)

FIXTURES = Path(__file__).parent / "fixtures"


class TestConfig:
    def test_load_from_yaml(self):
        cfg = load_config(FIXTURES / "sample_config.yaml")
        twitter = cfg.platforms[Platform.TWITTER]
        assert isinstance(twitter, TwitterClientConfig)
        assert twitter.client_id == "twitter-client"
        assert isinstance(cfg.platforms[Platform.LINKEDIN], LinkedInClientConfig)
        assert cfg.live_mode is False
        assert cfg.http_timeout == 20.0
        assert cfg.log_level == "DEBUG"

    def test_dispatcher_section(self):
        cfg = load_config(FIXTURES / "sample_config.yaml")
        assert cfg.dispatch_interval == 30.0
        assert cfg.dispatch_batch_size == 10
        assert cfg.dispatch_workers == 2
        assert cfg.stale_after == 600.0
        assert cfg.auto_retry_stale is False

    def test_resilience_section(self):
        cfg = load_config(FIXTURES / "sample_config.yaml")
        assert cfg.resilience.max_concurrent == 1
        assert cfg.resilience.requests_per_second == 0.5
        assert cfg.resilience.failure_threshold == 3
        assert cfg.resilience.max_attempts == 4
        assert cfg.resilience.reset_timeout == 60.0

    def test_resilience_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("resilience:\n  retries: 9\n")
        with pytest.raises(ValueError, match="retries"):
            load_config(path)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SOCIALCAST_TWITTER_CLIENT_ID", "env-client")
        cfg = load_config(FIXTURES / "sample_config.yaml")
        assert cfg.platforms[Platform.TWITTER].client_id == "env-client"

    def test_env_only_platform(self, monkeypatch):
        monkeypatch.setenv("SOCIALCAST_LINKEDIN_CLIENT_ID", "li")
        monkeypatch.setenv("SOCIALCAST_LINKEDIN_CLIENT_SECRET", "li-secret")
        cfg = load_config()
        assert cfg.platforms[Platform.LINKEDIN].client_secret == "li-secret"
        assert Platform.TWITTER not in cfg.platforms

    def test_env_bool(self, monkeypatch):
        monkeypatch.setenv("SOCIALCAST_LIVE_MODE", "true")
        cfg = load_config()
        assert cfg.live_mode is True

    def test_env_number(self, monkeypatch):
        monkeypatch.setenv("SOCIALCAST_DISPATCH_INTERVAL", "5")
        assert load_config().dispatch_interval == 5.0

    def test_env_number_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("SOCIALCAST_HTTP_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="SOCIALCAST_HTTP_TIMEOUT"):
            load_config()

    def test_default_config(self):
        cfg = load_config()
        assert cfg.platforms == {}
        assert cfg.live_mode is False
        assert cfg.dispatch_batch_size == 50
        assert cfg.data_path("posts.json") is None

    def test_missing_file(self):
        cfg = load_config(Path("/nonexistent/config.yaml"))
        assert cfg.platforms == {}

    def test_data_path(self, tmp_path):
        cfg = SocialcastConfig(data_dir=str(tmp_path))
        assert cfg.data_path("posts.json") == tmp_path / "posts.json"


class TestPlatformConfig:
    def test_unknown_platform(self):
        with pytest.raises(ValueError, match="myspace"):
            parse_platform_config("myspace", {})

    def test_platform_without_driver(self):
        with pytest.raises(ValueError, match="facebook"):
            parse_platform_config("facebook", {})

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="instance_url"):
            parse_platform_config("twitter", {"client_id": "x", "instance_url": "y"})

    def test_default_scopes(self):
        cfg = parse_platform_config("twitter", {"client_id": "x"})
        assert "offline.access" in cfg.scopes
        assert cfg.platform == Platform.TWITTER
