"""Tests for configuration loading."""

from flowgrid.channels import get_channel
from flowgrid.channels.redis import RedisChannel
from flowgrid.config import load_config


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
channel:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  max_task_iterations: 5
approval:
  timeout_seconds: 60
  on_timeout: reject
"""
    )
    monkeypatch.setenv("FLOWGRID_CONFIG", str(config_path))

    config = load_config()
    assert config.channel.backend == "redis"
    assert config.channel.redis.host == "testhost"
    assert config.channel.redis.port == 1234
    assert config.engine.max_task_iterations == 5
    assert config.approval.timeout_seconds == 60
    assert config.approval.on_timeout == "reject"
    assert config.retry.max_attempts == 3


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://fallback.db")
    monkeypatch.setenv("FLOWGRID_CHANNEL", "Redis")
    monkeypatch.setenv("FLOWGRID_MODEL", "openai:gpt-4o-mini")
    monkeypatch.setenv("FLOWGRID_CATALOG", str(tmp_path / "processes.yaml"))

    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.database_url == "sqlite://fallback.db"
    assert config.channel.backend == "redis"
    assert config.default_model == "openai:gpt-4o-mini"
    assert config.catalog_path.endswith("processes.yaml")

    monkeypatch.setenv("FLOWGRID_DATABASE_URL", "sqlite://primary.db")
    assert load_config().database_url == "sqlite://primary.db"


def test_get_channel_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
channel:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("FLOWGRID_CONFIG", str(config_path))

    channel = get_channel()
    assert isinstance(channel, RedisChannel)
    assert channel.host == "confighost"
    assert channel.port == 6380
