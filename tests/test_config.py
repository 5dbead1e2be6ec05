import json

import pytest

from clipsync.config import DeviceConfig, RedisConfig, ServerConfig, retention_ms
from clipsync.database.local_store import DAY_MS, DEFAULT_RETENTION_MS

SERVER_ENV = (
    "CLIPSYNC_HOST", "CLIPSYNC_PORT", "CLIPSYNC_OBJECT_DIR", "CLIPSYNC_JWT_SECRET",
    "CLIPSYNC_ALLOW_HEADER_IDENTITY", "CLIPSYNC_INLINE_IMAGE_BYTES", "CLIPSYNC_MAX_IMAGE_BYTES",
    "REDIS_URI", "REDIS_HOST", "REDIS_PORT", "REDIS_DB", "REDIS_PASSWORD",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in SERVER_ENV:
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the way
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.mark.parametrize("value,expected", [
    ("30d", 30 * DAY_MS),
    ("1D", DAY_MS),
    ("forever", None),
    ("", DEFAULT_RETENTION_MS),
    ("0d", DEFAULT_RETENTION_MS),
    ("two weeks", DEFAULT_RETENTION_MS),
    (None, DEFAULT_RETENTION_MS),
])
def test_retention(value, expected):
    assert retention_ms(value) == expected


def test_device_config_is_created_with_defaults(tmp_path):
    config = DeviceConfig.load(tmp_path)

    assert config.deviceId.startswith("d_")
    assert config.userId == "local"
    assert not config.is_remote_enabled
    assert DeviceConfig.path_for(tmp_path).exists()
    assert DeviceConfig.load(tmp_path).deviceId == config.deviceId


def test_device_config_round_trips_and_ignores_unknown_keys(tmp_path):
    path = DeviceConfig.path_for(tmp_path)
    path.write_text(json.dumps({"apiBase": "https://sync.example.com", "retention": "7d", "legacy": 1}))

    config = DeviceConfig.load(tmp_path)
    assert config.is_remote_enabled
    assert config.retention_ms == 7 * DAY_MS

    config.update(autoCapture=False).save(tmp_path)
    assert DeviceConfig.load(tmp_path).autoCapture is False


def test_unreadable_device_config_falls_back_to_defaults(tmp_path):
    DeviceConfig.path_for(tmp_path).write_text("not json")
    assert DeviceConfig.load(tmp_path).apiBase == ""


def test_redis_uri():
    config = RedisConfig.from_uri("redis://:pw@cache.internal:6380/2")
    assert (config.host, config.port, config.db, config.password) == ("cache.internal", 6380, 2, "pw")

    with pytest.raises(ValueError):
        RedisConfig.from_uri("http://cache.internal")


def test_server_config_from_env(clean_env, tmp_path):
    clean_env.setenv("CLIPSYNC_PORT", "9000")
    clean_env.setenv("CLIPSYNC_OBJECT_DIR", str(tmp_path / "blobs"))
    clean_env.setenv("CLIPSYNC_JWT_SECRET", "s" * 40)
    clean_env.setenv("REDIS_URI", "redis://localhost:6379/3")

    config = ServerConfig.from_env()

    assert config.port == 9000
    assert config.object_dir == tmp_path / "blobs"
    assert config.allow_header_identity is False
    assert config.redis.db == 3


def test_server_config_defaults_to_header_identity(clean_env):
    config = ServerConfig.from_env()
    assert config.jwt_secret is None
    assert config.allow_header_identity is True
    assert config.redis.host == "localhost"


def test_header_identity_off_needs_a_secret(clean_env):
    clean_env.setenv("CLIPSYNC_ALLOW_HEADER_IDENTITY", "false")
    with pytest.raises(ValueError):
        ServerConfig.from_env()


def test_bad_port_is_rejected(clean_env):
    clean_env.setenv("CLIPSYNC_PORT", "eighty")
    with pytest.raises(ValueError):
        ServerConfig.from_env()
