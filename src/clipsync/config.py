from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import redis
from dotenv import load_dotenv
from ulid import ULID

from clipsync.database.local_store import DAY_MS, DEFAULT_RETENTION_MS, MAX_LOCAL_CLIPS, write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".clipsync"
_RE_REMOTE = re.compile(r"^https?://", re.IGNORECASE)
_RE_RETENTION = re.compile(r"^(\d+)d$", re.IGNORECASE)


def _load_env_file(env_path: Optional[Path] = None) -> None:
    if env_path is not None:
        load_dotenv(dotenv_path=env_path)
    else:
        load_dotenv()


def _to_bool(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> "RedisConfig":
        _load_env_file(env_path)

        uri = os.getenv("REDIS_URI")
        if uri:
            return cls.from_uri(uri)

        host = os.getenv("REDIS_HOST", cls.host)
        port_raw = os.getenv("REDIS_PORT")
        db_raw = os.getenv("REDIS_DB")
        password = os.getenv("REDIS_PASSWORD") or None

        port = int(port_raw) if port_raw else cls.port
        db = int(db_raw) if db_raw else cls.db

        return cls(host=host, port=port, db=db, password=password)

    @classmethod
    def from_uri(cls, uri: str) -> "RedisConfig":
        parsed = urlparse(uri)
        if parsed.scheme not in {"redis", "rediss"}:
            raise ValueError(
                f"Unsupported Redis URI scheme: {parsed.scheme!r}")

        host = parsed.hostname or cls.host
        port = parsed.port or cls.port
        password = parsed.password or None
        db_fragment = parsed.path.lstrip("/")
        db = int(db_fragment) if db_fragment else cls.db

        return cls(host=host, port=port, db=db, password=password)

    def create_client(self) -> redis.Redis:
        return redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8787
    object_dir: Path = DEFAULT_CONFIG_DIR / "objects"
    jwt_secret: Optional[str] = None
    allow_header_identity: bool = True
    inline_image_bytes: int = 48 * 1024
    max_image_bytes: int = 1_500_000
    redis: RedisConfig = field(default_factory=RedisConfig)

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> "ServerConfig":
        _load_env_file(env_path)

        object_dir = os.getenv("CLIPSYNC_OBJECT_DIR")
        jwt_secret = os.getenv("CLIPSYNC_JWT_SECRET") or None
        allow_headers = _to_bool(os.getenv("CLIPSYNC_ALLOW_HEADER_IDENTITY"), default=jwt_secret is None)

        if jwt_secret is None and not allow_headers:
            raise ValueError("CLIPSYNC_JWT_SECRET is required when header identity is disabled")

        return cls(
            host=os.getenv("CLIPSYNC_HOST", cls.host),
            port=_to_int("CLIPSYNC_PORT", cls.port),
            object_dir=Path(object_dir).expanduser() if object_dir else cls.object_dir,
            jwt_secret=jwt_secret,
            allow_header_identity=allow_headers,
            inline_image_bytes=_to_int("CLIPSYNC_INLINE_IMAGE_BYTES", cls.inline_image_bytes),
            max_image_bytes=_to_int("CLIPSYNC_MAX_IMAGE_BYTES", cls.max_image_bytes),
            redis=RedisConfig.from_env(env_path=env_path),
        )


def retention_ms(value: Optional[str]) -> Optional[int]:
    """``"forever"`` -> ``None``; ``"<n>d"`` -> milliseconds; anything else -> 180 days."""
    raw = (value or "180d").strip()
    if raw == "forever":
        return None
    match = _RE_RETENTION.match(raw)
    if not match or int(match.group(1)) <= 0:
        return DEFAULT_RETENTION_MS
    return int(match.group(1)) * DAY_MS


def _default_device_id() -> str:
    return f"d_{ULID()}"


@dataclass
class DeviceConfig:
    apiBase: str = ""
    userId: str = "local"
    deviceId: str = field(default_factory=_default_device_id)
    autoCapture: bool = True
    retention: str = "180d"
    maxLocalClips: int = MAX_LOCAL_CLIPS
    pollInterval: float = 1.2
    syncInterval: float = 15.0
    sessionToken: str = ""

    @property
    def is_remote_enabled(self) -> bool:
        return bool(_RE_REMOTE.match(self.apiBase.strip()))

    @property
    def retention_ms(self) -> Optional[int]:
        return retention_ms(self.retention)

    @classmethod
    def path_for(cls, config_dir: Optional[Path] = None) -> Path:
        return Path(config_dir or DEFAULT_CONFIG_DIR) / "config.json"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, config_dir: Optional[Path] = None) -> "DeviceConfig":
        path = cls.path_for(config_dir)
        if not path.exists():
            config = cls()
            config.save(config_dir)
            logger.info(f"Created default device config at {path}")
            return config
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls.from_dict(data if isinstance(data, dict) else {})
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Could not read {path}, using defaults: {e}")
            return cls()

    def save(self, config_dir: Optional[Path] = None) -> Path:
        path = self.path_for(config_dir)
        write_json_atomic(path, asdict(self))
        return path

    def update(self, **changes: Any) -> "DeviceConfig":
        return replace(self, **changes)
