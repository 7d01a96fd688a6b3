"""
Runtime settings for the entitlement engine.

Read from environment variables; every value has a default suitable for
local development (in-memory cache, SQLite database).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parents[1] / "config" / "products.yml"

DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_GATE_TIMEOUT_SECONDS = 2.0
DEFAULT_ADMIN_TIMEOUT_SECONDS = 15.0


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = float(raw)
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./entitlements.db"
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    gate_timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS
    admin_timeout_seconds: float = DEFAULT_ADMIN_TIMEOUT_SECONDS
    catalog_path: Path = DEFAULT_CATALOG_PATH

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            redis_url=os.getenv("REDIS_URL") or None,
            cache_ttl_seconds=int(_float_env("ENTITLEMENT_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS)),
            gate_timeout_seconds=_float_env("ENTITLEMENT_GATE_TIMEOUT_SECONDS", DEFAULT_GATE_TIMEOUT_SECONDS),
            admin_timeout_seconds=_float_env("ENTITLEMENT_ADMIN_TIMEOUT_SECONDS", DEFAULT_ADMIN_TIMEOUT_SECONDS),
            catalog_path=Path(os.getenv("PRODUCT_CATALOG_PATH") or DEFAULT_CATALOG_PATH),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, read once."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
