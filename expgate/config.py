"""
Centralized configuration for expgate.
Environment variables are read here only; the engine receives an
explicit ExperimentsOptions instance.
"""
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from expgate.cache import DEFAULT_CACHE_TTL_SECONDS


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class ExperimentsOptions:
    """Settings handed to ExperimentsManager at construction"""
    enabled: bool = True
    # Test mode never touches the network; only an existing cache is used
    is_test_mode: bool = False
    manifest_url: str = ""
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    fetch_timeout_seconds: float = 10.0
    max_attempts: int = 3
    initial_backoff_seconds: float = 0.5
    backoff_factor: float = 2.0
    opt_into: FrozenSet[str] = field(default_factory=frozenset)
    opt_out_from: FrozenSet[str] = field(default_factory=frozenset)
    installation_id: Optional[str] = None


class Config:
    """Application configuration"""

    # Datadog Configuration
    DD_SERVICE: str = os.getenv("DD_SERVICE", "expgate")
    DD_ENV: str = os.getenv("DD_ENV", "production")
    DD_VERSION: str = os.getenv("DD_VERSION", "1.0.0")

    # Application Settings
    APP_NAME: str = "expgate"
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))

    # =========================================================================
    # Experiments
    # =========================================================================
    EXPERIMENTS_ENABLED: bool = _env_bool("EXPERIMENTS_ENABLED", "true")
    EXPERIMENTS_TEST_MODE: bool = _env_bool("EXPERIMENTS_TEST_MODE", "false")
    # Empty URL = no network; only an existing cache is used
    EXPERIMENTS_MANIFEST_URL: str = os.getenv("EXPERIMENTS_MANIFEST_URL", "")

    # Empty path = in-memory cache (nothing survives a restart)
    EXPERIMENTS_CACHE_PATH: str = os.getenv("EXPERIMENTS_CACHE_PATH", "")
    EXPERIMENTS_CACHE_TTL_SECONDS: float = float(
        os.getenv("EXPERIMENTS_CACHE_TTL_SECONDS", str(DEFAULT_CACHE_TTL_SECONDS))
    )

    EXPERIMENTS_FETCH_TIMEOUT_SECONDS: float = float(os.getenv("EXPERIMENTS_FETCH_TIMEOUT_SECONDS", "10"))
    EXPERIMENTS_FETCH_MAX_ATTEMPTS: int = int(os.getenv("EXPERIMENTS_FETCH_MAX_ATTEMPTS", "3"))
    EXPERIMENTS_FETCH_INITIAL_BACKOFF: float = float(os.getenv("EXPERIMENTS_FETCH_INITIAL_BACKOFF", "0.5"))

    # Comma separated experiment names
    EXPERIMENTS_OPT_INTO: FrozenSet[str] = _env_list("EXPERIMENTS_OPT_INTO")
    EXPERIMENTS_OPT_OUT_FROM: FrozenSet[str] = _env_list("EXPERIMENTS_OPT_OUT_FROM")

    # Normally generated once and persisted in the cache store
    EXPERIMENTS_INSTALLATION_ID: str = os.getenv("EXPERIMENTS_INSTALLATION_ID", "")

    @classmethod
    def experiments_options(cls) -> ExperimentsOptions:
        """Snapshot the experiment settings for the manager."""
        return ExperimentsOptions(
            enabled=cls.EXPERIMENTS_ENABLED,
            is_test_mode=cls.EXPERIMENTS_TEST_MODE,
            manifest_url=cls.EXPERIMENTS_MANIFEST_URL,
            cache_ttl_seconds=cls.EXPERIMENTS_CACHE_TTL_SECONDS,
            fetch_timeout_seconds=cls.EXPERIMENTS_FETCH_TIMEOUT_SECONDS,
            max_attempts=cls.EXPERIMENTS_FETCH_MAX_ATTEMPTS,
            initial_backoff_seconds=cls.EXPERIMENTS_FETCH_INITIAL_BACKOFF,
            opt_into=cls.EXPERIMENTS_OPT_INTO,
            opt_out_from=cls.EXPERIMENTS_OPT_OUT_FROM,
            installation_id=cls.EXPERIMENTS_INSTALLATION_ID or None,
        )


config = Config()
