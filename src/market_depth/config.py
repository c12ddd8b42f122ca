"""Configuration management for the market depth collector.

Loads settings from environment or .env file with safe defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Self

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "MARKET_DEPTH_"

DEFAULT_DB_PATH = Path("data/market_depth.db")
DEFAULT_BASE_URL = "https://steamcommunity.com"


@dataclass(frozen=True)
class MarketDepthConfig:
    """Runtime configuration.

    Attributes:
        db_path: SQLite database file
        base_url: Market host serving the order histogram endpoint
        country: Country code sent with histogram requests
        language: Language sent with histogram requests
        currency: Numeric currency id sent with histogram requests
        user_agent: User-Agent header for market requests
        request_timeout_seconds: Per-attempt timeout for one histogram request
        max_attempts: Attempts per histogram request before giving up
        request_delay_seconds: Pause between items within one collection run
        collect_interval_seconds: Period of the scheduler loop
        manual_run_timeout_seconds: Ceiling for on-demand collection runs
        max_levels: Maximum price levels kept per side per snapshot
        retention_days: Age beyond which stored orders are purged
        log_level: Root log level used by the CLI
    """

    db_path: Path = DEFAULT_DB_PATH
    base_url: str = DEFAULT_BASE_URL
    country: str = "KZ"
    language: str = "russian"
    currency: int = 37
    user_agent: str = "Mozilla/5.0"
    request_timeout_seconds: float = 120.0
    max_attempts: int = 3
    request_delay_seconds: float = 1.0
    collect_interval_seconds: float = 3600.0
    manual_run_timeout_seconds: float = 300.0
    max_levels: int = 15
    retention_days: int = 30
    log_level: str = "INFO"

    def validate_or_raise(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If any interval, count or timeout is not positive.
        """
        problems = []
        if self.request_timeout_seconds <= 0:
            problems.append("REQUEST_TIMEOUT_SECONDS must be > 0")
        if self.max_attempts < 1:
            problems.append("MAX_ATTEMPTS must be >= 1")
        if self.request_delay_seconds < 0:
            problems.append("REQUEST_DELAY_SECONDS must be >= 0")
        if self.collect_interval_seconds <= 0:
            problems.append("COLLECT_INTERVAL_SECONDS must be > 0")
        if self.manual_run_timeout_seconds <= 0:
            problems.append("MANUAL_RUN_TIMEOUT_SECONDS must be > 0")
        if self.max_levels < 1:
            problems.append("MAX_LEVELS must be >= 1")
        if self.retention_days < 1:
            problems.append("RETENTION_DAYS must be >= 1")
        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))

    @classmethod
    def from_env(cls, *, load_dotenv_file: bool = True) -> Self:
        """Load configuration from environment variables.

        Args:
            load_dotenv_file: If True, load .env file from cwd or a parent first.

        Returns:
            MarketDepthConfig instance with loaded values.
        """
        loaded_env_path: Path | None = None

        if load_dotenv_file:
            env_path = Path.cwd() / ".env"
            if env_path.exists():
                load_dotenv(env_path)
                loaded_env_path = env_path
            else:
                for parent in Path.cwd().parents:
                    env_path = parent / ".env"
                    if env_path.exists():
                        load_dotenv(env_path)
                        loaded_env_path = env_path
                        break

            if loaded_env_path:
                logger.info("CONFIG: Loaded .env file from %s", loaded_env_path)
            else:
                logger.debug("CONFIG: No .env file found in cwd or parents")

        defaults = cls()

        def _str_env(key: str, default: str) -> str:
            raw = os.getenv(ENV_PREFIX + key)
            if raw is None or not raw.strip():
                return default
            return raw.strip()

        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(ENV_PREFIX + key)
            if raw is None or not raw.strip():
                return default
            try:
                return int(raw.strip())
            except ValueError:
                logger.warning("CONFIG: Ignoring invalid %s%s=%r", ENV_PREFIX, key, raw)
                return default

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(ENV_PREFIX + key)
            if raw is None or not raw.strip():
                return default
            try:
                return float(raw.strip())
            except ValueError:
                logger.warning("CONFIG: Ignoring invalid %s%s=%r", ENV_PREFIX, key, raw)
                return default

        config = cls(
            db_path=Path(_str_env("DB_PATH", str(defaults.db_path))),
            base_url=_str_env("BASE_URL", defaults.base_url).rstrip("/"),
            country=_str_env("COUNTRY", defaults.country),
            language=_str_env("LANGUAGE", defaults.language),
            currency=_int_env("CURRENCY", defaults.currency),
            user_agent=_str_env("USER_AGENT", defaults.user_agent),
            request_timeout_seconds=_float_env(
                "REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds
            ),
            max_attempts=_int_env("MAX_ATTEMPTS", defaults.max_attempts),
            request_delay_seconds=_float_env(
                "REQUEST_DELAY_SECONDS", defaults.request_delay_seconds
            ),
            collect_interval_seconds=_float_env(
                "COLLECT_INTERVAL_SECONDS", defaults.collect_interval_seconds
            ),
            manual_run_timeout_seconds=_float_env(
                "MANUAL_RUN_TIMEOUT_SECONDS", defaults.manual_run_timeout_seconds
            ),
            max_levels=_int_env("MAX_LEVELS", defaults.max_levels),
            retention_days=_int_env("RETENTION_DAYS", defaults.retention_days),
            log_level=_str_env("LOG_LEVEL", defaults.log_level).upper(),
        )

        logger.info(
            "CONFIG: MarketDepthConfig loaded - db_path=%s, base_url=%s, interval=%.0fs, "
            "retention_days=%d",
            config.db_path,
            config.base_url,
            config.collect_interval_seconds,
            config.retention_days,
        )

        return config


def load_config(*, load_dotenv_file: bool = True) -> MarketDepthConfig:
    """Load and return configuration.

    Example:
        >>> from market_depth.config import load_config
        >>> config = load_config()
        >>> print(config.db_path)
    """
    return MarketDepthConfig.from_env(load_dotenv_file=load_dotenv_file)
