"""Settings loader: ``.env`` via python-dotenv plus ``config/settings.yaml``."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSettings:
    """Ranking provider (DataForSEO Google Maps) connection settings."""
    login: str = ""
    password: str = ""
    base_url: str = "https://api.dataforseo.com/v3"
    timeout: float = 30.0
    requests_per_minute: int = 60
    search_depth: int = 20
    zoom: int = 13
    top_competitors: int = 3


@dataclass(frozen=True)
class RankCheckerSettings:
    """Worker-pool and retry tuning for a single check run."""
    max_concurrency: int = 2
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: Optional[float] = 30.0
    request_delay_seconds: float = 0.8


@dataclass(frozen=True)
class PricingSettings:
    """Per-unit credit prices for each independently priced check type."""
    search_rank_per_check: int = 1
    geo_grid_per_point: int = 1
    llm_per_question: int = 2
    search_rank_devices: int = 2


@dataclass(frozen=True)
class SchedulerSettings:
    job_store: str = "sqlite:///data/scheduler_jobs.db"
    timezone: str = "UTC"
    max_workers: int = 3
    dispatch_cron: str = "*/15 * * * *"


@dataclass(frozen=True)
class Settings:
    """Top-level application settings."""
    database_url: Optional[str] = None
    database_echo: bool = False
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    rank_checker: RankCheckerSettings = field(default_factory=RankCheckerSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)


def _section(config: dict[str, Any], name: str, cls):
    """Build a settings dataclass from a YAML section, ignoring unknown keys."""
    raw = config.get(name) or {}
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    unknown = set(raw) - set(known)
    if unknown:
        logger.warning("Ignoring unknown %s settings: %s", name, sorted(unknown))
    return cls(**known)


def _load_yaml(config_path: str) -> dict[str, Any]:
    """Load the YAML configuration file."""
    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning("Config file not found: %s -- using defaults.", config_path)
        return {}
    with open(config_file, "r", encoding="utf-8") as fh:
        config = yaml.safe_load(fh) or {}
    logger.info("Configuration loaded from %s", config_path)
    return config


def load_settings(
    config_path: str = "config/settings.yaml",
    env_path: str = ".env",
) -> Settings:
    """Load settings from ``.env``, the YAML file, and the environment.

    Environment variables win over YAML values for credentials and the
    database URL so secrets never need to live in the settings file.
    """
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)
        logger.info("Loaded environment from %s", env_path)

    config = _load_yaml(config_path)
    database = config.get("database") or {}

    provider = _section(config, "provider", ProviderSettings)
    provider = ProviderSettings(
        **{
            **provider.__dict__,
            "login": os.getenv("DATAFORSEO_LOGIN", provider.login),
            "password": os.getenv("DATAFORSEO_PASSWORD", provider.password),
        }
    )

    return Settings(
        database_url=os.getenv("DATABASE_URL", database.get("url")),
        database_echo=bool(database.get("echo", False)),
        provider=provider,
        rank_checker=_section(config, "rank_checker", RankCheckerSettings),
        pricing=_section(config, "pricing", PricingSettings),
        scheduler=_section(config, "scheduler", SchedulerSettings),
    )
