# stock_hub/settings.py
"""
Stock Hub Settings.

All values can be overridden from the environment or a local .env file.
"""
from __future__ import annotations
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices

class Settings(BaseSettings):
    # =========================================================================
    # File Storage (logs, browser session state, diagnostics)
    # =========================================================================
    STOCK_HUB_DATA_ROOT: Path = Field(
        default=(Path(__file__).resolve().parents[2] / "stock-data"),
        validation_alias=AliasChoices("STOCK_HUB_DATA_ROOT", "sh_data_root"),
    )

    # =========================================================================
    # Database
    # =========================================================================
    DB_HOST: str = Field(default="localhost", validation_alias="DB_HOST")
    DB_PORT: int = Field(default=5432, validation_alias="DB_PORT")
    DB_NAME: str = Field(default="stock_hub", validation_alias="DB_NAME")
    DB_USER: str = Field(default="postgres", validation_alias="DB_USER")
    DB_PASSWORD: str = Field(default="postgres", validation_alias="DB_PASSWORD")

    # Connection pool settings
    DB_POOL_SIZE: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    DB_MAX_OVERFLOW: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    # Full async URL override, e.g. sqlite+aiosqlite:///./stock.db
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "sh_database_url"),
    )
    DB_CREATE_ALL: bool = Field(default=True, validation_alias="DB_CREATE_ALL")

    # =========================================================================
    # Portals
    # =========================================================================
    ROUTESTAR_BASE_URL: str = Field(default="https://emnrv.routestar.online", validation_alias="ROUTESTAR_BASE_URL")
    ROUTESTAR_USERNAME: str = Field(default="", validation_alias="ROUTESTAR_USERNAME")
    ROUTESTAR_PASSWORD: str = Field(default="", validation_alias="ROUTESTAR_PASSWORD")

    CUSTOMERCONNECT_BASE_URL: str = Field(
        default="https://envirostore.mycustomerconnect.com",
        validation_alias="CUSTOMERCONNECT_BASE_URL",
    )
    CUSTOMERCONNECT_USERNAME: str = Field(default="", validation_alias="CUSTOMERCONNECT_USERNAME")
    CUSTOMERCONNECT_PASSWORD: str = Field(default="", validation_alias="CUSTOMERCONNECT_PASSWORD")

    BROWSER_HEADLESS: bool = Field(default=True, validation_alias="BROWSER_HEADLESS")

    # =========================================================================
    # Fetch behaviour
    # =========================================================================
    # Navigation ladder, strictest first; "fixed_wait" must stay last
    NAV_STRATEGIES: List[str] = Field(default=["load", "domcontentloaded", "commit", "fixed_wait"])
    NAV_TIMEOUT_MS: int = Field(default=90000, validation_alias="NAV_TIMEOUT_MS")
    NAV_FIXED_WAIT_MS: int = Field(default=10000, validation_alias="NAV_FIXED_WAIT_MS")
    NAV_STABILIZE_MS: int = Field(default=2000, validation_alias="NAV_STABILIZE_MS")
    ELEMENT_TIMEOUT_MS: int = Field(default=20000, validation_alias="ELEMENT_TIMEOUT_MS")
    CONTENT_TIMEOUT_MS: int = Field(default=30000, validation_alias="CONTENT_TIMEOUT_MS")
    PAGE_SETTLE_MS: int = Field(default=3000, validation_alias="PAGE_SETTLE_MS")
    PAGE_SIZE: int = Field(default=10, validation_alias="PAGE_SIZE")
    MAX_PAGES: int = Field(default=200, validation_alias="MAX_PAGES")

    FETCH_RETRY_ATTEMPTS: int = Field(default=3, validation_alias="FETCH_RETRY_ATTEMPTS")
    FETCH_RETRY_BASE_DELAY_S: float = Field(default=5.0, validation_alias="FETCH_RETRY_BASE_DELAY_S")

    FETCH_HISTORY_TTL_DAYS: int = Field(default=10, validation_alias="FETCH_HISTORY_TTL_DAYS")
    STUCK_FETCH_AFTER_MIN: int = Field(default=60, validation_alias="STUCK_FETCH_AFTER_MIN")

    # =========================================================================
    # Canonicalization
    # =========================================================================
    ALIAS_CACHE_TTL_S: float = Field(default=60.0, validation_alias="ALIAS_CACHE_TTL_S")

    # =========================================================================
    # Health thresholds
    # =========================================================================
    HEALTH_FRESH_HOURS: int = Field(default=24, validation_alias="HEALTH_FRESH_HOURS")
    HEALTH_ITEM_STALE_HOURS: int = Field(default=48, validation_alias="HEALTH_ITEM_STALE_HOURS")

    # =========================================================================
    # Scheduler
    # =========================================================================
    SCHEDULER_ENABLED: bool = Field(default=False, validation_alias="SCHEDULER_ENABLED")
    SCHEDULER_INTERVAL_MIN: int = Field(default=60, validation_alias="SCHEDULER_INTERVAL_MIN")
    SCHEDULER_SOURCES: List[str] = Field(
        default=["routestar_invoices", "routestar_items", "customer_connect"],
    )

    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:5173", "http://127.0.0.1:5173"],
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

settings = Settings()
