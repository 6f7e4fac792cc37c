"""
StudentLet Market Intelligence Configuration
Loads settings from .env file using Pydantic v2 with BaseSettings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # ==================== Project Info ====================
    PROJECT_NAME: str = "StudentLet Market Intelligence API"
    PROJECT_DESCRIPTION: str = "Market intelligence and property recommendation engine for student lets"
    VERSION: str = "1.0.0"

    # ==================== Database ====================
    DATABASE_URL: str = "sqlite:///studentlet_market.db"
    DATABASE_POOL_RECYCLE: int = 3600

    # ==================== CORS ====================
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # ==================== Server Configuration ====================
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ==================== Market Data Sources ====================
    # "fixture" serves the deterministic in-memory dataset, "http" calls the
    # public endpoints below.
    MARKET_DATA_SOURCE: str = "fixture"
    SOURCE_TIMEOUT_SECONDS: float = 10.0
    UKHPI_BASE_URL: str = "https://landregistry.data.gov.uk/data/ukhpi/region"
    RENTAL_STATS_URL: str = "https://api.beta.ons.gov.uk/v1/datasets/private-rental-prices/observations"
    PRICE_PAID_URL: str = "https://landregistry.data.gov.uk/data/ppi/transaction-record.json"

    # ==================== Caching ====================
    SNAPSHOT_CACHE_TTL_HOURS: float = 24
    ANALYSIS_CACHE_TTL_HOURS: float = 4
    MATCH_CACHE_TTL_SECONDS: int = 300
    MATCH_CACHE_MAX_ENTRIES: int = 100

    # ==================== Recommendations ====================
    MATCH_BATCH_SIZE: int = 50
    DEFAULT_RECOMMENDATION_COUNT: int = 4
    SAVED_RECOMMENDATION_LIMIT: int = 5
    RECOMMENDATION_RESPONSE_LIMIT: int = 10

    # ==================== Features ====================
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ==================== Configuration Loading ====================
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow",
        validate_default=True,
    )

    # ==================== Properties ====================
    @property
    def uses_live_sources(self) -> bool:
        """Check if market data is fetched from the public endpoints"""
        return self.MARKET_DATA_SOURCE.lower() == "http"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.lower().startswith("sqlite")


# ==================== Settings Singleton ====================
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Create default settings instance
settings = get_settings()
