"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Remote document store
    # When set, the REST document API is used; otherwise the SQL store below.
    document_store_url: Optional[str] = None
    document_store_api_key: Optional[str] = None
    database_url: str = "sqlite:///./catalog.db"
    request_timeout_seconds: float = 10.0
    max_query_results: int = 1000

    # Cache settings
    cache_persistence_enabled: bool = True
    cache_persistence_path: Path = Path("./cache/catalog_cache.db")
    cache_maintenance_enabled: bool = True
    cache_cleanup_interval_seconds: int = 300      # expired-entry sweep
    cache_report_interval_seconds: int = 1800      # hit-rate report

    # Catalog
    items_per_page: int = 12

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
