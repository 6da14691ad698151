from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"

    database_url: str = "sqlite:///./farecheck.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "farecheck-screenshots"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    recognition_enabled: bool = True
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    recognition_timeout_seconds: float = 20.0
    recognition_field_confidence_floor: float = 0.5

    classification_confidence_floor: float = 0.6

    # Duplicate gate thresholds
    near_duplicate_size_tolerance: float = 0.02
    similarity_max_distance: int = 0
    rapid_resubmit_window_seconds: int = 300

    variance_epsilon: Decimal = Decimal("0.25")

    cache_compute_budget_seconds: float = 30.0
    cache_max_workers: int = 4
    analysis_open_window_ttl_seconds: int = 15 * 60

    vehicle_mpg: Decimal = Decimal("19")
    fuel_price_per_gallon: Decimal = Decimal("3.50")


settings = Settings()
