from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LAUNDRY_",
    )

    # Database
    database_path: Optional[Path] = Field(
        default=None,
        description="Path to the sqlite database file. Falls back to laundry.db next to the package.",
    )

    # Statistics
    local_timezone: str = Field(
        default="Asia/Tbilisi",
        description="Server timezone used for local-time period boundaries",
    )
    statistics_bucket_mode: Literal["local", "utc"] = Field(
        default="local",
        description="Period boundaries for the yearly/monthly statistics report",
    )
    compare_bucket_mode: Literal["local", "utc"] = Field(
        default="utc",
        description="Period boundaries for the two-period comparison",
    )
    yearly_window: int = Field(default=5, description="Number of years in the yearly view")

    # Frontend origins - can be comma-separated string or list
    allowed_origins: str | list[str] = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("yearly_window")
    @classmethod
    def positive_window(cls, v):
        if v < 1:
            raise ValueError("yearly_window must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
