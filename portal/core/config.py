from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    erp_base_url: str = Field(..., alias="ERP_BASE_URL")
    erp_timeout_seconds: float = Field(15.0, alias="ERP_TIMEOUT_SECONDS")
    roster_page_limit: int = Field(1000, alias="ROSTER_PAGE_LIMIT")

    dashboard_max_concurrency: int = Field(4, alias="DASHBOARD_MAX_CONCURRENCY")
    # Open attendance screens not touched for this long are dropped
    session_idle_seconds: int = Field(1800, alias="SESSION_IDLE_SECONDS")

    database_url: str = Field("sqlite+aiosqlite:///./portal.db", alias="DATABASE_URL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
