# ABOUTME: Application configuration and settings
# ABOUTME: Loads settings from environment variables using pydantic-settings

from functools import lru_cache

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanLimits(BaseModel):
    """Capacity ceilings for a subscription plan."""
    max_projects: int
    max_rows_per_csv: int
    max_csvs_per_project: int


DEFAULT_PLAN_LIMITS = {
    "free": PlanLimits(max_projects=1, max_rows_per_csv=1000, max_csvs_per_project=5),
    "pro": PlanLimits(max_projects=10, max_rows_per_csv=10000, max_csvs_per_project=50),
    "enterprise": PlanLimits(max_projects=100, max_rows_per_csv=100000, max_csvs_per_project=500),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "development"
    database_url: str = "sqlite:///./data/csvapi.db"
    admin_api_key: str | None = None
    log_level: str = "INFO"

    max_file_size_bytes: int = 10 * 1024 * 1024
    insert_batch_size: int = 500
    default_request_limit_per_month: int = 1000
    api_key_prefix: str = "csv_live_"
    upload_dir: str = "./data/uploads"

    plan_limits: dict[str, PlanLimits] = DEFAULT_PLAN_LIMITS

    def limits_for(self, plan: str) -> PlanLimits:
        """Returns the limits for a plan, falling back to the free plan."""
        return self.plan_limits.get(plan) or self.plan_limits["free"]


@lru_cache
def get_settings() -> Settings:
    """Returns cached settings instance."""
    return Settings()
