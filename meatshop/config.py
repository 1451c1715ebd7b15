from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./meatshop.db"
    store_timeout_seconds: float = 10.0
    primary_category: str = "chicken"
    fallback_rate_per_kg: Decimal = Decimal("150")
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="", case_sensitive=False)


settings = Settings()
