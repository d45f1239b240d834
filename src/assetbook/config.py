from pydantic_settings import BaseSettings

from assetbook.domain.enums import ReturnOfCapitalPolicy


class Settings(BaseSettings):
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    db_password: str = "postgres"
    db_name: str = "assetbook"
    debug: bool = False
    log_level: str = "INFO"

    rate_ttl_seconds: float = 900.0  # FX rates are fresh for 15 minutes
    rate_source_max_attempts: int = 3
    wallet_cache_ttl_seconds: float = 300.0
    price_stale_after_seconds: float = 86400.0

    snapshot_dedup_seconds: float = 3600.0
    snapshot_retention_days: int = 365
    default_history_points: int = 10

    return_of_capital_policy: ReturnOfCapitalPolicy = ReturnOfCapitalPolicy.AGGREGATE_ONLY
    command_timeout_seconds: float | None = None

    @property
    def database_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_file = ".env"


settings = Settings()
