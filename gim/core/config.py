from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "GIM Backend"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"

    # Database (PostgreSQL in production, SQLite for local dev)
    DATABASE_URL: str = "sqlite:///./gim.db"

    # Sentry (alerting channel for CRITICAL escalations)
    SENTRY_DSN: str = ""

    # Shared key for operator endpoints (rate-limit admin). Empty disables them.
    ADMIN_API_KEY: str = ""

    # Circuit breakers
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_TIMEOUT_SECONDS: float = 60.0
    CIRCUIT_HALF_OPEN_SUCCESSES: int = 2
    CIRCUIT_PERSIST_STATE: bool = False  # Survive restarts via circuitbreakerstate table

    # Error aggregation
    ERROR_AGGREGATION_WINDOW_SECONDS: float = 60.0
    ERROR_SWEEP_INTERVAL_SECONDS: float = 300.0
    ERROR_CRITICAL_COUNT: int = 10

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "database"
    RATE_LIMIT_PER_HOUR: int = 1000
    RATE_LIMIT_PER_DAY: int = 10000

    # Webhooks
    WEBHOOK_DEFAULT_MAX_ATTEMPTS: int = 3
    WEBHOOK_DEFAULT_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_BACKOFF_BASE_SECONDS: float = 5.0
    WEBHOOK_USER_AGENT: str = "GIM-Webhook/1.0"

    # Delivery worker
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_CONCURRENCY: int = 10
    WORKER_STALE_JOB_MINUTES: int = 10

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
