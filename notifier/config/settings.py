from typing import List, Union
from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WindowSlot(BaseModel):
    """A local-time delivery window, e.g. 07:00-09:00."""

    type: str
    start_hour: int
    end_hour: int

    @model_validator(mode="after")
    def check_bounds(self):
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise ValueError(
                f"Invalid window {self.type}: {self.start_hour}-{self.end_hour}"
            )
        return self


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Stoa Notifier"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    WEBHOOK_PREFIX: str = "/webhook/v1"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = "info"
    LOG_CONFIG_PATH: str = "logging_config.json"

    # Database
    DATABASE_URL: str = "sqlite:///./notifier.db"

    # Authentication (tokens are issued by the auth collaborator)
    JWT_SECRET_KEY: str = "<your-jwt-secret-key>"
    JWT_ALGORITHM: str = "HS256"
    ANONYMOUS_AUTH_PROVIDERS: Union[str, List[str]] = "anonymous,custom"

    # HMAC-SHA256 key shared with the task runner calling the dispatch webhook
    WEBHOOK_SIGNING_SECRET: str = "<your-webhook-signing-secret>"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Ollama / LangChain content generation
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3.1"
    LANGSMITH_TRACING: str = "false"
    LANGSMITH_ENDPOINT: str = ""
    LANGSMITH_API_KEY: str = ""
    LANGSMITH_PROJECT: str = ""

    # Firebase Cloud Messaging
    FIREBASE_CREDENTIALS_PATH: str = ""
    PUSH_BATCH_SIZE: int = 500
    PUSH_SEND_TIMEOUT_SECONDS: float = 30.0
    PUSH_NOTIFICATION_TITLE: str = "Your Daily Message"

    # Rate limiting
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 30
    RATE_LIMIT_MAX_ATTEMPTS: int = 3

    # Quotas
    ANONYMOUS_MESSAGE_LIMIT: int = 2
    FREE_MESSAGE_LIMIT: int = 5
    FREE_NOTIFICATION_LIFETIME_LIMIT: int = 4
    PREMIUM_DAILY_CEILING: int = 100
    PREMIUM_PENALTY_DELAY_SECONDS: float = 5.0
    PREMIUM_PRODUCT_IDS: Union[str, List[str]] = (
        "com.stoa.premium.monthly,com.stoa.premium.yearly"
    )

    # Scheduling
    NOTIFICATION_WINDOWS: List[WindowSlot] = [
        WindowSlot(type="notification_morning", start_hour=7, end_hour=9),
        WindowSlot(type="notification_evening", start_hour=18, end_hour=20),
    ]
    SCHEDULE_SAFETY_MARGIN_SECONDS: int = 300
    MARKER_TTL_DAYS: int = 7
    SCHEDULER_CONCURRENCY: int = 8
    JOB_TIMEOUT_SECONDS: int = 300

    # Durable task queue
    TASK_QUEUE_NAME: str = "daily-notifications"
    TASK_MAX_ATTEMPTS: int = 3
    TASK_MIN_BACKOFF_SECONDS: int = 60
    TASK_MAX_BACKOFF_SECONDS: int = 300
    TASK_MAX_DOUBLINGS: int = 5
    TASK_DISPATCH_RATE: str = "10/s"
    TASK_MAX_BURST: int = 100
    QUEUE_OPERATION_TIMEOUT_SECONDS: float = 10.0

    @field_validator(
        "ALLOWED_HOSTS", "ANONYMOUS_AUTH_PROVIDERS", "PREMIUM_PRODUCT_IDS", mode="before"
    )
    def assemble_list(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
