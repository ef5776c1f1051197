from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./timebank.db"
    FALLBACK_DATABASE_URL: str = "sqlite:///./timebank.db"

    # Bearer token verification
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Application
    APP_ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Lifecycle engine
    CHECKIN_WINDOW_SECONDS: int = 900
    CONCURRENCY_RETRY_LIMIT: int = 3
    INITIAL_CREDIT_ALLOCATION: float = 2.0

    # Notifications
    NOTIFICATIONS_ENABLED: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
