from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Factoring Marketplace"
    version: str = "0.1.0"
    DEBUG: bool = False
    APP_DOMAIN: str = "example.com"
    APP_DATA_PATH: str = "/tmp"
    APP_DATABASE_DSN: str = "sqlite:////tmp/factoring.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Cache fabric: "redis", "memory" or "none" (caching disabled)
    CACHE_BACKEND: str = "redis"
    CACHE_LOCK_TTL_MS: int = 5000
    CACHE_LOCK_WAIT_SECONDS: float = 2.0
    CACHE_LOCK_POLL_INTERVAL: float = 0.05

    # Access tokens
    JWT_SECRET: str = "factoring-dev-secret"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_TTL_MINUTES: int = 60

    # SMTP
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = "noreply@example.com"
    SMTP_FROM_NAME: str = "Factoring Marketplace"
    SMTP_USE_TLS: bool = True
    FRONTEND_URL: str = "http://localhost:5173"

    # Outbox delivery
    OUTBOX_MAX_ATTEMPTS: int = 5

    # Document storage
    DOCUMENT_STORAGE_PATH: str = "/tmp/factoring-documents"
    DOCUMENT_URL_SECRET: str = "factoring-document-secret"
    DOCUMENT_MAX_SIZE_BYTES: int = 10 * 1024 * 1024

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cache_enabled(self) -> bool:
        return self.CACHE_BACKEND != "none"


settings = Settings()
