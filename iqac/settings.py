from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    APP_NAME: str = "IQAC Document Workflow API"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    PORT: int = 8000

    # MongoDB
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "iqac"
    DATABASE_TIMEOUT_MS: int = 15000

    # Auth
    JWT_SECRET_KEY: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    BCRYPT_ROUNDS: int = 12
    ALLOW_ADMIN_BOOTSTRAP: bool = False

    # GridFS / uploads
    MASTER_BUCKET_NAME: str = "master-files"
    MAX_FILE_SIZE: int = 10 * 1024 * 1024
    ALLOWED_FILE_TYPES: List[str] = [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "text/plain",
        "image/jpeg",
        "image/png",
        "image/gif",
    ]

    # Workflow
    DEFAULT_DEADLINE_DAYS: int = 30
    NOTIFICATION_LIMIT: int = 50
    DEFAULT_PAGE_SIZE: int = 20

    # CORS, comma-separated
    CORS_ORIGINS: str = "http://localhost:5173"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
