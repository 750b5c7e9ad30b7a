"""
Configuration management for the application.
Loads settings from environment variables using Pydantic Settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./custody_local.sqlite"
    SQL_ECHO: bool = False

    @property
    def database_url_async(self) -> str:
        """
        Transform DATABASE_URL to use the appropriate async driver.
        - PostgreSQL: postgresql+asyncpg://...
        - SQLite: sqlite+aiosqlite:///...
        """
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite://"):
            return self.DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.DATABASE_URL

    # Security (tokens are issued by the session provider; we only decode them)
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # Application
    APP_NAME: str = "Custody Ledger API"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000"

    # Unit of work
    OPERATION_TIMEOUT_SECONDS: float = 15.0
    SERIALIZATION_RETRY_ATTEMPTS: int = 3

    # Plans whose duration unit we don't recognise get this many days
    UNKNOWN_DURATION_FALLBACK_DAYS: int = 30

    # Email Configuration (Postmark)
    POSTMARK_ENABLED: bool = True
    POSTMARK_SERVER_TOKEN: str = ""
    POSTMARK_FROM_EMAIL: str = "noreply@example.com"
    POSTMARK_FROM_NAME: str = "Library Desk"
    EMAIL_TEST_MODE: bool = False

    # Scheduler
    EXPIRY_SWEEP_ENABLED: bool = True
    EXPIRY_SWEEP_HOUR: int = 1  # UTC

    class Config:
        env_file = ".env"
        case_sensitive = True


# Singleton instance - import this in other modules
settings = Settings()
