"""
GoalSync - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        JWT_SECRET: Signing key for access tokens (and single-purpose tokens)
        JWT_REFRESH_SECRET: Signing key for refresh tokens
        JWT_ISSUER / JWT_AUDIENCE: Claims enforced on every verification
        DATABASE_URL: SQLModel connection string
        SESSION_SWEEP_INTERVAL_SECONDS: Period of the expired-session sweeper
        ALLOWED_ORIGINS: CORS allowed origins for the frontend
    """

    # Token signing
    JWT_SECRET: str = ""  # Must be set via environment
    JWT_REFRESH_SECRET: str = ""  # Must be set via environment
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "goalsync-api"
    JWT_AUDIENCE: str = "goalsync-frontend"

    # Token lifetimes
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    PASSWORD_RESET_EXPIRE_HOURS: int = 1
    EMAIL_VERIFICATION_EXPIRE_HOURS: int = 24

    # Session maintenance
    SESSION_SWEEP_INTERVAL_SECONDS: int = 3600

    # Password hashing
    BCRYPT_WORK_FACTOR: int = 12

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./goalsync.db"

    # CORS / links
    ALLOWED_ORIGINS: List[str] = ["http://localhost:5173"]
    FRONTEND_URL: str = "http://localhost:5173"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_DEV_MODE: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
