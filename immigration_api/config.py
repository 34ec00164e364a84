"""
Configuration for Immigration Case API
======================================

Environment variables:
- ENVIRONMENT: development|production|test (default: development)
- DATABASE_URL: SQLAlchemy URL, read by db.session (default: sqlite:///./immigration.db)
- JWT_SECRET_KEY: HS256 signing secret
- JWT_EXPIRES_MINUTES: Session token lifetime (default: 1440)
- PASSWORD_RESET_EXPIRE_MINUTES: Reset token lifetime (default: 10)
- CORS_ALLOW_ORIGINS: Comma separated origins
- CLIENT_URL: Browser client base URL (used in reset links)
- SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASSWORD / SMTP_FROM / SMTP_USE_TLS
- RATE_LIMIT_ENABLED / RATE_LIMIT_PER_HOUR / REDIS_URL
- ENFORCE_STATUS_TRANSITIONS: Reject illegal case status changes (default: true)
"""

from typing import List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    environment: str = "development"

    # JWT
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 60 * 24
    jwt_cookie_expires_days: int = 1

    # Password reset
    password_reset_expire_minutes: int = 10

    # HTTP
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    client_url: str = "http://localhost:3000"

    # SMTP (empty host = log-only dev mode)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@immigration-case.local"
    smtp_use_tls: bool = True

    # Rate limiting
    rate_limit_enabled: bool = False
    rate_limit_per_hour: int = 100
    redis_url: str = "redis://localhost:6379/0"

    # Case lifecycle
    enforce_status_transitions: bool = True
    default_page_limit: int = 10
    max_page_limit: int = 100

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def cors_origins(self) -> List[str]:
        """Parse CORS_ALLOW_ORIGINS, always including CLIENT_URL"""
        origins: List[str] = []
        for item in f"{self.cors_allow_origins},{self.client_url}".split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    def validate_security_config(self) -> List[str]:
        """Validate settings that matter in production, return list of warnings"""
        warnings = []
        if self.is_production and self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("ENVIRONMENT=production but JWT_SECRET_KEY is the development default")
        if self.is_production and not self.smtp_host:
            warnings.append("ENVIRONMENT=production but SMTP_HOST not set (password reset emails are only logged)")
        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
