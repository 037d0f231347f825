"""
Application settings read from environment variables.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional


MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 30
VERIFICATION_TOKEN_HOURS = 24
PASSWORD_RESET_TOKEN_HOURS = 1


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    api_prefix: str = "/api/v1"
    api_url: str = "http://localhost:8000"
    client_url: str = "http://localhost:3000"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    jwt_secret: str = "jwt_super_secret_for_development"
    jwt_refresh_secret: str = "jwt_refresh_super_secret_for_development"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "clinical-education-api"
    access_token_minutes: int = 60
    refresh_token_days: int = 7
    bcrypt_rounds: int = 12
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    from_email: str = "no-reply@example.com"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.env == "production"


def load_settings() -> Settings:
    env = os.getenv("APP_ENV", "development")
    origins = os.getenv("CORS_ORIGINS")
    settings = Settings(
        env=env,
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        api_url=os.getenv("API_URL", "http://localhost:8000"),
        client_url=os.getenv("CLIENT_URL", "http://localhost:3000"),
        cors_origins=origins.split(",") if origins else ["*"],
        jwt_secret=os.getenv("JWT_SECRET", "jwt_super_secret_for_development"),
        jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET", "jwt_refresh_super_secret_for_development"),
        jwt_issuer=os.getenv("JWT_ISSUER", "clinical-education-api"),
        access_token_minutes=int(os.getenv("JWT_EXPIRATION_MINUTES", "60")),
        refresh_token_days=int(os.getenv("JWT_REFRESH_EXPIRATION_DAYS", "7")),
        bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER"),
        smtp_pass=os.getenv("SMTP_PASS"),
        from_email=os.getenv("FROM_EMAIL", os.getenv("SMTP_USER") or "no-reply@example.com"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
    if settings.is_production:
        missing = [name for name in ("DATABASE_URL", "JWT_SECRET", "JWT_REFRESH_SECRET") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    return settings


settings = load_settings()
