"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Proxy/Load Balancer Settings
    # Set to True when running behind nginx/Cloudflare to trust X-Forwarded-For
    TRUST_PROXY_HEADERS: bool = False

    # Database (SQLite for local dev, PostgreSQL in production)
    DATABASE_URL: str = "sqlite:///./casetriage.db"

    # Operator tokens are issued by the auth service; we only verify them.
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Test mode (in-memory rate limiting, limiter disabled)
    TESTING: bool = False

    # Rate Limiting (requests per minute, keyed by operator)
    # REDIS_URL shares limits across workers; empty keeps them in process memory.
    REDIS_URL: str = ""
    RATE_LIMIT_API: int = 120
    RATE_LIMIT_EXPORT: int = 5

    # Case store
    STORE_LOCK_TIMEOUT_SECONDS: float = 5.0
    STORE_MAX_VERSION_RETRIES: int = 3

    # Anti-cheat clustering (escalates repeated flags for one user)
    CLUSTER_FLAG_THRESHOLD: int = 3
    CLUSTER_WINDOW_HOURS: int = 24

    # Export
    EXPORT_PAGE_SIZE: int = 500

    # External collaborators
    KNOWN_OPERATORS: str = ""  # Comma-separated operator IDs; empty = accept any
    IDENTITY_SERVICE_URL: str = ""
    NOTIFICATION_SERVICE_URL: str = ""
    COLLABORATOR_TIMEOUT_SECONDS: float = 2.0

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def known_operators_list(self) -> list[str]:
        """Parse KNOWN_OPERATORS into a list of operator IDs."""
        return [o.strip() for o in self.KNOWN_OPERATORS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets


settings = Settings()
