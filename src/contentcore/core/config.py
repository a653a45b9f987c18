"""Core configuration management using pydantic-settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"

    # Database
    database_url: str = "sqlite+aiosqlite:///./contentcore.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Valkey/Redis
    valkey_url: str = "redis://localhost:6379/0"

    # Entity cache
    cache_enabled: bool = True
    cache_default_ttl_seconds: int = 300
    cache_swr_seconds: int | None = None

    # Pagination
    pagination_default_limit: int = 10
    pagination_max_limit: int = 100

    # Cursor tokens
    cursor_signed: bool = True
    cursor_hmac_secret: str = "change-me"

    # Localization
    default_locale: str = "en"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # OpenTelemetry
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    otel_service_name: str = "contentcore"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def database_dialect(self) -> str:
        """Dialect name of the configured database URL (e.g. "postgresql")."""
        return self.database_url.split(":", 1)[0].split("+", 1)[0]


# Global settings instance
settings = Settings()
