from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from backend project root so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Central tenant directory
    database_url: str

    # JWT (tokens are minted by the identity service; we only verify them)
    secret_key: str
    access_token_expire_minutes: int = 15
    algorithm: str = "HS256"

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Tenant databases: one pooled engine per locator
    tenant_pool_size: int = 5
    tenant_max_overflow: int = 10
    tenant_pool_recycle_seconds: int = 1800
    tenant_connect_timeout_seconds: float = 5.0
    # A successful liveness probe is trusted this long before probing again
    tenant_liveness_interval_seconds: float = 30.0
    tenant_db_ssl: bool = False
    tenant_auto_create_schema: bool = True

    # Scheduling business rules
    default_appointment_duration_minutes: int = 30
    booking_max_retries: int = 3

    # First path segments that belong to the platform, never to a tenant
    reserved_path_segments: str = "login,dashboard,clients,api,auth,admin,tenant,ping,health,docs,redoc"

    # Env
    env: str = "development"
    log_level: str = "INFO"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def reserved_path_segments_set(self) -> set[str]:
        return {s.strip() for s in self.reserved_path_segments.split(",") if s.strip()}

    @property
    def is_production(self) -> bool:
        return self.env == "production"


settings = Settings()
