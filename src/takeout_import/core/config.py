"""Application configuration via Pydantic Settings.

All configuration is loaded from environment variables following 12-factor principles.
"""

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        description="Async SQLAlchemy connection string for job metadata and credentials",
    )

    # JWT
    jwt_secret_key: str = Field(min_length=32, description="Secret key for signing JWTs (minimum 32 characters)")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")

    # Public server (webhook target and import destination for the worker)
    public_base_url: str | None = Field(
        default=None,
        description="Externally reachable base URL of this server (e.g. https://photos.example.com)",
    )

    @field_validator("public_base_url")
    @classmethod
    def validate_public_base_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not (v.startswith("https://") or v.startswith("http://localhost")):
            msg = "public_base_url must use HTTPS (http is only allowed for localhost)"
            raise ValueError(msg)
        return v.rstrip("/")

    # Google OAuth application (forwarded to the worker for token refresh)
    google_client_id: str | None = Field(
        default=None,
        description="Google OAuth client ID",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret",
    )

    # Fly Machines
    fly_api_base_url: str = Field(
        default="https://api.machines.dev/v1",
        description="Fly Machines API base URL",
    )
    fly_api_token: str | None = Field(
        default=None,
        description="Fly API token used to manage worker machines and volumes",
    )
    fly_worker_app_name: str = Field(
        default="takeout-import-worker",
        description="Fly app that hosts the ephemeral import workers",
    )
    fly_worker_image: str = Field(
        default="registry.fly.io/takeout-import-worker:latest",
        description="Container image run by each worker machine",
    )
    fly_worker_region: str = Field(
        default="ord",
        description="Fly region for worker machines and volumes",
    )
    fly_api_timeout: float = Field(
        default=30.0,
        description="Fly Machines API request timeout in seconds",
        gt=0,
    )

    # Worker sizing
    worker_cpus: int = Field(default=2, description="Shared vCPUs per worker machine", gt=0)
    worker_memory_mb: int = Field(default=2048, description="Memory per worker machine in MB", ge=256)
    worker_volume_path: str = Field(default="/data", description="Mount path of the worker volume")
    volume_min_gb: int = Field(default=10, description="Smallest worker volume in GB", gt=0)
    volume_max_gb: int = Field(default=100, description="Largest worker volume in GB", gt=0)
    volume_buffer_gb: int = Field(
        default=5,
        description="Extra GB added to the download size for extraction overhead",
        ge=0,
    )

    @model_validator(mode="after")
    def validate_volume_bounds(self) -> "Settings":
        if self.volume_max_gb < self.volume_min_gb:
            msg = "volume_max_gb must be greater than or equal to volume_min_gb"
            raise ValueError(msg)
        return self

    # Cleanup
    cleanup_settle_seconds: float = Field(
        default=2.0,
        description="Delay between destroying a machine and deleting its volume",
        ge=0,
    )
    orphan_grace_minutes: int = Field(
        default=30,
        description="Minimum age of an unattached volume before the sweep treats it as orphaned",
        gt=0,
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory for log files (enables file logging with 24h rotation when set)",
    )

    # CORS
    cors_origins: str = Field(
        default="",
        description="Comma-separated list of allowed CORS origins (must be explicitly configured)",
    )
    cors_origin_regex: str = Field(
        default="",
        description="Regex pattern for allowed CORS origins",
    )

    # API
    api_v1_prefix: str = Field(
        default="/api/v1",
        description="API version prefix",
    )

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        if not self.cors_origins.strip():
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def webhook_url(self) -> str | None:
        """Absolute URL the worker posts progress updates to."""
        if self.public_base_url is None:
            return None
        return f"{self.public_base_url}{self.api_v1_prefix}/imports/worker-webhook"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()  # type: ignore[call-arg]
