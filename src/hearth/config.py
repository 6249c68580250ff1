"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with HEARTH_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).

Learn: Worker idle thresholds have process-wide defaults plus optional
per-queue overrides, because an import queue and a calendar-sync queue
have very different burst shapes. Overrides are JSON maps in the env, e.g.
HEARTH_WORKER_WARM_IDLE_OVERRIDES='{"caldav-sync": 120}'.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via HEARTH_* env vars."""

    # Redis (pub/sub + job queues share one server)
    redis_url: str = "redis://localhost:6379/0"

    # Auth
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    session_cookie_name: str = "hearth_session"
    access_token_expire_minutes: int = 60

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Realtime
    channel_namespace: str = "hearth"
    invalidation_channel: str = "hearth:connection:invalidate"
    realtime_path: str = "/ws"
    ws_ping_interval: float = 20.0
    ws_ping_timeout: float = 5.0

    # Job queues
    queue_prefix: str = "hearth:queue"
    worker_drain_delay_seconds: float = 5.0
    worker_warm_idle_seconds: float = 30.0  # pause after the queue drains
    worker_cold_shutdown_seconds: float = 300.0  # destroy after staying paused
    worker_warm_idle_overrides: dict[str, float] = {}
    worker_cold_shutdown_overrides: dict[str, float] = {}

    # AI enrichment (producers report "skipped" when disabled)
    auto_tagging_enabled: bool = True
    allergy_detection_enabled: bool = True
    nutrition_estimation_enabled: bool = True

    # Shutdown
    shutdown_stage_timeout_seconds: float = 30.0
    shutdown_force_exit_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_prefix": "HEARTH_"}

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Ensure sensitive defaults are changed in non-development environments."""
        if (
            self.environment != "development"
            and self.jwt_secret == "change-me-in-production"
        ):
            raise ValueError(
                "HEARTH_JWT_SECRET must be set to a secure value in "
                "non-development environments. Generate one with: "
                'python -c "import secrets; print(secrets.token_urlsafe(32))"'
            )
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def warm_idle_for(self, queue_name: str) -> float:
        return self.worker_warm_idle_overrides.get(
            queue_name, self.worker_warm_idle_seconds
        )

    def cold_shutdown_for(self, queue_name: str) -> float:
        return self.worker_cold_shutdown_overrides.get(
            queue_name, self.worker_cold_shutdown_seconds
        )


# Singleton, import this everywhere
settings = Settings()
