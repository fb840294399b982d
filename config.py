"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (and .env file).
Both the ASGI app and the evaluation worker build one AppSettings instance
and pass the relevant sub-config down to the components they construct.
"""

from __future__ import annotations

from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    mongodb_uri: str
    db_name: str = "linkroute"


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Optional; without Redis the resolver reads the stores directly
    redis_uri: Optional[str] = None
    resolution_cache_ttl_seconds: int = 60


class QueueSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Optional; without RabbitMQ jobs run through an in-process queue
    rabbitmq_url: Optional[str] = None
    evaluation_queue_name: str = "evaluation_jobs"
    max_delivery_attempts: int = 5
    retry_backoff_base_seconds: float = 2.0
    retry_backoff_max_seconds: float = 300.0
    max_in_flight_jobs: int = 8


class EvaluationSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    fetch_timeout_seconds: float = 10.0
    render_timeout_seconds: float = 30.0
    job_timeout_seconds: float = 120.0
    fetch_max_attempts: int = 3
    fetch_backoff_base_seconds: float = 1.0
    render_enabled: bool = True
    max_content_bytes: int = 2_000_000
    healthy_score_threshold: int = 60

    # Staleness sweep
    staleness_threshold_seconds: int = 86400
    sweep_interval_seconds: int = 300
    sweep_batch_size: int = 500
    sweep_rate_per_second: float = 5.0
    sweep_burst: int = 20


class InferenceSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Empty URL disables the inference signal; scoring uses heuristics only
    inference_url: str = ""
    inference_api_key: str = ""
    inference_timeout_seconds: float = 15.0


class AggregatorSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    bucket_seconds: int = 60
    inbox_size: int = 10_000
    recent_buckets: int = 10
    subscriber_queue_size: int = 1000
    idle_timeout_seconds: int = 900


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    log_level: str = "INFO"
    log_format: str = "console"  # "json" in production

    # Sampling rates (0.0–1.0)
    sample_rate_redirect: float = 0.05
    sample_rate_click: float = 0.01
    sample_rate_evaluation: float = 1.0


class SentrySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    sentry_dsn: str = ""
    sentry_send_pii: bool = False
    sentry_traces_sample_rate: float = 0.1
    sentry_profile_sample_rate: float = 0.05


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Core
    env: str = "development"
    app_name: str = "linkroute"

    cors_origins: list[str] = ["*"]

    # GeoIP country database used to derive the requester region
    geoip_country_db: str = "misc/GeoLite2-Country.mmdb"

    # Refuse to redirect (404) when the only remaining destination is confirmed dead
    block_on_dead: bool = False

    # OpenAPI docs URL (None disables the docs UI in production)
    docs_url: Optional[str] = "/docs"

    # Sub-configs (composed via model_validator below)
    db: Optional[DatabaseSettings] = None
    redis: Optional[RedisSettings] = None
    queue: Optional[QueueSettings] = None
    evaluation: Optional[EvaluationSettings] = None
    inference: Optional[InferenceSettings] = None
    aggregator: Optional[AggregatorSettings] = None
    logging: Optional[LoggingSettings] = None
    sentry: Optional[SentrySettings] = None

    @model_validator(mode="after")
    def _populate_sub_configs(self) -> "AppSettings":
        # Populate sub-configs from the same env/dotenv source
        if self.db is None:
            self.db = DatabaseSettings()
        if self.redis is None:
            self.redis = RedisSettings()
        if self.queue is None:
            self.queue = QueueSettings()
        if self.evaluation is None:
            self.evaluation = EvaluationSettings()
        if self.inference is None:
            self.inference = InferenceSettings()
        if self.aggregator is None:
            self.aggregator = AggregatorSettings()
        if self.logging is None:
            self.logging = LoggingSettings()
        if self.sentry is None:
            self.sentry = SentrySettings()

        return self

    @property
    def is_production(self) -> bool:
        return self.env == "production"
