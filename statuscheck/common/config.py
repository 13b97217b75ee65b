"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Run defaults, collaborator
endpoints and feature flags are controlled by environment variables (see
`.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "status-check-orchestrator"
    log_level: str = "INFO"
    database_url: str = "sqlite+pysqlite:///./statuscheck.db"
    kafka_bootstrap_servers: str = "kafka:9092"
    run_events_topic: str = "payments.status_check"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    trace_sample_ratio: float = 1.0

    lookup_url: str = "http://gateway-sim:8010"
    notifier_url: str = "http://gateway-sim:8010"
    status_check_url: str = "http://gateway-sim:8010"

    lookup_batch_size: int = 10
    chunk_size: int = 5
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 10.0
    per_call_timeout_seconds: float = 30.0
    max_payment_ids: int = 10_000

    tracing_enabled: bool = True
    outbox_publisher_enabled: bool = True
    resume_on_startup: bool = True
    auto_create_schema: bool = False

    sim_gateways: str = "stripe,adyen,worldpay"
    sim_failure_rate: float = 0.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
