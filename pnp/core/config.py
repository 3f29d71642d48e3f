from __future__ import annotations

from functools import lru_cache
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings, SettingsConfigDict


# Default queue bindings consumed by NQ2DS when NQ_QKEY is not provided.
DEFAULT_NQ_QKEY = "incident.nq2ds:incident,maintenance.nq2ds:maintenance,change.nq2ds:change,announcement.nq2ds:announcement"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "pnp"
    log_level: str = "INFO"
    # Force DEBUG level and verbose trace logs when enabled.
    debug: bool = False

    # Telemetry labels attached to every log record.
    kube_app_deployed_env: str = "local"
    kube_cluster_region: str = "local"
    monitoring_app_name: str = "pnp-pipeline"

    # Explicit DSN override; otherwise assembled from the PG_* variables.
    database_url: str | None = None
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_db: str = "pnp"
    pg_db_user: str = "pnp"
    pg_db_pass: str = "pnp"
    # Postgres sslmode semantics: disable, require, verify-ca, verify-full.
    pg_sslmode: str = "require"
    pg_sslrootcertfilepath: str = ""
    # Optional cap on open database connections; unset keeps the driver default.
    db_max_open_conns: int | None = None
    db_pool_timeout_s: int = 30

    # Primary and fallback bus URLs for plain AMQP deployments.
    rabbitmq_url: str = ""
    rabbitmq_url2: str = ""
    # TLS path: a single AMQPS endpoint plus a base64 PEM CA certificate.
    rabbitmq_amqps_endpoint: str = ""
    rabbitmq_tls_cert: str = ""
    rabbitmq_enable_messages: bool = False
    # Management API host used by liveness for reachability and queue depth.
    rabbitmq_host: str = ""
    # Maximum queue depth tolerated by liveness.
    rabbitmq_threshold: int = 1000
    nq_qkey: str = DEFAULT_NQ_QKEY
    rabbitmq_exchange_name: str = "pnp.direct"
    rabbitmq_exchange_type: str = "direct"
    bus_prefetch_count: int = 10
    # Upper bound for consumer reconnect backoff.
    bus_reconnect_max_backoff_s: int = 60
    bus_reconnect_base_backoff_s: float = 1.0

    # Hex or base64 master key for bus envelopes.
    master_key: str = ""
    # Expected bearer token for ServiceNow hook paths.
    snow_token: str = ""
    # Failed tokens are remembered briefly to avoid repeated verification.
    auth_bad_token_ttl_s: int = 30
    # Successful verifications are cached for this long.
    auth_decision_ttl_s: int = 300
    # Skip local persistence for ServiceNow rows when enabled.
    bypass_local_storage: bool = False

    # Hook health gates evaluated by the background monitor.
    api_catalog_healthz_url: str = ""
    ciebot_consumer_healthz_url: str = ""
    ciebot_webhook_healthz_url: str = ""
    ciebot_handler_healthz_url: str = ""
    ciebot_skip_health_check: bool = False
    hooks_health_interval_s: int = 60
    hooks_health_freshness_s: int = 60
    health_probe_timeout_s: float = 15.0
    # Public href reported in the health payload.
    hooks_public_url: str = ""
    hooks_port: int = 8000

    # Liveness probes for NQ2DS workers.
    liveness_tcp_timeout_s: float = 5.0
    liveness_port: int = 8080

    # NQ2DS transaction retries for transient database errors.
    nq2ds_max_attempts: int = 3
    nq2ds_backoff_ms: int = 2000
    nq2ds_db_timeout_ms: int = 600000
    # Routing key for post-commit downstream events.
    fanout_topic: str = "notification"
    fanout_queue: str = "notification.fanout"

    # Adapter scheduling and upstream access.
    adapter_interval_minutes: int = 60
    # Comma-delimited name=url pairs of upstream notification feeds.
    adapter_source_urls: str = ""
    adapter_source_token: str = ""
    # Global catalog overview endpoint and requested languages.
    catalog_overview_url: str = ""
    catalog_languages: str = "en"
    # Manual display name map stored as JSON at an external URL.
    manual_names_url: str = ""
    # Deadline for internal HTTP hops.
    internal_http_timeout_s: float = 600.0

    # Subscription fan-out delivery policy.
    fanout_max_attempts: int = 5
    fanout_backoff_ms: int = 1000
    fanout_backoff_max_ms: int = 60000
    fanout_failure_threshold: int = 10
    fanout_http_timeout_s: float = 30.0
    # In-flight deliveries untouched this long are retried by the scheduler.
    fanout_in_flight_timeout_s: float = 300.0
    fanout_poll_interval_s: int = 5
    fanout_requeue_batch_size: int = 50

    # Grace period for draining in-flight work on shutdown.
    shutdown_grace_s: int = 30

    def resolved_database_url(self) -> str:
        # Prefer explicit DSNs so tests can point at SQLite.
        if self.database_url:
            return self.database_url
        user = quote_plus(self.pg_db_user)
        password = quote_plus(self.pg_db_pass)
        return f"postgresql+asyncpg://{user}:{password}@{self.pg_host}:{self.pg_port}/{self.pg_db}"

    def bus_urls(self) -> list[str]:
        # TLS deployments expose one endpoint; plain AMQP keeps a primary and a fallback.
        if self.rabbitmq_enable_messages:
            return [self.rabbitmq_amqps_endpoint] if self.rabbitmq_amqps_endpoint else []
        return [url for url in (self.rabbitmq_url, self.rabbitmq_url2) if url]

    def languages(self) -> list[str]:
        return [lang.strip() for lang in self.catalog_languages.split(",") if lang.strip()] or ["en"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
