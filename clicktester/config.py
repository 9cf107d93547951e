"""
Application Configuration using Pydantic Settings

Loads process-level configuration from environment variables with sensible
defaults. The per-run test configuration (connection, checks, query templates)
lives in a YAML/JSON file, see ``clicktester.core.config_loader``.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Test Configuration
    # ========================================================================
    DEFAULT_CONFIG_PATH: str = "configs/default.yaml"
    DEFAULT_REPORT_PATH: str = "reports/report.html"

    # ========================================================================
    # ClickHouse Connection Settings
    # ========================================================================
    # Dial/connect timeout (seconds) for both native and HTTP protocols.
    CLICKHOUSE_CONNECT_TIMEOUT: int = 10

    # The ClickHouse drivers are synchronous; we run them in a thread pool.
    # The executor must have at least as many threads as requested workers,
    # otherwise client-side queueing hides server-side latency.
    CLICKHOUSE_EXECUTOR_MAX_WORKERS: int = 64

    # Budget (seconds) for the system.query_log lookup used to recover
    # read_rows/read_bytes over HTTP and per-query memory/partition stats.
    CLICKHOUSE_QUERY_LOG_TIMEOUT: float = 20.0

    # ========================================================================
    # Application Settings (serve mode)
    # ========================================================================
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8080
    OPEN_BROWSER: bool = True

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(levelprefix)s %(asctime)s - %(message)s"


# Create global settings instance
settings = Settings()
