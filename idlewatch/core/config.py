"""Application Configuration using Pydantic Settings."""

import os
from pathlib import Path
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_env_file() -> str:
    """
    Determine which .env file to load based on APP_ENV.

    Returns:
        Path to the .env file to load
    """
    app_env = os.getenv("APP_ENV", "development")
    base_dir = Path(__file__).parent.parent.parent  # project root

    if app_env == "test":
        env_file = base_dir / ".env.test"
        if env_file.exists():
            return str(env_file)

    if app_env == "production":
        env_file = base_dir / ".env.production"
        if env_file.exists():
            return str(env_file)

    # Default to .env
    return str(base_dir / ".env")


# Default PromQL queries. Each must group by exactly the components the
# matching detector asks for and keep only series with zero activity.
DEFAULT_POD_IDLE_QUERY = (
    'sum(rate(container_network_receive_packets_total{pod!=""}[1h])) '
    "by (namespace, pod) == 0"
)
DEFAULT_INGRESS_IDLE_QUERY = (
    "sum(rate(nginx_ingress_controller_requests[1h])) "
    "by (ingress, exported_namespace) == 0"
)
DEFAULT_INGRESS_PATH_IDLE_QUERY = (
    "sum(rate(nginx_ingress_controller_request_size_count[1h])) "
    "by (exported_namespace, ingress, host, path) == 0"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "idlewatch"
    APP_ENV: str = "development"

    # Logging
    VERBOSITY: int = 1  # 0 = warnings only, 1 = info, 2+ = debug
    LOG_FORMAT: str = "console"  # console or json

    # Prometheus
    PROMETHEUS_URL: str = ""
    QUERY_TIMEOUT_SECONDS: float = 60.0  # Per-step query timeout
    OBSERVATION_PERIOD_HOURS: int = 6
    STEP_HOURS: int = 1  # Backward shift between two samples

    # Queries (see DEFAULT_* above)
    POD_IDLE_QUERY: str = DEFAULT_POD_IDLE_QUERY
    INGRESS_IDLE_QUERY: str = DEFAULT_INGRESS_IDLE_QUERY
    INGRESS_PATH_IDLE_QUERY: str = DEFAULT_INGRESS_PATH_IDLE_QUERY

    # Kubernetes
    RUN_OUTSIDE_CLUSTER: bool = False
    KUBECONFIG_PATH: str = ""  # Empty = ~/.kube/config
    K8S_CONNECT_RETRIES: int = 3
    K8S_RETRY_DELAY_SECONDS: float = 5.0

    # Debug profiling endpoint
    PROFILE_ENABLED: bool = False
    PROFILE_HOST: str = "0.0.0.0"
    PROFILE_PORT: int = 6060

    @field_validator("PROMETHEUS_URL", mode="after")
    @classmethod
    def validate_prometheus_url(cls, url: str) -> str:
        """
        Validate the Prometheus endpoint.

        An empty value means "not configured yet" and is rejected later by
        the CLI. Anything else must be an absolute http(s) URI with a host.

        Raises:
            ValueError: If the URL is malformed
        """
        url = url.strip()
        if not url:
            return url

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(
                f"Prometheus URL '{url}' must include scheme (http:// or https://). "
                "Example: http://localhost:9090"
            )
        if not parsed.netloc:
            raise ValueError(
                f"Prometheus URL '{url}' must include hostname. "
                "Example: http://localhost:9090"
            )
        return url.rstrip("/")

    @field_validator(
        "OBSERVATION_PERIOD_HOURS", "STEP_HOURS", "K8S_CONNECT_RETRIES", mode="after"
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Reject zero and negative counts."""
        if value < 1:
            raise ValueError(f"must be a positive integer, got {value}")
        return value

    @field_validator("LOG_FORMAT", mode="after")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """Only console and json renderers exist."""
        value = value.lower()
        if value not in ("console", "json"):
            raise ValueError(f"LOG_FORMAT must be 'console' or 'json', got '{value}'")
        return value

