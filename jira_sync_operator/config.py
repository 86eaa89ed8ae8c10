"""
Configuration management for the JIRA Sync Operator.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="JIRA Sync Operator", env="APP_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8080, env="API_PORT")
    api_run_controller: bool = Field(default=True, env="API_RUN_CONTROLLER")

    # Cluster
    cluster_backend: str = Field(default="memory", env="CLUSTER_BACKEND")
    kube_api_url: str = Field(
        default="https://kubernetes.default.svc", env="KUBE_API_URL"
    )
    kube_token_path: str = Field(
        default="/var/run/secrets/kubernetes.io/serviceaccount/token",
        env="KUBE_TOKEN_PATH",
    )
    kube_ca_path: Optional[str] = Field(
        default="/var/run/secrets/kubernetes.io/serviceaccount/ca.crt",
        env="KUBE_CA_PATH",
    )
    kube_request_timeout: float = Field(default=30.0, env="KUBE_REQUEST_TIMEOUT")

    # Jobs
    job_namespace: str = Field(default="jira-sync", env="JOB_NAMESPACE")
    job_image: str = Field(default="jira-sync:latest", env="JOB_IMAGE")
    default_job_timeout: int = Field(default=1800, env="DEFAULT_JOB_TIMEOUT")
    default_concurrency: int = Field(default=5, env="DEFAULT_CONCURRENCY")
    default_rate_limit_ms: int = Field(default=500, env="DEFAULT_RATE_LIMIT_MS")
    template_dir: Optional[str] = Field(default=None, env="TEMPLATE_DIR")

    # Declarative resources
    resource_store_url: str = Field(default="memory://", env="RESOURCE_STORE_URL")
    resource_namespace: str = Field(default="default", env="RESOURCE_NAMESPACE")

    # Control loop
    reconcile_workers: int = Field(default=2, env="RECONCILE_WORKERS")
    resync_interval: int = Field(default=300, env="RESYNC_INTERVAL")
    dependency_requeue_seconds: float = Field(
        default=30.0, env="DEPENDENCY_REQUEUE_SECONDS"
    )
    running_requeue_seconds: float = Field(default=15.0, env="RUNNING_REQUEUE_SECONDS")
    error_requeue_seconds: float = Field(default=30.0, env="ERROR_REQUEUE_SECONDS")
    status_conflict_retries: int = Field(default=5, env="STATUS_CONFLICT_RETRIES")
    claim_lease_seconds: int = Field(default=60, env="CLAIM_LEASE_SECONDS")
    require_api_endpoint: bool = Field(default=True, env="REQUIRE_API_ENDPOINT")
    operator_id: Optional[str] = Field(default=None, env="OPERATOR_ID")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
