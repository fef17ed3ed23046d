"""Application settings loaded from environment variables or .env file."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    These are loaded from environment variables or a .env file.
    Create a .env file in the project root with your settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # DigitalOcean Kubernetes settings
    do_api_token: str = ""
    do_api_base: str = "https://api.digitalocean.com/v2"
    do_default_region: str = "sfo3"
    do_k8s_version: str = "1.34.1-do.3"
    do_default_node_size: str = "s-2vcpu-4gb"
    do_default_node_count: int = 2
    provider_timeout: float = 30.0
    cluster_name_prefix: str = "hanzo"

    # Billing settings
    platform_markup_percent: float = 0.0
    ha_monthly_cost: float = 40.0
    pricing_cache_ttl: float = 3600.0
    usage_endpoint: str = ""  # Usage tracking is skipped when empty
    usage_timeout: float = 5.0

    # Organization store
    database_url: str = "sqlite:///./fleet.db"

    # Build event monitor
    watcher_enabled: bool = False
    build_namespace: str = "tekton-builds"
    kubeconfig_path: str = ""  # Empty = in-cluster config, then default kubeconfig
    watch_connect_retry_delay: float = 1.0
    watch_stream_retry_delay: float = 2.0
    platform_url: str = ""
    master_token: str = ""
    commit_status_context: str = "hanzo-paas/ci"
    commit_status_target_url: str = "https://platform.hanzo.ai"

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
