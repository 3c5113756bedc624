"""
Configuration settings for the Demoforge orchestrator.
Loads from environment variables with sensible defaults.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Demoforge Orchestrator"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"

    # API Keys
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    firecrawl_api_key: Optional[str] = None

    # Hosting control plane
    hosting_api_url: str = "https://api.20i.com/reseller"
    hosting_api_key: Optional[str] = None
    hosting_package_type: str = "284869"

    # Deployment targets
    public_domain_suffix: str = "127.0.0.1.nip.io"
    public_url_scheme: str = "http"
    site_root: str = "/var/www/demoforge_sites"
    nginx_conf_dir: Optional[str] = "/etc/nginx/conf.d"
    # WP-CLI refuses to run as root without this flag
    wp_allow_root: bool = True
    sftp_known_hosts: Optional[str] = None
    secret_key: str = "change-me"
    max_html_bytes: int = 512_000

    # Concurrency
    max_concurrent_jobs: int = 5
    max_concurrent_provisioning: int = 2
    poll_interval_seconds: float = 2.0
    run_orchestrator: bool = True

    # Timeouts
    provisioning_timeout_seconds: float = 300.0
    scrape_timeout_seconds: float = 60.0
    status_check_timeout_seconds: float = 10.0
    transfer_timeout_seconds: float = 120.0
    domain_lock_timeout_seconds: float = 600.0

    # Retries
    max_retries: int = 3
    provisioning_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    verify_attempts: int = 5
    cas_max_attempts: int = 5

    # Audit policy
    allow_resubmit: bool = True
    max_resubmits: int = 2
    auto_resubmit_rejected: bool = False
    assign_any_state: bool = False

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience exports
settings = get_settings()
