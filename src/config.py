"""Application configuration using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/fragscrape.db"

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"
    app_host: str = "0.0.0.0"
    app_port: int = 3000

    # ==========================================================================
    # Proxy provider (Decodo)
    # ==========================================================================
    # Either an API key or a username/password pair must be configured
    decodo_api_url: str = "https://api.decodo.com/v1"
    decodo_api_key: str = ""
    decodo_username: str = ""
    decodo_password: str = ""
    decodo_api_timeout: float = 10.0

    # Proxy endpoint
    proxy_endpoint: str = "gate.decodo.com"
    proxy_port: int = 7000
    proxy_country: str = "us"

    # Credential management
    subuser_quota_gb: float = 1.0
    subuser_warning_threshold_mb: int = 900
    subuser_service_type: str = "residential"
    proxy_usage_check_minutes: int = 5

    # ==========================================================================
    # Scraping
    # ==========================================================================
    parfumo_base_url: str = "https://www.parfumo.com"
    ip_check_url: str = "https://ip.decodo.com/"
    headless: bool = True
    browser_executable_path: str = ""

    # Retry policy
    http_max_retries: int = 3
    browser_max_retries: int = 2
    retry_initial_delay: float = 1.0  # seconds
    retry_max_delay: float = 10.0  # seconds
    retry_backoff_multiplier: float = 2.0

    # Timeouts (seconds)
    http_timeout: float = 30.0
    browser_navigation_timeout: float = 60.0
    browser_selector_timeout: float = 10.0
    challenge_timeout: float = 30.0

    # Polite delays between requests (seconds)
    search_delay_min: float = 1.0
    search_delay_max: float = 2.0
    details_delay_min: float = 1.5
    details_delay_max: float = 3.0
    brand_delay_min: float = 1.0
    brand_delay_max: float = 2.0

    default_search_limit: int = 20
    max_similar_fragrances: int = 10

    # Pages with missing rating dimensions are saved here when set
    debug_html_dir: str = ""

    # ==========================================================================
    # Cache
    # ==========================================================================
    cache_perfume_hours: int = 24
    cache_search_hours: int = 6
    cache_cleanup_minutes: int = 60
    request_log_retention_days: int = 7

    # Security
    encryption_key: str = ""  # Fernet key used for credential secrets at rest

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def subuser_quota_bytes(self) -> int:
        return int(self.subuser_quota_gb * 1024 * 1024 * 1024)

    @property
    def subuser_warning_bytes(self) -> int:
        return self.subuser_warning_threshold_mb * 1024 * 1024


settings = Settings()
