# ludus/core/config.py
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Set

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


PROD_ENVIRONMENTS: Set[str] = {"prod", "production", "live"}

# Retention categories understood by the event sinks
RETENTION_CATEGORIES = (
    "user_events",
    "page_views",
    "clicks",
    "forms",
    "scrolls",
    "errors",
    "revenue",
    "conversions",
    "retention",
    "vendor_analytics",
    "system_health",
)


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")
    log_level: str = Field(default="INFO", description="Root log level")

    # Persistence
    database_url: str = Field(
        default="sqlite:///./ludus.db",
        description="SQLAlchemy database URL",
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for cache and event sink; in-memory fallback when unset",
    )

    # Cache TTLs (seconds) per entity family
    cache_activity_ttl: int = Field(default=3600, description="Activity detail TTL")
    cache_recommendations_ttl: int = Field(default=1800, description="Recommendation list TTL")
    cache_search_ttl: int = Field(default=900, description="Search result TTL")
    cache_vendor_ttl: int = Field(default=7200, description="Vendor profile TTL")
    cache_circuit_failure_threshold: int = 5
    cache_circuit_recovery_timeout: int = 60
    cache_max_tracked_keys: int = Field(default=1000, description="Per-key stat entries kept (LRU)")
    cache_sweep_interval: int = Field(
        default=60, description="Minimum seconds between expired-entry sweeps of the memory store"
    )

    # Analytics / event sink
    analytics_enabled: bool = Field(default=True, description="Master switch for event tracking")
    mixpanel_token: SecretStr = Field(default=SecretStr(""), description="Mixpanel project token")
    mixpanel_enabled: Optional[bool] = Field(
        default=None,
        description="Explicit Mixpanel toggle; defaults to enabled when a token is present",
    )
    mixpanel_api_url: str = "https://api.mixpanel.com"
    mixpanel_timeout_seconds: float = 5.0
    analytics_skip_paths: str = Field(
        default="/health,/metrics",
        description="Comma-separated path prefixes the analytics middleware ignores",
    )

    # Feature flags
    analytics_user_tracking: bool = True
    analytics_page_view_tracking: bool = True
    analytics_error_tracking: bool = True
    analytics_revenue_tracking: bool = True
    analytics_conversion_tracking: bool = True
    analytics_performance_tracking: bool = True

    # Retention (days) per event category
    retention_user_events_days: int = 30
    retention_page_views_days: int = 30
    retention_clicks_days: int = 30
    retention_forms_days: int = 30
    retention_scrolls_days: int = 30
    retention_errors_days: int = 7
    retention_revenue_days: int = 365
    retention_conversions_days: int = 90
    retention_retention_days: int = 365
    retention_vendor_analytics_days: int = 90
    retention_system_health_days: int = 7

    # Performance thresholds
    slow_response_threshold_ms: int = Field(
        default=1000,
        alias="SLOW_RESPONSE_THRESHOLD",
        description="Responses slower than this emit a medium-severity error event",
    )

    # Privacy
    anonymize_ips: bool = Field(default=True, alias="ANONYMIZE_IPS")
    respect_do_not_track: bool = Field(default=True, alias="RESPECT_DO_NOT_TRACK")

    # Payment gateway (Moyasar)
    moyasar_secret_key: SecretStr = Field(default=SecretStr(""), description="Moyasar secret key")
    moyasar_base_url: str = "https://api.moyasar.com/v1"
    moyasar_webhook_secret: SecretStr = Field(default=SecretStr(""), description="HMAC secret for payment webhooks")
    moyasar_mock: bool = Field(
        default=False,
        alias="MOYASAR_MOCK",
        description="When true, use the FakeMoyasar client. Also implied when no key is set.",
    )
    moyasar_timeout_seconds: float = 30.0
    moyasar_callback_url: Optional[str] = Field(
        default=None, description="Where Moyasar returns the customer after 3-D Secure"
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def skip_paths(self) -> List[str]:
        return [part.strip() for part in self.analytics_skip_paths.split(",") if part.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in PROD_ENVIRONMENTS

    @property
    def mixpanel_active(self) -> bool:
        """Mixpanel is on when explicitly enabled, or implicitly when a token exists."""
        has_token = bool(self.mixpanel_token.get_secret_value())
        if self.mixpanel_enabled is None:
            return has_token
        return self.mixpanel_enabled and has_token

    @property
    def use_fake_payments(self) -> bool:
        return self.moyasar_mock or not self.moyasar_secret_key.get_secret_value()

    def cache_ttls(self) -> Dict[str, int]:
        """Default TTL per cache namespace."""
        return {
            "activity": self.cache_activity_ttl,
            "recommendations": self.cache_recommendations_ttl,
            "search": self.cache_search_ttl,
            "vendor": self.cache_vendor_ttl,
        }

    def retention_days(self, category: str) -> int:
        """Retention in days for an event category (user-event retention when unknown)."""
        return int(getattr(self, f"retention_{category}_days", self.retention_user_events_days))


def validate_analytics_settings(config: Settings) -> List[str]:
    """
    Return human-readable problems with the analytics/cache configuration.

    An empty list means the configuration is usable. Problems are reported,
    not raised, so that a misconfigured analytics stack never blocks startup.
    """
    errors: List[str] = []

    if config.mixpanel_enabled and not config.mixpanel_token.get_secret_value():
        errors.append("Mixpanel is enabled but no token is provided.")

    for category in RETENTION_CATEGORIES:
        if config.retention_days(category) < 1:
            errors.append(f"Retention period for {category} must be at least 1 day.")

    for namespace, ttl in config.cache_ttls().items():
        if ttl < 60:
            errors.append(f"Cache TTL for {namespace} must be at least 60 seconds.")

    if config.slow_response_threshold_ms < 100:
        errors.append("Slow response threshold must be at least 100ms.")

    if config.is_production and config.use_fake_payments:
        errors.append("Mock payments must not be used in production.")

    return errors


settings = Settings()
