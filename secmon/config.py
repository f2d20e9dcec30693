# secmon/config.py
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

# Bundled default rules: secmon/rules
DEFAULT_RULE_DIR = Path(os.path.dirname(__file__)) / "rules"

DEFAULT_ALERT_THRESHOLDS = {"low": 20, "medium": 40, "high": 60, "critical": 80}
SEVERITY_LEVELS = ("low", "medium", "high", "critical")


class MonitorConfig(BaseSettings):
    """
    Monitor settings. Precedence: constructor arguments, then SECMON_*
    environment variables, then the YAML file given to load_config, then
    the defaults below. List and mapping values in the environment are JSON,
    for example SECMON_HIGH_RISK_COUNTRIES='["XX"]'.
    """

    enabled: bool = False
    max_events_in_memory: int = 10000
    max_tracked_ips: int = 10000
    max_tracked_users: int = 10000
    max_alerts_in_memory: int = 5000
    recent_event_window: int = 1000
    cleanup_interval: float = 3600.0       # seconds
    event_retention: float = 7 * 24 * 3600.0
    ip_block_duration: float = 3600.0
    user_lock_duration: float = 1800.0
    max_failed_logins: int = 5
    rate_limit_requests: int = 100
    rate_limit_window: float = 60.0
    alert_thresholds: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_ALERT_THRESHOLDS)
    )

    # outbound delivery, all optional
    webhook_url: Optional[str] = None
    chat_webhook_url: Optional[str] = None
    chat_channel: str = "#security-alerts"
    block_persist_url: Optional[str] = None
    service_name: str = "secmon"
    notify_timeout: float = 5.0
    notify_max_attempts: int = 2
    notify_queue_size: int = 1000

    rules_dir: Optional[str] = None
    database_path: Optional[str] = None
    high_risk_countries: List[str] = Field(default_factory=list)
    medium_risk_countries: List[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="SECMON_",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, YamlConfigSettingsSource(settings_cls))

    @field_validator(
        "max_events_in_memory", "max_tracked_ips", "max_tracked_users",
        "max_alerts_in_memory", "notify_max_attempts", "notify_queue_size",
        "cleanup_interval",
    )
    @classmethod
    def _positive(cls, value, info):
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("alert_thresholds", mode="before")
    @classmethod
    def _merge_thresholds(cls, value: Any) -> Any:
        # a partial mapping only overrides the levels it names
        if isinstance(value, dict):
            return {**DEFAULT_ALERT_THRESHOLDS, **value}
        return value

    @model_validator(mode="after")
    def _thresholds_complete(self) -> "MonitorConfig":
        missing = set(SEVERITY_LEVELS) - set(self.alert_thresholds)
        if missing:
            raise ValueError(f"alert_thresholds missing levels: {sorted(missing)}")
        return self

    @property
    def rule_dir(self) -> Path:
        return Path(self.rules_dir) if self.rules_dir else DEFAULT_RULE_DIR

    def rule_defaults(self) -> Dict[str, Any]:
        """Values rules fall back on when their YAML does not set them."""
        return {
            "block_duration": self.ip_block_duration,
            "failed_login_threshold": self.max_failed_logins,
            "rate_limit_requests": self.rate_limit_requests,
            "rate_limit_window": self.rate_limit_window,
        }

    def severity_for_score(self, score: int) -> Optional[str]:
        """Highest alert threshold the score reaches, None below the lowest."""
        reached = None
        for level in SEVERITY_LEVELS:
            if score >= self.alert_thresholds[level]:
                reached = level
        return reached


def load_config(path: Optional[str] = None) -> MonitorConfig:
    """
    Build a MonitorConfig from defaults, an optional YAML file and SECMON_*
    environment variables (for example SECMON_ENABLED=true).
    """
    if not path:
        return MonitorConfig()

    config_path = Path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    class FileMonitorConfig(MonitorConfig):
        model_config = SettingsConfigDict(yaml_file=str(config_path))

    logger.info("Loading monitor config from %s", config_path)
    return FileMonitorConfig()
