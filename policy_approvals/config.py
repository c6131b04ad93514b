"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class ApprovalsConfig(BaseSettings):
    """Policy approval engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="POLICY_APPROVALS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_path: str = "policy_approvals.db"
    use_sqlite: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Workflow rules
    default_quorum_percentage: float = 60.0
    default_due_days: int = 5

    # Escalation sweep
    escalation_scheduler_enabled: bool = False
    escalation_interval_minutes: int = 15
    escalation_batch_size: int = 500

    # Notification delivery
    webhook_url: Optional[str] = None
    teams_webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = 10.0
    portal_base_url: str = "http://localhost:8091"


# Global configuration instance
config = ApprovalsConfig()


def get_config() -> ApprovalsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalsConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalsConfig()
    return config
