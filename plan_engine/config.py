"""
Configuration Management Module

Engine settings read from PLAN_ENGINE_* environment variables (or a .env
file) with pydantic-settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PlanEngineConfig(BaseSettings):
    """Payment plan engine configuration"""

    # Storage
    database_url: str = "sqlite:///plan_engine.db"  # memory:// for an in-process store

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    api_workers: int = 1

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Notifications
    notifications_enabled: bool = True
    notification_webhook_url: str = ""  # Empty = log events instead of posting them
    notification_timeout_seconds: float = 5.0

    # Scheduling
    reminder_lead_days: int = 0  # Send requests this many days before the due date

    enable_activity_log: bool = True

    class Config:
        env_prefix = "PLAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


_config: Optional[PlanEngineConfig] = None


def get_config() -> PlanEngineConfig:
    """Process-wide settings, read from the environment on first use"""
    global _config
    if _config is None:
        _config = PlanEngineConfig()
    return _config
