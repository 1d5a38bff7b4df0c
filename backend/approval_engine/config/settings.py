"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="APPROVAL_",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "approval_engine_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_files: bool = True

    # SLA clock
    run_sla_clock: bool = True
    sla_sweep_interval_seconds: int = 60
    sla_sweep_batch_size: int = 500
    escalation_failure_alert_threshold: int = 3  # Consecutive failed escalations before alerting

    # Engine actors
    system_actor_id: str = "system"
    cancel_roles: str = "workflow_admin,hr_admin"
    hr_manager_capability: str = "hr_manager"

    # Environment
    environment: str = "development"

    @property
    def cancel_roles_list(self) -> List[str]:
        """Parse cancel roles string to list"""
        return [role.strip() for role in self.cancel_roles.split(",") if role.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
