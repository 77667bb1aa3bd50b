import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


class RiskScoringConfig(BaseModel):
    """Weights and thresholds for access-request risk scoring."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    app_risk_divisor: int = 5
    high_risk_app_threshold: int = 75
    admin_access_points: int = 25
    sod_conflict_points: int = 20
    critical_conflict_points: int = 10
    entitlement_count_threshold: int = 20
    entitlement_count_points: int = 10
    max_score: int = 100
    level_thresholds: Dict[str, int] = Field(
        default_factory=lambda: {"critical": 75, "high": 50, "medium": 25}
    )


class AccessRequestConfig(BaseModel):
    """SLA windows for access-request review."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    standard_sla_hours: int = 24
    high_risk_sla_hours: int = 48


class AnomalyConfig(BaseModel):
    """Windows and defaults for anomaly evaluation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    business_hours_start: int = 8
    business_hours_end: int = 18
    dedup_window_minutes: int = 60
    baseline_days: int = 30
    baseline_min_samples: int = 10
    baseline_login_limit: int = 100
    baseline_location_limit: int = 20
    normal_hours_floor: int = 6
    normal_hours_ceiling: int = 22
    normal_day_share: float = 0.1


class JitAccessConfig(BaseModel):
    """Approval policy for just-in-time elevation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    high_risk_app_threshold: int = 75


class NotificationConfig(BaseModel):
    """Configuration for notifications and alerts."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    webhook_urls: List[str] = Field(default_factory=list)
    slack_webhook_url: Optional[str] = None
    timeout_seconds: float = 10.0


class GovernanceConfig(BaseModel):
    """Main configuration for the governance engine."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    risk: RiskScoringConfig = Field(default_factory=RiskScoringConfig)
    access_requests: AccessRequestConfig = Field(default_factory=AccessRequestConfig)
    anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
    jit: JitAccessConfig = Field(default_factory=JitAccessConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    log_level: str = "INFO"


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(env_file: Optional[str] = None) -> GovernanceConfig:
    """Build configuration from the environment (and a .env file, if present)."""
    load_dotenv(env_file)

    config = GovernanceConfig(log_level=os.getenv("LOG_LEVEL", "INFO"))

    if os.getenv("GOVERNANCE_STANDARD_SLA_HOURS"):
        config.access_requests.standard_sla_hours = int(os.environ["GOVERNANCE_STANDARD_SLA_HOURS"])
    if os.getenv("GOVERNANCE_HIGH_RISK_SLA_HOURS"):
        config.access_requests.high_risk_sla_hours = int(os.environ["GOVERNANCE_HIGH_RISK_SLA_HOURS"])
    if os.getenv("GOVERNANCE_ANOMALY_DEDUP_MINUTES"):
        config.anomaly.dedup_window_minutes = int(os.environ["GOVERNANCE_ANOMALY_DEDUP_MINUTES"])

    config.notifications.webhook_urls = _split_list(os.getenv("GOVERNANCE_WEBHOOK_URLS"))
    config.notifications.slack_webhook_url = os.getenv("GOVERNANCE_SLACK_WEBHOOK_URL")

    return config
