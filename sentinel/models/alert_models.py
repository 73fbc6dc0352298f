from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AlertType(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    PREDICTION = "prediction"
    INFO = "info"


SEVERITY_BY_TYPE = {
    AlertType.CRITICAL: 4,
    AlertType.PREDICTION: 3,
    AlertType.WARNING: 2,
    AlertType.INFO: 1,
}


class Alert(BaseModel):
    """One notification event. Never mutated once appended to history."""
    id: str
    type: AlertType
    severity: int
    position_id: str = ""
    protocol: str = ""
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float


class AlertThresholds(BaseModel):
    health_factor_warning: float = 1.3
    health_factor_critical: float = 1.1
    liquidation_probability: float = 0.7
    distance_to_liquidation_percent: float = 10.0
    distance_to_liquidation_critical_percent: float = 5.0
    collateral_ratio_warning: float = 1.5
    collateral_ratio_critical: float = 1.2
    prediction_horizon_minutes: float = 30.0


class ThresholdsUpdate(BaseModel):
    """Partial thresholds; unset fields keep their current value."""
    health_factor_warning: Optional[float] = None
    health_factor_critical: Optional[float] = None
    liquidation_probability: Optional[float] = None
    distance_to_liquidation_percent: Optional[float] = None
    distance_to_liquidation_critical_percent: Optional[float] = None
    collateral_ratio_warning: Optional[float] = None
    collateral_ratio_critical: Optional[float] = None
    prediction_horizon_minutes: Optional[float] = None


class SinkType(str, Enum):
    DISCORD = "discord"
    TELEGRAM = "telegram"
    GENERIC = "generic"


class WebhookConfig(BaseModel):
    name: str
    type: SinkType = SinkType.GENERIC
    url: str
    enabled: bool = True
    rate_limit_per_minute: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    timeout_sec: float = Field(default=10.0, gt=0)
    alert_types: List[AlertType] = Field(default_factory=lambda: list(AlertType))
    custom_thresholds: Optional[ThresholdsUpdate] = None


class WebhookUpdate(BaseModel):
    type: Optional[SinkType] = None
    url: Optional[str] = None
    enabled: Optional[bool] = None
    rate_limit_per_minute: Optional[int] = Field(default=None, ge=1)
    retry_attempts: Optional[int] = Field(default=None, ge=1)
    timeout_sec: Optional[float] = Field(default=None, gt=0)
    alert_types: Optional[List[AlertType]] = None
    custom_thresholds: Optional[ThresholdsUpdate] = None


class SinkStats(BaseModel):
    name: str
    type: SinkType
    total_sent: int = 0
    success_count: int = 0
    failure_count: int = 0
    rate_limit_hits: int = 0
    last_sent: Optional[float] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    average_response_ms: float = 0.0


class AlertMetrics(BaseModel):
    total_alerts: int = 0
    alerts_by_type: Dict[str, int] = Field(default_factory=dict)
    alerts_by_protocol: Dict[str, int] = Field(default_factory=dict)
    cooldown_hits: int = 0
    average_processing_ms: float = 0.0
    sinks: List[SinkStats] = Field(default_factory=list)
