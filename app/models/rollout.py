"""
Rollout flag, funnel event and monitor decision models
"""
from dataclasses import dataclass, field
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Dict
from datetime import datetime
from enum import Enum


class RolloutFlag(BaseModel):
    """Row of rollout_flags"""
    feature_name: str
    percent: int = Field(0, ge=0, le=100)
    updated_at: datetime
    updated_by: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class RolloutUpdateRequest(BaseModel):
    """Override manual del porcentaje"""
    percent: int = Field(..., ge=0, le=100)


class RolloutGateDecision(BaseModel):
    feature_name: str
    use_new_path: bool
    percent: int

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class InviteEventName(str, Enum):
    VIEW = "invite_view"
    VALIDATE_SUCCESS = "invite_validate_success"
    VALIDATE_FAIL = "invite_validate_fail"
    ACCEPT_SUCCESS = "invite_accept_success"
    ACCEPT_FAIL = "invite_accept_fail"


@dataclass
class InviteEvent:
    """Analytics event; token_preview is already redacted"""
    name: InviteEventName
    correlation_id: str
    latency_ms: float
    token_preview: str
    occurred_at: float
    error_kind: Optional[str] = None


class RolloutAction(str, Enum):
    HOLD = "Hold"
    ADVANCE = "Advance"
    ROLLBACK = "Rollback"


class RolloutDecision(BaseModel):
    action: RolloutAction
    from_percent: int
    to_percent: int
    reason: str

    class Config:
        alias_generator = to_camel
        populate_by_name = True


@dataclass
class FunnelMetrics:
    views: int = 0
    validate_success: int = 0
    validate_fail: int = 0
    accept_success: int = 0
    accept_fail: int = 0
    view_to_validate: Optional[float] = None
    validate_to_accept: Optional[float] = None
    conversion: Optional[float] = None
    error_rate: Optional[float] = None
    error_kind_rates: Dict[str, float] = field(default_factory=dict)
    latency_p50_ms: Optional[float] = None
    latency_p95_ms: Optional[float] = None
    latency_p99_ms: Optional[float] = None

    @property
    def sample_size(self) -> int:
        # top of the funnel: reported views, or validate attempts when fewer
        # views were reported than links opened
        return max(self.views, self.validate_success + self.validate_fail)

    def to_dict(self) -> dict:
        return {
            "views": self.views,
            "validateSuccess": self.validate_success,
            "validateFail": self.validate_fail,
            "acceptSuccess": self.accept_success,
            "acceptFail": self.accept_fail,
            "viewToValidate": self.view_to_validate,
            "validateToAccept": self.validate_to_accept,
            "conversion": self.conversion,
            "errorRate": self.error_rate,
            "errorKindRates": dict(self.error_kind_rates),
            "latencyP50Ms": self.latency_p50_ms,
            "latencyP95Ms": self.latency_p95_ms,
            "latencyP99Ms": self.latency_p99_ms,
            "sampleSize": self.sample_size,
        }
