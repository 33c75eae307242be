"""Alert request and response schemas."""

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tidewatch.models.alert import AlertSeverity, AlertStatus, EscalationState
from tidewatch.models.contact import Channel


class AlertCreate(BaseModel):
    """Alert submitted by the targeting component."""

    event_type: str = Field(..., min_length=1, max_length=50)
    event_id: str | None = Field(default=None, max_length=100)
    severity: AlertSeverity
    message: str = Field(..., min_length=1)
    recommendation: str | None = None
    vessel_id: str | None = Field(default=None, max_length=50)
    vessel_name: str | None = Field(default=None, max_length=200)
    target_contact_ids: list[uuid.UUID] = Field(..., min_length=1)
    escalation_policy_id: uuid.UUID | None = Field(
        default=None,
        description="Explicit policy; when omitted the best matching policy is used.",
    )
    distance_km: float | None = Field(default=None, ge=0)
    wave_height_m: float | None = Field(default=None, ge=0)
    tsunami_eta_minutes: int | None = Field(default=None, ge=0)
    expires_at: datetime | None = None

    @field_validator("event_type")
    @classmethod
    def normalize_event_type(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            msg = "Event type cannot be empty"
            raise ValueError(msg)
        return v

    @field_validator("expires_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    event_id: str | None
    severity: AlertSeverity
    message: str
    recommendation: str | None
    vessel_id: str | None
    vessel_name: str | None
    target_contact_ids: list[str]
    distance_km: float | None
    wave_height_m: float | None
    tsunami_eta_minutes: int | None
    status: AlertStatus
    escalation_policy_id: uuid.UUID | None
    escalation_state: EscalationState
    escalation_started: bool
    escalation_step: int
    step_deadline: datetime | None
    escalation_error: str | None
    acknowledged_by: str | None
    acknowledgment_notes: str | None
    created_at: datetime
    sent_at: datetime | None
    acknowledged_at: datetime | None
    resolved_at: datetime | None
    last_escalation_at: datetime | None
    expires_at: datetime


class PendingAlertsResponse(BaseModel):
    """Alerts waiting on a policy (or on a first dispatch)."""

    alerts: list[AlertResponse]
    count: int


class AlertAcknowledgeRequest(BaseModel):
    contact_id: uuid.UUID | None = Field(
        default=None,
        description="Acknowledging contact; their entries are frozen as acknowledged.",
    )
    acknowledged_by: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=2000)


class AlertTestRequest(BaseModel):
    """Dry-run request: which policy would apply and what it would do."""

    event_type: str = Field(..., min_length=1, max_length=50)
    severity: AlertSeverity
    target_contact_ids: list[uuid.UUID] = Field(default_factory=list)
    escalation_policy_id: uuid.UUID | None = None

    @field_validator("event_type")
    @classmethod
    def normalize_event_type(cls, v: str) -> str:
        return v.strip().lower()


class PlannedDispatchResponse(BaseModel):
    contact_id: uuid.UUID
    contact_name: str
    channel: Channel
    address: str


class SkippedChannelResponse(BaseModel):
    contact_id: uuid.UUID
    contact_name: str
    channel: Channel
    reason: str


class PreviewStepResponse(BaseModel):
    index: int
    channels: list[Channel]
    contact_roles: list[str]
    max_priority: int | None
    timeout_minutes: float
    starts_after_minutes: float
    degenerate: bool
    dispatches: list[PlannedDispatchResponse]
    skipped: list[SkippedChannelResponse]


class AlertTestResponse(BaseModel):
    policy_id: uuid.UUID
    policy_name: str
    total_minutes: float
    steps: list[PreviewStepResponse]
