"""Escalation policy schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tidewatch.models.alert import AlertSeverity
from tidewatch.models.contact import Channel


class PolicyStepSchema(BaseModel):
    channels: list[Channel] = Field(..., min_length=1)
    timeout_minutes: float = Field(..., gt=0)
    contact_roles: list[str] = Field(
        default_factory=list, description="Empty matches any role."
    )
    max_priority: int | None = Field(
        default=None,
        ge=0,
        description="Only contacts with priority <= this value.",
    )

    @field_validator("channels")
    @classmethod
    def dedupe_channels(cls, v: list[Channel]) -> list[Channel]:
        return list(dict.fromkeys(v))

    @field_validator("contact_roles")
    @classmethod
    def normalize_roles(cls, v: list[str]) -> list[str]:
        return sorted({role.strip().lower() for role in v if role.strip()})


class EscalationPolicyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    event_types: list[str] = Field(
        default_factory=list, description="Empty matches any event type."
    )
    severity_levels: list[AlertSeverity] = Field(
        default_factory=list, description="Empty matches any severity."
    )
    steps: list[PolicyStepSchema] = Field(..., min_length=1)
    active: bool = True

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = "Name cannot be empty or whitespace only"
            raise ValueError(msg)
        return v

    @field_validator("event_types")
    @classmethod
    def normalize_event_types(cls, v: list[str]) -> list[str]:
        return sorted({t.strip().lower() for t in v if t.strip()})


class EscalationPolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    event_types: list[str]
    severity_levels: list[str]
    steps: list[PolicyStepSchema]
    active: bool
    created_at: datetime
    updated_at: datetime


class EscalationPolicyListResponse(BaseModel):
    policies: list[EscalationPolicyResponse]
    count: int
