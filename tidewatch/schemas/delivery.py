"""Delivery ledger views and webhook responses."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from tidewatch.models.alert import AlertStatus, EscalationState
from tidewatch.models.contact import Channel
from tidewatch.models.delivery_attempt import DeliveryStatus


class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    contact_id: uuid.UUID
    step_index: int
    channel: Channel
    address: str
    status: DeliveryStatus
    provider: str | None
    provider_message_id: str | None
    attempt_count: int
    error_message: str | None
    metadata: dict = Field(default_factory=dict, validation_alias="delivery_metadata")
    created_at: datetime
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    failed_at: datetime | None
    acknowledged_at: datetime | None


class ChannelFailure(BaseModel):
    """Why one contact/channel dispatch did not get through."""

    contact_id: uuid.UUID
    channel: Channel
    status: DeliveryStatus
    error_message: str | None


class DeliveryStatusResponse(BaseModel):
    alert_id: uuid.UUID
    alert_status: AlertStatus
    escalation_state: EscalationState
    escalation_step: int
    counts: dict[str, int]
    failures: list[ChannelFailure]
    attempts: list[DeliveryAttemptResponse]


class WebhookResponse(BaseModel):
    received: int
    applied: int
    discarded: int
