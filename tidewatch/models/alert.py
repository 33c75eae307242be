"""Alert model.

One notification campaign for one seismic/tsunami event affecting one
target (a vessel or an ad hoc contact set). Created by the targeting
component, mutated only by the escalation engine and acknowledgment
handling, and never deleted.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tidewatch.models.base import (
    Base,
    JSONType,
    UTCDateTime,
    enum_values,
    utcnow,
)


class AlertSeverity(str, enum.Enum):
    """Alert severity, ordered low < moderate < high < critical."""

    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 1,
    AlertSeverity.MODERATE: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


class AlertStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class EscalationState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STEP_ACTIVE = "step_active"
    ACKNOWLEDGED = "acknowledged"
    EXHAUSTED = "exhausted"


class Alert(Base):
    """Stores an alert and its escalation progress."""

    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    event_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )

    # Upstream event reference (feed event id), informational
    event_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    severity: Mapped[AlertSeverity] = mapped_column(
        Enum(
            AlertSeverity,
            name="alertseverity",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    recommendation: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Target
    vessel_id: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    vessel_name: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    target_contact_ids: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    # Impact details from the proximity component, all optional
    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    wave_height_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    tsunami_eta_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[AlertStatus] = mapped_column(
        Enum(
            AlertStatus,
            name="alertstatus",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
        default=AlertStatus.PENDING,
        index=True,
    )

    # Escalation progress
    escalation_policy_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="RESTRICT"),
        nullable=True,
    )

    escalation_state: Mapped[EscalationState] = mapped_column(
        Enum(
            EscalationState,
            name="escalationstate",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
        default=EscalationState.NOT_STARTED,
        index=True,
    )

    escalation_started: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    escalation_step: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # When the active step's timeout elapses
    step_deadline: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    # Why the alert is stuck in pending (no matching policy)
    escalation_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    acknowledged_by: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    acknowledgment_notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_escalation_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    # Relationships
    escalation_policy = relationship("EscalationPolicy", lazy="raise")
    delivery_attempts = relationship(
        "DeliveryAttempt", back_populates="alert", lazy="raise"
    )

    @property
    def is_closed(self) -> bool:
        return self.status in (
            AlertStatus.ACKNOWLEDGED,
            AlertStatus.RESOLVED,
            AlertStatus.EXPIRED,
        )

    def __repr__(self) -> str:
        return (
            f"<Alert(event={self.event_type}, severity={self.severity.value}, "
            f"status={self.status.value}, step={self.escalation_step})>"
        )
