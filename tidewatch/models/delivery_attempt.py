"""Delivery ledger model.

One row per (alert, contact, channel) dispatch. The provider message id
is the only key asynchronous webhooks can correlate on, so it is unique
per channel and never changes once set. Rows are kept for audit.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tidewatch.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UTCDateTime,
    enum_values,
)
from tidewatch.models.contact import Channel


class DeliveryStatus(str, enum.Enum):
    """Canonical delivery status.

    Forward lifecycle: queued -> sent -> delivered -> read -> acknowledged.
    failed and bounced are side exits from any non-terminal state.
    """

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    BOUNCED = "bounced"


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.ACKNOWLEDGED, DeliveryStatus.FAILED, DeliveryStatus.BOUNCED}
)

# Entries closed by an alert-wide acknowledgment
OPEN_STATUSES = frozenset(
    {
        DeliveryStatus.QUEUED,
        DeliveryStatus.SENT,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.READ,
    }
)


class DeliveryAttempt(Base, TimestampMixin):
    """Canonical record of one outbound attempt and its status history."""

    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint(
            "channel",
            "provider_message_id",
            name="uq_delivery_attempts_channel_provider_message_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("alerts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("contacts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    step_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    channel: Mapped[Channel] = mapped_column(
        Enum(
            Channel,
            name="channel",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    # Address the message was sent to, kept for audit
    address: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
    )

    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(
            DeliveryStatus,
            name="deliverystatus",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
        default=DeliveryStatus.QUEUED,
        index=True,
    )

    provider: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    provider_message_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )

    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Lifecycle timestamps; each holds the earliest observed time
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    read_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    # Channel extras: clicks, read receipts, unrecognized provider events
    delivery_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    alert = relationship("Alert", back_populates="delivery_attempts", lazy="raise")

    def __repr__(self) -> str:
        return (
            f"<DeliveryAttempt(channel={self.channel.value}, "
            f"status={self.status.value}, "
            f"provider_message_id={self.provider_message_id})>"
        )
