"""Notifiable contact model.

Contacts are maintained by the contact directory; the escalation engine
only reads them. Lower priority numbers are contacted earlier.
"""

import enum
import uuid

from sqlalchemy import Boolean, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tidewatch.models.base import Base, JSONType, TimestampMixin


class Channel(str, enum.Enum):
    """Outbound notification channel."""

    SMS = "sms"
    VOICE = "voice"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class Contact(Base, TimestampMixin):
    """A person or crew reachable over one or more channels."""

    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    # Free-form role used by policy step selection (captain, owner, ops...)
    role: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="crew",
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=100,
    )

    phone: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )

    email: Mapped[str | None] = mapped_column(
        String(320),
        nullable=True,
    )

    whatsapp: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
    )

    # Channel preference order, e.g. ["whatsapp", "sms"]
    notification_channels: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    def address_for(self, channel: Channel) -> str | None:
        """Return the address used for a channel, or None if absent."""
        if channel in (Channel.SMS, Channel.VOICE):
            return self.phone or None
        if channel == Channel.WHATSAPP:
            return self.whatsapp or None
        return self.email or None

    def __repr__(self) -> str:
        return (
            f"<Contact(name={self.name!r}, role={self.role}, "
            f"priority={self.priority})>"
        )
