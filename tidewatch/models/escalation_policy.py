"""Escalation policy model.

A policy is a reusable, ordered list of steps. Each step names who to
contact (roles and a priority ceiling), over which channels, and how long
to wait for an acknowledgment before moving on.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import Boolean, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tidewatch.models.base import Base, JSONType, TimestampMixin
from tidewatch.models.contact import Channel


@dataclass(frozen=True)
class PolicyStep:
    """One tier of an escalation policy."""

    index: int
    channels: tuple[Channel, ...]
    timeout_minutes: float
    contact_roles: frozenset[str] = frozenset()
    max_priority: int | None = None

    @classmethod
    def from_dict(cls, index: int, data: dict) -> "PolicyStep":
        return cls(
            index=index,
            channels=tuple(Channel(c.lower()) for c in data.get("channels", [])),
            timeout_minutes=float(data["timeout_minutes"]),
            contact_roles=frozenset(r.lower() for r in data.get("contact_roles", [])),
            max_priority=data.get("max_priority"),
        )


class EscalationPolicy(Base, TimestampMixin):
    """Named escalation policy matched to alerts by event type and severity.

    Empty ``event_types`` or ``severity_levels`` match any value.
    ``steps`` is a dense 0-based JSON list; a policy with no steps is
    rejected before it can be assigned to an alert.
    """

    __tablename__ = "escalation_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    event_types: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    severity_levels: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    # [{"channels": [...], "timeout_minutes": 5, "contact_roles": [...],
    #   "max_priority": 1}, ...]
    steps: Mapped[list[dict]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    def parsed_steps(self) -> list[PolicyStep]:
        return [PolicyStep.from_dict(i, step) for i, step in enumerate(self.steps)]

    def __repr__(self) -> str:
        return f"<EscalationPolicy(name={self.name!r}, steps={len(self.steps)})>"
