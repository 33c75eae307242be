# Database Models
from tidewatch.models.alert import Alert, AlertSeverity, AlertStatus, EscalationState
from tidewatch.models.base import Base, TimestampMixin
from tidewatch.models.contact import Channel, Contact
from tidewatch.models.delivery_attempt import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    DeliveryAttempt,
    DeliveryStatus,
)
from tidewatch.models.escalation_policy import EscalationPolicy, PolicyStep

__all__ = [
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "Alert",
    "AlertSeverity",
    "AlertStatus",
    "Base",
    "Channel",
    "Contact",
    "DeliveryAttempt",
    "DeliveryStatus",
    "EscalationPolicy",
    "EscalationState",
    "PolicyStep",
    "TimestampMixin",
]
