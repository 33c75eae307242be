# Business Logic Services
from tidewatch.services.delivery_ledger import (
    CanonicalEvent,
    DeliveryLedger,
    EventKind,
    apply_event,
)
from tidewatch.services.escalation_engine import (
    EscalationEngine,
    plan_step,
    preview_policy,
    resolve_policy,
)
from tidewatch.services.rate_limiter import AuthAttemptGuard, RateLimitGuard
from tidewatch.services.scheduler import get_scheduler, start_scheduler, stop_scheduler

__all__ = [
    "AuthAttemptGuard",
    "CanonicalEvent",
    "DeliveryLedger",
    "EscalationEngine",
    "EventKind",
    "RateLimitGuard",
    "apply_event",
    "get_scheduler",
    "plan_step",
    "preview_policy",
    "resolve_policy",
    "start_scheduler",
    "stop_scheduler",
]
