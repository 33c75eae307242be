"""FastAPI dependencies for services built at startup.

The lifespan handler stores the engine, webhook normalizers and auth guard
on ``app.state``; tests override these dependencies directly.
"""

from fastapi import Request

from tidewatch.services.escalation_engine import EscalationEngine
from tidewatch.services.rate_limiter import AuthAttemptGuard
from tidewatch.services.webhooks import WebhookNormalizers


def get_escalation_engine(request: Request) -> EscalationEngine:
    return request.app.state.escalation_engine


def get_webhook_normalizers(request: Request) -> WebhookNormalizers:
    return request.app.state.webhook_normalizers


def get_auth_guard(request: Request) -> AuthAttemptGuard:
    return request.app.state.auth_guard
