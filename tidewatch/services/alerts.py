"""Read-side alert queries."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.models.alert import Alert, AlertStatus
from tidewatch.models.delivery_attempt import DeliveryAttempt, DeliveryStatus


async def get_alert(db: AsyncSession, alert_id: uuid.UUID) -> Alert | None:
    return await db.get(Alert, alert_id)


async def get_pending_alerts(db: AsyncSession) -> list[Alert]:
    """Alerts still pending, oldest first.

    These are alerts no escalation policy could be resolved for
    (``escalation_error`` says why), awaiting manual follow-up.
    """
    result = await db.execute(
        select(Alert)
        .where(Alert.status == AlertStatus.PENDING)
        .order_by(Alert.created_at)
    )
    return list(result.scalars().all())


def failed_attempts(attempts: list[DeliveryAttempt]) -> list[DeliveryAttempt]:
    return [
        a
        for a in attempts
        if a.status in (DeliveryStatus.FAILED, DeliveryStatus.BOUNCED)
    ]
