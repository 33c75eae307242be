"""Escalation policy persistence."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.logging_config import get_logger
from tidewatch.models.escalation_policy import EscalationPolicy
from tidewatch.schemas.escalation_policy import EscalationPolicyCreate

logger = get_logger(__name__)


async def list_policies(
    db: AsyncSession, *, active_only: bool = False
) -> list[EscalationPolicy]:
    """List policies, newest first."""
    query = select(EscalationPolicy).order_by(EscalationPolicy.created_at.desc())
    if active_only:
        query = query.where(EscalationPolicy.active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_policy(db: AsyncSession, policy_id: uuid.UUID) -> EscalationPolicy | None:
    return await db.get(EscalationPolicy, policy_id)


async def create_policy(
    db: AsyncSession, data: EscalationPolicyCreate
) -> EscalationPolicy:
    """Store a policy. Steps were validated non-empty by the schema."""
    policy = EscalationPolicy(
        name=data.name,
        description=data.description,
        event_types=data.event_types,
        severity_levels=[s.value for s in data.severity_levels],
        steps=[step.model_dump(mode="json") for step in data.steps],
        active=data.active,
    )
    db.add(policy)
    await db.commit()
    await db.refresh(policy)

    logger.info(
        "Escalation policy created",
        policy_id=str(policy.id),
        name=policy.name,
        steps=len(policy.steps),
    )
    return policy
