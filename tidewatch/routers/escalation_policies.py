"""Escalation policy management."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.config import settings
from tidewatch.core.auth import require_operator
from tidewatch.database import get_db
from tidewatch.middleware.rate_limit import limiter
from tidewatch.schemas.escalation_policy import (
    EscalationPolicyCreate,
    EscalationPolicyListResponse,
    EscalationPolicyResponse,
)
from tidewatch.services.escalation_policies import (
    create_policy,
    get_policy,
    list_policies,
)

router = APIRouter(
    prefix="/api/escalation-policies",
    tags=["escalation-policies"],
    dependencies=[Depends(require_operator)],
)


@router.get("", response_model=EscalationPolicyListResponse)
async def get_policies(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
) -> EscalationPolicyListResponse:
    policies = await list_policies(db, active_only=active_only)
    return EscalationPolicyListResponse(
        policies=[EscalationPolicyResponse.model_validate(p) for p in policies],
        count=len(policies),
    )


@router.post(
    "",
    response_model=EscalationPolicyResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.operator_rate_limit)
async def create_escalation_policy(
    request: Request,
    data: EscalationPolicyCreate,
    db: AsyncSession = Depends(get_db),
) -> EscalationPolicyResponse:
    """Create a policy. A policy without steps is rejected with 422."""
    policy = await create_policy(db, data)
    return EscalationPolicyResponse.model_validate(policy)


@router.get("/{policy_id}", response_model=EscalationPolicyResponse)
async def get_escalation_policy(
    policy_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EscalationPolicyResponse:
    policy = await get_policy(db, policy_id)
    if policy is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Escalation policy {policy_id} not found",
        )
    return EscalationPolicyResponse.model_validate(policy)
