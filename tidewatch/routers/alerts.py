"""Alerts router.

Alert intake from the targeting component, acknowledgment and resolution,
the delivery ledger view, and the dry-run preview.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.config import settings
from tidewatch.core.auth import require_operator
from tidewatch.core.dependencies import get_escalation_engine
from tidewatch.core.errors import (
    AlertClosedError,
    AlertNotFoundError,
    ContactNotTargetedError,
    PolicyConfigurationError,
    PolicyResolutionError,
)
from tidewatch.database import get_db
from tidewatch.middleware.rate_limit import limiter
from tidewatch.schemas.alert import (
    AlertAcknowledgeRequest,
    AlertCreate,
    AlertResponse,
    AlertTestRequest,
    AlertTestResponse,
    PendingAlertsResponse,
    PlannedDispatchResponse,
    PreviewStepResponse,
    SkippedChannelResponse,
)
from tidewatch.schemas.delivery import (
    ChannelFailure,
    DeliveryAttemptResponse,
    DeliveryStatusResponse,
)
from tidewatch.services.alerts import failed_attempts, get_alert, get_pending_alerts
from tidewatch.services.delivery_ledger import summarize
from tidewatch.services.escalation_engine import EscalationEngine, EscalationPreview

router = APIRouter(
    prefix="/api/alerts",
    tags=["alerts"],
    dependencies=[Depends(require_operator)],
)


def _not_found(alert_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Alert {alert_id} not found",
    )


@router.post(
    "",
    response_model=AlertResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.operator_rate_limit)
async def create_alert(
    request: Request,
    data: AlertCreate,
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> AlertResponse:
    """Create an alert and start its escalation.

    Returns 422 when no policy can be assigned. If no policy matched, the
    alert is still stored as pending and its id is included in the error.
    """
    try:
        alert = await engine.create_alert(data)
    except PolicyConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    except PolicyResolutionError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(e),
                "alert_id": str(e.alert_id) if e.alert_id else None,
            },
        ) from e

    return AlertResponse.model_validate(alert)


@router.get("/pending", response_model=PendingAlertsResponse)
async def list_pending_alerts(
    db: AsyncSession = Depends(get_db),
) -> PendingAlertsResponse:
    """Alerts left pending because no escalation policy matched."""
    alerts = await get_pending_alerts(db)
    return PendingAlertsResponse(
        alerts=[AlertResponse.model_validate(a) for a in alerts],
        count=len(alerts),
    )


def _preview_response(preview: EscalationPreview) -> AlertTestResponse:
    return AlertTestResponse(
        policy_id=preview.policy_id,
        policy_name=preview.policy_name,
        total_minutes=preview.total_minutes,
        steps=[
            PreviewStepResponse(
                index=s.plan.step.index,
                channels=list(s.plan.step.channels),
                contact_roles=sorted(s.plan.step.contact_roles),
                max_priority=s.plan.step.max_priority,
                timeout_minutes=s.plan.step.timeout_minutes,
                starts_after_minutes=s.starts_after_minutes,
                degenerate=s.plan.degenerate,
                dispatches=[
                    PlannedDispatchResponse(
                        contact_id=d.contact_id,
                        contact_name=d.contact_name,
                        channel=d.channel,
                        address=d.address,
                    )
                    for d in s.plan.dispatches
                ],
                skipped=[
                    SkippedChannelResponse(
                        contact_id=k.contact_id,
                        contact_name=k.contact_name,
                        channel=k.channel,
                        reason=k.reason,
                    )
                    for k in s.plan.skipped
                ],
            )
            for s in preview.steps
        ],
    )


@router.post("/test", response_model=AlertTestResponse)
@limiter.limit(settings.operator_rate_limit)
async def test_alert(
    request: Request,
    data: AlertTestRequest,
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> AlertTestResponse:
    """Dry run: show what the matching policy would do. Nothing is sent."""
    try:
        preview = await engine.preview(
            data.event_type,
            data.severity,
            data.target_contact_ids,
            policy_id=data.escalation_policy_id,
        )
    except (PolicyConfigurationError, PolicyResolutionError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    return _preview_response(preview)


@router.get("/{alert_id}", response_model=AlertResponse)
async def read_alert(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    alert = await get_alert(db, alert_id)
    if alert is None:
        raise _not_found(alert_id)
    return AlertResponse.model_validate(alert)


@router.get("/{alert_id}/delivery-status", response_model=DeliveryStatusResponse)
async def delivery_status(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> DeliveryStatusResponse:
    """Ledger view: every attempt, status counts and failure reasons."""
    alert = await get_alert(db, alert_id)
    if alert is None:
        raise _not_found(alert_id)

    attempts = await engine.ledger.list_for_alert(db, alert_id)
    return DeliveryStatusResponse(
        alert_id=alert.id,
        alert_status=alert.status,
        escalation_state=alert.escalation_state,
        escalation_step=alert.escalation_step,
        counts=summarize(attempts),
        failures=[
            ChannelFailure(
                contact_id=a.contact_id,
                channel=a.channel,
                status=a.status,
                error_message=a.error_message,
            )
            for a in failed_attempts(attempts)
        ],
        attempts=[DeliveryAttemptResponse.model_validate(a) for a in attempts],
    )


@router.post("/{alert_id}/acknowledge", response_model=AlertResponse)
@limiter.limit(settings.operator_rate_limit)
async def acknowledge_alert(
    request: Request,
    alert_id: uuid.UUID,
    data: AlertAcknowledgeRequest | None = None,
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> AlertResponse:
    """Acknowledge an alert, stopping any further escalation steps."""
    data = data or AlertAcknowledgeRequest()
    try:
        alert = await engine.acknowledge(
            alert_id,
            contact_id=data.contact_id,
            acknowledged_by=data.acknowledged_by,
            notes=data.notes,
        )
    except AlertNotFoundError as e:
        raise _not_found(alert_id) from e
    except AlertClosedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    except ContactNotTargetedError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    return AlertResponse.model_validate(alert)


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
@limiter.limit(settings.operator_rate_limit)
async def resolve_alert(
    request: Request,
    alert_id: uuid.UUID,
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> AlertResponse:
    try:
        alert = await engine.resolve(alert_id)
    except AlertNotFoundError as e:
        raise _not_found(alert_id) from e
    except AlertClosedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    return AlertResponse.model_validate(alert)
