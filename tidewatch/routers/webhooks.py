"""Provider delivery-status webhooks.

Each endpoint verifies the callback, normalizes it into canonical events
and applies them to the delivery ledger. Events for unknown messages are
discarded with a 200 so providers do not retry them.
"""

import json
from collections.abc import Mapping

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.config import settings
from tidewatch.core.dependencies import get_webhook_normalizers
from tidewatch.core.errors import InvalidSignatureError, MalformedPayloadError
from tidewatch.database import get_db
from tidewatch.logging_config import get_logger
from tidewatch.middleware.rate_limit import limiter
from tidewatch.schemas.delivery import WebhookResponse
from tidewatch.services.webhooks import TwilioNormalizer, WebhookNormalizers
from tidewatch.services.webhooks import sendgrid as sendgrid_webhook
from tidewatch.services.webhooks import twilio as twilio_webhook

logger = get_logger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def public_url(path: str) -> str:
    """URL the provider was configured to call; signatures are computed over it."""
    return f"{settings.webhook_base_url.rstrip('/')}{path}"


def _reject_signature(provider: str, error: InvalidSignatureError) -> HTTPException:
    logger.warning("Webhook signature rejected", provider=provider, error=str(error))
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid webhook signature",
    )


async def _form_params(request: Request) -> Mapping[str, str]:
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


async def _handle_twilio(
    request: Request,
    normalizer: TwilioNormalizer,
    path: str,
    db: AsyncSession,
) -> WebhookResponse:
    params = await _form_params(request)
    try:
        normalizer.verify(
            public_url(path),
            params,
            request.headers.get(twilio_webhook.SIGNATURE_HEADER),
        )
    except InvalidSignatureError as e:
        raise _reject_signature(normalizer.provider, e) from e

    try:
        events = normalizer.normalize(params)
    except MalformedPayloadError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)
        ) from e

    return WebhookResponse(**await normalizer.apply(db, events))


@router.post("/twilio", response_model=WebhookResponse)
@limiter.limit(settings.webhook_rate_limit)
async def twilio_status_callback(
    request: Request,
    normalizers: WebhookNormalizers = Depends(get_webhook_normalizers),
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """Twilio SMS and voice status callbacks (form-encoded)."""
    return await _handle_twilio(
        request, normalizers.twilio, "/api/webhooks/twilio", db
    )


@router.post("/whatsapp", response_model=WebhookResponse)
@limiter.limit(settings.webhook_rate_limit)
async def whatsapp_status_callback(
    request: Request,
    normalizers: WebhookNormalizers = Depends(get_webhook_normalizers),
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """Twilio WhatsApp status callbacks (form-encoded)."""
    return await _handle_twilio(
        request, normalizers.whatsapp, "/api/webhooks/whatsapp", db
    )


@router.post("/sendgrid", response_model=WebhookResponse)
@limiter.limit(settings.webhook_rate_limit)
async def sendgrid_event_webhook(
    request: Request,
    normalizers: WebhookNormalizers = Depends(get_webhook_normalizers),
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """SendGrid event webhook (JSON array of events)."""
    normalizer = normalizers.sendgrid
    body = await request.body()
    try:
        normalizer.verify(
            body,
            request.headers.get(sendgrid_webhook.SIGNATURE_HEADER),
            request.headers.get(sendgrid_webhook.TIMESTAMP_HEADER),
        )
    except InvalidSignatureError as e:
        raise _reject_signature(normalizer.provider, e) from e

    try:
        events = normalizer.normalize(json.loads(body))
    except (ValueError, MalformedPayloadError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed SendGrid payload: {e}",
        ) from e

    return WebhookResponse(**await normalizer.apply(db, events))
