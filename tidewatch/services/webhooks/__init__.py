"""Provider webhook normalizers."""

from dataclasses import dataclass

from tidewatch.config import Settings
from tidewatch.services.delivery_ledger import DeliveryLedger
from tidewatch.services.webhooks.base import WebhookNormalizer
from tidewatch.services.webhooks.sendgrid import SendGridNormalizer
from tidewatch.services.webhooks.twilio import TwilioNormalizer, WhatsAppNormalizer


@dataclass(frozen=True)
class WebhookNormalizers:
    twilio: TwilioNormalizer
    whatsapp: WhatsAppNormalizer
    sendgrid: SendGridNormalizer


def build_normalizers(config: Settings, ledger: DeliveryLedger) -> WebhookNormalizers:
    """One normalizer per provider endpoint, all writing to ``ledger``."""
    token = config.twilio_auth_token or None
    return WebhookNormalizers(
        twilio=TwilioNormalizer(token, ledger),
        whatsapp=WhatsAppNormalizer(token, ledger),
        sendgrid=SendGridNormalizer(config.sendgrid_webhook_public_key or None, ledger),
    )


__all__ = [
    "SendGridNormalizer",
    "TwilioNormalizer",
    "WebhookNormalizer",
    "WebhookNormalizers",
    "WhatsAppNormalizer",
    "build_normalizers",
]
