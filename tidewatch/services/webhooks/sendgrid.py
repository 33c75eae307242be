"""SendGrid event webhook.

SendGrid posts a JSON array of events. ``sg_message_id`` is the
X-Message-Id returned at send time followed by a ``.``-separated suffix.
Signed webhooks carry an ECDSA P-256 signature over timestamp + raw body.
"""

import base64
import binascii
from datetime import UTC, datetime

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_der_public_key

from tidewatch.core.errors import InvalidSignatureError, MalformedPayloadError
from tidewatch.logging_config import get_logger
from tidewatch.models.contact import Channel
from tidewatch.services.delivery_ledger import CanonicalEvent, EventKind
from tidewatch.services.webhooks.base import WebhookNormalizer

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"

EVENT_KINDS = {
    "processed": EventKind.QUEUED,
    "deferred": EventKind.QUEUED,
    "delivered": EventKind.DELIVERED,
    "open": EventKind.READ,
    "click": EventKind.READ,
    "bounce": EventKind.BOUNCED,
    "dropped": EventKind.BOUNCED,
    "spamreport": EventKind.INFO,
    "spam_report": EventKind.INFO,
    "unsubscribe": EventKind.INFO,
    "group_unsubscribe": EventKind.INFO,
    "group_resubscribe": EventKind.INFO,
}


def load_public_key(value: str) -> ec.EllipticCurvePublicKey:
    """Load the verification key as shown in the SendGrid console (base64 DER)."""
    key = load_der_public_key(base64.b64decode(value))
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise ValueError("SendGrid webhook key is not an EC public key")
    return key


class SendGridNormalizer(WebhookNormalizer):
    provider = "sendgrid"

    def __init__(self, public_key: str | None, ledger, **kwargs):
        super().__init__(ledger, **kwargs)
        self.public_key = load_public_key(public_key) if public_key else None

    def verify(
        self, body: bytes, signature: str | None, timestamp: str | None
    ) -> None:
        """Check the signed event webhook headers against the raw body.

        Raises:
            InvalidSignatureError: A key is configured and the signature is
                missing, undecodable or wrong.
        """
        if self.public_key is None:
            self.warn_unverified()
            return
        if not (signature and timestamp):
            raise InvalidSignatureError("Missing SendGrid signature headers")
        try:
            self.public_key.verify(
                base64.b64decode(signature),
                timestamp.encode() + body,
                ec.ECDSA(hashes.SHA256()),
            )
        except (InvalidSignature, binascii.Error, ValueError) as e:
            raise InvalidSignatureError("SendGrid signature mismatch") from e

    def _timestamp(self, raw) -> datetime:
        if isinstance(raw, int | float) and not isinstance(raw, bool):
            return datetime.fromtimestamp(raw, UTC)
        return self.clock()

    def normalize(self, payload) -> list[CanonicalEvent]:
        if not isinstance(payload, list):
            raise MalformedPayloadError("SendGrid payload must be a JSON array")

        events = []
        for item in payload:
            if not isinstance(item, dict):
                raise MalformedPayloadError("SendGrid event must be a JSON object")
            raw_id = item.get("sg_message_id")
            raw_event = item.get("event")
            if not (isinstance(raw_id, str) and raw_id and isinstance(raw_event, str)):
                logger.warning(
                    "SendGrid event without sg_message_id or event skipped",
                    event=raw_event,
                )
                continue

            name = raw_event.lower()
            kind = EVENT_KINDS.get(name, EventKind.UNKNOWN)
            error = None
            metadata = {}
            if name == "deferred":
                error = item.get("response") or item.get("reason") or "deferred"
            elif kind == EventKind.BOUNCED:
                error = item.get("reason") or item.get("response") or name
            elif name == "click" and item.get("url"):
                metadata["url"] = item["url"]

            events.append(
                CanonicalEvent(
                    provider=self.provider,
                    channel=Channel.EMAIL,
                    provider_message_id=raw_id.split(".", 1)[0],
                    kind=kind,
                    timestamp=self._timestamp(item.get("timestamp")),
                    raw_event=name,
                    error=str(error) if error else None,
                    metadata=metadata,
                )
            )
        return events
