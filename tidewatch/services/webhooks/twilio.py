"""Twilio status callbacks for SMS, voice and WhatsApp.

Twilio posts form-encoded status callbacks without an event timestamp, so
the receipt time stands in for it.
"""

import base64
import hashlib
import hmac
from collections.abc import Mapping

from tidewatch.core.errors import InvalidSignatureError, MalformedPayloadError
from tidewatch.logging_config import get_logger
from tidewatch.models.contact import Channel
from tidewatch.services.delivery_ledger import CanonicalEvent, EventKind
from tidewatch.services.webhooks.base import WebhookNormalizer

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"

MESSAGE_STATUSES = {
    "queued": EventKind.QUEUED,
    "accepted": EventKind.QUEUED,
    "scheduled": EventKind.QUEUED,
    "sending": EventKind.QUEUED,
    "sent": EventKind.SENT,
    "delivered": EventKind.DELIVERED,
    "read": EventKind.READ,
    "failed": EventKind.FAILED,
    "undelivered": EventKind.FAILED,
    "canceled": EventKind.FAILED,
}

CALL_STATUSES = {
    "queued": EventKind.SENT,
    "initiated": EventKind.SENT,
    "ringing": EventKind.SENT,
    "in-progress": EventKind.DELIVERED,
    "completed": EventKind.DELIVERED,
    "busy": EventKind.FAILED,
    "no-answer": EventKind.FAILED,
    "failed": EventKind.FAILED,
    "canceled": EventKind.FAILED,
}


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: HMAC-SHA1 over the URL and sorted params."""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


class TwilioNormalizer(WebhookNormalizer):
    """Messaging and voice callbacks posted to /api/webhooks/twilio."""

    provider = "twilio"

    def __init__(self, auth_token: str | None, ledger, **kwargs):
        super().__init__(ledger, **kwargs)
        self.auth_token = auth_token

    def verify(
        self, url: str, params: Mapping[str, str], signature: str | None
    ) -> None:
        """Check X-Twilio-Signature for the public URL Twilio called.

        Raises:
            InvalidSignatureError: A token is configured and the signature
                is missing or wrong.
        """
        if not self.auth_token:
            self.warn_unverified(url=url)
            return
        if not signature:
            raise InvalidSignatureError("Missing X-Twilio-Signature header")
        expected = compute_signature(self.auth_token, url, params)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError("Twilio signature mismatch")

    def message_channel(self, params: Mapping[str, str]) -> Channel:
        address = f"{params.get('To', '')} {params.get('From', '')}".lower()
        return Channel.WHATSAPP if "whatsapp:" in address else Channel.SMS

    @staticmethod
    def _error(params: Mapping[str, str]) -> str | None:
        code = params.get("ErrorCode")
        message = params.get("ErrorMessage")
        if code and message:
            return f"{code}: {message}"
        return code or message or None

    def normalize(self, payload: Mapping[str, str]) -> list[CanonicalEvent]:
        now = self.clock()

        call_sid = payload.get("CallSid")
        call_status = payload.get("CallStatus")
        if call_sid and call_status:
            status = call_status.lower()
            kind = CALL_STATUSES.get(status, EventKind.UNKNOWN)
            error = self._error(payload)
            if kind == EventKind.FAILED and not error:
                error = f"Call {status}"
            metadata = {}
            if payload.get("CallDuration"):
                metadata["duration_seconds"] = payload["CallDuration"]
            return [
                CanonicalEvent(
                    provider=self.provider,
                    channel=Channel.VOICE,
                    provider_message_id=call_sid,
                    kind=kind,
                    timestamp=now,
                    raw_event=status,
                    error=error,
                    metadata=metadata,
                )
            ]

        message_sid = payload.get("MessageSid") or payload.get("SmsSid")
        message_status = payload.get("MessageStatus") or payload.get("SmsStatus")
        if not (message_sid and message_status):
            raise MalformedPayloadError(
                "Twilio callback has neither CallSid/CallStatus "
                "nor MessageSid/MessageStatus"
            )

        status = message_status.lower()
        return [
            CanonicalEvent(
                provider=self.provider,
                channel=self.message_channel(payload),
                provider_message_id=message_sid,
                kind=MESSAGE_STATUSES.get(status, EventKind.UNKNOWN),
                timestamp=now,
                raw_event=status,
                error=self._error(payload),
            )
        ]


class WhatsAppNormalizer(TwilioNormalizer):
    """WhatsApp callbacks posted to /api/webhooks/whatsapp.

    Same vocabulary as Twilio messaging; every event is a WhatsApp event.
    """

    def message_channel(self, params: Mapping[str, str]) -> Channel:
        return Channel.WHATSAPP
