"""Twilio dispatchers: SMS, WhatsApp and voice.

All three use the Twilio REST API with basic auth (account SID + auth
token) and register a status callback so delivery receipts come back
through the webhook normalizers.
"""

from xml.sax.saxutils import escape

from tidewatch.core.errors import ProviderUnconfiguredError
from tidewatch.models.contact import Channel
from tidewatch.services.channels.base import (
    ChannelDispatcher,
    DispatchReceipt,
    NotificationContent,
    raise_for_provider_status,
    validate_phone,
)

PROVIDER = "twilio"

# Twilio's hard cap for a single Messages.create body
SMS_MAX_BODY = 1600


class _TwilioDispatcher(ChannelDispatcher):
    provider = PROVIDER

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        status_callback_url: str | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.status_callback_url = status_callback_url

    def _require_config(self) -> None:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise ProviderUnconfiguredError(
                f"Twilio {self.channel.value} is not configured", provider=PROVIDER
            )

    async def _create(self, resource: str, data: dict) -> str:
        """POST to Accounts/{sid}/{resource}.json and return the new sid."""
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        url = f"{self.api_base}/Accounts/{self.account_sid}/{resource}.json"
        async with self._client(auth=(self.account_sid, self.auth_token)) as client:
            response = await self._request(client, "POST", url, data=data)

        if response.status_code >= 400:
            try:
                body = response.json()
                detail = f"{body.get('code')} {body.get('message')}"
            except ValueError:
                detail = response.text[:200]
            raise_for_provider_status(response, PROVIDER, detail)

        return response.json()["sid"]


class TwilioSmsDispatcher(_TwilioDispatcher):
    channel = Channel.SMS

    async def send(self, address: str, content: NotificationContent) -> DispatchReceipt:
        self._require_config()
        to = validate_phone(address, PROVIDER)
        sid = await self._create(
            "Messages",
            {"To": to, "From": self.from_number, "Body": content.body[:SMS_MAX_BODY]},
        )
        return DispatchReceipt(provider=PROVIDER, provider_message_id=sid)


class TwilioWhatsAppDispatcher(_TwilioDispatcher):
    channel = Channel.WHATSAPP

    async def send(self, address: str, content: NotificationContent) -> DispatchReceipt:
        self._require_config()
        to = validate_phone(address, PROVIDER)
        from_number = validate_phone(self.from_number, PROVIDER)
        sid = await self._create(
            "Messages",
            {
                "To": f"whatsapp:{to}",
                "From": f"whatsapp:{from_number}",
                "Body": content.body,
            },
        )
        return DispatchReceipt(provider=PROVIDER, provider_message_id=sid)


def build_twiml(text: str) -> str:
    """Wrap a message in TwiML that reads it twice."""
    spoken = escape(" ".join(text.split()))
    return (
        "<Response>"
        f'<Say voice="alice">{spoken}</Say>'
        '<Pause length="1"/>'
        f'<Say voice="alice">{spoken}</Say>'
        "</Response>"
    )


class TwilioVoiceDispatcher(_TwilioDispatcher):
    channel = Channel.VOICE

    async def send(self, address: str, content: NotificationContent) -> DispatchReceipt:
        self._require_config()
        to = validate_phone(address, PROVIDER)
        data = {"To": to, "From": self.from_number, "Twiml": build_twiml(content.body)}
        if self.status_callback_url:
            data["StatusCallbackEvent"] = ["initiated", "ringing", "answered", "completed"]
        sid = await self._create("Calls", data)
        return DispatchReceipt(provider=PROVIDER, provider_message_id=sid)
