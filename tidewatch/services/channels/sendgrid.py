"""SendGrid email dispatcher.

Uses the v3 mail/send API. SendGrid answers 202 with the message id in the
X-Message-Id header; event webhooks report it as the prefix of
``sg_message_id``.
"""

from tidewatch.core.errors import ProviderUnconfiguredError, TransientProviderError
from tidewatch.models.contact import Channel
from tidewatch.services.channels.base import (
    ChannelDispatcher,
    DispatchReceipt,
    NotificationContent,
    raise_for_provider_status,
    validate_email,
)

PROVIDER = "sendgrid"


class SendGridEmailDispatcher(ChannelDispatcher):
    channel = Channel.EMAIL
    provider = PROVIDER

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        api_base: str = "https://api.sendgrid.com/v3",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.from_email = from_email
        self.api_base = api_base.rstrip("/")

    async def send(self, address: str, content: NotificationContent) -> DispatchReceipt:
        if not (self.api_key and self.from_email):
            raise ProviderUnconfiguredError(
                "SendGrid is not configured", provider=PROVIDER
            )
        to = validate_email(address, PROVIDER)

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": content.subject,
            "content": [{"type": "text/plain", "value": content.body}],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

        async with self._client(
            headers={"Authorization": f"Bearer {self.api_key}"}
        ) as client:
            response = await self._request(
                client, "POST", f"{self.api_base}/mail/send", json=payload
            )

        if response.status_code >= 400:
            try:
                errors = response.json().get("errors", [])
                detail = "; ".join(e.get("message", "") for e in errors) or "error"
            except ValueError:
                detail = response.text[:200]
            raise_for_provider_status(response, PROVIDER, detail)

        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            # Accepted without an id: nothing to correlate webhooks against
            raise TransientProviderError(
                "SendGrid accepted the message without X-Message-Id",
                provider=PROVIDER,
            )
        return DispatchReceipt(provider=PROVIDER, provider_message_id=message_id)
