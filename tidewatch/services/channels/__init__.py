"""Outbound channel dispatchers."""

from tidewatch.config import Settings
from tidewatch.services.channels.base import (
    ChannelDispatcher,
    DispatcherRegistry,
    DispatchReceipt,
    NotificationContent,
)
from tidewatch.services.channels.sendgrid import SendGridEmailDispatcher
from tidewatch.services.channels.twilio import (
    TwilioSmsDispatcher,
    TwilioVoiceDispatcher,
    TwilioWhatsAppDispatcher,
)


def build_dispatcher_registry(config: Settings) -> DispatcherRegistry:
    """Create one dispatcher per channel from application settings.

    Dispatchers are registered even without credentials; they raise
    ProviderUnconfiguredError at send time so the ledger records why.
    """
    base = config.webhook_base_url.rstrip("/")
    twilio_kwargs = {
        "api_base": config.twilio_api_base,
        "timeout": config.dispatch_timeout_seconds,
    }

    return DispatcherRegistry(
        [
            TwilioSmsDispatcher(
                config.twilio_account_sid,
                config.twilio_auth_token,
                config.twilio_from_number,
                status_callback_url=f"{base}/api/webhooks/twilio",
                **twilio_kwargs,
            ),
            TwilioVoiceDispatcher(
                config.twilio_account_sid,
                config.twilio_auth_token,
                config.twilio_from_number,
                status_callback_url=f"{base}/api/webhooks/twilio",
                **twilio_kwargs,
            ),
            TwilioWhatsAppDispatcher(
                config.twilio_account_sid,
                config.twilio_auth_token,
                config.twilio_whatsapp_from or config.twilio_from_number,
                status_callback_url=f"{base}/api/webhooks/whatsapp",
                **twilio_kwargs,
            ),
            SendGridEmailDispatcher(
                config.sendgrid_api_key,
                config.sendgrid_from_email,
                api_base=config.sendgrid_api_base,
                timeout=config.dispatch_timeout_seconds,
            ),
        ]
    )


__all__ = [
    "ChannelDispatcher",
    "DispatchReceipt",
    "DispatcherRegistry",
    "NotificationContent",
    "SendGridEmailDispatcher",
    "TwilioSmsDispatcher",
    "TwilioVoiceDispatcher",
    "TwilioWhatsAppDispatcher",
    "build_dispatcher_registry",
]
