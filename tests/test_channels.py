"""Tests for the Twilio and SendGrid channel dispatchers."""

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest

from tidewatch.config import Settings
from tidewatch.core.errors import (
    InvalidAddressError,
    ProviderUnconfiguredError,
    TransientProviderError,
)
from tidewatch.models.contact import Channel
from tidewatch.services.channels import (
    DispatcherRegistry,
    NotificationContent,
    SendGridEmailDispatcher,
    TwilioSmsDispatcher,
    TwilioVoiceDispatcher,
    TwilioWhatsAppDispatcher,
    build_dispatcher_registry,
)
from tidewatch.services.channels.base import normalize_phone, raise_for_provider_status
from tidewatch.services.channels.twilio import SMS_MAX_BODY, build_twiml

CONTENT = NotificationContent(
    subject="[CRITICAL] tsunami_warning - Pequod",
    body="CRITICAL ALERT - tsunami_warning\n\nMove to deep water",
)
CALLBACK = "https://tidewatch.test/api/webhooks/twilio"


class Recorder:
    """MockTransport handler that stores requests and replays one response."""

    def __init__(self, response: httpx.Response | None = None, error=None):
        self.response = response
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    @property
    def form(self) -> dict[str, list[str]]:
        return parse_qs(self.requests[-1].content.decode())


def twilio_ok(sid: str = "SM0123456789") -> Recorder:
    return Recorder(httpx.Response(201, json={"sid": sid, "status": "queued"}))


def twilio(cls, recorder, **kwargs):
    return cls(
        "AC123",
        "secret-token",
        kwargs.pop("from_number", "+14155550000"),
        transport=httpx.MockTransport(recorder),
        status_callback_url=CALLBACK,
        **kwargs,
    )


def sendgrid(recorder, **kwargs):
    return SendGridEmailDispatcher(
        kwargs.pop("api_key", "SG.key"),
        kwargs.pop("from_email", "alerts@tidewatch.test"),
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


# ── Twilio ──


class TestTwilioSms:
    @pytest.mark.asyncio
    async def test_send_returns_message_sid(self):
        recorder = twilio_ok("SMabc")
        dispatcher = twilio(TwilioSmsDispatcher, recorder)

        receipt = await dispatcher.send("+1 (415) 555-0100", CONTENT)

        assert receipt.provider == "twilio"
        assert receipt.provider_message_id == "SMabc"
        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == (
            "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        )
        expected_auth = base64.b64encode(b"AC123:secret-token").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"
        assert recorder.form == {
            "To": ["+14155550100"],
            "From": ["+14155550000"],
            "Body": [CONTENT.body],
            "StatusCallback": [CALLBACK],
        }

    @pytest.mark.asyncio
    async def test_long_body_is_truncated(self):
        recorder = twilio_ok()
        dispatcher = twilio(TwilioSmsDispatcher, recorder)

        await dispatcher.send(
            "+14155550100", NotificationContent(subject="", body="x" * 2000)
        )

        assert len(recorder.form["Body"][0]) == SMS_MAX_BODY

    @pytest.mark.asyncio
    async def test_invalid_number_makes_no_request(self):
        recorder = twilio_ok()
        dispatcher = twilio(TwilioSmsDispatcher, recorder)

        with pytest.raises(InvalidAddressError):
            await dispatcher.send("555-0100", CONTENT)

        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        dispatcher = TwilioSmsDispatcher("", "", "")

        with pytest.raises(ProviderUnconfiguredError):
            await dispatcher.send("+14155550100", CONTENT)

    @pytest.mark.parametrize(
        ("status_code", "error"),
        [
            (429, TransientProviderError),
            (503, TransientProviderError),
            (401, ProviderUnconfiguredError),
            (400, InvalidAddressError),
        ],
    )
    @pytest.mark.asyncio
    async def test_provider_errors_are_mapped(self, status_code, error):
        recorder = Recorder(
            httpx.Response(
                status_code, json={"code": 21211, "message": "Invalid 'To' Phone Number"}
            )
        )
        dispatcher = twilio(TwilioSmsDispatcher, recorder)

        with pytest.raises(error) as exc_info:
            await dispatcher.send("+14155550100", CONTENT)

        assert "21211" in str(exc_info.value)
        assert exc_info.value.provider == "twilio"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        recorder = Recorder(httpx.Response(502, text="Bad Gateway"))
        dispatcher = twilio(TwilioSmsDispatcher, recorder)

        with pytest.raises(TransientProviderError, match="Bad Gateway"):
            await dispatcher.send("+14155550100", CONTENT)

    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectError("connection refused"), httpx.ReadTimeout("too slow")],
    )
    @pytest.mark.asyncio
    async def test_transport_failures_are_transient(self, error):
        dispatcher = twilio(TwilioSmsDispatcher, Recorder(error=error))

        with pytest.raises(TransientProviderError):
            await dispatcher.send("+14155550100", CONTENT)


class TestTwilioWhatsApp:
    @pytest.mark.asyncio
    async def test_addresses_use_whatsapp_prefix(self):
        recorder = twilio_ok("SMwa")
        dispatcher = twilio(
            TwilioWhatsAppDispatcher, recorder, from_number="whatsapp:+14155550000"
        )

        receipt = await dispatcher.send("+14155550100", CONTENT)

        assert receipt.provider_message_id == "SMwa"
        assert recorder.form["To"] == ["whatsapp:+14155550100"]
        assert recorder.form["From"] == ["whatsapp:+14155550000"]


class TestTwilioVoice:
    @pytest.mark.asyncio
    async def test_call_reads_message(self):
        recorder = twilio_ok("CA42")
        dispatcher = twilio(TwilioVoiceDispatcher, recorder)

        receipt = await dispatcher.send(
            "+14155550100", NotificationContent(subject="", body="Waves < 3m & rising")
        )

        assert receipt.provider_message_id == "CA42"
        assert str(recorder.requests[0].url).endswith("/Accounts/AC123/Calls.json")
        twiml = recorder.form["Twiml"][0]
        assert twiml.count("Waves &lt; 3m &amp; rising") == 2
        assert recorder.form["StatusCallbackEvent"] == [
            "initiated",
            "ringing",
            "answered",
            "completed",
        ]

    def test_twiml_collapses_whitespace(self):
        assert "<Say voice=\"alice\">A B</Say>" in build_twiml("A\n\n  B")


# ── SendGrid ──


class TestSendGrid:
    @pytest.mark.asyncio
    async def test_send_returns_message_id_header(self):
        recorder = Recorder(
            httpx.Response(202, headers={"X-Message-Id": "14c5d75ce93"})
        )
        dispatcher = sendgrid(recorder)

        receipt = await dispatcher.send("captain@pequod.test", CONTENT)

        assert receipt.provider == "sendgrid"
        assert receipt.provider_message_id == "14c5d75ce93"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.sendgrid.com/v3/mail/send"
        assert request.headers["Authorization"] == "Bearer SG.key"
        payload = json.loads(request.content)
        assert payload["personalizations"] == [
            {"to": [{"email": "captain@pequod.test"}]}
        ]
        assert payload["subject"] == CONTENT.subject
        assert payload["content"][0]["value"] == CONTENT.body

    @pytest.mark.asyncio
    async def test_accepted_without_id_is_transient(self):
        dispatcher = sendgrid(Recorder(httpx.Response(202)))

        with pytest.raises(TransientProviderError, match="X-Message-Id"):
            await dispatcher.send("captain@pequod.test", CONTENT)

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        recorder = Recorder(
            httpx.Response(400, json={"errors": [{"message": "Invalid from email"}]})
        )
        dispatcher = sendgrid(recorder)

        with pytest.raises(InvalidAddressError, match="Invalid from email"):
            await dispatcher.send("captain@pequod.test", CONTENT)

    @pytest.mark.asyncio
    async def test_invalid_email(self):
        recorder = Recorder(httpx.Response(202, headers={"X-Message-Id": "x"}))
        dispatcher = sendgrid(recorder)

        with pytest.raises(InvalidAddressError):
            await dispatcher.send("not-an-email", CONTENT)
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        dispatcher = sendgrid(Recorder(), api_key="")

        with pytest.raises(ProviderUnconfiguredError):
            await dispatcher.send("captain@pequod.test", CONTENT)


# ── Helpers and registry ──


class TestHelpers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("+1 (415) 555-0100", "+14155550100"),
            ("whatsapp:+14155550100", "+14155550100"),
            (" +44 20 7946 0958 ", "+442079460958"),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_success_status_passes(self):
        raise_for_provider_status(httpx.Response(201), "twilio", "ok")


class TestDispatcherRegistry:
    def test_builds_every_channel_with_callbacks(self):
        registry = build_dispatcher_registry(
            Settings(webhook_base_url="https://hooks.tidewatch.test/")
        )

        assert registry.channels == frozenset(Channel)
        assert registry.get(Channel.SMS).status_callback_url == (
            "https://hooks.tidewatch.test/api/webhooks/twilio"
        )
        assert registry.get(Channel.WHATSAPP).status_callback_url == (
            "https://hooks.tidewatch.test/api/webhooks/whatsapp"
        )

    @pytest.mark.asyncio
    async def test_unregistered_channel(self):
        registry = DispatcherRegistry()

        with pytest.raises(ProviderUnconfiguredError):
            await registry.send("+14155550100", CONTENT, Channel.SMS)
