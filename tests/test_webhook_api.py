"""Tests for the provider webhook endpoints."""

import base64
import json

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from tidewatch.config import Settings
from tidewatch.core.dependencies import get_webhook_normalizers
from tidewatch.main import app
from tidewatch.models.alert import AlertSeverity
from tidewatch.models.contact import Channel
from tidewatch.routers.webhooks import public_url
from tidewatch.schemas.alert import AlertCreate
from tidewatch.services.webhooks import build_normalizers
from tidewatch.services.webhooks.twilio import SIGNATURE_HEADER, compute_signature

TWILIO_PATH = "/api/webhooks/twilio"
WHATSAPP_PATH = "/api/webhooks/whatsapp"
SENDGRID_PATH = "/api/webhooks/sendgrid"


@pytest.fixture
def start_alert(engine, make_contact, make_policy):
    """Create an alert whose first step dispatches on the given channels."""

    async def _start(channels=("sms",), **contact_fields):
        contact = await make_contact(**contact_fields)
        await make_policy([{"channels": list(channels), "timeout_minutes": 5}])
        return await engine.create_alert(
            AlertCreate(
                event_type="tsunami_warning",
                severity=AlertSeverity.HIGH,
                message="Wave expected within 40 minutes",
                target_contact_ids=[contact.id],
            )
        )

    return _start


async def provider_id(ledger_entries, alert_id, channel: Channel) -> str:
    entries = await ledger_entries(alert_id)
    return next(e.provider_message_id for e in entries if e.channel == channel)


class TestTwilioWebhook:
    @pytest.mark.asyncio
    async def test_status_callback_updates_ledger(
        self, client, start_alert, ledger_entries
    ):
        alert = await start_alert()
        sid = await provider_id(ledger_entries, alert.id, Channel.SMS)

        response = await client.post(
            TWILIO_PATH, data={"MessageSid": sid, "MessageStatus": "delivered"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": 1, "applied": 1, "discarded": 0}
        status_view = await client.get(f"/api/alerts/{alert.id}/delivery-status")
        [attempt] = status_view.json()["attempts"]
        assert attempt["status"] == "delivered"
        assert attempt["delivered_at"] is not None

    @pytest.mark.asyncio
    async def test_late_sent_does_not_regress_delivered(
        self, client, start_alert, ledger_entries
    ):
        alert = await start_alert()
        sid = await provider_id(ledger_entries, alert.id, Channel.SMS)

        for status in ("delivered", "sent", "delivered"):
            await client.post(
                TWILIO_PATH, data={"MessageSid": sid, "MessageStatus": status}
            )

        [entry] = await ledger_entries(alert.id)
        assert entry.status.value == "delivered"

    @pytest.mark.asyncio
    async def test_failure_is_reported_in_delivery_status(
        self, client, start_alert, ledger_entries
    ):
        alert = await start_alert()
        sid = await provider_id(ledger_entries, alert.id, Channel.SMS)

        await client.post(
            TWILIO_PATH,
            data={
                "MessageSid": sid,
                "MessageStatus": "undelivered",
                "ErrorCode": "30003",
                "ErrorMessage": "Unreachable destination handset",
            },
        )

        body = (await client.get(f"/api/alerts/{alert.id}/delivery-status")).json()
        assert body["counts"]["failed"] == 1
        assert body["failures"][0]["error_message"] == (
            "30003: Unreachable destination handset"
        )

    @pytest.mark.asyncio
    async def test_unknown_message_is_discarded(self, client):
        response = await client.post(
            TWILIO_PATH, data={"MessageSid": "SMnope", "MessageStatus": "delivered"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": 1, "applied": 0, "discarded": 1}

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client):
        response = await client.post(TWILIO_PATH, data={"AccountSid": "AC1"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_whatsapp_endpoint(self, client, start_alert, ledger_entries):
        alert = await start_alert(channels=("whatsapp",), whatsapp="+14155550100")
        sid = await provider_id(ledger_entries, alert.id, Channel.WHATSAPP)

        response = await client.post(
            WHATSAPP_PATH, data={"MessageSid": sid, "MessageStatus": "read"}
        )

        assert response.json()["applied"] == 1
        [entry] = await ledger_entries(alert.id)
        assert entry.status.value == "read"


class TestTwilioWebhookSignature:
    @pytest.fixture
    def signed(self, engine):
        normalizers = build_normalizers(
            Settings(twilio_auth_token="tw-token", sendgrid_webhook_public_key=""),
            engine.ledger,
        )
        app.dependency_overrides[get_webhook_normalizers] = lambda: normalizers
        return normalizers

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, client, signed):
        response = await client.post(
            TWILIO_PATH, data={"MessageSid": "SM1", "MessageStatus": "sent"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_signature_is_accepted(self, client, signed):
        params = {"MessageSid": "SM1", "MessageStatus": "sent"}
        signature = compute_signature("tw-token", public_url(TWILIO_PATH), params)

        response = await client.post(
            TWILIO_PATH, data=params, headers={SIGNATURE_HEADER: signature}
        )

        assert response.status_code == 200
        assert response.json()["discarded"] == 1

    @pytest.mark.asyncio
    async def test_signature_for_other_endpoint_is_rejected(self, client, signed):
        params = {"MessageSid": "SM1", "MessageStatus": "sent"}
        signature = compute_signature("tw-token", public_url(TWILIO_PATH), params)

        response = await client.post(
            WHATSAPP_PATH, data=params, headers={SIGNATURE_HEADER: signature}
        )

        assert response.status_code == 401


class TestSendGridWebhook:
    @pytest.mark.asyncio
    async def test_events_update_ledger(self, client, start_alert, ledger_entries):
        alert = await start_alert(channels=("email",), email="ishmael@pequod.test")
        message_id = await provider_id(ledger_entries, alert.id, Channel.EMAIL)
        events = [
            {"sg_message_id": f"{message_id}.filter0001.1", "event": "delivered"},
            {"sg_message_id": f"{message_id}.filter0001.1", "event": "open"},
            {"sg_message_id": "other.filter0001.1", "event": "open"},
        ]

        response = await client.post(SENDGRID_PATH, content=json.dumps(events))

        assert response.json() == {"received": 3, "applied": 2, "discarded": 1}
        [entry] = await ledger_entries(alert.id)
        assert entry.status.value == "read"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        response = await client.post(SENDGRID_PATH, content=b"{not json")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_signed_request(self, client, engine):
        key = ec.generate_private_key(ec.SECP256R1())
        public_key = base64.b64encode(
            key.public_key().public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        ).decode()
        app.dependency_overrides[get_webhook_normalizers] = lambda: build_normalizers(
            Settings(twilio_auth_token="", sendgrid_webhook_public_key=public_key),
            engine.ledger,
        )
        body = b'[{"sg_message_id":"abc.1","event":"delivered"}]'
        timestamp = "1767268800"
        signature = base64.b64encode(
            key.sign(timestamp.encode() + body, ec.ECDSA(hashes.SHA256()))
        ).decode()

        unsigned = await client.post(SENDGRID_PATH, content=body)
        signed = await client.post(
            SENDGRID_PATH,
            content=body,
            headers={
                "X-Twilio-Email-Event-Webhook-Signature": signature,
                "X-Twilio-Email-Event-Webhook-Timestamp": timestamp,
            },
        )

        assert unsigned.status_code == 401
        assert signed.status_code == 200
