"""Tests for the delivery ledger join and its persistence."""

import asyncio
import itertools
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from tidewatch.core.errors import TransientProviderError
from tidewatch.models import Alert
from tidewatch.models.alert import AlertSeverity, AlertStatus
from tidewatch.models.contact import Channel
from tidewatch.models.delivery_attempt import DeliveryAttempt, DeliveryStatus
from tidewatch.services.channels.base import DispatchReceipt
from tidewatch.services.delivery_ledger import (
    CanonicalEvent,
    DeliveryLedger,
    EventKind,
    apply_event,
    join_status,
    status_rank,
    summarize,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


def event(kind: EventKind, seconds: int = 0, raw=None, **kwargs) -> CanonicalEvent:
    return CanonicalEvent(
        provider="twilio",
        channel=Channel.SMS,
        provider_message_id="SM123",
        kind=kind,
        timestamp=at(seconds),
        raw_event=raw or kind.value,
        **kwargs,
    )


def new_entry(status: DeliveryStatus = DeliveryStatus.QUEUED) -> DeliveryAttempt:
    return DeliveryAttempt(
        alert_id=uuid.uuid4(),
        contact_id=uuid.uuid4(),
        step_index=0,
        channel=Channel.SMS,
        address="+14155550100",
        status=status,
        provider="twilio",
        provider_message_id="SM123",
        delivery_metadata={},
    )


def snapshot(entry: DeliveryAttempt) -> tuple:
    return (
        entry.status,
        entry.sent_at,
        entry.delivered_at,
        entry.read_at,
        entry.failed_at,
        entry.error_message,
        entry.delivery_metadata,
    )


def replay(events) -> DeliveryAttempt:
    entry = new_entry()
    for e in events:
        apply_event(entry, e)
    return entry


class TestJoinStatus:
    def test_forward_moves_only(self):
        assert join_status(DeliveryStatus.QUEUED, DeliveryStatus.DELIVERED) == (
            DeliveryStatus.DELIVERED
        )
        assert join_status(DeliveryStatus.READ, DeliveryStatus.SENT) == (
            DeliveryStatus.READ
        )

    def test_failure_beats_forward_states(self):
        assert join_status(DeliveryStatus.READ, DeliveryStatus.BOUNCED) == (
            DeliveryStatus.BOUNCED
        )

    @pytest.mark.parametrize(
        "terminal",
        [DeliveryStatus.FAILED, DeliveryStatus.BOUNCED, DeliveryStatus.ACKNOWLEDGED],
    )
    def test_terminal_states_absorb(self, terminal):
        for target in DeliveryStatus:
            assert join_status(terminal, target) == terminal


class TestApplyEvent:
    def test_delivered_sent_delivered_out_of_order(self):
        """Out-of-order duplicate callbacks end where in-order ones do."""
        in_order = replay([event(EventKind.SENT, 1), event(EventKind.DELIVERED, 2)])
        shuffled = replay(
            [
                event(EventKind.DELIVERED, 2),
                event(EventKind.SENT, 1),
                event(EventKind.DELIVERED, 2),
            ]
        )

        assert snapshot(shuffled) == snapshot(in_order)
        assert shuffled.status == DeliveryStatus.DELIVERED
        assert shuffled.sent_at == at(1)
        assert shuffled.delivered_at == at(2)

    def test_status_never_regresses_in_any_order(self):
        events = [
            event(EventKind.QUEUED, 0),
            event(EventKind.SENT, 1),
            event(EventKind.DELIVERED, 2),
            event(EventKind.READ, 3),
            event(EventKind.FAILED, 4, error="30003: Unreachable"),
        ]
        finals = set()
        for order in itertools.permutations(events):
            entry = new_entry()
            rank = status_rank(entry.status)
            for e in order:
                apply_event(entry, e)
                assert status_rank(entry.status) >= rank
                rank = status_rank(entry.status)
            finals.add((entry.sent_at, entry.delivered_at, entry.read_at, entry.failed_at))
            assert entry.status == DeliveryStatus.FAILED

        # Timestamps keep the earliest value whatever the order
        assert finals == {(at(1), at(2), at(3), at(4))}

    def test_applying_twice_equals_once(self):
        events = [
            event(EventKind.SENT, 1),
            event(EventKind.READ, 5, metadata={"url": "https://tidewatch.test/a"}),
            event(EventKind.INFO, 6, raw="spamreport"),
            event(EventKind.UNKNOWN, 7, raw="processed_v2"),
            event(EventKind.QUEUED, 8, error="421 try again later"),
        ]
        for e in events:
            once = new_entry()
            apply_event(once, e)
            twice = new_entry()
            apply_event(twice, e)

            assert apply_event(twice, e) is False
            assert snapshot(twice) == snapshot(once)

    def test_read_implies_delivered_and_sent(self):
        entry = replay([event(EventKind.READ, 9)])

        assert entry.status == DeliveryStatus.READ
        assert entry.sent_at == entry.delivered_at == entry.read_at == at(9)

    def test_clicks_are_deduplicated(self):
        click = event(EventKind.READ, 3, raw="click", metadata={"url": "https://x.test"})
        entry = replay([click, click, event(EventKind.READ, 4, raw="open")])

        assert entry.delivery_metadata["clicks"] == [
            {"url": "https://x.test", "timestamp": at(3).isoformat()}
        ]

    def test_unknown_event_is_recorded_without_status_change(self):
        entry = new_entry(DeliveryStatus.SENT)

        changed = apply_event(entry, event(EventKind.UNKNOWN, 1, raw="teleported"))

        assert changed is True
        assert entry.status == DeliveryStatus.SENT
        assert entry.delivery_metadata["unrecognized_events"] == [
            {"event": "teleported", "timestamp": at(1).isoformat()}
        ]

    def test_info_event_keeps_earliest_timestamp(self):
        entry = replay(
            [
                event(EventKind.INFO, 8, raw="unsubscribe"),
                event(EventKind.INFO, 3, raw="unsubscribe"),
            ]
        )

        assert entry.delivery_metadata["unsubscribe"] == {
            "timestamp": at(3).isoformat()
        }
        assert entry.status == DeliveryStatus.QUEUED

    def test_deferral_records_reason_only(self):
        entry = replay([event(EventKind.QUEUED, 1, error="451 mailbox busy")])

        assert entry.status == DeliveryStatus.QUEUED
        assert entry.delivery_metadata["deferrals"] == [
            {"reason": "451 mailbox busy", "timestamp": at(1).isoformat()}
        ]

    def test_earliest_failure_report_wins(self):
        entry = replay(
            [
                event(EventKind.BOUNCED, 5, error="550 no such user"),
                event(EventKind.FAILED, 2, error="30003: Unreachable"),
            ]
        )

        assert entry.status == DeliveryStatus.FAILED
        assert entry.error_message == "30003: Unreachable"
        assert entry.failed_at == at(2)

    def test_competing_failures_converge_in_any_order(self):
        events = [
            event(EventKind.SENT, 1),
            event(EventKind.FAILED, 4, error="30008: Unknown error"),
            event(EventKind.BOUNCED, 4, error="550 no such user"),
            event(EventKind.FAILED, 4, error="30003: Unreachable"),
            event(EventKind.FAILED, 7, error="late duplicate"),
        ]

        finals = [snapshot(replay(order)) for order in itertools.permutations(events)]

        final = finals[0]
        assert all(f == final for f in finals)
        assert final[0] == DeliveryStatus.BOUNCED
        assert final[4] == at(4)
        assert final[5] == "550 no such user"

    def test_same_time_failures_keep_smallest_reason(self):
        first = replay(
            [
                event(EventKind.FAILED, 3, error="30008: Unknown error"),
                event(EventKind.FAILED, 3, error="30003: Unreachable"),
            ]
        )
        second = replay(
            [
                event(EventKind.FAILED, 3, error="30003: Unreachable"),
                event(EventKind.FAILED, 3, error="30008: Unknown error"),
            ]
        )

        assert snapshot(first) == snapshot(second)
        assert first.error_message == "30003: Unreachable"

    def test_failure_without_error_uses_raw_event(self):
        entry = replay([event(EventKind.FAILED, 1, raw="undelivered")])

        assert entry.error_message == "Provider reported undelivered"

    def test_acknowledged_entry_is_frozen(self):
        entry = new_entry(DeliveryStatus.ACKNOWLEDGED)

        for kind in EventKind:
            assert apply_event(entry, event(kind, 1)) is False

        assert entry.status == DeliveryStatus.ACKNOWLEDGED
        assert entry.sent_at is None
        assert entry.delivery_metadata == {}


class TestSummarize:
    def test_counts_every_status(self):
        entries = [
            new_entry(DeliveryStatus.SENT),
            new_entry(DeliveryStatus.SENT),
            new_entry(DeliveryStatus.FAILED),
        ]

        counts = summarize(entries)

        assert counts["sent"] == 2
        assert counts["failed"] == 1
        assert counts["acknowledged"] == 0
        assert set(counts) == {s.value for s in DeliveryStatus}


class TestRecordDispatch:
    def test_provider_id_is_set_once(self):
        entry = new_entry()
        entry.provider_message_id = None

        DeliveryLedger.record_dispatch(entry, DispatchReceipt("twilio", "SM1"))

        assert entry.provider_message_id == "SM1"
        with pytest.raises(ValueError):
            DeliveryLedger.record_dispatch(entry, DispatchReceipt("twilio", "SM2"))

    def test_record_failure(self):
        entry = new_entry()

        DeliveryLedger.record_failure(
            entry, TransientProviderError("timed out", provider="twilio"), at(3)
        )

        assert entry.status == DeliveryStatus.FAILED
        assert entry.failed_at == at(3)
        assert entry.error_message == "TransientProviderError: timed out"


# ── Persistence ──


async def seed_entry(db, make_contact, ledger, **overrides) -> DeliveryAttempt:
    contact = await make_contact()
    alert = Alert(
        event_type="tsunami_warning",
        severity=AlertSeverity.HIGH,
        message="Wave expected",
        target_contact_ids=[str(contact.id)],
        status=AlertStatus.SENT,
        expires_at=T0 + timedelta(hours=24),
    )
    db.add(alert)
    await db.flush()
    fields = {
        "alert_id": alert.id,
        "contact_id": contact.id,
        "step_index": 0,
        "channel": Channel.SMS,
        "address": contact.phone,
    }
    fields.update(overrides)
    entry = ledger.create_entry(db, **fields)
    ledger.record_dispatch(entry, DispatchReceipt("twilio", "SM123"))
    await db.commit()
    return entry


class TestDeliveryLedger:
    @pytest.mark.asyncio
    async def test_apply_updates_and_commits(
        self, db_session, session_maker, make_contact
    ):
        ledger = DeliveryLedger()
        entry = await seed_entry(db_session, make_contact, ledger)

        async with session_maker() as db:
            updated = await ledger.apply(db, event(EventKind.DELIVERED, 4))

        assert updated.id == entry.id
        async with session_maker() as db:
            stored = await ledger.find_by_provider_id(db, Channel.SMS, "SM123")
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.delivered_at == at(4)
        assert stored.sent_at == at(4)

    @pytest.mark.asyncio
    async def test_unknown_message_is_discarded(self, session_maker):
        ledger = DeliveryLedger()

        async with session_maker() as db:
            assert await ledger.apply(db, event(EventKind.DELIVERED, 4)) is None

    @pytest.mark.asyncio
    async def test_lookup_is_scoped_by_channel(
        self, db_session, session_maker, make_contact
    ):
        ledger = DeliveryLedger()
        await seed_entry(db_session, make_contact, ledger)
        whatsapp_event = CanonicalEvent(
            provider="twilio",
            channel=Channel.WHATSAPP,
            provider_message_id="SM123",
            kind=EventKind.READ,
            timestamp=at(1),
            raw_event="read",
        )

        async with session_maker() as db:
            assert await ledger.apply(db, whatsapp_event) is None

    @pytest.mark.asyncio
    async def test_acknowledged_entry_ignores_late_webhooks(
        self, db_session, session_maker, make_contact
    ):
        ledger = DeliveryLedger()
        entry = await seed_entry(db_session, make_contact, ledger)
        async with session_maker() as db:
            assert await ledger.acknowledge_entries(db, entry.alert_id, at(10)) == 1

        async with session_maker() as db:
            await ledger.apply(db, event(EventKind.FAILED, 20, error="late"))

        async with session_maker() as db:
            [stored] = await ledger.list_for_alert(db, entry.alert_id)
            assert await ledger.has_acknowledged_entry(db, entry.alert_id)
        assert stored.status == DeliveryStatus.ACKNOWLEDGED
        assert stored.acknowledged_at == at(10)
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_simultaneous_events_on_one_entry_both_land(
        self, db_session, session_maker, make_contact
    ):
        ledger = DeliveryLedger()
        entry = await seed_entry(db_session, make_contact, ledger)

        async def deliver(e: CanonicalEvent):
            async with session_maker() as db:
                return await ledger.apply(db, e)

        results = await asyncio.gather(
            deliver(event(EventKind.DELIVERED, 4)),
            deliver(event(EventKind.READ, 9)),
        )

        assert all(r is not None for r in results)
        async with session_maker() as db:
            [stored] = await ledger.list_for_alert(db, entry.alert_id)
        assert stored.status == DeliveryStatus.READ
        assert stored.sent_at == at(4)
        assert stored.delivered_at == at(4)
        assert stored.read_at == at(9)
