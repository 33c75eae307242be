"""Delivery ledger: canonical per-attempt delivery state.

Every provider callback is reduced to a CanonicalEvent and joined into the
ledger entry with ``apply_event``. The join is monotonic: status only moves
forward along queued -> sent -> delivered -> read, failed/bounced absorb,
and each lifecycle timestamp keeps the earliest time observed. Between
failure reports the earliest one decides status and error. Applying
the same events twice, or in any order, gives the same entry.

``acknowledged`` is never reached through a webhook. Only explicit
acknowledgment (``DeliveryLedger.acknowledge_entries``) sets it, and it
freezes the entry.
"""

import enum
import uuid
from collections import Counter
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.core.errors import DispatchError
from tidewatch.core.locks import KeyedLock
from tidewatch.logging_config import get_logger
from tidewatch.models.contact import Channel
from tidewatch.models.delivery_attempt import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    DeliveryAttempt,
    DeliveryStatus,
)
from tidewatch.services.channels.base import DispatchReceipt

logger = get_logger(__name__)


class EventKind(str, enum.Enum):
    """Provider-agnostic delivery event."""

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    BOUNCED = "bounced"
    # Recognized but status-neutral (spam report, unsubscribe...)
    INFO = "info"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CanonicalEvent:
    provider: str
    channel: Channel
    provider_message_id: str
    kind: EventKind
    timestamp: datetime
    raw_event: str
    error: str | None = None
    metadata: dict = field(default_factory=dict)


_FORWARD_RANK = {
    DeliveryStatus.QUEUED: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
    DeliveryStatus.ACKNOWLEDGED: 4,
}

_EVENT_TARGET = {
    EventKind.SENT: DeliveryStatus.SENT,
    EventKind.DELIVERED: DeliveryStatus.DELIVERED,
    EventKind.READ: DeliveryStatus.READ,
    EventKind.FAILED: DeliveryStatus.FAILED,
    EventKind.BOUNCED: DeliveryStatus.BOUNCED,
}


def status_rank(status: DeliveryStatus) -> int:
    """Position in the lifecycle; failed/bounced rank after everything."""
    return _FORWARD_RANK.get(status, len(_FORWARD_RANK))


def join_status(current: DeliveryStatus, target: DeliveryStatus) -> DeliveryStatus:
    if current in TERMINAL_STATUSES:
        return current
    if target in (DeliveryStatus.FAILED, DeliveryStatus.BOUNCED):
        return target
    if _FORWARD_RANK[target] > _FORWARD_RANK[current]:
        return target
    return current


def _earliest(current: datetime | None, candidate: datetime) -> datetime:
    if current is None or candidate < current:
        return candidate
    return current


_FAILURE_RANK = {DeliveryStatus.BOUNCED: 0, DeliveryStatus.FAILED: 1}


def _failure_key(
    failed_at: datetime, status: DeliveryStatus, error: str
) -> tuple[datetime, int, str]:
    """Order of failure reports; the smallest one is kept."""
    return failed_at, _FAILURE_RANK[status], error


def _append_unique(items: list, item: dict) -> list:
    return items if item in items else [*items, item]


def apply_event(entry: DeliveryAttempt, event: CanonicalEvent) -> bool:
    """Join a canonical event into a ledger entry in place.

    Returns:
        True if the entry changed.
    """
    if entry.status == DeliveryStatus.ACKNOWLEDGED:
        return False

    before = (
        entry.status,
        entry.sent_at,
        entry.delivered_at,
        entry.read_at,
        entry.failed_at,
        entry.error_message,
    )
    metadata = dict(entry.delivery_metadata or {})
    ts = event.timestamp
    stamp = ts.isoformat()

    if event.kind in (EventKind.SENT, EventKind.DELIVERED, EventKind.READ):
        # Providers coalesce or drop intermediate callbacks; a later stage
        # implies every earlier one happened no later than it did.
        entry.sent_at = _earliest(entry.sent_at, ts)
        if event.kind in (EventKind.DELIVERED, EventKind.READ):
            entry.delivered_at = _earliest(entry.delivered_at, ts)
        if event.kind == EventKind.READ:
            entry.read_at = _earliest(entry.read_at, ts)
            url = event.metadata.get("url")
            if url:
                metadata["clicks"] = _append_unique(
                    metadata.get("clicks", []), {"url": url, "timestamp": stamp}
                )

    elif event.kind in (EventKind.FAILED, EventKind.BOUNCED):
        # Earliest report wins; bounced before failed, then error text
        status = _EVENT_TARGET[event.kind]
        error = event.error or f"Provider reported {event.raw_event}"
        if (
            entry.status not in _FAILURE_RANK
            or entry.failed_at is None
            or _failure_key(ts, status, error)
            < _failure_key(entry.failed_at, entry.status, entry.error_message or "")
        ):
            entry.status = status
            entry.failed_at = ts
            entry.error_message = error

    elif event.kind == EventKind.QUEUED:
        if event.error:
            metadata["deferrals"] = _append_unique(
                metadata.get("deferrals", []),
                {"reason": event.error, "timestamp": stamp},
            )

    elif event.kind == EventKind.INFO:
        previous = metadata.get(event.raw_event, {}).get("timestamp")
        if previous is None or stamp < previous:
            metadata[event.raw_event] = {"timestamp": stamp}

    else:
        metadata["unrecognized_events"] = _append_unique(
            metadata.get("unrecognized_events", []),
            {"event": event.raw_event, "timestamp": stamp},
        )

    target = _EVENT_TARGET.get(event.kind)
    if target is not None:
        entry.status = join_status(entry.status, target)

    metadata_changed = metadata != (entry.delivery_metadata or {})
    if metadata_changed:
        entry.delivery_metadata = metadata

    after = (
        entry.status,
        entry.sent_at,
        entry.delivered_at,
        entry.read_at,
        entry.failed_at,
        entry.error_message,
    )
    return metadata_changed or after != before


def summarize(entries: list[DeliveryAttempt]) -> dict[str, int]:
    """Count entries per canonical status."""
    counts = Counter(entry.status.value for entry in entries)
    return {status.value: counts.get(status.value, 0) for status in DeliveryStatus}


class DeliveryLedger:
    """Reads and writes ledger rows.

    Mutations of one entry are serialized with a row lock plus an
    in-process lock keyed by (channel, provider message id); different
    entries never wait on each other.
    """

    def __init__(self, locks: KeyedLock | None = None):
        self._locks = locks or KeyedLock()

    async def find_by_provider_id(
        self,
        db: AsyncSession,
        channel: Channel,
        provider_message_id: str,
        *,
        for_update: bool = False,
    ) -> DeliveryAttempt | None:
        query = select(DeliveryAttempt).where(
            DeliveryAttempt.channel == channel,
            DeliveryAttempt.provider_message_id == provider_message_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def apply(
        self, db: AsyncSession, event: CanonicalEvent
    ) -> DeliveryAttempt | None:
        """Apply a canonical event to its entry and commit.

        Returns:
            The updated entry, or None if no entry matches. A missing entry
            is logged and discarded, never retried.
        """
        async with self._locks.hold((event.channel, event.provider_message_id)):
            entry = await self.find_by_provider_id(
                db, event.channel, event.provider_message_id, for_update=True
            )
            if entry is None:
                await db.rollback()
                logger.warning(
                    "Delivery entry not found for webhook event; discarded",
                    provider=event.provider,
                    channel=event.channel.value,
                    provider_message_id=event.provider_message_id,
                    event=event.raw_event,
                )
                return None

            previous = entry.status
            changed = apply_event(entry, event)
            if changed:
                await db.commit()
                logger.info(
                    "Delivery entry updated",
                    entry_id=str(entry.id),
                    channel=event.channel.value,
                    event=event.raw_event,
                    status_before=previous.value,
                    status_after=entry.status.value,
                )
            else:
                await db.rollback()
                logger.debug(
                    "Webhook event produced no change",
                    entry_id=str(entry.id),
                    event=event.raw_event,
                )
            return entry

    def create_entry(
        self,
        db: AsyncSession,
        *,
        alert_id: uuid.UUID,
        contact_id: uuid.UUID,
        step_index: int,
        channel: Channel,
        address: str,
    ) -> DeliveryAttempt:
        """Add a new queued entry to the session (caller commits)."""
        entry = DeliveryAttempt(
            alert_id=alert_id,
            contact_id=contact_id,
            step_index=step_index,
            channel=channel,
            address=address,
            status=DeliveryStatus.QUEUED,
            attempt_count=1,
            delivery_metadata={},
        )
        db.add(entry)
        return entry

    @staticmethod
    def record_dispatch(entry: DeliveryAttempt, receipt: DispatchReceipt) -> None:
        """Attach the provider's message id; it can be set only once."""
        if entry.provider_message_id is not None:
            raise ValueError(
                f"Delivery entry {entry.id} already has provider message id "
                f"{entry.provider_message_id}"
            )
        entry.provider = receipt.provider
        entry.provider_message_id = receipt.provider_message_id

    async def attach_receipt(
        self, db: AsyncSession, entry: DeliveryAttempt, receipt: DispatchReceipt
    ) -> None:
        """Record a provider receipt and commit it right away.

        Held under the entry's key so a callback arriving during the commit
        waits for the row instead of missing it.
        """
        async with self._locks.hold((entry.channel, receipt.provider_message_id)):
            self.record_dispatch(entry, receipt)
            await db.commit()

    @staticmethod
    def record_failure(
        entry: DeliveryAttempt, error: DispatchError, now: datetime
    ) -> None:
        entry.provider = error.provider or entry.provider
        entry.status = DeliveryStatus.FAILED
        entry.failed_at = now
        entry.error_message = f"{type(error).__name__}: {error}"

    async def list_for_alert(
        self,
        db: AsyncSession,
        alert_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> list[DeliveryAttempt]:
        query = (
            select(DeliveryAttempt)
            .where(DeliveryAttempt.alert_id == alert_id)
            .order_by(DeliveryAttempt.step_index, DeliveryAttempt.created_at)
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return list(result.scalars().all())

    async def has_acknowledged_entry(
        self, db: AsyncSession, alert_id: uuid.UUID
    ) -> bool:
        result = await db.execute(
            select(DeliveryAttempt.id)
            .where(
                DeliveryAttempt.alert_id == alert_id,
                DeliveryAttempt.status == DeliveryStatus.ACKNOWLEDGED,
            )
            .limit(1)
        )
        return result.first() is not None

    async def acknowledge_entries(
        self,
        db: AsyncSession,
        alert_id: uuid.UUID,
        now: datetime,
        contact_id: uuid.UUID | None = None,
    ) -> int:
        """Mark entries acknowledged and commit the session.

        Every open entry of the alert is closed. Entries of the
        acknowledging contact are frozen as acknowledged whatever their
        status. The per-entry locks are held while the rows are re-read so
        a concurrent webhook cannot overwrite the acknowledgment.

        Returns:
            Number of entries changed.
        """
        result = await db.execute(
            select(DeliveryAttempt.channel, DeliveryAttempt.provider_message_id).where(
                DeliveryAttempt.alert_id == alert_id,
                DeliveryAttempt.provider_message_id.is_not(None),
            )
        )
        keys = sorted(
            ((channel, message_id) for channel, message_id in result.all()),
            key=lambda key: (key[0].value, key[1]),
        )

        changed = 0
        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self._locks.hold(key))

            entries = await db.execute(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.alert_id == alert_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            for entry in entries.scalars().all():
                if entry.status == DeliveryStatus.ACKNOWLEDGED:
                    continue
                own = contact_id is not None and entry.contact_id == contact_id
                if own or entry.status in OPEN_STATUSES:
                    entry.status = DeliveryStatus.ACKNOWLEDGED
                    entry.acknowledged_at = now
                    changed += 1
            await db.commit()
        return changed
