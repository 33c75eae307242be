"""Alert escalation engine.

Drives an alert through its escalation policy:

    not_started -> step_active(0) -> ... -> step_active(n) -> exhausted

with a jump to acknowledged from any active step.

Each step dispatches to the contact x channel pairs it selects, records a
ledger entry per dispatch and arms a one-shot timer. When the timer fires
the alert is re-read under a lock; it advances only if it is still active
at that step and nobody has acknowledged it.

Step planning (who gets what over which channel) is a pure function shared
by live execution and the dry-run preview.
"""

import asyncio
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tidewatch.core.errors import (
    AlertClosedError,
    AlertNotFoundError,
    ContactNotTargetedError,
    DispatchError,
    PolicyConfigurationError,
    PolicyResolutionError,
    TransientProviderError,
)
from tidewatch.core.locks import KeyedLock
from tidewatch.logging_config import get_logger
from tidewatch.models.alert import Alert, AlertSeverity, AlertStatus, EscalationState
from tidewatch.models.base import utcnow
from tidewatch.models.contact import Channel, Contact
from tidewatch.models.delivery_attempt import DeliveryAttempt
from tidewatch.models.escalation_policy import EscalationPolicy, PolicyStep
from tidewatch.schemas.alert import AlertCreate
from tidewatch.services.channels.base import (
    DispatcherRegistry,
    DispatchReceipt,
    NotificationContent,
)
from tidewatch.services.delivery_ledger import DeliveryLedger
from tidewatch.services.notifications import build_step_message
from tidewatch.services.step_timer import StepTimer

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlannedDispatch:
    contact_id: uuid.UUID
    contact_name: str
    channel: Channel
    address: str


@dataclass(frozen=True)
class SkippedChannel:
    contact_id: uuid.UUID
    contact_name: str
    channel: Channel
    reason: str


@dataclass(frozen=True)
class StepPlan:
    step: PolicyStep
    contact_ids: tuple[uuid.UUID, ...]
    dispatches: tuple[PlannedDispatch, ...]
    skipped: tuple[SkippedChannel, ...]

    @property
    def degenerate(self) -> bool:
        return not self.dispatches


@dataclass(frozen=True)
class StepPreview:
    plan: StepPlan
    starts_after_minutes: float


@dataclass
class EscalationPreview:
    policy_id: uuid.UUID
    policy_name: str
    steps: list[StepPreview] = field(default_factory=list)

    @property
    def total_minutes(self) -> float:
        return sum(s.plan.step.timeout_minutes for s in self.steps)


# ============================================================================
# Pure decision functions
# ============================================================================


def policy_matches(
    policy: EscalationPolicy, event_type: str, severity: AlertSeverity
) -> bool:
    """Empty event-type or severity sets match anything."""
    event_types = {t.lower() for t in policy.event_types or []}
    severities = {s.lower() for s in policy.severity_levels or []}
    if event_types and event_type.lower() not in event_types:
        return False
    if severities and severity.value not in severities:
        return False
    return True


def resolve_policy(
    event_type: str,
    severity: AlertSeverity,
    policies: Iterable[EscalationPolicy],
) -> EscalationPolicy:
    """Pick the policy for an alert.

    Only active policies with at least one step are considered. An explicit
    event type beats a wildcard, then an explicit severity beats a wildcard;
    among equally specific policies the newest wins.

    Raises:
        PolicyResolutionError: No policy matches.
    """
    candidates = [
        p
        for p in policies
        if p.active and p.steps and policy_matches(p, event_type, severity)
    ]
    if not candidates:
        raise PolicyResolutionError(
            f"No active escalation policy matches event type {event_type!r} "
            f"with severity {severity.value!r}"
        )
    candidates.sort(
        key=lambda p: (bool(p.event_types), bool(p.severity_levels), p.created_at),
        reverse=True,
    )
    return candidates[0]


def ensure_assignable(
    policy: EscalationPolicy | None, policy_id: uuid.UUID
) -> list[PolicyStep]:
    """Validate an explicitly requested policy and return its steps.

    Raises:
        PolicyConfigurationError: Missing, inactive, or without steps.
    """
    if policy is None:
        raise PolicyConfigurationError(f"Escalation policy {policy_id} not found")
    if not policy.active:
        raise PolicyConfigurationError(f"Escalation policy {policy.name!r} is inactive")
    steps = policy.parsed_steps()
    if not steps:
        raise PolicyConfigurationError(f"Escalation policy {policy.name!r} has no steps")
    return steps


def select_step_contacts(step: PolicyStep, contacts: Iterable[Contact]) -> list[Contact]:
    """Active contacts matching the step's roles and priority ceiling.

    Ordered by ascending priority number, then name.
    """
    selected = [
        c
        for c in contacts
        if c.active
        and (not step.contact_roles or (c.role or "").lower() in step.contact_roles)
        and (step.max_priority is None or c.priority <= step.max_priority)
    ]
    return sorted(selected, key=lambda c: (c.priority, c.name))


def channel_order(contact: Contact, step: PolicyStep) -> list[Channel]:
    """The step's channels, the contact's preferred ones first."""
    preferred = []
    for raw in contact.notification_channels or []:
        try:
            channel = Channel(str(raw).lower())
        except ValueError:
            continue
        if channel in step.channels and channel not in preferred:
            preferred.append(channel)
    return preferred + [c for c in step.channels if c not in preferred]


def plan_step(step: PolicyStep, contacts: Iterable[Contact]) -> StepPlan:
    """Decide every dispatch of a step without side effects."""
    selected = select_step_contacts(step, contacts)
    dispatches = []
    skipped = []
    for contact in selected:
        for channel in channel_order(contact, step):
            address = contact.address_for(channel)
            if address:
                dispatches.append(
                    PlannedDispatch(contact.id, contact.name, channel, address)
                )
            else:
                skipped.append(
                    SkippedChannel(
                        contact.id,
                        contact.name,
                        channel,
                        f"no {channel.value} address",
                    )
                )
    return StepPlan(
        step=step,
        contact_ids=tuple(c.id for c in selected),
        dispatches=tuple(dispatches),
        skipped=tuple(skipped),
    )


def preview_policy(
    policy: EscalationPolicy, contacts: Iterable[Contact]
) -> EscalationPreview:
    """Dry run of every step of a policy; nothing is sent or written."""
    contacts = list(contacts)
    preview = EscalationPreview(policy_id=policy.id, policy_name=policy.name)
    elapsed = 0.0
    for step in policy.parsed_steps():
        preview.steps.append(
            StepPreview(plan=plan_step(step, contacts), starts_after_minutes=elapsed)
        )
        elapsed += step.timeout_minutes
    return preview


# ============================================================================
# Queries
# ============================================================================


async def get_active_policies(db: AsyncSession) -> list[EscalationPolicy]:
    result = await db.execute(
        select(EscalationPolicy).where(EscalationPolicy.active.is_(True))
    )
    return list(result.scalars().all())


async def get_contacts(db: AsyncSession, contact_ids: Iterable) -> list[Contact]:
    ids = [uuid.UUID(str(cid)) for cid in contact_ids]
    if not ids:
        return []
    result = await db.execute(select(Contact).where(Contact.id.in_(ids)))
    return list(result.scalars().all())


# ============================================================================
# Engine
# ============================================================================


class EscalationEngine:
    """Runs escalation policies against alerts.

    Every public method opens its own session, so the engine is safe to call
    from request handlers and from timer callbacks alike. Work on one alert
    is serialized by a per-alert lock plus a row lock.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        dispatchers: DispatcherRegistry,
        timer: StepTimer,
        *,
        ledger: DeliveryLedger | None = None,
        clock: Callable[[], datetime] = utcnow,
        public_base_url: str = "",
        dispatch_timeout: float = 5.0,
        default_expiry_hours: int = 24,
    ):
        self.session_maker = session_maker
        self.dispatchers = dispatchers
        self.timer = timer
        self.ledger = ledger or DeliveryLedger()
        self.clock = clock
        self.public_base_url = public_base_url
        self.dispatch_timeout = dispatch_timeout
        self.default_expiry_hours = default_expiry_hours
        self._alert_locks = KeyedLock()

    async def _load_alert(
        self, db: AsyncSession, alert_id: uuid.UUID, *, for_update: bool = True
    ) -> Alert:
        query = select(Alert).where(Alert.id == alert_id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        alert = result.scalar_one_or_none()
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    async def get_alert(self, alert_id: uuid.UUID) -> Alert:
        async with self.session_maker() as db:
            return await self._load_alert(db, alert_id, for_update=False)

    async def create_alert(self, data: AlertCreate) -> Alert:
        """Persist an alert, assign its policy and start step 0.

        Raises:
            PolicyConfigurationError: The requested policy cannot be
                assigned; nothing is persisted.
            PolicyResolutionError: No policy matches; the alert is kept as
                ``pending`` with ``escalation_error`` set.
        """
        now = self.clock()
        async with self.session_maker() as db:
            if data.escalation_policy_id is not None:
                policy = await db.get(EscalationPolicy, data.escalation_policy_id)
                ensure_assignable(policy, data.escalation_policy_id)
                resolution_error = None
            else:
                try:
                    policy = resolve_policy(
                        data.event_type, data.severity, await get_active_policies(db)
                    )
                    resolution_error = None
                except PolicyResolutionError as e:
                    policy = None
                    resolution_error = e

            alert = Alert(
                event_type=data.event_type,
                event_id=data.event_id,
                severity=data.severity,
                message=data.message,
                recommendation=data.recommendation,
                vessel_id=data.vessel_id,
                vessel_name=data.vessel_name,
                target_contact_ids=[str(cid) for cid in data.target_contact_ids],
                distance_km=data.distance_km,
                wave_height_m=data.wave_height_m,
                tsunami_eta_minutes=data.tsunami_eta_minutes,
                status=AlertStatus.PENDING,
                escalation_state=EscalationState.NOT_STARTED,
                escalation_started=False,
                escalation_step=0,
                escalation_policy_id=policy.id if policy else None,
                escalation_error=str(resolution_error) if resolution_error else None,
                created_at=now,
                expires_at=data.expires_at
                or now + timedelta(hours=self.default_expiry_hours),
            )
            db.add(alert)
            await db.commit()
            alert_id = alert.id

        if resolution_error is not None:
            logger.warning(
                "Alert left pending: no escalation policy",
                alert_id=str(alert_id),
                event_type=data.event_type,
                severity=data.severity.value,
            )
            resolution_error.alert_id = alert_id
            raise resolution_error

        logger.info(
            "Alert created",
            alert_id=str(alert_id),
            policy_id=str(policy.id),
            event_type=data.event_type,
            severity=data.severity.value,
        )
        await self.start_escalation(alert_id)
        return await self.get_alert(alert_id)

    async def start_escalation(self, alert_id: uuid.UUID) -> None:
        """not_started -> step_active(0). A no-op once started."""
        async with self._alert_locks.hold(alert_id):
            async with self.session_maker() as db:
                alert = await self._load_alert(db, alert_id)
                if alert.escalation_started or alert.is_closed:
                    await db.rollback()
                    return
                if alert.escalation_policy_id is None:
                    raise PolicyResolutionError(
                        f"Alert {alert_id} has no escalation policy", alert_id=alert_id
                    )

                policy = await db.get(EscalationPolicy, alert.escalation_policy_id)
                steps = ensure_assignable(policy, alert.escalation_policy_id)
                contacts = await get_contacts(db, alert.target_contact_ids)

                alert.escalation_started = True
                alert.escalation_error = None
                alert.status = AlertStatus.SENT
                alert.sent_at = self.clock()
                await self._run_step(db, alert, steps[0], contacts)

    async def _dispatch(
        self, planned: PlannedDispatch, content: NotificationContent
    ) -> DispatchReceipt | DispatchError:
        try:
            return await asyncio.wait_for(
                self.dispatchers.send(planned.address, content, planned.channel),
                timeout=self.dispatch_timeout,
            )
        except TimeoutError:
            return TransientProviderError(
                f"Dispatch timed out after {self.dispatch_timeout:g}s"
            )
        except DispatchError as e:
            return e
        except Exception as e:
            logger.exception(
                "Unexpected dispatcher error",
                channel=planned.channel.value,
                contact_id=str(planned.contact_id),
            )
            return DispatchError(f"Unexpected dispatcher error: {e}")

    async def _run_step(
        self,
        db: AsyncSession,
        alert: Alert,
        step: PolicyStep,
        contacts: list[Contact],
    ) -> None:
        """Enter ``step``: write queued entries, arm the timer, dispatch.

        Caller holds the alert lock. Entries are committed before the
        concurrent send phase; no send task touches the session. Each result
        is committed as soon as its send returns, so a status callback for a
        fast channel finds its entry while slower sends are still running.
        """
        now = self.clock()
        plan = plan_step(step, contacts)
        content = build_step_message(alert, step, self.public_base_url)

        entries = [
            self.ledger.create_entry(
                db,
                alert_id=alert.id,
                contact_id=planned.contact_id,
                step_index=step.index,
                channel=planned.channel,
                address=planned.address,
            )
            for planned in plan.dispatches
        ]
        alert.escalation_state = EscalationState.STEP_ACTIVE
        alert.escalation_step = step.index
        alert.last_escalation_at = now
        alert.step_deadline = now + timedelta(minutes=step.timeout_minutes)
        await db.commit()

        self.timer.schedule(alert.id, step.index, alert.step_deadline, self.on_step_timeout)

        for skipped in plan.skipped:
            logger.info(
                "Channel skipped",
                alert_id=str(alert.id),
                step=step.index,
                contact_id=str(skipped.contact_id),
                channel=skipped.channel.value,
                reason=skipped.reason,
            )

        async def send(
            entry: DeliveryAttempt, planned: PlannedDispatch
        ) -> tuple[DeliveryAttempt, DispatchReceipt | DispatchError]:
            return entry, await self._dispatch(planned, content)

        sent = 0
        for finished in asyncio.as_completed(
            [
                send(entry, planned)
                for entry, planned in zip(entries, plan.dispatches, strict=True)
            ]
        ):
            entry, result = await finished
            if isinstance(result, DispatchReceipt):
                await self.ledger.attach_receipt(db, entry, result)
                sent += 1
            else:
                self.ledger.record_failure(entry, result, self.clock())
                await db.commit()
                logger.warning(
                    "Dispatch failed",
                    alert_id=str(alert.id),
                    step=step.index,
                    contact_id=str(entry.contact_id),
                    channel=entry.channel.value,
                    error=str(result),
                    retryable=result.retryable,
                )

        if sent == 0:
            logger.warning(
                "Degenerate escalation step: nothing dispatched",
                alert_id=str(alert.id),
                step=step.index,
                contacts=len(plan.contact_ids),
                failed=len(entries),
            )
        logger.info(
            "Escalation step dispatched",
            alert_id=str(alert.id),
            step=step.index,
            contacts=len(plan.contact_ids),
            dispatched=sent,
            failed=len(entries) - sent,
            deadline=alert.step_deadline.isoformat(),
        )

    async def on_step_timeout(self, alert_id: uuid.UUID, step_index: int) -> None:
        """Timer callback: advance, exhaust, or do nothing if stale."""
        async with self._alert_locks.hold(alert_id):
            async with self.session_maker() as db:
                try:
                    alert = await self._load_alert(db, alert_id)
                except AlertNotFoundError:
                    logger.warning(
                        "Step timer fired for unknown alert", alert_id=str(alert_id)
                    )
                    return

                if (
                    alert.status != AlertStatus.SENT
                    or alert.escalation_state != EscalationState.STEP_ACTIVE
                    or alert.escalation_step != step_index
                ):
                    await db.rollback()
                    logger.debug(
                        "Stale step timer ignored",
                        alert_id=str(alert_id),
                        step=step_index,
                        status=alert.status.value,
                        state=alert.escalation_state.value,
                        current_step=alert.escalation_step,
                    )
                    return

                now = self.clock()
                if await self.ledger.has_acknowledged_entry(db, alert.id):
                    alert.status = AlertStatus.ACKNOWLEDGED
                    alert.escalation_state = EscalationState.ACKNOWLEDGED
                    alert.acknowledged_at = alert.acknowledged_at or now
                    alert.step_deadline = None
                    await db.commit()
                    logger.info(
                        "Escalation stopped: delivery acknowledged",
                        alert_id=str(alert_id),
                        step=step_index,
                    )
                    return

                if alert.expires_at <= now:
                    self._expire(alert)
                    await db.commit()
                    return

                policy = await db.get(EscalationPolicy, alert.escalation_policy_id)
                steps = policy.parsed_steps() if policy else []
                next_index = step_index + 1
                if next_index >= len(steps):
                    alert.escalation_state = EscalationState.EXHAUSTED
                    alert.step_deadline = None
                    await db.commit()
                    logger.warning(
                        "Escalation exhausted without acknowledgment",
                        alert_id=str(alert_id),
                        steps=len(steps),
                    )
                    return

                logger.info(
                    "Escalating to next step",
                    alert_id=str(alert_id),
                    from_step=step_index,
                    to_step=next_index,
                )
                contacts = await get_contacts(db, alert.target_contact_ids)
                await self._run_step(db, alert, steps[next_index], contacts)

    async def acknowledge(
        self,
        alert_id: uuid.UUID,
        *,
        contact_id: uuid.UUID | None = None,
        acknowledged_by: str | None = None,
        notes: str | None = None,
    ) -> Alert:
        """Acknowledge an alert and stop its escalation.

        Every open ledger entry of the alert becomes acknowledged; with a
        ``contact_id`` all of that contact's entries are frozen too.
        Acknowledging twice returns the alert unchanged.

        Raises:
            AlertNotFoundError: Unknown alert.
            AlertClosedError: The alert was resolved or expired.
            ContactNotTargetedError: ``contact_id`` is not a target of the
                alert.
        """
        async with self._alert_locks.hold(alert_id):
            async with self.session_maker() as db:
                alert = await self._load_alert(db, alert_id)
                if contact_id is not None and str(contact_id) not in (
                    alert.target_contact_ids or []
                ):
                    await db.rollback()
                    raise ContactNotTargetedError(
                        f"Contact {contact_id} is not a target of alert {alert_id}"
                    )
                if alert.status == AlertStatus.ACKNOWLEDGED:
                    await db.rollback()
                    return alert
                if alert.status in (AlertStatus.RESOLVED, AlertStatus.EXPIRED):
                    raise AlertClosedError(
                        f"Alert {alert_id} is already {alert.status.value}"
                    )

                now = self.clock()
                alert.status = AlertStatus.ACKNOWLEDGED
                alert.escalation_state = EscalationState.ACKNOWLEDGED
                alert.acknowledged_at = now
                alert.acknowledged_by = acknowledged_by or (
                    f"contact:{contact_id}" if contact_id else None
                )
                alert.acknowledgment_notes = notes
                alert.step_deadline = None
                changed = await self.ledger.acknowledge_entries(
                    db, alert.id, now, contact_id=contact_id
                )

        self.timer.cancel_all(alert_id)
        logger.info(
            "Alert acknowledged",
            alert_id=str(alert_id),
            contact_id=str(contact_id) if contact_id else None,
            step=alert.escalation_step,
            entries_acknowledged=changed,
        )
        return alert

    async def resolve(self, alert_id: uuid.UUID) -> Alert:
        """Close an alert for good; no further steps run.

        Raises:
            AlertNotFoundError: Unknown alert.
            AlertClosedError: The alert already expired.
        """
        async with self._alert_locks.hold(alert_id):
            async with self.session_maker() as db:
                alert = await self._load_alert(db, alert_id)
                if alert.status == AlertStatus.RESOLVED:
                    await db.rollback()
                    return alert
                if alert.status == AlertStatus.EXPIRED:
                    raise AlertClosedError(f"Alert {alert_id} already expired")
                alert.status = AlertStatus.RESOLVED
                alert.resolved_at = self.clock()
                alert.step_deadline = None
                await db.commit()

        self.timer.cancel_all(alert_id)
        logger.info("Alert resolved", alert_id=str(alert_id))
        return alert

    def _expire(self, alert: Alert) -> None:
        alert.status = AlertStatus.EXPIRED
        alert.step_deadline = None
        self.timer.cancel_all(alert.id)
        logger.info("Alert expired", alert_id=str(alert.id))

    async def expire_overdue(self) -> int:
        """Expire alerts past ``expires_at`` that nobody acknowledged."""
        now = self.clock()
        async with self.session_maker() as db:
            result = await db.execute(
                select(Alert.id).where(
                    Alert.expires_at <= now,
                    Alert.status.in_([AlertStatus.PENDING, AlertStatus.SENT]),
                )
            )
            alert_ids = list(result.scalars().all())

        expired = 0
        for alert_id in alert_ids:
            async with self._alert_locks.hold(alert_id):
                async with self.session_maker() as db:
                    alert = await self._load_alert(db, alert_id)
                    if alert.status not in (AlertStatus.PENDING, AlertStatus.SENT):
                        await db.rollback()
                        continue
                    self._expire(alert)
                    await db.commit()
                    expired += 1
        return expired

    async def recover_overdue_steps(self) -> int:
        """Fire step timeouts whose deadline passed without a timer.

        Covers timers lost to a restart; a step that was already handled is
        skipped by the stale-timer check.
        """
        now = self.clock()
        async with self.session_maker() as db:
            result = await db.execute(
                select(Alert.id, Alert.escalation_step).where(
                    Alert.status == AlertStatus.SENT,
                    Alert.escalation_state == EscalationState.STEP_ACTIVE,
                    Alert.step_deadline <= now,
                )
            )
            overdue = list(result.all())

        for alert_id, step in overdue:
            logger.info("Recovering overdue step", alert_id=str(alert_id), step=step)
            await self.on_step_timeout(alert_id, step)
        return len(overdue)

    async def restore_timers(self) -> int:
        """Re-arm timers for active steps whose deadline is still ahead."""
        now = self.clock()
        async with self.session_maker() as db:
            result = await db.execute(
                select(Alert.id, Alert.escalation_step, Alert.step_deadline).where(
                    Alert.status == AlertStatus.SENT,
                    Alert.escalation_state == EscalationState.STEP_ACTIVE,
                    Alert.step_deadline > now,
                )
            )
            active = list(result.all())

        for alert_id, step, deadline in active:
            self.timer.schedule(alert_id, step, deadline, self.on_step_timeout)
        if active:
            logger.info("Step timers restored", count=len(active))
        return len(active)

    async def sweep(self) -> dict[str, int]:
        """Periodic maintenance: expiry first, then overdue steps."""
        expired = await self.expire_overdue()
        recovered = await self.recover_overdue_steps()
        return {"expired": expired, "recovered": recovered}

    async def preview(
        self,
        event_type: str,
        severity: AlertSeverity,
        contact_ids: Iterable[uuid.UUID],
        policy_id: uuid.UUID | None = None,
    ) -> EscalationPreview:
        """Dry run for a hypothetical alert.

        Raises:
            PolicyConfigurationError: The requested policy cannot be assigned.
            PolicyResolutionError: No policy matches.
        """
        async with self.session_maker() as db:
            if policy_id is not None:
                policy = await db.get(EscalationPolicy, policy_id)
                ensure_assignable(policy, policy_id)
            else:
                policy = resolve_policy(
                    event_type, severity, await get_active_policies(db)
                )
            contacts = await get_contacts(db, contact_ids)
        return preview_policy(policy, contacts)
