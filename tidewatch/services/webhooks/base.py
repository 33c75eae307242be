"""Webhook normalizer interface.

A normalizer verifies a provider callback, translates it into canonical
events and applies them to the delivery ledger. It never makes escalation
decisions.
"""

import abc
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from tidewatch.logging_config import get_logger
from tidewatch.models.base import utcnow
from tidewatch.services.delivery_ledger import CanonicalEvent, DeliveryLedger

logger = get_logger(__name__)


class WebhookNormalizer(abc.ABC):
    provider: str

    def __init__(
        self,
        ledger: DeliveryLedger,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.clock = clock

    def warn_unverified(self, **fields) -> None:
        """Log that a callback is accepted without authenticity checking."""
        logger.warning(
            "Webhook signature verification disabled; processing unverified payload",
            provider=self.provider,
            **fields,
        )

    @abc.abstractmethod
    def normalize(self, payload) -> list[CanonicalEvent]:
        """Translate a parsed provider payload into canonical events.

        Raises:
            MalformedPayloadError: The payload is not in the provider's format.
        """

    async def apply(self, db: AsyncSession, events: list[CanonicalEvent]) -> dict:
        """Apply events to the ledger in payload order.

        Returns:
            Counts of applied and discarded events.
        """
        applied = discarded = 0
        for event in events:
            entry = await self.ledger.apply(db, event)
            if entry is None:
                discarded += 1
            else:
                applied += 1
        return {"received": len(events), "applied": applied, "discarded": discarded}
