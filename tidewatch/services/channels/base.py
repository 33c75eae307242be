"""Channel dispatcher interface and registry.

A dispatcher makes exactly one outbound attempt and reports the provider's
message id, or raises one of the DispatchError subclasses. It never writes
to the delivery ledger; recording the outcome is the caller's job.
"""

import abc
import re
from collections.abc import Iterable
from dataclasses import dataclass

import httpx

from tidewatch.core.errors import (
    InvalidAddressError,
    ProviderUnconfiguredError,
    TransientProviderError,
)
from tidewatch.models.contact import Channel

E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_HTTP_TIMEOUT = 10.0


@dataclass(frozen=True)
class NotificationContent:
    """Rendered message; channels without a subject line ignore it."""

    subject: str
    body: str


@dataclass(frozen=True)
class DispatchReceipt:
    provider: str
    provider_message_id: str


def normalize_phone(raw: str) -> str:
    """Strip formatting and a ``whatsapp:`` prefix, keeping the leading +."""
    value = raw.strip()
    if value.lower().startswith("whatsapp:"):
        value = value[len("whatsapp:") :]
    return re.sub(r"[\s\-().]", "", value)


def validate_phone(raw: str, provider: str) -> str:
    phone = normalize_phone(raw)
    if not E164_PATTERN.match(phone):
        raise InvalidAddressError(
            f"Not an E.164 phone number: {raw!r}", provider=provider
        )
    return phone


def validate_email(raw: str, provider: str) -> str:
    email = raw.strip()
    if not EMAIL_PATTERN.match(email):
        raise InvalidAddressError(f"Not an email address: {raw!r}", provider=provider)
    return email


def raise_for_provider_status(
    response: httpx.Response, provider: str, detail: str
) -> None:
    """Map a non-success provider response onto the dispatch error taxonomy.

    429 and 5xx are transient, 401/403 mean the credentials are unusable,
    and any other 4xx is a permanent rejection of the request.
    """
    code = response.status_code
    if code < 400:
        return
    message = f"{provider} returned {code}: {detail}"
    if code == 429 or code >= 500:
        raise TransientProviderError(message, provider=provider)
    if code in (401, 403):
        raise ProviderUnconfiguredError(message, provider=provider)
    raise InvalidAddressError(message, provider=provider)


class ChannelDispatcher(abc.ABC):
    """Sends one message over one channel."""

    channel: Channel
    provider: str

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self._transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, **kwargs
        )

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kw):
        """Perform one HTTP call, turning transport failures into transient errors."""
        try:
            return await client.request(method, url, **kw)
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"{self.provider} timed out", provider=self.provider
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"{self.provider} unreachable: {e}", provider=self.provider
            ) from e

    @abc.abstractmethod
    async def send(self, address: str, content: NotificationContent) -> DispatchReceipt:
        """Hand the message to the provider.

        Raises:
            TransientProviderError: Timeout, network failure, 429 or 5xx.
            InvalidAddressError: Address unusable or request rejected.
            ProviderUnconfiguredError: Missing or rejected credentials.
        """


class DispatcherRegistry:
    """Maps each channel to its dispatcher."""

    def __init__(self, dispatchers: Iterable[ChannelDispatcher] = ()):
        self._dispatchers: dict[Channel, ChannelDispatcher] = {}
        for dispatcher in dispatchers:
            self.register(dispatcher)

    def register(self, dispatcher: ChannelDispatcher) -> None:
        self._dispatchers[dispatcher.channel] = dispatcher

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset(self._dispatchers)

    def get(self, channel: Channel) -> ChannelDispatcher:
        try:
            return self._dispatchers[channel]
        except KeyError:
            raise ProviderUnconfiguredError(
                f"No dispatcher registered for channel {channel.value}"
            ) from None

    async def send(
        self, address: str, content: NotificationContent, channel: Channel
    ) -> DispatchReceipt:
        return await self.get(channel).send(address, content)
