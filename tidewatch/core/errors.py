"""Error taxonomy for dispatch, webhook, policy and rate-limit failures.

Dispatch and webhook errors are contained where they occur and recorded on
the delivery ledger; policy errors surface when an alert is created; rate
limit errors carry a retry-after hint for the caller.
"""


class TidewatchError(Exception):
    """Base class for all service errors."""


class DispatchError(TidewatchError):
    """A channel dispatcher could not hand the message to its provider."""

    retryable = False

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class TransientProviderError(DispatchError):
    """Timeout, network error, 429 or 5xx from the provider."""

    retryable = True


class InvalidAddressError(DispatchError):
    """The recipient address is unusable for this channel."""


class ProviderUnconfiguredError(DispatchError):
    """Credentials for the channel's provider are missing or rejected."""


class InvalidSignatureError(TidewatchError):
    """Webhook payload failed provider authenticity verification."""


class MalformedPayloadError(TidewatchError):
    """Webhook payload could not be parsed into canonical events."""


class PolicyResolutionError(TidewatchError):
    """No active escalation policy matches the alert's event type and severity.

    ``alert_id`` is set once the alert has been persisted as pending.
    """

    def __init__(self, message: str, *, alert_id=None):
        super().__init__(message)
        self.alert_id = alert_id


class PolicyConfigurationError(TidewatchError):
    """An escalation policy is missing, inactive or has no steps."""


class AlertNotFoundError(TidewatchError):
    """The referenced alert does not exist."""


class RateLimitedError(TidewatchError):
    """Request rejected by the rate-limit guard."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class AlertClosedError(TidewatchError):
    """The alert was already resolved or expired."""


class ContactNotTargetedError(TidewatchError):
    """The acknowledging contact is not one of the alert's targets."""
