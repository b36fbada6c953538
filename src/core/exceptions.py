"""Error taxonomy for payment-method provisioning and subscription changes."""
from __future__ import annotations

from enum import Enum


GENERIC_GATEWAY_MESSAGE = "Failed to create payment method. Please try again later."
GENERIC_SECRET_MESSAGE = "Failed to prepare payment method. Please try again later."
GENERIC_CANCELLATION_MESSAGE = "Failed to cancel subscription. Please try again later."


class ErrorKind(str, Enum):
    SECRET_UNAVAILABLE = "SecretUnavailable"
    GATEWAY_REJECTED = "GatewayRejected"
    ALREADY_IN_PROGRESS = "AlreadyInProgress"
    CANCELLATION_FAILED = "CancellationFailed"
    INVALID_STATE = "InvalidState"


class BillingError(Exception):
    """Base error surfaced to the presentation layer.

    Every subclass carries a machine-readable ``kind`` and a single
    human-readable ``message``.
    """

    kind: ErrorKind
    default_message = "Billing operation failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AlreadyInProgress(BillingError):
    """Another operation of the same kind is running for the account."""

    kind = ErrorKind.ALREADY_IN_PROGRESS
    default_message = "Operation already in progress"


class ProvisioningError(BillingError):
    """Provisioning attempt ended in failure."""


class SecretUnavailable(ProvisioningError):
    kind = ErrorKind.SECRET_UNAVAILABLE
    default_message = GENERIC_SECRET_MESSAGE


class GatewayRejected(ProvisioningError):
    kind = ErrorKind.GATEWAY_REJECTED
    default_message = GENERIC_GATEWAY_MESSAGE


class CancellationError(BillingError):
    """Subscription cancellation could not be carried out."""


class CancellationFailed(CancellationError):
    kind = ErrorKind.CANCELLATION_FAILED
    default_message = GENERIC_CANCELLATION_MESSAGE


class InvalidState(CancellationError):
    kind = ErrorKind.INVALID_STATE
    default_message = "Subscription cannot be canceled in its current state"


class IntegrationError(Exception):
    """Remote service call failed (transport fault or error payload)."""


class RemoteRejected(IntegrationError):
    """The remote service answered and reported a failure.

    Unlike a transport fault, the message is meant for end users.
    """
