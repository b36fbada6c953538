"""Payment-method provisioning coordinator.

Binds a card to a billing account in two strictly ordered remote steps:

1. ask the internal billing service for a one-time setup secret scoped to the
   account;
2. confirm the card setup with the gateway using that secret.

Each run is an *attempt* whose phase is tracked per account
(``Idle -> RequestingSecret -> ConfirmingWithGateway -> Succeeded | Failed``).
While an attempt is in flight, a second call for the same account is rejected
with :class:`AlreadyInProgress` and issues no network call. Nothing is retried
automatically; a retry is a new explicit call.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

from src.core.exceptions import (
    GENERIC_GATEWAY_MESSAGE,
    GatewayRejected,
    ProvisioningError,
    SecretUnavailable,
)
from src.schemas.billing import (
    IN_FLIGHT_PHASES,
    BillingDetails,
    ConfirmingWithGateway,
    Failed,
    GatewayResult,
    Idle,
    PaymentMethod,
    ProvisioningAttempt,
    RequestingSecret,
    Succeeded,
)
from src.services.billing_service import AccountDataSource, ProvisioningService
from src.services.events import EventBus, TransitionEvent
from src.services.gateway import GatewayClient
from src.services.guards import PROVISIONING, OperationGuard


logger = logging.getLogger(__name__)


class PaymentMethodProvisioningCoordinator:
    """Drive provisioning attempts and expose their phase per account."""

    def __init__(
        self,
        provisioning: ProvisioningService,
        gateway: GatewayClient,
        accounts: Optional[AccountDataSource] = None,
        *,
        guard: Optional[OperationGuard] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.provisioning = provisioning
        self.gateway = gateway
        self.accounts = accounts
        self.guard = guard or OperationGuard()
        self.events = events or EventBus()
        self._attempts: Dict[str, ProvisioningAttempt] = {}

    def current_attempt(self, account_id: str) -> ProvisioningAttempt:
        return self._attempts.get(account_id, Idle())

    def reset(self, account_id: str) -> ProvisioningAttempt:
        """Return a finished attempt to ``Idle``; in-flight attempts are left alone."""
        attempt = self.current_attempt(account_id)
        if isinstance(attempt, IN_FLIGHT_PHASES):
            return attempt
        self._attempts.pop(account_id, None)
        if not isinstance(attempt, Idle):
            self._emit(account_id, Idle())
        return Idle()

    async def begin_provisioning(
        self,
        account_id: str,
        card_handle: str,
        billing_details: BillingDetails,
    ) -> Optional[PaymentMethod]:
        """Run one provisioning attempt to completion.

        Returns the newly bound payment method as re-fetched from the account,
        or ``None`` when the card was bound but the account does not list it
        yet (or the refresh failed).

        Raises:
            AlreadyInProgress: an attempt for ``account_id`` is in flight.
            SecretUnavailable: no setup secret could be obtained.
            GatewayRejected: the gateway declined or failed the confirmation.
        """
        async with self.guard.hold(PROVISIONING, account_id):
            confirmed = False
            try:
                result = await self._confirm_card(account_id, card_handle, billing_details)
                confirmed = True
                payment_method = await self._refresh_payment_method(
                    account_id, result.payment_method_id
                )
                self._transition(account_id, Succeeded(payment_method=payment_method))
                return payment_method
            finally:
                # Task cancellation or an unexpected fault can leave the
                # attempt mid-flight; it still has to end in a terminal phase.
                attempt = self.current_attempt(account_id)
                if isinstance(attempt, IN_FLIGHT_PHASES):
                    if confirmed:
                        self._transition(account_id, Succeeded(payment_method=None))
                    elif isinstance(attempt, RequestingSecret):
                        self._fail(account_id, SecretUnavailable())
                    else:
                        self._fail(account_id, GatewayRejected())

    async def _confirm_card(
        self,
        account_id: str,
        card_handle: str,
        billing_details: BillingDetails,
    ) -> GatewayResult:
        self._transition(account_id, RequestingSecret())
        try:
            secret = await self.provisioning.request_provisioning_secret(account_id)
        except Exception as exc:
            logger.warning("Setup secret request failed for account %s: %s", account_id, exc)
            secret = None
        if not secret:
            raise self._fail(account_id, SecretUnavailable())

        self._transition(account_id, ConfirmingWithGateway(secret=secret))
        try:
            result = await self.gateway.confirm_card_setup(secret, card_handle, billing_details)
        except Exception as exc:
            logger.exception("Gateway confirmation faulted for account %s", account_id)
            raise self._fail(account_id, GatewayRejected(GENERIC_GATEWAY_MESSAGE)) from exc
        if not result.success:
            raise self._fail(account_id, GatewayRejected(result.message or GENERIC_GATEWAY_MESSAGE))
        return result

    async def _refresh_payment_method(
        self, account_id: str, payment_method_id: Optional[str]
    ) -> Optional[PaymentMethod]:
        """Look up the confirmed method on the account; never report any other card."""
        if self.accounts is None or not payment_method_id:
            return None
        try:
            subscription = await self.accounts.fetch_subscription(account_id)
        except Exception as exc:
            logger.warning("Card bound but account refresh failed for %s: %s", account_id, exc)
            return None
        for method in subscription.payment_methods:
            if method.id == payment_method_id:
                return method
        logger.info("Payment method %s not yet listed for account %s", payment_method_id, account_id)
        return None

    def _transition(self, account_id: str, attempt: ProvisioningAttempt) -> None:
        self._attempts[account_id] = attempt
        logger.info("Provisioning attempt for account %s -> %s", account_id, attempt.phase)
        self._emit(account_id, attempt)

    def _fail(self, account_id: str, error: ProvisioningError) -> ProvisioningError:
        self._transition(account_id, Failed(kind=error.kind, message=error.message))
        self.events.emit(
            TransitionEvent(
                account_id=account_id,
                operation="provisioning",
                type="error_set",
                phase="failed",
                error_kind=error.kind,
                message=error.message,
            )
        )
        return error

    def _emit(self, account_id: str, attempt: ProvisioningAttempt) -> None:
        self.events.emit(
            TransitionEvent(
                account_id=account_id,
                operation="provisioning",
                type="phase_changed",
                phase=attempt.phase,
                error_kind=attempt.kind if isinstance(attempt, Failed) else None,
            )
        )
