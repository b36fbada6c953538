"""Subscription lifecycle: display state and guarded cancellation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from src.core.exceptions import (
    CancellationError,
    CancellationFailed,
    InvalidState,
    RemoteRejected,
)
from src.schemas.billing import (
    CANCELABLE_STATUSES,
    Banner,
    CardBrand,
    DisplayState,
    PaymentMethod,
    Plan,
    PlanDetails,
    Subscription,
    SubscriptionStatus,
)
from src.services.billing_service import AccountDataSource, SubscriptionService
from src.services.events import EventBus, TransitionEvent
from src.services.guards import CANCELLATION, OperationGuard


logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_MESSAGE = "This account does not have an active subscription"
CANCELLATION_NOTICE = "Cancellation will take effect at the end of the current billing period."
NO_PAYMENT_METHOD_MESSAGE = "A payment method has not been added to this account."

CARD_BRAND_LABELS: Dict[CardBrand, str] = {
    CardBrand.VISA: "Visa",
    CardBrand.AMEX: "American Express",
    CardBrand.DINERS: "Diners Club",
    CardBrand.JCB: "JCB",
    CardBrand.MASTERCARD: "Mastercard",
}

_BETA_PLAN = PlanDetails(
    title="Beta Plan",
    description=(
        "As a thank you for being a beta user, you have full access for a limited "
        "time including recording, debugging, and collaborating with your team."
    ),
)
_TEAM_PLAN = PlanDetails(
    title="Team Plan",
    features=[
        "Unlimited recordings",
        "Team Library to easily share recordings",
        "Programmatic recording upload with personal and team API keys",
    ],
)
KNOWN_PLANS: Dict[str, PlanDetails] = {
    "beta-v1": _BETA_PLAN,
    "test-beta-v1": _BETA_PLAN,
    "team-v1": _TEAM_PLAN,
    "test-team-v1": _TEAM_PLAN,
}


def format_date(value: datetime) -> str:
    """US numeric date without zero padding, e.g. ``3/7/2026``."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return f"{value.month}/{value.day}/{value.year}"


def card_label(payment_method: PaymentMethod) -> str:
    brand = CARD_BRAND_LABELS.get(payment_method.card.brand, "Card")
    return f"{brand} ending with {payment_method.card.last4}"


def plan_details(plan: Optional[Plan]) -> Optional[PlanDetails]:
    if plan is None:
        return None
    known = KNOWN_PLANS.get(plan.key)
    if known is not None:
        return known
    if not plan.title:
        return None
    return PlanDetails(title=plan.title, features=list(plan.features))


def _banner(subscription: Subscription) -> Optional[Banner]:
    if subscription.status is SubscriptionStatus.TRIALING and subscription.trial_ends_at:
        ends_at = subscription.trial_ends_at
        return Banner(kind="trial", ends_at=ends_at, text=f"Trial ends {format_date(ends_at)}")
    if subscription.status is SubscriptionStatus.CANCELED and subscription.effective_until:
        ends_at = subscription.effective_until
        return Banner(
            kind="cancellation",
            ends_at=ends_at,
            text=f"Subscription ends {format_date(ends_at)}",
        )
    return None


def describe(subscription: Subscription) -> DisplayState:
    """Compute what the billing panel shows for ``subscription``.

    Pure: depends only on its argument and performs no I/O, so the same input
    always yields an equal :class:`DisplayState`.
    """
    if subscription.status is SubscriptionStatus.NONE:
        return DisplayState(
            has_subscription=False,
            status=subscription.status,
            message=NO_SUBSCRIPTION_MESSAGE,
        )

    can_cancel = subscription.status in CANCELABLE_STATUSES
    return DisplayState(
        has_subscription=True,
        status=subscription.status,
        banner=_banner(subscription),
        plan=plan_details(subscription.plan),
        payment_methods=[card_label(pm) for pm in subscription.payment_methods],
        payment_methods_message=(
            None if subscription.payment_methods else NO_PAYMENT_METHOD_MESSAGE
        ),
        can_add_payment_method=not subscription.payment_methods,
        can_cancel=can_cancel,
        cancellation_notice=CANCELLATION_NOTICE if can_cancel else None,
    )


class SubscriptionLifecycleManager:
    """Guarded cancellation plus the pure :func:`describe` projection."""

    describe = staticmethod(describe)

    def __init__(
        self,
        subscriptions: SubscriptionService,
        accounts: AccountDataSource,
        *,
        guard: Optional[OperationGuard] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.accounts = accounts
        self.guard = guard or OperationGuard()
        self.events = events or EventBus()

    async def is_cancelling(self, account_id: str) -> bool:
        return await self.guard.is_held(CANCELLATION, account_id)

    async def cancel(self, account_id: str) -> Optional[Subscription]:
        """Cancel the account's subscription at the end of the billing period.

        Returns the re-fetched subscription (status ``canceled`` with
        ``effective_until`` set remotely), or ``None`` if the refresh failed
        after a successful cancellation.

        Raises:
            AlreadyInProgress: a cancellation for ``account_id`` is in flight.
            InvalidState: the subscription is neither active nor trialing.
            CancellationFailed: the remote cancellation failed.
        """
        async with self.guard.hold(CANCELLATION, account_id):
            self._emit(account_id, "cancelling")
            try:
                await self._cancel_remote(account_id)
            except CancellationError as exc:
                self._emit(account_id, "failed", exc)
                raise
            self._emit(account_id, "canceled")

            try:
                return await self.accounts.fetch_subscription(account_id)
            except Exception as exc:
                logger.warning(
                    "Subscription canceled but refresh failed for %s: %s", account_id, exc
                )
                return None

    async def _cancel_remote(self, account_id: str) -> None:
        try:
            current = await self.accounts.fetch_subscription(account_id)
        except Exception as exc:
            logger.warning("Could not load subscription for %s: %s", account_id, exc)
            raise CancellationFailed() from exc

        if current.status not in CANCELABLE_STATUSES:
            raise InvalidState(
                f"Cannot cancel a subscription with status '{current.status.value}'"
            )

        try:
            await self.subscriptions.cancel_subscription(account_id)
        except RemoteRejected as exc:
            logger.info("Cancellation rejected for account %s: %s", account_id, exc)
            raise CancellationFailed(str(exc)) from exc
        except Exception as exc:
            logger.exception("Cancellation faulted for account %s", account_id)
            raise CancellationFailed() from exc

    def _emit(
        self, account_id: str, phase: str, error: Optional[CancellationError] = None
    ) -> None:
        self.events.emit(
            TransitionEvent(
                account_id=account_id,
                operation="cancellation",
                type="error_set" if error is not None else "phase_changed",
                phase=phase,
                error_kind=error.kind if error is not None else None,
                message=error.message if error is not None else None,
            )
        )
