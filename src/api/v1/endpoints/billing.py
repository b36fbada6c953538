"""Endpoints for payment methods and the subscription of the caller's account."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from src.api.deps import get_account_source, get_coordinator, get_lifecycle_manager
from src.auth.jwt import require_auth
from src.schemas.billing import BillingDetails
from src.services.billing_service import AccountDataSource
from src.services.limits import check_rate_limit
from src.services.provisioning import PaymentMethodProvisioningCoordinator
from src.services.subscriptions import SubscriptionLifecycleManager, describe


router = APIRouter(prefix="/billing", tags=["billing"])


class AddPaymentMethodBody(BaseModel):
    """Payload for binding a new card to the account."""

    card_token: str = Field(..., min_length=1, description="Gateway card capture handle")
    billing_details: BillingDetails


@router.get("/subscription")
async def get_subscription(
    auth=Depends(require_auth),
    accounts: AccountDataSource = Depends(get_account_source),
):
    account_id = auth["account_id"]
    await check_rate_limit(account_id)

    subscription = await accounts.fetch_subscription(account_id)
    return {
        "subscription": subscription.model_dump(mode="json"),
        "display": describe(subscription).model_dump(mode="json"),
    }


@router.post("/payment-methods")
async def add_payment_method(
    body: AddPaymentMethodBody,
    auth=Depends(require_auth),
    coordinator: PaymentMethodProvisioningCoordinator = Depends(get_coordinator),
):
    account_id = auth["account_id"]
    await check_rate_limit(account_id)

    payment_method = await coordinator.begin_provisioning(
        account_id, body.card_token, body.billing_details
    )
    return {
        "status": "ok",
        "payment_method": payment_method.model_dump(mode="json") if payment_method else None,
        "attempt": coordinator.current_attempt(account_id).model_dump(mode="json"),
    }


@router.get("/payment-methods/attempt")
async def get_attempt(
    auth=Depends(require_auth),
    coordinator: PaymentMethodProvisioningCoordinator = Depends(get_coordinator),
):
    return coordinator.current_attempt(auth["account_id"]).model_dump(mode="json")


@router.delete("/payment-methods/attempt", status_code=status.HTTP_200_OK)
async def reset_attempt(
    auth=Depends(require_auth),
    coordinator: PaymentMethodProvisioningCoordinator = Depends(get_coordinator),
):
    return coordinator.reset(auth["account_id"]).model_dump(mode="json")


@router.post("/subscription/cancel")
async def cancel_subscription(
    auth=Depends(require_auth),
    manager: SubscriptionLifecycleManager = Depends(get_lifecycle_manager),
):
    account_id = auth["account_id"]
    await check_rate_limit(account_id)

    subscription = await manager.cancel(account_id)
    if subscription is None:
        return {"status": "ok", "subscription": None, "display": None}
    return {
        "status": "ok",
        "subscription": subscription.model_dump(mode="json"),
        "display": describe(subscription).model_dump(mode="json"),
    }
