"""FastAPI dependencies resolving the billing services from application state."""
from __future__ import annotations

from fastapi import Request

from src.services.billing_service import AccountDataSource
from src.services.provisioning import PaymentMethodProvisioningCoordinator
from src.services.subscriptions import SubscriptionLifecycleManager


def get_coordinator(request: Request) -> PaymentMethodProvisioningCoordinator:
    return request.app.state.coordinator


def get_lifecycle_manager(request: Request) -> SubscriptionLifecycleManager:
    return request.app.state.lifecycle_manager


def get_account_source(request: Request) -> AccountDataSource:
    return request.app.state.account_source
