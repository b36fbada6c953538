"""
Pytest configuration for the application
"""
import asyncio
import os
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import httpx
import jwt
import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from redis.asyncio.lock import Lock

# Set test environment before settings are first loaded
os.environ["ENV"] = "test"
os.environ["GUARD__BACKEND"] = "memory"

from src.core.config import settings  # noqa: E402
from src.main import create_application  # noqa: E402
from src.schemas.billing import (  # noqa: E402
    Card,
    GatewayResult,
    PaymentMethod,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from src.services import limits as limits_service  # noqa: E402
from src.services.events import EventBus, TransitionEvent  # noqa: E402
from src.services.guards import MemoryGuardBackend, OperationGuard  # noqa: E402
from src.services.provisioning import PaymentMethodProvisioningCoordinator  # noqa: E402
from src.services.subscriptions import SubscriptionLifecycleManager  # noqa: E402


settings.ENV = "test"
settings.guard.backend = "memory"

PERIOD_END = datetime(2026, 11, 30, tzinfo=timezone.utc)


class FakeRedis:
    """Minimal async Redis stub for rate limiting and guard tests."""

    def __init__(self) -> None:
        self.store: Dict[str, int | str] = {}

    async def incr(self, key: str) -> int:
        current = int(self.store.get(key, 0)) + 1
        self.store[key] = current
        return current

    async def expire(self, key: str, seconds: int) -> None:
        self.store.setdefault(f"{key}:ttl", seconds)

    async def get(self, key: str):
        return self.store.get(key)

    async def set(
        self,
        key: str,
        value,
        ex: int | None = None,
        px: int | None = None,
        nx: bool = False,
    ) -> bool:
        if nx and key in self.store:
            return False
        self.store[key] = value
        if ex is not None:
            self.store[f"{key}:ttl"] = ex
        elif px is not None:
            self.store[f"{key}:ttl"] = px // 1000
        return True

    def register_script(self, script: str) -> "FakeScript":
        return FakeScript(self)

    def lock(self, name: str, **kwargs) -> Lock:
        return Lock(self, name, **kwargs)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.store.pop(f"{key}:ttl", None)
        return removed

    async def exists(self, key: str) -> int:
        return int(key in self.store)

    async def aclose(self) -> None:
        return None


class FakeScript:
    """Stand-in for a registered Lua script.

    Guards only ever release locks, so every call behaves like the lock
    release script: delete the key if it still holds the caller's token.
    """

    def __init__(self, client: FakeRedis) -> None:
        self.client = client

    async def __call__(self, keys=(), args=(), client=None) -> int:
        client = client or self.client
        key, token = keys[0], args[0]
        if client.store.get(key) != token:
            return 0
        await client.delete(key)
        return 1


class FakeBillingBackend:
    """In-memory billing service: secrets, subscriptions and cancellation."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.calls: List[Tuple[str, str]] = []
        self.issued: Dict[str, str] = {}
        self.secrets: Dict[str, Optional[str]] = {}
        self.secret_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.cancel_gate: Optional[asyncio.Event] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.effective_until = PERIOD_END

    def seed(self, account_id: str, status: SubscriptionStatus, **fields) -> Subscription:
        subscription = Subscription(
            status=status, plan=Plan(key="team-v1", title="Team"), **fields
        )
        self.subscriptions[account_id] = subscription
        return subscription

    def bind_card(self, account_id: str, brand: str = "visa", last4: str = "4242") -> PaymentMethod:
        current = self.subscriptions.get(account_id, Subscription())
        method = PaymentMethod(
            id=f"pm_{len(current.payment_methods) + 1}",
            card=Card(brand=brand, last4=last4),
        )
        self.subscriptions[account_id] = current.model_copy(
            update={"payment_methods": [*current.payment_methods, method]}
        )
        return method

    async def request_provisioning_secret(self, account_id: str) -> Optional[str]:
        self.calls.append(("secret", account_id))
        if self.secret_error is not None:
            raise self.secret_error
        secret = self.secrets.get(account_id, f"seti_{account_id}_secret_test")
        if secret:
            self.issued[secret] = account_id
        return secret

    async def cancel_subscription(self, account_id: str) -> None:
        self.calls.append(("cancel", account_id))
        if self.cancel_gate is not None:
            await self.cancel_gate.wait()
        if self.cancel_error is not None:
            raise self.cancel_error
        current = self.subscriptions[account_id]
        self.subscriptions[account_id] = Subscription.model_validate(
            {
                **current.model_dump(),
                "status": SubscriptionStatus.CANCELED,
                "effective_until": self.effective_until,
            }
        )

    async def fetch_subscription(self, account_id: str) -> Subscription:
        self.calls.append(("fetch", account_id))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.subscriptions.get(account_id, Subscription())


class FakeGateway:
    """Gateway stub that binds a card on the backend when confirmation succeeds."""

    def __init__(self, backend: FakeBillingBackend) -> None:
        self.backend = backend
        self.calls: List[str] = []
        self.result = GatewayResult(success=True)
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.card: Tuple[str, str] = ("visa", "4242")
        self.binds_card = True

    async def confirm_card_setup(self, secret, card_handle, billing_details) -> GatewayResult:
        self.calls.append(secret)
        self.backend.calls.append(("confirm", secret))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if not self.result.success:
            return self.result
        if not self.binds_card:
            return self.result.model_copy(update={"payment_method_id": "pm_pending"})
        method = self.backend.bind_card(self.backend.issued[secret], *self.card)
        return self.result.model_copy(update={"payment_method_id": method.id})


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    """Patch the limits module to use an in-memory Redis stub."""

    fake = FakeRedis()
    monkeypatch.setattr(limits_service, "_redis_client", fake, raising=False)
    yield fake
    monkeypatch.setattr(limits_service, "_redis_client", None, raising=False)


@pytest.fixture
def backend() -> FakeBillingBackend:
    return FakeBillingBackend()


@pytest.fixture
def gateway(backend: FakeBillingBackend) -> FakeGateway:
    return FakeGateway(backend)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(events: EventBus) -> List[TransitionEvent]:
    recorded: List[TransitionEvent] = []
    events.subscribe(recorded.append)
    return recorded


@pytest.fixture
def guard() -> OperationGuard:
    return OperationGuard(MemoryGuardBackend())


@pytest.fixture
def coordinator(backend, gateway, guard, events) -> PaymentMethodProvisioningCoordinator:
    return PaymentMethodProvisioningCoordinator(
        backend, gateway, backend, guard=guard, events=events
    )


@pytest.fixture
def lifecycle_manager(backend, guard, events) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(backend, backend, guard=guard, events=events)


@pytest_asyncio.fixture
async def test_app(coordinator, lifecycle_manager, backend) -> AsyncGenerator[FastAPI, None]:
    """
    Create a FastAPI test application wired to the in-memory fakes.
    """
    app = create_application()
    async with LifespanManager(app):
        app.state.coordinator = coordinator
        app.state.lifecycle_manager = lifecycle_manager
        app.state.account_source = backend
        yield app


@pytest_asyncio.fixture
async def client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    Create an async HTTP client for testing.
    """
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as client:
        yield client


def build_auth_header(account_id: str) -> Dict[str, str]:
    token = jwt.encode({"account_id": account_id}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return build_auth_header
