"""Client for the internal billing API.

One GraphQL endpoint backs three capabilities used by the coordinator and the
lifecycle manager: issuing provisioning secrets, canceling subscriptions, and
reading the authoritative subscription state of an account.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from src.core.config import settings
from src.core.exceptions import IntegrationError, RemoteRejected
from src.schemas.billing import Subscription, SubscriptionStatus


logger = logging.getLogger(__name__)


class ProvisioningService(Protocol):
    async def request_provisioning_secret(self, account_id: str) -> Optional[str]:
        ...


class SubscriptionService(Protocol):
    async def cancel_subscription(self, account_id: str) -> None:
        ...


class AccountDataSource(Protocol):
    async def fetch_subscription(self, account_id: str) -> Subscription:
        ...


PREPARE_PAYMENT_METHOD = """
mutation PrepareAccountPaymentMethod($accountId: ID!) {
  prepareAccountPaymentMethod(input: { accountId: $accountId }) {
    success
    paymentSecret
  }
}
"""

CANCEL_SUBSCRIPTION = """
mutation CancelAccountSubscription($accountId: ID!) {
  cancelAccountSubscription(input: { accountId: $accountId }) {
    success
    message
  }
}
"""

GET_SUBSCRIPTION = """
query GetAccountSubscription($accountId: ID!) {
  node(id: $accountId) {
    ... on Account {
      id
      subscription {
        status
        trialEnds
        effectiveUntil
        plan {
          key
          title
          features
        }
        paymentMethods {
          id
          card {
            brand
            last4
          }
        }
      }
    }
  }
}
"""


def _subscription_from_payload(payload: Optional[Dict[str, Any]]) -> Subscription:
    if not payload:
        return Subscription(status=SubscriptionStatus.NONE)
    return Subscription(
        status=payload.get("status") or SubscriptionStatus.NONE,
        plan=payload.get("plan"),
        trial_ends_at=payload.get("trialEnds"),
        effective_until=payload.get("effectiveUntil"),
        payment_methods=payload.get("paymentMethods") or [],
    )


class BillingServiceClient:
    """GraphQL client implementing the billing capabilities over HTTP."""

    def __init__(
        self,
        graphql_url: Optional[str] = None,
        api_token: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.graphql_url = graphql_url or settings.billing_service.graphql_url
        self.api_token = api_token if api_token is not None else settings.billing_service.api_token
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.billing_service.timeout_seconds
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _execute(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                self.graphql_url,
                json={"query": query, "variables": variables},
                headers=self._headers(),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Billing service request failed: {exc}") from exc
        except ValueError as exc:
            raise IntegrationError("Billing service returned a non-JSON body") from exc

        errors = body.get("errors")
        if errors:
            message = errors[0].get("message") or "Billing service error"
            raise RemoteRejected(message)
        return body.get("data") or {}

    async def request_provisioning_secret(self, account_id: str) -> Optional[str]:
        data = await self._execute(PREPARE_PAYMENT_METHOD, {"accountId": account_id})
        result = data.get("prepareAccountPaymentMethod") or {}
        if result.get("success") is False:
            raise RemoteRejected("Billing service refused to prepare a payment method")
        return result.get("paymentSecret") or None

    async def cancel_subscription(self, account_id: str) -> None:
        data = await self._execute(CANCEL_SUBSCRIPTION, {"accountId": account_id})
        result = data.get("cancelAccountSubscription") or {}
        if not result.get("success"):
            raise RemoteRejected(result.get("message") or "Subscription could not be canceled")
        logger.info("Billing service canceled subscription for account %s", account_id)

    async def fetch_subscription(self, account_id: str) -> Subscription:
        data = await self._execute(GET_SUBSCRIPTION, {"accountId": account_id})
        node = data.get("node") or {}
        return _subscription_from_payload(node.get("subscription"))
