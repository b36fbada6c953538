"""Card gateway client used to confirm card setups.

The coordinator only depends on :class:`GatewayClient`; :class:`StripeGatewayClient`
is the production binding that talks to Stripe's SetupIntent API with the
publishable key, the same way the browser SDK does.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from src.core.config import settings
from src.core.exceptions import IntegrationError
from src.schemas.billing import BillingDetails, GatewayResult


logger = logging.getLogger(__name__)

ChallengeHandler = Callable[[Dict[str, Any]], Awaitable[None]]

INCOMPLETE_SETUP_MESSAGE = "Card setup was not completed."


class GatewayClient(Protocol):
    async def confirm_card_setup(
        self, secret: str, card_handle: str, billing_details: BillingDetails
    ) -> GatewayResult:
        ...


def _intent_id(secret: str) -> str:
    """``seti_123_secret_abc`` -> ``seti_123``."""
    intent_id, sep, _ = secret.partition("_secret_")
    if not sep or not intent_id:
        raise IntegrationError("Malformed setup secret")
    return intent_id


def _billing_form(billing_details: BillingDetails) -> Dict[str, str]:
    prefix = "payment_method_data[billing_details]"
    address = billing_details.address
    fields = {
        f"{prefix}[name]": billing_details.name,
        f"{prefix}[address][line1]": address.line1,
        f"{prefix}[address][line2]": address.line2,
        f"{prefix}[address][city]": address.city,
        f"{prefix}[address][state]": address.state,
        f"{prefix}[address][postal_code]": address.postal_code,
        f"{prefix}[address][country]": address.country,
    }
    return {key: value for key, value in fields.items() if value}


class StripeGatewayClient:
    """Confirm SetupIntents against the Stripe REST API.

    Args:
        publishable_key: Key used to authenticate client-side confirmation.
        challenge_handler: Awaited with the intent's ``next_action`` when the
            card requires an out-of-band challenge (3-D Secure). The intent is
            retrieved once after it returns.
        client: Optional preconfigured ``httpx.AsyncClient`` (tests inject a
            ``MockTransport`` here).
    """

    def __init__(
        self,
        publishable_key: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        challenge_handler: Optional[ChallengeHandler] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.publishable_key = publishable_key or settings.gateway_publishable_key
        self.api_base = (api_base or settings.gateway.api_base).rstrip("/")
        self.challenge_handler = challenge_handler
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.gateway.timeout_seconds
        )

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.publishable_key}"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def confirm_card_setup(
        self, secret: str, card_handle: str, billing_details: BillingDetails
    ) -> GatewayResult:
        intent_id = _intent_id(secret)
        form: Dict[str, str] = {"client_secret": secret}
        if card_handle.startswith("pm_"):
            form["payment_method"] = card_handle
        else:
            form["payment_method_data[type]"] = "card"
            form["payment_method_data[card][token]"] = card_handle
            form.update(_billing_form(billing_details))

        intent = await self._request(
            "POST", f"/setup_intents/{intent_id}/confirm", data=form
        )
        if isinstance(intent, GatewayResult):
            return intent

        if intent.get("status") == "requires_action" and self.challenge_handler is not None:
            logger.info("Setup intent %s requires a challenge", intent_id)
            await self.challenge_handler(intent.get("next_action") or {})
            intent = await self._request(
                "GET", f"/setup_intents/{intent_id}", params={"client_secret": secret}
            )
            if isinstance(intent, GatewayResult):
                return intent

        return self._result_from_intent(intent)

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any] | GatewayResult:
        """Return the intent payload, or a failed result for a gateway decline."""

        try:
            response = await self._client.request(
                method, f"{self.api_base}{path}", headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Gateway request failed: {exc}") from exc

        if response.status_code >= 500:
            raise IntegrationError(f"Gateway returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise IntegrationError("Gateway returned a non-JSON body") from exc

        if response.status_code >= 400:
            error = body.get("error") or {}
            message = error.get("message") or INCOMPLETE_SETUP_MESSAGE
            logger.info("Gateway declined card setup: %s", error.get("code") or response.status_code)
            return GatewayResult(success=False, message=message)
        return body

    @staticmethod
    def _result_from_intent(intent: Dict[str, Any]) -> GatewayResult:
        if intent.get("status") == "succeeded":
            payment_method = intent.get("payment_method")
            if isinstance(payment_method, dict):
                payment_method = payment_method.get("id")
            return GatewayResult(success=True, payment_method_id=payment_method)
        last_error = intent.get("last_setup_error") or {}
        return GatewayResult(
            success=False, message=last_error.get("message") or INCOMPLETE_SETUP_MESSAGE
        )
