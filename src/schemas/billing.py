"""Pydantic schemas for subscriptions, payment methods and provisioning attempts."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.core.exceptions import ErrorKind


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELED = "canceled"


CANCELABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class CardBrand(str, Enum):
    VISA = "visa"
    AMEX = "amex"
    DINERS = "diners"
    JCB = "jcb"
    MASTERCARD = "mastercard"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class Card(BaseModel):
    brand: CardBrand = Field(default=CardBrand.UNKNOWN, description="Card network")
    last4: str = Field(..., min_length=4, max_length=4, description="Last four digits")

    model_config = ConfigDict(frozen=True)

    @field_validator("brand", mode="before")
    @classmethod
    def normalize_brand(cls, value):
        if isinstance(value, CardBrand):
            return value
        return CardBrand(str(value or "").lower())


class PaymentMethod(BaseModel):
    """A card bound to a billing account. Never mutated after creation."""

    id: str = Field(..., description="Payment method identifier")
    card: Card

    model_config = ConfigDict(frozen=True)


class Plan(BaseModel):
    key: str = Field(..., description="Plan key, e.g. team-v1")
    title: Optional[str] = Field(default=None, description="Display title")
    features: List[str] = Field(default_factory=list)


class Subscription(BaseModel):
    """Authoritative subscription state as reported by the billing service."""

    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan: Optional[Plan] = None
    trial_ends_at: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    payment_methods: List[PaymentMethod] = Field(default_factory=list)

    @model_validator(mode="after")
    def drop_dates_for_other_statuses(self) -> "Subscription":
        if self.status is not SubscriptionStatus.TRIALING:
            self.trial_ends_at = None
        if self.status is not SubscriptionStatus.CANCELED:
            self.effective_until = None
        return self


class Address(BaseModel):
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2")


class BillingDetails(BaseModel):
    """Cardholder name and address forwarded to the gateway untouched."""

    name: str = Field(..., min_length=1, description="Cardholder name")
    address: Address


class GatewayResult(BaseModel):
    success: bool
    message: Optional[str] = None
    payment_method_id: Optional[str] = Field(
        default=None, description="Payment method the confirmed setup attached"
    )


# Provisioning attempt phases. Exactly one is current per account.


class _Phase(BaseModel):
    model_config = ConfigDict(frozen=True)


class Idle(_Phase):
    phase: Literal["idle"] = "idle"


class RequestingSecret(_Phase):
    phase: Literal["requesting_secret"] = "requesting_secret"


class ConfirmingWithGateway(_Phase):
    phase: Literal["confirming_with_gateway"] = "confirming_with_gateway"
    secret: str = Field(..., min_length=1, exclude=True, repr=False)


class Failed(_Phase):
    phase: Literal["failed"] = "failed"
    kind: ErrorKind
    message: str


class Succeeded(_Phase):
    phase: Literal["succeeded"] = "succeeded"
    payment_method: Optional[PaymentMethod] = None


ProvisioningAttempt = Annotated[
    Union[Idle, RequestingSecret, ConfirmingWithGateway, Failed, Succeeded],
    Field(discriminator="phase"),
]

IN_FLIGHT_PHASES = (RequestingSecret, ConfirmingWithGateway)
TERMINAL_PHASES = (Failed, Succeeded)


# Presentation state derived from a subscription.


class Banner(BaseModel):
    kind: Literal["trial", "cancellation"]
    ends_at: datetime
    text: str


class PlanDetails(BaseModel):
    title: str
    description: Optional[str] = None
    features: List[str] = Field(default_factory=list)


class DisplayState(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_subscription: bool
    status: SubscriptionStatus
    message: Optional[str] = None
    banner: Optional[Banner] = None
    plan: Optional[PlanDetails] = None
    payment_methods: List[str] = Field(default_factory=list)
    payment_methods_message: Optional[str] = None
    can_add_payment_method: bool = False
    can_cancel: bool = False
    cancellation_notice: Optional[str] = None
