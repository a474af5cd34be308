# billing_schema.py
from typing import Optional, Union

from pydantic import AliasChoices, EmailStr, Field

from schemas.base import CamelModel


class ProvisionBillingRequest(CamelModel):
    portal_key: str = Field(..., min_length=1, max_length=120)
    company_name: str = Field(..., min_length=1, max_length=200)
    billing_email: EmailStr
    billing_model: Optional[str] = None
    lead_unit_price_cents: Optional[Union[int, float]] = None
    lead_charge_threshold: Optional[Union[int, float]] = None


class ProvisionBillingResponse(CamelModel):
    success: bool = True
    portal_key: str
    billing_model: str
    billing_model_label: str
    stripe_customer_id: str
    product_id: Optional[str] = None
    price_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_item_id: Optional[str] = None
    reused_customer: bool
    reused_subscription: bool
    lead_unit_price_cents: int
    lead_charge_threshold: int
    prepaid_lead_credits: int
    lead_commitment_total: Optional[int] = None
    initial_checkout_url: Optional[str] = None
    initial_checkout_session_id: Optional[str] = None
    initial_checkout_amount_cents: int


class ActivateRequest(CamelModel):
    checkout_session_id: str = Field(
        ...,
        min_length=1,
        max_length=2048,
        validation_alias=AliasChoices("checkoutSessionId", "sessionId", "checkout_session_id"),
    )


class ActivateResponse(CamelModel):
    success: bool = True
    status: str
    reason: Optional[str] = None
    checkout_session_id: str
    portal_key: Optional[str] = None
