# routes/payment.py
import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel import Session

from core.billing_models import billing_model_label
from core.config import Settings, get_settings
from core.database import get_session
from core.exceptions import InputValidationError, StateConflictError
from core.rate_limit import RateLimitClass, rate_limit
from core.request_guards import require_json_content_type
from core.security import require_internal_tool_token
from schemas.billing_schema import (
    ActivateRequest,
    ActivateResponse,
    ProvisionBillingRequest,
    ProvisionBillingResponse,
)
from services.email_service import EmailService, get_email_service
from services.payment_service import (
    BillingProvisioner,
    ProvisionRequest,
    StripeGateway,
    activate_checkout_session,
    extract_checkout_session_id,
    get_billing_provisioner,
    get_stripe_gateway,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing"])


def require_leadgen_stripe_active(settings: Settings = Depends(get_settings)) -> None:
    if not settings.LEADGEN_STRIPE_ACTIVE:
        raise StateConflictError("Lead generation billing is not enabled.", details={"reason": "feature_disabled"})


# ==========================================================
# 💳 Internal: provision Stripe billing for a portal
# ==========================================================
@router.post(
    "/internal/leadgen/provision-billing",
    response_model=ProvisionBillingResponse,
    dependencies=[
        Depends(require_json_content_type),
        Depends(rate_limit(RateLimitClass.AUTH)),
        Depends(require_internal_tool_token),
        Depends(require_leadgen_stripe_active),
    ],
)
def provision_billing(
    body: ProvisionBillingRequest,
    session: Session = Depends(get_session),
    provisioner: BillingProvisioner = Depends(get_billing_provisioner),
):
    result = provisioner.provision(
        session,
        ProvisionRequest(
            portal_key=body.portal_key,
            company_name=body.company_name,
            billing_email=str(body.billing_email).lower(),
            billing_model=body.billing_model,
            lead_unit_price_cents=body.lead_unit_price_cents,
            lead_charge_threshold=body.lead_charge_threshold,
        ),
    )
    defaults = result.defaults

    return ProvisionBillingResponse(
        portal_key=body.portal_key,
        billing_model=result.billing_model.value,
        billing_model_label=billing_model_label(result.billing_model),
        stripe_customer_id=result.stripe_customer_id,
        product_id=result.product_id,
        price_id=result.price_id,
        subscription_id=result.subscription_id,
        subscription_item_id=result.subscription_item_id,
        reused_customer=result.reused_customer,
        reused_subscription=result.reused_subscription,
        lead_unit_price_cents=defaults.lead_unit_price_cents,
        lead_charge_threshold=result.lead_charge_threshold,
        prepaid_lead_credits=defaults.prepaid_lead_credits,
        lead_commitment_total=defaults.lead_commitment_total,
        initial_checkout_url=result.initial_checkout_url,
        initial_checkout_session_id=result.initial_checkout_session_id,
        initial_checkout_amount_cents=result.initial_checkout_amount_cents,
    )


# ==========================================================
# ✅ Public: activate after checkout (webhook fallback)
# ==========================================================
@router.post(
    "/public/stripe/activate",
    response_model=ActivateResponse,
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUTH))],
)
def activate(
    body: ActivateRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    email_service: EmailService = Depends(get_email_service),
):
    checkout_session_id = extract_checkout_session_id(body.checkout_session_id)
    if not checkout_session_id:
        raise InputValidationError("A valid Stripe checkout session id is required.", details={"field": "checkoutSessionId"})

    result = activate_checkout_session(session, gateway, checkout_session_id)

    if result.status == "activated":
        background_tasks.add_task(
            email_service.send_activation_notices,
            customer_email=result.customer_email,
            organization_name=result.organization_name or result.portal_key,
            portal_key=result.portal_key,
            billing_model_label=billing_model_label(result.billing_model),
            amount_cents=result.amount_cents,
            checkout_session_id=checkout_session_id,
        )

    return ActivateResponse(
        status=result.status,
        reason=result.reason,
        checkout_session_id=checkout_session_id,
        portal_key=result.portal_key,
    )
