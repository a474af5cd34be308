# ================================================================
# services/payment_service.py — Stripe billing provisioning & activation
# ================================================================
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import stripe
from fastapi import Request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from core.billing_models import (
    BillingModel,
    BillingModelDefaults,
    defaults_for,
)
from core.exceptions import (
    ConfigurationError,
    InputValidationError,
    NotFoundError,
    StateConflictError,
    UpstreamError,
)
from models.models import Organization, utcnow

logger = logging.getLogger(__name__)

LEADGEN_JOURNEY = "leadgen_billing"
DELIVERED_LEADS_KIND = "delivered_leads"
DELIVERED_LEADS_PRODUCT_NAME = "Delivered Leads"

# charge kind -> (product kind, product name)
CHARGE_PRODUCTS = {
    "paid_in_full": ("lead_package_40_paid_in_full", "40 Lead Package (Paid in Full)"),
    "upfront_bundle": ("lead_package_10_upfront_commitment_40", "10 Lead Upfront Bundle (40 Lead Commitment)"),
    "card_verification": ("lead_card_verification", "Card Verification Charge"),
    "first_lead": ("lead_first_lead_charge", "First Lead Charge"),
}
ACTIVATION_CHARGE_KINDS = set(CHARGE_PRODUCTS)

_CHECKOUT_SESSION_ID = re.compile(r"cs_(?:live|test)_[A-Za-z0-9]+")


def _metadata(obj: Any) -> Dict[str, str]:
    raw = obj.get("metadata") if obj is not None else None
    return {str(k): str(v) for k, v in dict(raw or {}).items()}


# ============================================================
# 🔌 Stripe gateway (thin SDK wrapper, one per process)
# ============================================================
class StripeGateway:
    """
    Wraps the module-level Stripe resources with an explicit API key.

    Returns plain dicts so the provisioner never depends on SDK object types;
    every SDK failure is translated to UpstreamError / NotFoundError.
    """

    def __init__(self, api_key: str, api_version: Optional[str] = None, currency: str = "usd"):
        self.api_key = api_key
        self.api_version = api_version
        self.currency = currency

    def _opts(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            opts["stripe_version"] = self.api_version
        if idempotency_key:
            opts["idempotency_key"] = idempotency_key
        return opts

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFoundError(f"Stripe {description}: not found.") from e
            raise UpstreamError(f"Stripe {description} failed: {e.user_message or e}") from e
        except stripe.StripeError as e:
            raise UpstreamError(f"Stripe {description} failed: {e.user_message or e}") from e

    # ---------- customers ----------
    def find_customers_by_email(self, email: str) -> List[Dict[str, Any]]:
        result = self._call("customer lookup", stripe.Customer.list, email=email, limit=10, **self._opts())
        return [{"id": c.get("id"), "metadata": _metadata(c)} for c in result.get("data") or []]

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            customer = self._call("customer retrieve", stripe.Customer.retrieve, customer_id, **self._opts())
        except NotFoundError:
            return None
        if customer.get("deleted"):
            return None
        return {"id": customer.get("id"), "metadata": _metadata(customer)}

    def create_customer(self, email: str, name: str, metadata: Dict[str, str], idempotency_key: str) -> str:
        customer = self._call(
            "customer create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata,
            **self._opts(idempotency_key),
        )
        return customer.get("id")

    def update_customer(self, customer_id: str, email: str, name: str, metadata: Dict[str, str]) -> None:
        self._call(
            "customer update",
            stripe.Customer.modify,
            customer_id,
            email=email,
            name=name,
            metadata=metadata,
            **self._opts(),
        )

    # ---------- products & prices ----------
    def find_product(self, kind: str, name: str) -> Optional[str]:
        products = self._call("product lookup", stripe.Product.list, active=True, limit=100, **self._opts())
        for product in products.get("data") or []:
            if _metadata(product).get("leadzone_kind") == kind or (product.get("name") or "").lower() == name.lower():
                return product.get("id")
        return None

    def create_product(self, kind: str, name: str) -> str:
        product = self._call(
            "product create",
            stripe.Product.create,
            name=name,
            metadata={"leadzone_kind": kind},
            **self._opts(f"product-{kind}"),
        )
        return product.get("id")

    def find_price(self, product_id: str, unit_amount: int, metered: bool) -> Optional[str]:
        prices = self._call(
            "price lookup", stripe.Price.list, product=product_id, active=True, limit=100, **self._opts()
        )
        for price in prices.get("data") or []:
            if price.get("currency") != self.currency or price.get("unit_amount") != unit_amount:
                continue
            recurring = price.get("recurring")
            if metered:
                if recurring and recurring.get("interval") == "month" and recurring.get("usage_type") == "metered":
                    return price.get("id")
            elif not recurring:
                return price.get("id")
        return None

    def create_price(self, product_id: str, unit_amount: int, metered: bool, kind: str) -> str:
        params: Dict[str, Any] = {
            "product": product_id,
            "currency": self.currency,
            "unit_amount": unit_amount,
            "metadata": {"leadzone_kind": kind},
        }
        if metered:
            params["recurring"] = {"interval": "month", "usage_type": "metered"}
        price = self._call(
            "price create",
            stripe.Price.create,
            **params,
            **self._opts(f"price-{product_id}-{unit_amount}-{'metered' if metered else 'once'}"),
        )
        return price.get("id")

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        price = self._call("price retrieve", stripe.Price.retrieve, price_id, **self._opts())
        product = price.get("product")
        return {
            "id": price.get("id"),
            "product": product if isinstance(product, str) else product.get("id"),
            "unit_amount": price.get("unit_amount"),
            "recurring": bool(price.get("recurring")),
        }

    # ---------- subscriptions ----------
    @staticmethod
    def _subscription(sub: Any) -> Dict[str, Any]:
        items = (sub.get("items") or {}).get("data") or []
        return {
            "id": sub.get("id"),
            "status": sub.get("status"),
            "metadata": _metadata(sub),
            "item_ids": [item.get("id") for item in items],
        }

    def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        result = self._call(
            "subscription lookup", stripe.Subscription.list, customer=customer_id, status="all", limit=100, **self._opts()
        )
        return [self._subscription(s) for s in result.get("data") or []]

    def retrieve_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        try:
            sub = self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id, **self._opts())
        except NotFoundError:
            return None
        return self._subscription(sub)

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        threshold: int,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        sub = self._call(
            "subscription create",
            stripe.Subscription.create,
            customer=customer_id,
            collection_method="charge_automatically",
            items=[{"price": price_id, "billing_thresholds": {"usage_gte": threshold}}],
            metadata=metadata,
            **self._opts(idempotency_key),
        )
        return self._subscription(sub)

    def update_subscription_item(self, item_id: str, price_id: str, threshold: int) -> None:
        self._call(
            "subscription item update",
            stripe.SubscriptionItem.modify,
            item_id,
            price=price_id,
            billing_thresholds={"usage_gte": threshold},
            **self._opts(),
        )

    def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> None:
        self._call("subscription update", stripe.Subscription.modify, subscription_id, metadata=metadata, **self._opts())

    # ---------- checkout ----------
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        save_payment_method: bool,
    ) -> Dict[str, Any]:
        payment_intent_data: Dict[str, Any] = {"metadata": metadata}
        if save_payment_method:
            payment_intent_data["setup_future_usage"] = "off_session"

        checkout_session = self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            mode="payment",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            payment_intent_data=payment_intent_data,
            metadata=metadata,
            **self._opts(),
        )
        return {"id": checkout_session.get("id"), "url": checkout_session.get("url")}

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        checkout_session = self._call("checkout session retrieve", stripe.checkout.Session.retrieve, session_id, **self._opts())
        customer = checkout_session.get("customer")
        details = checkout_session.get("customer_details") or {}
        return {
            "id": checkout_session.get("id"),
            "payment_status": checkout_session.get("payment_status"),
            "status": checkout_session.get("status"),
            "customer": customer if isinstance(customer, str) or customer is None else customer.get("id"),
            "customer_email": details.get("email") if details else None,
            "amount_total": checkout_session.get("amount_total"),
            "metadata": _metadata(checkout_session),
        }


# ============================================================
# 🧾 Provisioning
# ============================================================
@dataclass
class ProvisionRequest:
    portal_key: str
    company_name: str
    billing_email: str
    billing_model: Optional[str] = None
    lead_unit_price_cents: Any = None
    lead_charge_threshold: Any = None


@dataclass
class ProvisionResult:
    billing_model: BillingModel
    defaults: BillingModelDefaults
    stripe_customer_id: str
    product_id: Optional[str]
    price_id: Optional[str]
    subscription_id: Optional[str]
    subscription_item_id: Optional[str]
    reused_customer: bool
    reused_subscription: bool
    lead_charge_threshold: int
    initial_checkout_url: Optional[str]
    initial_checkout_session_id: Optional[str]
    initial_checkout_amount_cents: int


def _positive_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    number = int(value)
    return number if number > 0 else fallback


class BillingProvisioner:
    """
    Creates (or reuses) the Stripe customer, metered subscription and initial
    checkout session for one portal.

    Idempotent per portal: stored Stripe ids on the Organization are tried
    first, then Stripe objects tagged with ``portal_key`` metadata, and every
    create carries a deterministic idempotency key so concurrent retries
    collapse into one customer and one subscription.
    """

    def __init__(self, gateway: StripeGateway, settings):
        self.gateway = gateway
        self.settings = settings

    # ---------- organization ----------
    def _upsert_organization(self, session: Session, request: ProvisionRequest) -> Organization:
        organization = session.get(Organization, request.portal_key)
        if organization is None:
            organization = Organization(portal_key=request.portal_key, name=request.company_name)
            session.add(organization)
            logger.info(f"🏢 Created organization for portal {request.portal_key}")
        else:
            organization.name = request.company_name or organization.name
        organization.billing_email = request.billing_email
        return organization

    # ---------- customer ----------
    def _resolve_customer(self, organization: Organization, request: ProvisionRequest) -> tuple:
        metadata = {"portal_key": request.portal_key, "company_name": request.company_name}

        if organization.stripe_customer_id:
            existing = self.gateway.retrieve_customer(organization.stripe_customer_id)
            if existing:
                self.gateway.update_customer(
                    existing["id"], request.billing_email, request.company_name, {**existing["metadata"], **metadata}
                )
                return existing["id"], True

        candidates = self.gateway.find_customers_by_email(request.billing_email)
        match = next((c for c in candidates if c["metadata"].get("portal_key") == request.portal_key), None)
        if match:
            self.gateway.update_customer(match["id"], request.billing_email, request.company_name, {**match["metadata"], **metadata})
            return match["id"], True

        customer_id = self.gateway.create_customer(
            request.billing_email,
            request.company_name,
            metadata,
            idempotency_key=f"customer-{request.portal_key}",
        )
        logger.info(f"👤 Created Stripe customer {customer_id} for {request.portal_key}")
        return customer_id, False

    # ---------- prices ----------
    def _resolve_metered_price(self, unit_amount: int) -> tuple:
        product_id = self.settings.STRIPE_DEFAULT_LEAD_PRODUCT_ID or self.gateway.find_product(
            DELIVERED_LEADS_KIND, DELIVERED_LEADS_PRODUCT_NAME
        )
        if not product_id:
            product_id = self.gateway.create_product(DELIVERED_LEADS_KIND, DELIVERED_LEADS_PRODUCT_NAME)

        if self.settings.STRIPE_DEFAULT_LEAD_PRICE_ID:
            return product_id, self.settings.STRIPE_DEFAULT_LEAD_PRICE_ID

        price_id = self.gateway.find_price(product_id, unit_amount, metered=True)
        if not price_id:
            price_id = self.gateway.create_price(product_id, unit_amount, metered=True, kind=DELIVERED_LEADS_KIND)
        return product_id, price_id

    def _pinned_price_for(self, charge_kind: str) -> Optional[str]:
        return {
            "paid_in_full": self.settings.STRIPE_PAID_IN_FULL_PRICE_ID,
            "upfront_bundle": self.settings.STRIPE_UPFRONT_BUNDLE_PRICE_ID,
            "card_verification": self.settings.STRIPE_CARD_VERIFICATION_PRICE_ID,
        }.get(charge_kind)

    def _resolve_one_time_price(self, charge_kind: str, amount_cents: int) -> tuple:
        pinned = self._pinned_price_for(charge_kind)
        if pinned:
            price = self.gateway.retrieve_price(pinned)
            if price["recurring"] or (price["unit_amount"] is not None and price["unit_amount"] != amount_cents):
                logger.warning(
                    f"⚠️ Pinned {charge_kind} price {pinned} does not match the expected one-time charge: "
                    f"unit_amount={price['unit_amount']} recurring={price['recurring']} expected={amount_cents}"
                )
            return price["product"], pinned

        product_kind, product_name = CHARGE_PRODUCTS[charge_kind]
        product_id = self.gateway.find_product(product_kind, product_name) or self.gateway.create_product(
            product_kind, product_name
        )
        price_id = self.gateway.find_price(product_id, amount_cents, metered=False)
        if not price_id:
            price_id = self.gateway.create_price(product_id, amount_cents, metered=False, kind=product_kind)
        return product_id, price_id

    # ---------- subscription ----------
    def _upsert_subscription(
        self,
        organization: Organization,
        customer_id: str,
        price_id: str,
        threshold: int,
        billing_model: BillingModel,
    ) -> tuple:
        metadata = {"portal_key": organization.portal_key, "billing_model": billing_model.value}

        existing = None
        if organization.stripe_subscription_id:
            existing = self.gateway.retrieve_subscription(organization.stripe_subscription_id)
            if existing and existing["status"] == "canceled":
                existing = None
        if existing is None:
            existing = next(
                (
                    s
                    for s in self.gateway.list_subscriptions(customer_id)
                    if s["status"] != "canceled" and s["metadata"].get("portal_key") == organization.portal_key
                ),
                None,
            )

        if existing and existing["item_ids"]:
            item_id = existing["item_ids"][0]
            self.gateway.update_subscription_item(item_id, price_id, threshold)
            self.gateway.update_subscription_metadata(existing["id"], {**existing["metadata"], **metadata})
            logger.info(f"♻️ Reusing subscription {existing['id']} for {organization.portal_key}")
            return existing["id"], item_id, True

        created = self.gateway.create_subscription(
            customer_id,
            price_id,
            threshold,
            metadata,
            idempotency_key=f"subscription-{organization.portal_key}-{customer_id}-{price_id}",
        )
        logger.info(f"🆕 Created subscription {created['id']} for {organization.portal_key}")
        return created["id"], (created["item_ids"] or [None])[0], False

    def _save_billing(
        self, session: Session, organization: Organization, request: ProvisionRequest, fields: Dict[str, Any]
    ) -> Organization:
        for key, value in fields.items():
            setattr(organization, key, value)
        organization.updated_at = utcnow()
        session.add(organization)
        try:
            session.commit()
            return organization
        except IntegrityError:
            # A concurrent provision inserted the same portal first; apply onto its row
            session.rollback()
            logger.warning(f"⚠️ Concurrent provisioning for {request.portal_key}; merging into existing row")

        organization = session.get(Organization, request.portal_key)
        if organization is None:
            raise StateConflictError(
                "Portal changed while provisioning; retry.",
                details={"reason": "concurrent_provisioning", "portalKey": request.portal_key},
            )
        organization.name = request.company_name or organization.name
        organization.billing_email = request.billing_email
        for key, value in fields.items():
            setattr(organization, key, value)
        organization.updated_at = utcnow()
        session.add(organization)
        session.commit()
        return organization

    # ---------- entry point ----------
    def provision(self, session: Session, request: ProvisionRequest) -> ProvisionResult:
        defaults = defaults_for(request.billing_model, request.lead_unit_price_cents)
        billing_model = defaults.billing_model
        unit_amount = defaults.lead_unit_price_cents

        organization = self._upsert_organization(session, request)
        customer_id, reused_customer = self._resolve_customer(organization, request)

        subscription_id = subscription_item_id = None
        product_id = price_id = None
        reused_subscription = False

        if billing_model == BillingModel.PACKAGE_40_PAID_IN_FULL:
            threshold = defaults.lead_charge_threshold
            charge_kind = "paid_in_full"
            save_payment_method = False
        else:
            if billing_model == BillingModel.PAY_PER_LEAD_PERPETUAL:
                threshold = 1
            else:
                threshold = _positive_int(request.lead_charge_threshold, defaults.lead_charge_threshold)

            product_id, price_id = self._resolve_metered_price(unit_amount)
            subscription_id, subscription_item_id, reused_subscription = self._upsert_subscription(
                organization, customer_id, price_id, threshold, billing_model
            )
            charge_kind = {
                BillingModel.COMMITMENT_40_WITH_10_UPFRONT: "upfront_bundle",
                BillingModel.PAY_PER_LEAD_PERPETUAL: "card_verification",
                BillingModel.PAY_PER_LEAD_40_FIRST_LEAD: "first_lead",
            }[billing_model]
            save_payment_method = True

        one_time_product_id, one_time_price_id = self._resolve_one_time_price(
            charge_kind, defaults.initial_charge_cents
        )
        if billing_model == BillingModel.PACKAGE_40_PAID_IN_FULL:
            product_id, price_id = one_time_product_id, one_time_price_id

        checkout = self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=one_time_price_id,
            success_url=self.settings.STRIPE_SUCCESS_URL,
            cancel_url=self.settings.STRIPE_CANCEL_URL,
            metadata={
                "portal_key": request.portal_key,
                "company_name": request.company_name,
                "billing_model": billing_model.value,
                "charge_kind": charge_kind,
                "initial_charge_cents": str(defaults.initial_charge_cents),
                "journey": LEADGEN_JOURNEY,
            },
            save_payment_method=save_payment_method,
        )

        self._save_billing(
            session,
            organization,
            request,
            {
                "billing_model": billing_model.value,
                "lead_unit_price_cents": unit_amount,
                "lead_charge_threshold": threshold,
                "prepaid_lead_credits": defaults.prepaid_lead_credits,
                "lead_commitment_total": defaults.lead_commitment_total,
                "initial_charge_cents": defaults.initial_charge_cents,
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": subscription_id,
                "stripe_subscription_item_id": subscription_item_id,
            },
        )

        logger.info(
            f"💳 Provisioned billing for {request.portal_key}: model={billing_model.value} "
            f"customer={customer_id} subscription={subscription_id} checkout={checkout['id']}"
        )
        return ProvisionResult(
            billing_model=billing_model,
            defaults=defaults,
            stripe_customer_id=customer_id,
            product_id=product_id,
            price_id=price_id,
            subscription_id=subscription_id,
            subscription_item_id=subscription_item_id,
            reused_customer=reused_customer,
            reused_subscription=reused_subscription,
            lead_charge_threshold=threshold,
            initial_checkout_url=checkout["url"],
            initial_checkout_session_id=checkout["id"],
            initial_checkout_amount_cents=defaults.initial_charge_cents,
        )


# ============================================================
# ✅ Activation (webhook fallback)
# ============================================================
@dataclass
class ActivationResult:
    status: str  # "activated" | "skipped"
    checkout_session_id: str
    portal_key: Optional[str] = None
    reason: Optional[str] = None
    billing_model: Optional[str] = None
    amount_cents: Optional[int] = None
    customer_email: Optional[str] = None
    organization_name: Optional[str] = None


def extract_checkout_session_id(value: Any) -> Optional[str]:
    """Accepts a raw ``cs_...`` id or a success URL carrying ``session_id``."""
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()

    if value.startswith("http://") or value.startswith("https://"):
        for candidate in parse_qs(urlparse(value).query).get("session_id", []):
            match = _CHECKOUT_SESSION_ID.fullmatch(candidate.strip())
            if match:
                return match.group(0)
        return None

    match = _CHECKOUT_SESSION_ID.search(value)
    return match.group(0) if match else None


def activate_checkout_session(session: Session, gateway: StripeGateway, checkout_session_id: str) -> ActivationResult:
    """
    Mark the portal as leadgen-paid once Stripe reports the checkout paid.

    Safe to call repeatedly: the flag flips through a conditional UPDATE, and
    later calls for the same portal come back as ``skipped``.
    """
    checkout = gateway.retrieve_checkout_session(checkout_session_id)
    metadata = checkout["metadata"]
    portal_key = (metadata.get("portal_key") or "").strip()
    charge_kind = metadata.get("charge_kind")

    if (
        checkout["payment_status"] != "paid"
        or charge_kind not in ACTIVATION_CHARGE_KINDS
        or metadata.get("journey") != LEADGEN_JOURNEY
        or not portal_key
    ):
        raise InputValidationError(
            "Checkout session is not eligible for activation.",
            details={"checkoutSessionId": checkout_session_id, "paymentStatus": checkout["payment_status"]},
        )

    organization = session.get(Organization, portal_key)
    if organization is None:
        raise NotFoundError("Organization not found.", details={"portalKey": portal_key})

    result = ActivationResult(
        status="skipped",
        checkout_session_id=checkout_session_id,
        portal_key=portal_key,
        reason="already_activated",
        billing_model=metadata.get("billing_model") or organization.billing_model,
        amount_cents=checkout.get("amount_total"),
        customer_email=checkout.get("customer_email") or organization.billing_email,
        organization_name=organization.name,
    )
    if organization.leadgen_paid:
        return result

    now = utcnow()
    values = {
        "leadgen_paid": True,
        "leadgen_paid_at": now,
        "leadgen_checkout_session_id": checkout_session_id,
        "is_active": True,
        "updated_at": now,
    }
    if checkout.get("customer") and not organization.stripe_customer_id:
        values["stripe_customer_id"] = checkout["customer"]

    swap = session.connection().execute(
        update(Organization)
        .where(Organization.portal_key == portal_key, Organization.leadgen_paid == False)  # noqa: E712
        .values(**values)
    )
    session.commit()

    if swap.rowcount != 1:
        return result

    logger.info(f"🎉 Leadgen activated for {portal_key} via {checkout_session_id}")
    result.status = "activated"
    result.reason = None
    return result


def build_stripe_gateway(settings) -> Optional[StripeGateway]:
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("⚠️ STRIPE_SECRET_KEY not set — billing endpoints will answer 503.")
        return None
    return StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_API_VERSION, settings.STRIPE_CURRENCY)


def get_stripe_gateway(request: Request) -> StripeGateway:
    gateway = request.app.state.stripe_gateway
    if gateway is None:
        raise ConfigurationError("STRIPE_SECRET_KEY is not configured.")
    return gateway


def get_billing_provisioner(request: Request) -> BillingProvisioner:
    return BillingProvisioner(get_stripe_gateway(request), request.app.state.settings)