"""
conftest.py — Shared Test Fixtures for LeadZone

Provides an application per test built from explicit Settings against a
temporary SQLite file, an in-memory Airtable served through
httpx.MockTransport, a fake Stripe gateway and a recording email service.

Business Rules:
- Each test gets a fresh database file (no shared state between tests)
- Stripe is never called; the fake mirrors its lookup/create/idempotency rules
- Airtable traffic goes through the real AirtableRegistry over a mock transport
"""

import os

# Must be set before importing main (module-level app)
os.environ.setdefault("JWT_SECRET", "test-only-secret-value-that-is-long-enough-0123")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import base64
import itertools
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from core.config import Settings
from core.database import create_db_and_tables
from core.exceptions import NotFoundError
from core.security import hash_password
from main import create_app
from models.models import Organization, PortalUser
from services.crm_registry import AirtableRegistry
from services.email_service import EmailService

TEST_JWT_SECRET = "unit-test-signing-secret-0123456789abcdef"
TOOL_PASSWORD = "open-sesame-internal"
BASIC_USER = "ops"
BASIC_PASS = "ops-pass-123"
PORTAL_PASSWORD = "correct-horse-battery"


# ── Fake Airtable (served over httpx.MockTransport) ──────────────────


class FakeAirtable:
    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.page_size = 100
        self.fail_list = False
        self.fail_patch = False
        self.list_calls = 0
        self.patches: List[tuple] = []

    def add(self, record_id: str, name: str, status: str, zips: Any) -> None:
        self.records.append(
            {
                "id": record_id,
                "fields": {"Business Name": name, "Status": status, "Target ZIP Codes": zips},
            }
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.list_calls += 1
            if self.fail_list:
                return httpx.Response(500, json={"error": "boom"})
            offset = int(request.url.params.get("offset", "0"))
            body: Dict[str, Any] = {"records": self.records[offset: offset + self.page_size]}
            if offset + self.page_size < len(self.records):
                body["offset"] = str(offset + self.page_size)
            return httpx.Response(200, json=body)

        if request.method == "PATCH":
            if self.fail_patch:
                return httpx.Response(422, json={"error": "INVALID_VALUE"})
            record_id = request.url.path.rsplit("/", 1)[-1]
            payload = json.loads(request.content)
            self.patches.append((record_id, payload))
            for record in self.records:
                if record["id"] == record_id:
                    record["fields"].update(payload["fields"])
            return httpx.Response(200, json={"id": record_id, "fields": payload["fields"]})

        return httpx.Response(405)


# ── Fake Stripe gateway ──────────────────────────────────────────────


class FakeStripeGateway:
    """Same surface as StripeGateway, backed by dicts."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.item_thresholds: Dict[str, int] = {}
        self.item_prices: Dict[str, str] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.idempotent: Dict[str, Any] = {}
        self.create_calls: Dict[str, int] = {}

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _count(self, kind: str) -> None:
        self.create_calls[kind] = self.create_calls.get(kind, 0) + 1

    # customers
    def find_customers_by_email(self, email):
        return [
            {"id": c["id"], "metadata": dict(c["metadata"])}
            for c in self.customers.values()
            if c["email"] == email
        ]

    def retrieve_customer(self, customer_id):
        customer = self.customers.get(customer_id)
        return {"id": customer["id"], "metadata": dict(customer["metadata"])} if customer else None

    def create_customer(self, email, name, metadata, idempotency_key):
        if idempotency_key in self.idempotent:
            return self.idempotent[idempotency_key]
        self._count("customer")
        customer_id = self._new_id("cus")
        self.customers[customer_id] = {"id": customer_id, "email": email, "name": name, "metadata": dict(metadata)}
        self.idempotent[idempotency_key] = customer_id
        return customer_id

    def update_customer(self, customer_id, email, name, metadata):
        self.customers[customer_id].update({"email": email, "name": name, "metadata": dict(metadata)})

    # products & prices
    def find_product(self, kind, name):
        for product in self.products.values():
            if product["kind"] == kind or product["name"].lower() == name.lower():
                return product["id"]
        return None

    def create_product(self, kind, name):
        self._count("product")
        product_id = self._new_id("prod")
        self.products[product_id] = {"id": product_id, "kind": kind, "name": name}
        return product_id

    def find_price(self, product_id, unit_amount, metered):
        for price in self.prices.values():
            if price["product"] == product_id and price["unit_amount"] == unit_amount and price["metered"] == metered:
                return price["id"]
        return None

    def create_price(self, product_id, unit_amount, metered, kind):
        self._count("price")
        price_id = self._new_id("price")
        self.prices[price_id] = {"id": price_id, "product": product_id, "unit_amount": unit_amount, "metered": metered}
        return price_id

    def retrieve_price(self, price_id):
        price = self.prices.get(price_id)
        if price is None:
            return {"id": price_id, "product": "prod_pinned", "unit_amount": None, "recurring": False}
        return {
            "id": price_id,
            "product": price["product"],
            "unit_amount": price["unit_amount"],
            "recurring": price["metered"],
        }

    # subscriptions
    def _view(self, sub):
        return {"id": sub["id"], "status": sub["status"], "metadata": dict(sub["metadata"]), "item_ids": list(sub["item_ids"])}

    def list_subscriptions(self, customer_id):
        return [self._view(s) for s in self.subscriptions.values() if s["customer"] == customer_id]

    def retrieve_subscription(self, subscription_id):
        sub = self.subscriptions.get(subscription_id)
        return self._view(sub) if sub else None

    def create_subscription(self, customer_id, price_id, threshold, metadata, idempotency_key):
        if idempotency_key in self.idempotent:
            return self._view(self.subscriptions[self.idempotent[idempotency_key]])
        self._count("subscription")
        sub_id = self._new_id("sub")
        item_id = self._new_id("si")
        self.subscriptions[sub_id] = {
            "id": sub_id,
            "customer": customer_id,
            "price": price_id,
            "status": "active",
            "metadata": dict(metadata),
            "item_ids": [item_id],
        }
        self.item_thresholds[item_id] = threshold
        self.item_prices[item_id] = price_id
        self.idempotent[idempotency_key] = sub_id
        return self._view(self.subscriptions[sub_id])

    def update_subscription_item(self, item_id, price_id, threshold):
        self.item_prices[item_id] = price_id
        self.item_thresholds[item_id] = threshold

    def update_subscription_metadata(self, subscription_id, metadata):
        self.subscriptions[subscription_id]["metadata"] = dict(metadata)

    # checkout
    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata, save_payment_method):
        self._count("checkout")
        session_id = f"cs_test_{next(self._ids)}abc"
        self.checkout_sessions[session_id] = {
            "id": session_id,
            "customer": customer_id,
            "price": price_id,
            "payment_status": "unpaid",
            "status": "open",
            "metadata": dict(metadata),
            "save_payment_method": save_payment_method,
            "amount_total": int(metadata.get("initial_charge_cents", "0")),
        }
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_checkout_session(self, session_id):
        checkout = self.checkout_sessions.get(session_id)
        if checkout is None:
            raise NotFoundError("Stripe checkout session retrieve: not found.")
        return {
            "id": checkout["id"],
            "payment_status": checkout["payment_status"],
            "status": checkout["status"],
            "customer": checkout["customer"],
            "customer_email": None,
            "amount_total": checkout["amount_total"],
            "metadata": dict(checkout["metadata"]),
        }

    def mark_paid(self, session_id):
        self.checkout_sessions[session_id].update({"payment_status": "paid", "status": "complete"})


# ── Recording email service ──────────────────────────────────────────


class RecordingEmailService(EmailService):
    def __init__(self, ops_recipients: Optional[List[str]] = None):
        super().__init__(api_key=None, sender_email=None, ops_recipients=ops_recipients or ["ops@leadzone.io"])
        self.sent: List[Dict[str, Any]] = []

    def send(self, to_emails, subject, html_content):
        recipients = [e for e in to_emails if e]
        if not recipients:
            return False
        self.sent.append({"to": recipients, "subject": subject, "html": html_content})
        return True


# ── Fixtures ─────────────────────────────────────────────────────────


def build_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        ENVIRONMENT="test",
        JWT_SECRET=TEST_JWT_SECRET,
        INTERNAL_TOOL_PASSWORD=TOOL_PASSWORD,
        INTERNAL_BASIC_AUTH_USER=BASIC_USER,
        INTERNAL_BASIC_AUTH_PASS=BASIC_PASS,
        STRIPE_SECRET_KEY="sk_test_fake",
        LEADGEN_STRIPE_ACTIVE=True,
        AIRTABLE_API_KEY="patFake",
        AIRTABLE_CLIENT_BASE_ID="appClients",
        AIRTABLE_CLIENT_TABLE_ID="tblClients",
        AIRTABLE_PORTAL_KEY_MAP_JSON=json.dumps({"Acme Roofing LLC": "acme"}),
        OPS_NOTIFICATION_EMAILS="ops@leadzone.io",
        RATE_LIMIT_AUTH="100/minute",
        RATE_LIMIT_AUDIT="100/minute",
        RATE_LIMIT_DEFAULT="100/minute",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_app(settings: Settings, airtable: FakeAirtable):
    app = create_app(settings)
    app.state.http_client.close()
    app.state.http_client = httpx.Client(transport=httpx.MockTransport(airtable.handler))
    app.state.crm_registry = AirtableRegistry.from_settings(settings, app.state.http_client)
    app.state.stripe_gateway = FakeStripeGateway()
    app.state.email_service = RecordingEmailService()
    create_db_and_tables(app.state.engine)
    return app


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return build_settings(tmp_path)


@pytest.fixture()
def app_factory(tmp_path):
    """Builds a separate app from setting overrides (own DB file and Airtable)."""
    counter = itertools.count()

    def _factory(airtable: Optional[FakeAirtable] = None, **overrides):
        workdir = tmp_path / f"app{next(counter)}"
        workdir.mkdir()
        return build_app(build_settings(workdir, **overrides), airtable or FakeAirtable())

    return _factory


@pytest.fixture()
def airtable() -> FakeAirtable:
    fake = FakeAirtable()
    fake.add("recAcme", "Acme Roofing LLC", "4. Launched", "75001")
    fake.add("recBeta", "Beta Builders", "4. Launched", "75003, 75004")
    fake.add("recGamma", "Gamma Gutters", "1. Prospect", "75002")
    return fake


@pytest.fixture()
def app(settings, airtable):
    return build_app(settings, airtable)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def session(app):
    with Session(app.state.engine) as s:
        yield s


@pytest.fixture()
def registry(app) -> AirtableRegistry:
    return app.state.crm_registry


@pytest.fixture()
def stripe_gateway(app) -> FakeStripeGateway:
    return app.state.stripe_gateway


@pytest.fixture()
def email_outbox(app) -> List[Dict[str, Any]]:
    return app.state.email_service.sent


@pytest.fixture()
def organization(session) -> Organization:
    org = Organization(
        portal_key="acme",
        name="Acme Roofing LLC",
        service_areas=["Dallas, TX"],
        target_zip_codes=["75001"],
        lead_delivery_emails=["leads@acmeroofing.com"],
    )
    session.add(org)
    session.commit()
    session.refresh(org)
    return org


@pytest.fixture()
def portal_user(session, organization) -> PortalUser:
    user = PortalUser(
        email="owner@acmeroofing.com",
        full_name="Acme Owner",
        password_hash=hash_password(PORTAL_PASSWORD),
        portal_key=organization.portal_key,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture()
def portal_headers(app, portal_user) -> Dict[str, str]:
    token = app.state.token_service.create_portal_session_token(portal_user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def tool_headers(app) -> Dict[str, str]:
    return {"Authorization": f"Bearer {app.state.token_service.create_internal_tool_token()}"}


@pytest.fixture()
def tool_password() -> str:
    return TOOL_PASSWORD


@pytest.fixture()
def jwt_secret() -> str:
    return TEST_JWT_SECRET


@pytest.fixture()
def portal_password() -> str:
    return PORTAL_PASSWORD


@pytest.fixture()
def fake_gateway() -> FakeStripeGateway:
    """Standalone gateway for service-level tests."""
    return FakeStripeGateway()


@pytest.fixture()
def basic_headers() -> Dict[str, str]:
    encoded = base64.b64encode(f"{BASIC_USER}:{BASIC_PASS}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}
