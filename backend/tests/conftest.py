"""
Pytest fixtures for the reconciliation backend.

Provides the app with an in-memory database, a fake payment processor and a
fake chair controller (both served through httpx.MockTransport), and chair
factories.
"""

import json
import re
from datetime import timedelta

import httpx
import pytest

from poltrona import create_app
from poltrona.extensions import db
from poltrona.models import Chair, Payment, PaymentStatus
from poltrona.services.mercadopago import ProcessorPayment
from poltrona.time_utils import to_utc_z, utcnow

ADMIN_TOKEN = "admin-secret"

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'MERCADOPAGO_ACCESS_TOKEN': 'TEST-access-token',
    'MERCADOPAGO_WEBHOOK_URL': 'https://api.example.test/api/payments/webhook',
    'ADMIN_API_TOKEN': ADMIN_TOKEN,
    'PUBLIC_BASE_URL': 'https://pay.example.test',
    # Failed notifications must not sleep in tests
    'DEVICE_NOTIFY_BACKOFF_SECONDS': 0,
}


class FakeProcessor:
    """In-memory stand-in for the processor's /v1/payments API."""

    _payment_path = re.compile(r"^/v1/payments/(?P<id>[^/]+)$")

    def __init__(self):
        self.payments = {}
        self.requests = []
        self.fail_ids = set()
        self.down = False
        self._next_id = 1000

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("processor unreachable", request=request)

        path = request.url.path
        if request.method == "POST" and path == "/v1/payments":
            body = json.loads(request.content)
            self._next_id += 1
            payment_id = str(self._next_id)
            self.payments[payment_id] = {
                "id": int(payment_id),
                "status": "pending",
                "transaction_amount": body["transaction_amount"],
                "description": body["description"],
                "metadata": body["metadata"],
                "date_of_expiration": to_utc_z(utcnow() + timedelta(minutes=30)),
                "date_approved": None,
                "point_of_interaction": {
                    "transaction_data": {
                        "qr_code": f"00020126PIX{payment_id}",
                        "qr_code_base64": "iVBORw0KGgoAAAANSUhEUg==",
                    }
                },
            }
            return httpx.Response(201, json=self.payments[payment_id])

        match = self._payment_path.match(path)
        if request.method == "GET" and match:
            payment_id = match.group("id")
            if payment_id in self.fail_ids:
                return httpx.Response(500, json={"message": "internal upstream error"})
            if payment_id not in self.payments:
                return httpx.Response(404, json={"message": "Payment not found"})
            return httpx.Response(200, json=self.payments[payment_id])

        if request.method == "GET" and path == "/v1/payment_methods":
            return httpx.Response(200, json=[{"id": "pix"}, {"id": "visa"}])

        return httpx.Response(404, json={"message": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def set_status(self, payment_id, status, amount=None):
        payment = self.payments[str(payment_id)]
        payment["status"] = status
        if amount is not None:
            payment["transaction_amount"] = amount
        if status == "approved":
            payment["date_approved"] = to_utc_z(utcnow())
        return payment

    def add_payment(self, payment_id, *, chair_id=None, amount=10.0, status="pending", metadata=None):
        """A payment the processor knows that was not created through an intent."""
        if metadata is None:
            metadata = {"chair_id": chair_id} if chair_id else {}
        self.payments[str(payment_id)] = {
            "id": int(payment_id),
            "status": status,
            "transaction_amount": amount,
            "metadata": metadata,
            "date_approved": to_utc_z(utcnow()) if status == "approved" else None,
        }
        return self.payments[str(payment_id)]

    def gets(self):
        return [r for r in self.requests if r.method == "GET" and self._payment_path.match(r.url.path)]

    def creates(self):
        return [r for r in self.requests if r.method == "POST" and r.url.path == "/v1/payments"]


class FakeDevice:
    """Chair controllers answering on http://<ip>/..."""

    def __init__(self):
        self.calls = []
        self.mode = "ok"

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.calls.append({
            "method": request.method,
            "host": request.url.host,
            "path": request.url.path,
            "json": body,
        })
        if self.mode == "timeout":
            raise httpx.ConnectTimeout("timed out", request=request)
        if self.mode == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if self.mode == "error":
            return httpx.Response(500, text="relay fault")
        if request.url.path == "/status":
            return httpx.Response(200, json={"relay": "off", "uptime": 120})
        return httpx.Response(200, json={"ok": True})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def activations(self):
        return [c for c in self.calls if c["path"] == "/payment-approved"]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def processor(app):
    fake = FakeProcessor()
    app.config['MERCADOPAGO_HTTP_TRANSPORT'] = fake.transport()
    yield fake
    app.config['MERCADOPAGO_HTTP_TRANSPORT'] = None


@pytest.fixture(scope='function')
def device(app):
    fake = FakeDevice()
    app.config['DEVICE_HTTP_TRANSPORT'] = fake.transport()
    yield fake
    app.config['DEVICE_HTTP_TRANSPORT'] = None


@pytest.fixture(scope='function')
def make_chair(db_session):
    """Factory: make_chair("p1", price_cents=1000, ...)."""
    def _make(chair_id="p1", *, price_cents=1000, duration_seconds=900, ip_address="192.168.0.50", **fields):
        chair = Chair(
            chair_id=chair_id,
            ip_address=ip_address,
            price_cents=price_cents,
            duration_seconds=duration_seconds,
            location=fields.pop("location", "Shopping Centro"),
            public_payment_url=f"https://pay.example.test/pagar/{chair_id}",
            **fields,
        )
        db_session.add(chair)
        db_session.commit()
        return chair
    return _make


@pytest.fixture(scope='function')
def make_payment(db_session):
    def _make(payment_id, chair_id="p1", *, amount_cents=1000, status=PaymentStatus.PENDING.value, **fields):
        payment = Payment(
            payment_id=str(payment_id),
            chair_id=chair_id,
            amount_cents=amount_cents,
            status=status,
            source=fields.pop("source", "intent"),
            created_at=fields.pop("created_at", utcnow()),
            **fields,
        )
        db_session.add(payment)
        db_session.commit()
        return payment
    return _make


def processor_payment(payment_id, status="approved", *, amount_cents=1000, chair_id="p1") -> ProcessorPayment:
    """A processor view of a payment, as reconcile() receives it."""
    return ProcessorPayment(
        payment_id=str(payment_id),
        status=status,
        amount_cents=amount_cents,
        chair_id=chair_id,
        approved_at=utcnow() if status == "approved" else None,
    )


def admin_headers(actor: str = "maria") -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {ADMIN_TOKEN}', 'X-Actor': actor}
