# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The app module binds its engine at import time, so the test database URL is
set before anything from ``mercadoboom`` is imported.
"""

import json
import os
import re
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import urlsplit

_TEST_DIR = tempfile.mkdtemp(prefix="mercadoboom-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'app.db')}"
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")

import pytest
import requests
from requests.adapters import BaseAdapter
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from werkzeug.security import generate_password_hash

from mercadoboom.database import Base
from mercadoboom.errors import ChannelDeliveryError
from mercadoboom.models import Channel, Product, TransferDiscountConfig, TwoFactorMethod, User
from mercadoboom.observability.metrics import reset_metrics
from mercadoboom.services.notification_service import NotificationService

CODE_PATTERN = re.compile(r"\b(\d{6})\b")


class RecordingChannel:
    """Channel double that keeps every message it was asked to send."""

    def __init__(self, channel: Channel, fail: bool = False):
        self.channel = channel
        self.fail = fail
        self.sent = []

    def send(self, recipient, subject, body):
        if self.fail:
            raise ChannelDeliveryError("Proveedor no disponible")
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})

    @property
    def last_code(self):
        match = CODE_PATTERN.search(self.sent[-1]["body"])
        return match.group(1) if match else None


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMercadoPago(BaseAdapter):
    """Transport adapter answering the MercadoPago endpoints the gateway calls."""

    def __init__(self):
        super().__init__()
        self.requests = []
        self.payments = {}
        self.fail_with = None

    def send(self, request, **kwargs):
        self.requests.append(request)
        path = urlsplit(request.url).path
        if self.fail_with is not None:
            return self._respond(request, self.fail_with, {"message": "boom"})
        if request.method == "POST" and path == "/checkout/preferences":
            return self._respond(
                request,
                201,
                {"id": "pref-123", "init_point": "https://mp.test/init", "sandbox_init_point": "https://mp.test/sb"},
            )
        if request.method == "GET" and path.startswith("/v1/payments/"):
            payment_id = path.rsplit("/", 1)[-1]
            if payment_id in self.payments:
                return self._respond(request, 200, self.payments[payment_id])
        return self._respond(request, 404, {"message": "not found"})

    def close(self):
        pass

    @staticmethod
    def _respond(request, status, payload):
        response = requests.Response()
        response.status_code = status
        response._content = json.dumps(payload).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
        response.request = request
        response.url = request.url
        return response


def mercadopago_session(adapter):
    session = requests.Session()
    session.mount("https://mp.test", adapter)
    return session


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def db_session():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def channels():
    return {
        Channel.EMAIL: RecordingChannel(Channel.EMAIL),
        Channel.SMS: RecordingChannel(Channel.SMS),
        Channel.WHATSAPP: RecordingChannel(Channel.WHATSAPP),
    }


@pytest.fixture
def notifications(channels):
    return NotificationService(channels=channels.values())


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make_user(
        username=None,
        phone=None,
        is_admin=False,
        two_factor_method=TwoFactorMethod.EMAIL,
        two_factor_enabled=False,
        password="password123",
    ):
        counter["n"] += 1
        username = username or f"testuser_{counter['n']}"
        user = User(
            username=username,
            email=f"{username}@example.com",
            passwordHash=generate_password_hash(password),
            full_name=username.title(),
            phone=phone,
            is_admin=is_admin,
            two_factor_method=two_factor_method,
            two_factor_enabled=two_factor_enabled,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_product(db_session):
    def _make_product(name="Audífonos Boom", price="1000.00", stock=10, **fields):
        product = Product(name=name, price=Decimal(price), stock=stock, **fields)
        db_session.add(product)
        db_session.commit()
        return product

    return _make_product


@pytest.fixture
def discount_config(db_session):
    row = TransferDiscountConfig(
        discount_percentage=Decimal("3.50"),
        discount_text="por evitar comisiones",
        is_active=True,
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def channel_factory():
    return RecordingChannel


# ---------------------------
# HTTP API fixtures
# ---------------------------


class ApiSeed:
    """Writes fixtures straight to the app database and logs test clients in."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._counter = 0

    def user(self, username=None, is_admin=False, phone=None, password="password123"):
        self._counter += 1
        username = username or f"apiuser_{self._counter}"
        db = self._session_factory()
        try:
            user = User(
                username=username,
                email=f"{username}@example.com",
                passwordHash=generate_password_hash(password),
                full_name=username.title(),
                phone=phone,
                is_admin=is_admin,
            )
            db.add(user)
            db.commit()
            return user.userID
        finally:
            db.close()

    def product(self, price="1000.00", stock=10, **fields):
        db = self._session_factory()
        try:
            product = Product(name=fields.pop("name", "Bocina Boom"), price=Decimal(price), stock=stock, **fields)
            db.add(product)
            db.commit()
            return product.productID
        finally:
            db.close()

    def update_user(self, user_id, **fields):
        db = self._session_factory()
        try:
            user = db.get(User, user_id)
            for key, value in fields.items():
                setattr(user, key, value)
            db.commit()
        finally:
            db.close()

    @staticmethod
    def login(client, user_id):
        with client.session_transaction() as sess:
            sess.clear()
            if user_id is not None:
                sess["user_id"] = user_id


@pytest.fixture(scope="module")
def api_channels():
    return {
        Channel.EMAIL: RecordingChannel(Channel.EMAIL),
        Channel.SMS: RecordingChannel(Channel.SMS),
        Channel.WHATSAPP: RecordingChannel(Channel.WHATSAPP),
    }


@pytest.fixture(scope="module")
def test_client(api_channels):
    from mercadoboom.database import engine
    from mercadoboom.main import app, init_database

    Base.metadata.drop_all(bind=engine)
    init_database()
    app.config["TESTING"] = True
    app.extensions["mercadoboom.notifications"] = NotificationService(channels=api_channels.values())
    with app.test_client() as client:
        with client.session_transaction() as sess:
            sess.clear()
        yield client
    app.extensions.pop("mercadoboom.notifications", None)
    app.extensions.pop("mercadoboom.gateway", None)


@pytest.fixture(scope="module")
def api(test_client):
    from mercadoboom.database import SessionLocal

    return ApiSeed(SessionLocal)


@pytest.fixture
def fake_mp():
    return FakeMercadoPago()


@pytest.fixture
def mp_session(fake_mp):
    return mercadopago_session(fake_mp)
