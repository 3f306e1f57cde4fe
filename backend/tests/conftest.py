"""Shared pytest fixtures for test suite"""
import os
import secrets
import sys
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import AsyncMock, Mock, patch

import pytest

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("STRIPE_CONNECT_CLIENT_ID", "ca_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import fakeredis
import stripe as real_stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.db.session import get_db
from app.db import redis as redis_module
from app.db.task_queue import pop_task_nowait, TASK_TYPES
from app.models import Base
from app.models.creator_profile import CreatorProfile
from app.models.connect_account import StripeConnectAccount
from app.models.product import Product
from app.models.user import User
from app.services.auth_service import create_user
from app.tasks.notification_worker import run_task


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite so several threads can each hold their own connection"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Replace the lazily-created Redis client with fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the network"""
    with patch("app.services.stripe_service.stripe") as mock_stripe_module:
        # Real exception classes so `except stripe.StripeError` still matches
        mock_stripe_module.StripeError = real_stripe.StripeError
        mock_stripe_module.SignatureVerificationError = real_stripe.SignatureVerificationError
        mock_stripe_module.InvalidRequestError = real_stripe.InvalidRequestError

        mock_stripe_module.checkout.Session.create = Mock(return_value={
            "id": "cs_test123",
            "url": "https://checkout.stripe.com/test"
        })
        mock_stripe_module.Customer.retrieve = Mock(return_value={
            "id": "cus_test123",
            "email": "delivered@resend.dev"
        })
        mock_stripe_module.Webhook.construct_event = Mock(return_value={
            "id": "evt_test123",
            "type": "ping",
            "data": {"object": {}}
        })
        yield mock_stripe_module


@pytest.fixture(scope="function", autouse=True)
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch("app.services.email_service.resend") as mock_resend:
        mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
        yield mock_resend


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Closed by the db_session fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # No OTEL, no schema creation on the real engine, no background loops
        with patch("app.main.initialize_otel", return_value=False), \
                patch("app.main.instrument_sqlalchemy"), \
                patch("app.main.init_db"), \
                patch("app.tasks.notification_worker.notification_worker_task", new=AsyncMock()), \
                patch("app.tasks.cleanup.cleanup_task", new=AsyncMock()), \
                patch("app.tasks.renewal_reminder.renewal_reminder_task", new=AsyncMock()):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def login_as(client: TestClient, mock_redis) -> Callable[[User], str]:
    """Give the test client a session (and CSRF token) for a user; returns the CSRF token"""

    def _login(user: User) -> str:
        session_id = secrets.token_urlsafe(16)
        csrf_token = secrets.token_urlsafe(16)
        mock_redis.setex(f"session:{session_id}", 3600, str(user.id))
        mock_redis.setex(f"csrf:{session_id}", 3600, csrf_token)
        client.cookies.set("session_id", session_id)
        client.headers.update({"X-CSRF-Token": csrf_token})
        return csrf_token

    return _login


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """A regular buyer account"""
    return create_user(
        email=RESEND_TEST_DELIVERED,
        password="TestPassword123!",
        db=db_session
    )


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """A second buyer for ownership tests"""
    return create_user(
        email="delivered+test2@resend.dev",
        password="TestPassword123!",
        db=db_session
    )


def make_creator(db: Session, email: str = "creator@resend.dev", display_name: str = "Ada Creates",
                 account_id: str = "acct_test123") -> User:
    creator = create_user(email=email, password="CreatorPassword123!", db=db, role="creator")
    creator.stripe_account_id = account_id
    db.add(CreatorProfile(user_id=creator.id, display_name=display_name, is_profile_complete=True))
    db.add(StripeConnectAccount(
        user_id=creator.id,
        stripe_account_id=account_id,
        details_submitted=True,
        charges_enabled=True,
        payouts_enabled=True,
    ))
    db.commit()
    db.refresh(creator)
    return creator


def make_product(db: Session, creator: User, product_type: str = "download", price_cents: int = 1000,
                 title: str = "Brush Pack") -> Product:
    product = Product(creator_id=creator.id, title=title, product_type=product_type, price_cents=price_cents)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture(scope="function")
def creator(db_session: Session) -> User:
    return make_creator(db_session)


@pytest.fixture(scope="function")
def download_product(db_session: Session, creator: User) -> Product:
    """$10.00 one-time product"""
    return make_product(db_session, creator)


@pytest.fixture(scope="function")
def membership_product(db_session: Session, creator: User) -> Product:
    """$5.00/month membership"""
    return make_product(db_session, creator, product_type="membership", price_cents=500, title="Studio Club")


@pytest.fixture(scope="function")
def free_membership_product(db_session: Session, creator: User) -> Product:
    return make_product(db_session, creator, product_type="membership", price_cents=0, title="Free Tier")


def drain_task_queue(db: Session) -> int:
    """Run every queued task synchronously, the way the worker would. Returns tasks run."""
    ran = 0
    while True:
        progressed = False
        for task_type in TASK_TYPES:
            task = pop_task_nowait(task_type)
            if task:
                run_task(task, db)
                ran += 1
                progressed = True
        if not progressed:
            return ran


@pytest.fixture(scope="function")
def run_queued_tasks(db_session: Session) -> Callable[[], int]:
    return lambda: drain_task_queue(db_session)


# Resend test email addresses - use these in ALL tests to avoid fake addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_BOUNCED = "bounced@resend.dev"
