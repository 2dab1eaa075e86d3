"""
Pytest configuration and shared fixtures for the booking engine tests.
"""

import os
import sys
from datetime import time, timedelta
from decimal import Decimal

import pytest

os.environ["FLASK_ENV"] = "testing"
os.environ["TESTING"] = "True"

from main import create_app  # noqa: E402
from booking_engine.config import is_production_database  # noqa: E402
from booking_engine.extensions import db as database  # noqa: E402
from booking_engine.models import (  # noqa: E402
    Base,
    DiscountType,
    PaymentMethod,
    PaymentMethodType,
    Promotion,
    Reward,
    RewardStatus,
    Service,
    Staff,
)
from booking_engine.services.booking_coordinator import BookingRequest  # noqa: E402
from tests.helpers import (  # noqa: E402
    BOOKING_DAY,
    CUSTOMER_ID,
    NOW,
    TENANT_ID,
    WEBHOOK_SECRET,
    FakeCardGateway,
    FixedClock,
)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def app(clock, card_gateway):
    """Create a test app bound to a fresh in-memory database."""
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "SCHEDULER_ENABLED": False,
            "PAYSTACK_SECRET_KEY": WEBHOOK_SECRET,
        },
        clock=clock,
        card_gateway=card_gateway,
    )

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if is_production_database(db_uri):
        print(f" DANGER: Database URL appears to be production: {db_uri}")
        sys.exit(1)

    with app.app_context():
        Base.metadata.create_all(bind=database.engine)
        yield app
        database.session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def db_session(app):
    return database.session


@pytest.fixture
def engine(app):
    return app.extensions["booking_engine"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def customer_headers():
    return {"X-Actor-Role": "customer", "X-Actor-Id": str(CUSTOMER_ID)}


@pytest.fixture
def staff_headers():
    return {"X-Actor-Role": "staff", "X-Actor-Id": "1"}


@pytest.fixture
def sample_staff(db_session):
    """Two active stylists and one inactive one."""
    alice = Staff(id=1, tenant_id=TENANT_ID, first_name="Alice", last_name="Reyes", specialization="Hair", is_active=True)
    bob = Staff(id=2, tenant_id=TENANT_ID, first_name="Bob", last_name="Okafor", specialization="Hair", is_active=True)
    carol = Staff(id=3, tenant_id=TENANT_ID, first_name="Carol", last_name="Diaz", specialization="Hair", is_active=False)
    db_session.add_all([alice, bob, carol])
    db_session.commit()
    return alice, bob, carol


@pytest.fixture
def sample_service(db_session, sample_staff):
    """60 minute haircut with a 15 minute clean-up buffer."""
    service = Service(
        tenant_id=TENANT_ID,
        name="Haircut",
        category="Hair",
        price=Decimal("50.00"),
        duration=60,
        buffer_after=15,
        staff_required=True,
        is_active=True,
        staff=list(sample_staff),
    )
    db_session.add(service)
    db_session.commit()
    return service


@pytest.fixture
def walk_in_service(db_session):
    """A service with nobody assigned that still books on the salon's own lane."""
    service = Service(
        tenant_id=TENANT_ID,
        name="Nail Dry Station",
        price=Decimal("10.00"),
        duration=30,
        buffer_after=0,
        staff_required=False,
        is_active=True,
    )
    db_session.add(service)
    db_session.commit()
    return service


@pytest.fixture
def promoted_service(db_session, sample_staff):
    service = Service(
        tenant_id=TENANT_ID,
        name="Colour",
        price=Decimal("200.00"),
        duration=90,
        buffer_after=0,
        staff_required=True,
        is_active=True,
        staff=[sample_staff[0]],
    )
    service.promotion = Promotion(
        title="Autumn colour",
        discount_type=DiscountType.PERCENT,
        discount_value=Decimal("20"),
        starts_at=NOW - timedelta(days=1),
        ends_at=NOW + timedelta(days=30),
    )
    db_session.add(service)
    db_session.commit()
    return service


@pytest.fixture
def payment_methods(db_session):
    """cash (free), card (1.5% + 0.50), bank transfer (needs a reference), disabled wallet."""
    cash = PaymentMethod(tenant_id=TENANT_ID, name="Cash", type=PaymentMethodType.CASH, is_active=True)
    card = PaymentMethod(
        tenant_id=TENANT_ID,
        name="Card",
        type=PaymentMethodType.CARD,
        is_active=True,
        processing_fee_percentage=Decimal("1.50"),
        processing_fee_fixed=Decimal("0.50"),
    )
    transfer = PaymentMethod(
        tenant_id=TENANT_ID,
        name="Bank Transfer",
        type=PaymentMethodType.BANK_TRANSFER,
        is_active=True,
        requires_reference=True,
    )
    wallet = PaymentMethod(tenant_id=TENANT_ID, name="Wallet", type=PaymentMethodType.WALLET, is_active=False)
    db_session.add_all([cash, card, transfer, wallet])
    db_session.commit()
    return {"cash": cash, "card": card, "transfer": transfer, "wallet": wallet}


@pytest.fixture
def sample_reward(db_session):
    reward = Reward(
        user_id=CUSTOMER_ID,
        type="loyalty",
        title="R20 loyalty credit",
        value=Decimal("20.00"),
        status=RewardStatus.AVAILABLE,
        expires_at=NOW + timedelta(days=60),
    )
    db_session.add(reward)
    db_session.commit()
    return reward


@pytest.fixture
def make_request(sample_service, payment_methods):
    """Build a BookingRequest with sensible defaults."""

    def _make(**overrides):
        fields = {
            "service_id": sample_service.id,
            "appointment_date": BOOKING_DAY,
            "appointment_time": time(10, 0),
            "customer_id": CUSTOMER_ID,
            "payment_method_id": payment_methods["cash"].id,
        }
        fields.update(overrides)
        return BookingRequest(**fields)

    return _make
