import os

# Must be set before visa_intake.database is imported
os.environ["DATABASE_URL"] = "sqlite:///./test_visa_intake.db"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ["GATEWAY_RETRY_BASE_DELAY"] = "0"
os.environ["ALLOW_FEE_WAIVER"] = "false"

import pytest
from sqlalchemy.orm import sessionmaker

from visa_intake.config import get_settings
from visa_intake.database import Base, make_engine
from visa_intake.gateway import RemoteOrder, Verification
from visa_intake.models import Application, Country, VisaType
from visa_intake.workflow import Actor, Role

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_visa_intake.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

CUSTOMER = Actor(id="cust-1", role=Role.CUSTOMER)
OTHER_CUSTOMER = Actor(id="cust-2", role=Role.CUSTOMER)
EMPLOYEE = Actor(id="emp-1", role=Role.EMPLOYEE)
OTHER_EMPLOYEE = Actor(id="emp-2", role=Role.EMPLOYEE)
ADMIN = Actor(id="adm-1", role=Role.ADMIN)


class FakeGateway:
    """In-memory stand-in for the Stripe adapter."""

    def __init__(self):
        self.orders = {}
        self.create_calls = 0
        self.create_errors = []
        self.verify_errors = []
        self.declined = set()
        self.cancelled = []
        self.on_create = None

    def create_remote_order(self, amount, currency, metadata, idempotency_key):
        self.create_calls += 1
        if self.on_create is not None:
            self.on_create()
        if self.create_errors:
            raise self.create_errors.pop(0)
        reference = f"pi_test_{len(self.orders) + 1}"
        secret = f"{reference}_secret_abc"
        self.orders[reference] = {
            "amount": amount,
            "currency": currency,
            "secret": secret,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        return RemoteOrder(reference, {"client_secret": secret, "publishable_key": "pk_test_fake"})

    def verify_completion(self, reference, client_signature, amount, currency):
        if self.verify_errors:
            raise self.verify_errors.pop(0)
        remote = self.orders.get(reference)
        if remote is None or remote["secret"] != client_signature:
            return Verification(False, reason="signature mismatch")
        if reference in self.declined:
            return Verification(False, reason="payment status is requires_payment_method")
        if remote["amount"] != amount or remote["currency"] != currency:
            return Verification(False, reason="amount or currency mismatch")
        return Verification(True, payment_reference=f"ch_for_{reference}")

    def cancel_remote_order(self, reference):
        self.cancelled.append(reference)

    def secret_for(self, reference):
        return self.orders[reference]["secret"]


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def catalog(db):
    india = Country(name="India", code="IN")
    db.add(india)
    db.flush()
    free = VisaType(country_id=india.id, name="Transit", fee_amount=0, currency="inr")
    paid = VisaType(country_id=india.id, name="Tourist", fee_amount=5000, currency="inr")
    db.add_all([free, paid])
    db.commit()
    return {"country_id": india.id, "free_visa_id": free.id, "paid_visa_id": paid.id}


@pytest.fixture
def make_application(db, catalog):
    def _make(status="draft", paid=True, customer=CUSTOMER, payment_requested=False):
        application = Application(
            country_id=catalog["country_id"],
            visa_type_id=catalog["paid_visa_id"] if paid else catalog["free_visa_id"],
            customer_id=customer.id,
            status=status,
        )
        if payment_requested:
            application.payment_requested_by = EMPLOYEE.id
        db.add(application)
        db.commit()
        return application

    return _make
