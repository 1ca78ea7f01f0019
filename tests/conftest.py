"""
Pytest fixtures for the sales pipeline test suite.

Provides:
- An isolated in-memory SQLite database per test
- Seed data: a customer, the owner company and a serialized vehicle stock item
- A currency service with a controllable clock and primed rates
- A FastAPI TestClient wired to the test database
"""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dealerdesk.core.database import configure_sqlite_transactions, get_db, init_db
from dealerdesk.models import Company, Contact, ContactType
from dealerdesk.schemas import QuotationCreate, StockItemCreate
from dealerdesk.services.company_service import CompanyProfile
from dealerdesk.services.currency_service import CurrencyService, get_currency_service
from dealerdesk.services.inventory_service import StockItemService
from dealerdesk.services.quotation_service import QuotationService

TEST_ACTOR = "sales.rep@dealer.test"
ADMIN_HEADERS = {"X-Actor-Id": "admin@dealer.test", "X-Actor-Role": "admin"}
SALES_HEADERS = {"X-Actor-Id": TEST_ACTOR, "X-Actor-Role": "sales"}

VINS = [f"JTMHV05J{n:09d}" for n in range(1, 6)]
AED_PER_USD = Decimal("3.6725")


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite_transactions(test_engine)
    init_db(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Seed data
# =============================================================================


def make_customer(session, name="Gulf Horizon Trading", country_code="SA") -> Contact:
    customer = Contact(
        contact_type=ContactType.CUSTOMER.value,
        customer_code="CUST-0001",
        name=name,
        email="buyer@gulfhorizon.test",
        phone="+966500000001",
        address="King Fahd Rd, Riyadh",
        country_code=country_code,
        trn="300000000000003",
    )
    session.add(customer)
    session.flush()
    return customer


def make_owner_company(session, vat_percent=Decimal("5")) -> Company:
    company = Company(
        name="DealerDesk Motors FZE",
        address="Jebel Ali Free Zone, Dubai",
        trn="100000000000003",
        vat_percent=vat_percent,
        bank_name="Emirates NBD",
        bank_account="1010101010",
        iban="AE070331234567890123456",
        bank_currency="AED",
        is_owner=True,
    )
    session.add(company)
    session.flush()
    return company


def make_stock_item(session, sku="LC300-2024-WHT", chassis_numbers=None, **overrides):
    data = dict(
        sku=sku,
        name="Toyota Land Cruiser 300 GXR",
        item_type="car",
        brand="Toyota",
        model="Land Cruiser 300",
        year=2024,
        color="White",
        cost_price=Decimal("9000.00"),
        selling_price=Decimal("12000.00"),
        currency="AED",
        chassis_numbers=list(VINS if chassis_numbers is None else chassis_numbers),
    )
    data.update(overrides)
    return StockItemService(session).create(StockItemCreate(**data), TEST_ACTOR)


@pytest.fixture
def customer(db):
    return make_customer(db)


@pytest.fixture
def owner_company(db):
    return make_owner_company(db)


@pytest.fixture
def company_profile(owner_company):
    return CompanyProfile.from_company(owner_company)


@pytest.fixture
def stock_item(db):
    return make_stock_item(db)


def quotation_payload(customer_id, stock_item_id, chassis_numbers, unit_price="12000", **overrides):
    data = dict(
        customer_id=customer_id,
        title="Land Cruiser export order",
        export_to="Saudi Arabia",
        currency="AED",
        items=[{
            "stock_item_id": stock_item_id,
            "chassis_numbers": list(chassis_numbers),
            "unit_price": unit_price,
        }],
        discount_value="10",
        discount_type="percentage",
    )
    data.update(overrides)
    return QuotationCreate(**data)


@pytest.fixture
def create_quotation(db, customer, stock_item, company_profile):
    """Factory creating a draft quotation holding the given chassis numbers."""

    def _create(chassis_numbers=None, **overrides):
        payload = quotation_payload(
            customer.id, stock_item.id, chassis_numbers or VINS[:2], **overrides
        )
        return QuotationService(db).create(payload, TEST_ACTOR, company_profile)

    return _create


@pytest.fixture
def approved_quotation(db, create_quotation):
    """Quotation walked through the workflow up to approved."""
    quotation = create_quotation()
    service = QuotationService(db)
    for step in ("mark_sent", "mark_viewed", "accept", "send_review", "approve"):
        getattr(service, step)(quotation.id, TEST_ACTOR)
    return quotation


# =============================================================================
# Currency
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def currency_service(clock):
    service = CurrencyService(
        app_id="test-app-id",
        url="https://rates.test/api/latest.json",
        base_currency="USD",
        ttl_seconds=300,
        timeout=2,
        clock=clock,
    )
    service.prime("AED", AED_PER_USD)
    return service


# =============================================================================
# API
# =============================================================================


@pytest.fixture
def client(session_factory, currency_service):
    from dealerdesk.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_currency_service] = lambda: currency_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def api_seed(session_factory):
    """Customer and owner company committed outside any request."""
    session = session_factory()
    try:
        customer_id = make_customer(session).id
        make_owner_company(session)
        session.commit()
        return {"customer_id": customer_id}
    finally:
        session.close()
