"""Shared test fixtures for all test modules."""

import contextlib
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import factoring.models  # noqa: F401
from factoring.core import database as db_module
from factoring.core.auth import create_access_token
from factoring.core.cache import InMemoryCache
from factoring.core.config import settings
from factoring.core.database import Base, get_db
from factoring.main import app
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.offer import Offer, OfferStatus
from factoring.models.shared import utc_now
from factoring.models.user import User, UserRole
from factoring.repositories.user_repository import UserRepository
from factoring.services import offer_rules
from factoring.services.document_storage import LocalDocumentStorage, get_document_storage

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

PDF_BYTES = b"%PDF-1.4 test invoice document"


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture(autouse=True)
def storage(tmp_path, monkeypatch):
    """Keep uploaded documents inside the test's temporary directory."""
    monkeypatch.setattr(settings, "DOCUMENT_STORAGE_PATH", str(tmp_path / "documents"))
    monkeypatch.setattr(settings, "DOCUMENT_URL_SECRET", "test-document-secret")
    local = LocalDocumentStorage()
    app.dependency_overrides[get_document_storage] = lambda: local
    yield local
    app.dependency_overrides.pop(get_document_storage, None)


@pytest.fixture
def cache():
    """In-process cache installed where the application lifespan would put it."""
    backend = InMemoryCache()
    app.state.cache = backend
    return backend


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def users(db_session):
    """One active user per role, plus a second lender and a second anchor."""
    repo = UserRepository(db_session)
    return SimpleNamespace(
        seller=repo.create(
            email="seller@example.com",
            role=UserRole.SELLER,
            first_name="Ada",
            last_name="Obi",
            business_name="Obi Supplies",
        ),
        anchor=repo.create(
            email="anchor@example.com", role=UserRole.ANCHOR, business_name="Anchor Foods"
        ),
        other_anchor=repo.create(
            email="anchor2@example.com", role=UserRole.ANCHOR, business_name="Second Anchor"
        ),
        lender=repo.create(
            email="lender@example.com", role=UserRole.LENDER, business_name="First Capital"
        ),
        other_lender=repo.create(
            email="lender2@example.com", role=UserRole.LENDER, business_name="Second Capital"
        ),
        admin=repo.create(email="admin@example.com", role=UserRole.ADMIN, first_name="Root"),
    )


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(str(user.id), UserRole(user.role))
    return {"Authorization": f"Bearer {token}"}


def create_invoice_row(
    db: Session,
    seller: User,
    anchor: User,
    status: InvoiceStatus = InvoiceStatus.DRAFT,
    **fields,
) -> Invoice:
    """Insert an invoice directly, bypassing the lifecycle service."""
    now = utc_now()
    values = {
        "seller_id": str(seller.id),
        "anchor_id": str(anchor.id),
        "amount": Decimal("100000.00"),
        "currency": "NGN",
        "issue_date": now - timedelta(days=10),
        "due_date": now + timedelta(days=60),
        "status": status.value,
        "supporting_documents": [],
        "repaid_amount": Decimal("0"),
    }
    if status == InvoiceStatus.LISTED:
        values.update(
            {
                "max_funding_amount": Decimal("90000.00"),
                "recommended_interest_rate": Decimal("15.00"),
                "max_tenure": 30,
                "listed_at": now,
            }
        )
    values.update(fields)
    invoice = Invoice(**values)
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    return invoice


def create_offer_row(
    db: Session,
    invoice: Invoice,
    lender: User,
    *,
    interest_rate: Decimal = Decimal("15.00"),
    funding_percentage: Decimal = Decimal("80"),
    tenure: int = 30,
    status: OfferStatus = OfferStatus.PENDING,
    expires_in: timedelta = timedelta(hours=48),
    created_at=None,
    **fields,
) -> Offer:
    """Insert an offer directly, bypassing the bidding validation."""
    now = utc_now()
    amount = offer_rules.requested_funding_amount(invoice.amount, funding_percentage)
    financials = offer_rules.calculate_financials(amount, interest_rate, tenure)
    offer = Offer(
        invoice_id=str(invoice.id),
        lender_id=str(lender.id),
        amount=amount,
        interest_rate=interest_rate,
        funding_percentage=funding_percentage,
        tenure=tenure,
        status=status.value,
        expires_at=now + expires_in,
        created_at=created_at or now,
        daily_interest_rate=financials.daily_interest_rate,
        total_interest_amount=financials.total_interest_amount,
        total_repayment_amount=financials.total_repayment_amount,
        **fields,
    )
    db.add(offer)
    db.commit()
    db.refresh(offer)
    return offer
