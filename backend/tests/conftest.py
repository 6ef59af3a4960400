"""
Shared fixtures for the lifecycle engine test suite.

Each test gets its own file-backed SQLite database so that separate
sessions see each other's commits, the way concurrent writers would.
"""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.clock import FrozenClock
from marketplace.config import EngineConfig
from marketplace.database import init_db
from marketplace.models import (
    ApplicationDB, ApplicationStatus, OfferDB, OfferStatus, RevenueCollectionDB, CollectionStatus,
)


T0 = datetime(2024, 3, 1, 9, 0, 0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'lifecycle.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    """A session for arranging and asserting; tests expire it before reading."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def config():
    return EngineConfig(
        acquire_backoff_seconds=0.0,
        transaction_budget_seconds=30.0,
        webhook_url=None,
        webhook_secret=None,
    )


@pytest.fixture
def make_application(session_factory):
    """Insert an application and return its id."""
    def _make(
        status=ApplicationStatus.LIVE_AUCTION,
        submitted_at=T0,
        auction_end_time="default",
        offers_count=0,
        purchases_count=0,
        purchased_by=None,
        offer_selection_end_time=None,
        auction_round=1,
    ) -> int:
        if auction_end_time == "default":
            auction_end_time = submitted_at + timedelta(hours=48)
        session = session_factory()
        try:
            application = ApplicationDB(
                business_user_id="business-1",
                status=status,
                submitted_at=submitted_at,
                auction_end_time=auction_end_time,
                offer_selection_end_time=offer_selection_end_time,
                offers_count=offers_count,
                purchases_count=purchases_count,
                purchased_by=purchased_by or [],
                auction_round=auction_round,
                revenue_collected=Decimal("0.00"),
                updated_at=submitted_at,
            )
            session.add(application)
            session.commit()
            return application.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_offer(session_factory):
    def _make(application_id: int, bank_user_id: str = "bank-1", status=OfferStatus.SUBMITTED) -> int:
        session = session_factory()
        try:
            offer = OfferDB(
                application_id=application_id,
                bank_user_id=bank_user_id,
                terms={"rate": "4.5%", "tenor_months": 24},
                status=status,
                submitted_at=T0,
            )
            session.add(offer)
            session.commit()
            return offer.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_entry(session_factory):
    """Insert a revenue collection entry directly and return its id."""
    def _make(
        application_id: int,
        bank_user_id: str = "bank-1",
        status=CollectionStatus.PENDING,
        amount=Decimal("25.00"),
        created_at=T0,
        retry_count=0,
        auction_round=1,
    ) -> int:
        session = session_factory()
        try:
            entry = RevenueCollectionDB(
                application_id=application_id,
                bank_user_id=bank_user_id,
                auction_round=auction_round,
                amount=amount,
                currency="SAR",
                status=status,
                retry_count=retry_count,
                created_at=created_at,
                last_attempt_at=created_at,
                updated_at=created_at,
            )
            session.add(entry)
            session.commit()
            return entry.id
        finally:
            session.close()
    return _make
