"""
POS Marketplace - Database Configuration
PostgreSQL connection using SQLAlchemy

Every write path goes through unit_of_work(): one dedicated session,
a bounded statement sequence, commit or rollback, always released.
"""
import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import DisconnectionError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from .config import DATABASE_URL
from .exceptions import TransactionBudgetExceededError, TransientDatastoreError

logger = logging.getLogger(__name__)

# Create engine
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database - create all tables."""
    # Import models so they register on Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


def acquire_session(
    session_factory: Callable[[], Session],
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> Session:
    """
    Open a session and force a connection checkout.

    Transient connection failures are retried with exponential backoff.
    Raises TransientDatastoreError once attempts are exhausted.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        session = session_factory()
        try:
            session.connection()
            return session
        except TRANSIENT_ERRORS as e:
            session.close()
            last_error = e
            if attempt < attempts:
                delay = backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Datastore acquisition failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}"
                )
                sleep(delay)

    raise TransientDatastoreError(f"Could not acquire datastore connection after {attempts} attempts") from last_error


@contextmanager
def unit_of_work(
    session_factory: Callable[[], Session],
    budget_seconds: float = 5.0,
    attempts: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> Iterator[Session]:
    """
    Transactional scope around a series of operations.

    Commits when the block completes within budget_seconds, otherwise
    rolls back. Any exception rolls back and propagates.
    """
    session = acquire_session(session_factory, attempts, backoff_seconds, sleep)
    started = monotonic()
    try:
        if session.get_bind().dialect.name == "postgresql":
            # Server-side guard so a hung statement cannot outlive the budget
            session.execute(text(f"SET LOCAL statement_timeout = {int(budget_seconds * 1000)}"))
        yield session
        elapsed = monotonic() - started
        if elapsed > budget_seconds:
            raise TransactionBudgetExceededError(
                f"Transaction took {elapsed:.2f}s, budget is {budget_seconds:.2f}s"
            )
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def configured_unit_of_work(session_factory: Callable[[], Session], config):
    """unit_of_work() with budget and acquisition policy taken from EngineConfig."""
    return unit_of_work(
        session_factory,
        budget_seconds=config.transaction_budget_seconds,
        attempts=config.acquire_attempts,
        backoff_seconds=config.acquire_backoff_seconds,
    )
