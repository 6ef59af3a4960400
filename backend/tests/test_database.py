"""
Tests for session acquisition and the unit-of-work scope.
"""
import pytest
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from marketplace.database import acquire_session, unit_of_work
from marketplace.exceptions import TransactionBudgetExceededError, TransientDatastoreError


def _connection_refused():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


def _factory(*sessions):
    factory = MagicMock(side_effect=list(sessions))
    return factory


def _broken_session():
    session = MagicMock()
    session.connection.side_effect = _connection_refused()
    return session


class TestAcquireSession:

    def test_retries_with_exponential_backoff(self):
        healthy = MagicMock()
        delays = []

        session = acquire_session(
            _factory(_broken_session(), _broken_session(), healthy),
            attempts=3,
            backoff_seconds=0.5,
            sleep=delays.append,
        )

        assert session is healthy
        assert delays == [0.5, 1.0]

    def test_exhausted_attempts_raise_transient_error(self):
        broken = [_broken_session() for _ in range(3)]
        delays = []

        with pytest.raises(TransientDatastoreError):
            acquire_session(_factory(*broken), attempts=3, backoff_seconds=0.5, sleep=delays.append)

        assert delays == [0.5, 1.0]
        for session in broken:
            session.close.assert_called_once()

    def test_non_transient_errors_propagate(self):
        session = MagicMock()
        session.connection.side_effect = ValueError("bad url")

        with pytest.raises(ValueError):
            acquire_session(_factory(session), sleep=lambda _: None)


class TestUnitOfWork:

    def test_commits_and_closes(self):
        session = MagicMock()

        with unit_of_work(_factory(session)) as db:
            db.add("row")

        session.commit.assert_called_once()
        session.rollback.assert_not_called()
        session.close.assert_called_once()

    def test_exception_rolls_back_and_propagates(self):
        session = MagicMock()

        with pytest.raises(RuntimeError):
            with unit_of_work(_factory(session)):
                raise RuntimeError("boom")

        session.commit.assert_not_called()
        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_over_budget_rolls_back(self):
        session = MagicMock()
        ticks = iter([100.0, 106.0])

        with pytest.raises(TransactionBudgetExceededError):
            with unit_of_work(_factory(session), budget_seconds=5.0, monotonic=lambda: next(ticks)):
                pass

        session.commit.assert_not_called()
        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_acquisition_failure_surfaces_before_the_block(self):
        entered = []

        with pytest.raises(TransientDatastoreError):
            with unit_of_work(_factory(_broken_session()), attempts=1):
                entered.append(True)

        assert entered == []
