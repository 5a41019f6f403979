"""
Pytest fixtures for Timetrack tests.
Uses a temporary SQLite database and creates two users so tests can exercise owner-scoped
filtering, plus a controllable clock for the timer controller.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from database_manager import DatabaseManager
from timer_controller import TimerController

T0 = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable returning a fixed aware UTC time that tests move forward by hand."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """A temporary SQLite database path (same path for all managers in a test)."""
    return tmp_path / "test_timetrack.db"


@pytest.fixture
def db_no_user(db_path: Path) -> DatabaseManager:
    """Database manager with no current_user_id (for init_db and creating users)."""
    dm = DatabaseManager(db_path=db_path)
    dm.init_db()
    return dm


@pytest.fixture
def db_with_two_users(db_no_user: DatabaseManager):
    """Create two users and return (db_no_user, user1_id, user2_id)."""
    user1 = db_no_user.create_user("alice")
    user2 = db_no_user.create_user("bob")
    return db_no_user, user1.id, user2.id


@pytest.fixture
def db_user1(db_path: Path, db_with_two_users) -> DatabaseManager:
    """Database manager scoped to user1."""
    _, user1_id, _ = db_with_two_users
    return DatabaseManager(db_path=db_path, current_user_id=user1_id)


@pytest.fixture
def db_user2(db_path: Path, db_with_two_users) -> DatabaseManager:
    """Database manager scoped to user2."""
    _, _, user2_id = db_with_two_users
    return DatabaseManager(db_path=db_path, current_user_id=user2_id)


@pytest.fixture
def projects(db_user1: DatabaseManager):
    """Two projects of user1 under one client: returns (proj1_id, proj2_id)."""
    client = db_user1.add_client("Acme")
    p1 = db_user1.add_project("Website", client.id, hourly_rate=60.0)
    p2 = db_user1.add_project("Docs", client.id)
    return p1.id, p2.id


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def controller(db_user1: DatabaseManager, clock: FakeClock) -> TimerController:
    """Timer controller for user1 on the fake clock."""
    return TimerController(db_user1, clock=clock)
