"""Shared fixtures for database and loyalty core tests.

Every test gets a fresh temp-file SQLite DatabaseManager plus a seeded
establishment, a 30-minute service, an employee working Mondays
09:00-18:00, a registered client and a 30-point reward.
"""
import os
import shutil
import tempfile
from datetime import date, datetime, timedelta

import pytest

from database import DatabaseManager
from database.models import Redemption
from loyalty import LoyaltyService

# 2024-01-29 is a Monday
MONDAY = date(2024, 1, 29)
TUESDAY = date(2024, 1, 30)
SUNDAY = date(2024, 1, 28)

OWNER = "owner-1"

ESTABLISHMENT_HOURS = {
    "monday": {"open": "09:00", "close": "18:00"},
    "tuesday": {"open": "10:00", "close": "14:00"},
    "saturday": {"open": "09:00", "close": "13:00", "closed": True},
}


@pytest.fixture
def temp_db():
    """Yield a fresh DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="loyalty-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def establishment(temp_db):
    return temp_db.establishments.create_establishment(
        "Barbería Central", hours=ESTABLISHMENT_HOURS
    )


@pytest.fixture
def core(temp_db, establishment):
    return LoyaltyService(temp_db)


@pytest.fixture
def service(temp_db, establishment):
    return temp_db.services.create_service(
        establishment.id, "Corte", duration=30, price=15.0
    )


@pytest.fixture
def employee(temp_db, establishment, service):
    return temp_db.employees.create_employee(
        establishment.id, "Tony",
        specialties=[service.id],
        availability={"monday": {"start": "09:00", "end": "18:00"}},
    )


@pytest.fixture
def client(core):
    return core.register_client("Ana Pérez", email="ana@example.com", phone="5551234")


@pytest.fixture
def reward(temp_db, establishment):
    return temp_db.rewards.create_reward(establishment.id, "Corte gratis", cost=30)


def at(day, hhmm):
    """Helper: combine a date and "HH:MM" into a datetime."""
    hour, minute = hhmm.split(":")
    return datetime(day.year, day.month, day.day, int(hour), int(minute))


def fund(core, client_id, amount):
    """Helper: give a client points through the ledger."""
    core.ledger.earn(client_id, amount, OWNER)


def backdate_expiry(db, redemption_id, hours=1):
    """Helper: move a redemption's expires_at into the past."""
    with db.get_session() as session:
        row = session.get(Redemption, redemption_id)
        row.expires_at = datetime.now() - timedelta(hours=hours)
        session.commit()
