"""
Test configuration and fixtures.

Tests run against a SQLite file database through aiosqlite so the real
schema, including the partial unique index on sessions, is exercised.
"""

import os
import tempfile
from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest

# Must be set BEFORE any imports of database.connection or shared.config
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"therapy_booking_test_{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["RESEND_API_KEY"] = ""
os.environ["WHATSAPP_API_TOKEN"] = ""
os.environ["MEET_LINK_WAIT_SECONDS"] = "0"

CLIENT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
CLIENT_USER_ID = UUID("550e8400-e29b-41d4-a716-4466554400aa")
PSYCHOLOGIST_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
PACKAGE_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
SESSION_DATE = date(2025, 3, 10)


@pytest.fixture(scope="function", autouse=True)
async def cleanup_engine():
    """
    Dispose the engine after each test.

    Every test gets its own event loop; pooled aiosqlite connections must not
    leak into the next one.
    """
    yield
    from database.connection import engine

    await engine.dispose()


@pytest.fixture
async def db():
    """Fresh schema for the test."""
    from database.connection import drop_db, init_db

    await drop_db()
    await init_db()
    yield
    await drop_db()


@pytest.fixture
async def seeded(db):
    """
    Client C1, psychologist P1 (no Google credentials), a 4-session package and
    availability for 2025-03-10 at 2:00 PM and 3:00 PM.
    """
    from database.connection import get_async_session
    from database.models import Availability, Client, Package, Psychologist

    async with get_async_session() as session:
        session.add_all(
            [
                Client(
                    id=CLIENT_ID,
                    user_id=CLIENT_USER_ID,
                    first_name="Asha",
                    last_name="Rao",
                    child_name="Pending",
                    email="asha@example.com",
                    phone_number="+919800000001",
                ),
                Psychologist(
                    id=PSYCHOLOGIST_ID,
                    first_name="Meera",
                    last_name="Iyer",
                    email="meera@example.com",
                    phone="+919800000002",
                ),
            ]
        )
        await session.flush()
        session.add_all(
            [
                Package(
                    id=PACKAGE_ID,
                    psychologist_id=PSYCHOLOGIST_ID,
                    package_type="package_4",
                    session_count=4,
                    price=Decimal("3600.00"),
                ),
                Availability(
                    psychologist_id=PSYCHOLOGIST_ID,
                    slot_date=SESSION_DATE,
                    time_slots=["2:00 PM", "3:00 PM"],
                    blocked_slots=[],
                    is_available=True,
                ),
            ]
        )
        await session.commit()

    return {
        "client_id": CLIENT_ID,
        "client_user_id": CLIENT_USER_ID,
        "psychologist_id": PSYCHOLOGIST_ID,
        "package_id": PACKAGE_ID,
        "session_date": SESSION_DATE,
    }


@pytest.fixture
def booking_payload():
    """The example booking: C1 with P1 on 2025-03-10 at 14:00, paid 2025-03-09."""
    return {
        "client_id": str(CLIENT_ID),
        "psychologist_id": str(PSYCHOLOGIST_ID),
        "scheduled_date": SESSION_DATE.isoformat(),
        "scheduled_time": "14:00",
        "amount": 1000,
        "payment_received_date": "2025-03-09",
        "payment_method": "Cash",
    }
