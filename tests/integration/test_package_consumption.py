"""
Integration tests for booking/services/package_service.py against the test schema.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from booking.services.package_service import apply_package_consumption
from database.connection import get_async_session
from database.models import ClientPackage, ClientPackageStatus, Package

pytestmark = pytest.mark.integration

PAID_ON = date(2025, 3, 9)


async def _consume(seeded, package_id=None):
    return await apply_package_consumption(
        client_id=seeded["client_id"],
        psychologist_id=seeded["psychologist_id"],
        package_id=package_id or seeded["package_id"],
        session_id=uuid4(),
        payment_received_date=PAID_ON,
        trace_id="test-trace",
    )


async def _add_client_package(seeded, remaining, status=ClientPackageStatus.ACTIVE):
    async with get_async_session() as db:
        row = ClientPackage(
            client_id=seeded["client_id"],
            psychologist_id=seeded["psychologist_id"],
            package_id=seeded["package_id"],
            package_type="package_4",
            total_sessions=4,
            remaining_sessions=remaining,
            total_amount=Decimal("3600.00"),
            amount_paid=Decimal("3600.00"),
            status=status,
            purchased_at=datetime(2025, 1, 1, tzinfo=UTC),
        )
        db.add(row)
        await db.commit()
        return row.id


async def _client_packages():
    async with get_async_session() as db:
        result = await db.execute(select(ClientPackage).order_by(ClientPackage.created_at))
        return result.scalars().all()


class TestApplyPackageConsumption:
    @pytest.mark.asyncio
    async def test_first_booking_creates_row_with_one_used(self, seeded):
        assert await _consume(seeded) is True

        rows = await _client_packages()
        assert len(rows) == 1
        assert rows[0].remaining_sessions == 3
        assert rows[0].total_sessions == 4
        assert rows[0].status == ClientPackageStatus.ACTIVE
        assert rows[0].purchased_at.date() == PAID_ON

    @pytest.mark.asyncio
    async def test_last_session_completes_package(self, seeded):
        row_id = await _add_client_package(seeded, remaining=1)

        assert await _consume(seeded) is True

        async with get_async_session() as db:
            row = await db.get(ClientPackage, row_id)
        assert row.remaining_sessions == 0
        assert row.status == ClientPackageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_exhausted_package_is_not_decremented(self, seeded):
        exhausted_id = await _add_client_package(seeded, remaining=0, status=ClientPackageStatus.COMPLETED)

        assert await _consume(seeded) is True

        rows = await _client_packages()
        assert len(rows) == 2
        exhausted = next(r for r in rows if r.id == exhausted_id)
        fresh = next(r for r in rows if r.id != exhausted_id)
        assert exhausted.remaining_sessions == 0
        assert fresh.remaining_sessions == 3
        assert fresh.status == ClientPackageStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_active_row_with_nothing_left_is_skipped(self, seeded):
        await _add_client_package(seeded, remaining=0)

        assert await _consume(seeded) is True

        rows = await _client_packages()
        assert sorted(r.remaining_sessions for r in rows) == [0, 3]

    @pytest.mark.asyncio
    async def test_single_session_package_created_completed(self, seeded):
        single_id = uuid4()
        async with get_async_session() as db:
            db.add(
                Package(
                    id=single_id,
                    psychologist_id=seeded["psychologist_id"],
                    package_type="single",
                    session_count=1,
                    price=Decimal("1000.00"),
                )
            )
            await db.commit()

        assert await _consume(seeded, package_id=single_id) is True

        rows = await _client_packages()
        assert len(rows) == 1
        assert rows[0].remaining_sessions == 0
        assert rows[0].status == ClientPackageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_package_returns_false(self, seeded):
        assert await _consume(seeded, package_id=uuid4()) is False
        assert await _client_packages() == []

    @pytest.mark.asyncio
    async def test_database_error_returns_false(self, seeded):
        error = OperationalError("SELECT client_packages", {}, Exception("database is locked"))

        with patch("booking.services.package_service.get_async_session", side_effect=error):
            assert await _consume(seeded) is False

        assert await _client_packages() == []
