"""
Package consumption for bookings made against a prepaid package.

The first booking against a package creates the client's ``client_packages``
row with one session already used; later bookings decrement it. Runs after
the booking is committed and is never compensated: a failure here leaves the
package under-decremented, which is reconciled out of band.
"""

import logging
from datetime import UTC, date, datetime, time
from uuid import UUID

from sqlalchemy import select, update

from booking.transactions.errors import DegradedSideEffect, SideEffect
from database.connection import get_async_session
from database.models import ClientPackage, ClientPackageStatus, Package

logger = logging.getLogger(__name__)


async def apply_package_consumption(
    client_id: UUID,
    psychologist_id: UUID,
    package_id: UUID,
    session_id: UUID,
    payment_received_date: date,
    trace_id: str = "-",
) -> bool:
    """
    Consume one session of the client's active package.

    Best effort: never raises.

    Returns:
        True if a client package was decremented or created
    """
    try:
        async with get_async_session() as session:
            result = await session.execute(
                select(ClientPackage.id, ClientPackage.remaining_sessions)
                .where(
                    ClientPackage.client_id == client_id,
                    ClientPackage.package_id == package_id,
                    ClientPackage.status == ClientPackageStatus.ACTIVE,
                    ClientPackage.remaining_sessions > 0,
                )
                .order_by(ClientPackage.created_at)
                .limit(1)
            )
            existing = result.first()

            if existing is not None:
                # Atomic decrement; the row may be shared with another in-flight booking
                await session.execute(
                    update(ClientPackage)
                    .where(ClientPackage.id == existing.id, ClientPackage.remaining_sessions > 0)
                    .values(remaining_sessions=ClientPackage.remaining_sessions - 1)
                )
                await session.execute(
                    update(ClientPackage)
                    .where(ClientPackage.id == existing.id, ClientPackage.remaining_sessions <= 0)
                    .values(status=ClientPackageStatus.COMPLETED)
                )
                await session.commit()
                logger.info(
                    f"[{trace_id}] Client package {existing.id} decremented "
                    f"({existing.remaining_sessions} -> {existing.remaining_sessions - 1})",
                    extra={"trace_id": trace_id, "session_id": str(session_id)},
                )
                return True

            package = await session.get(Package, package_id)
            if package is None:
                logger.warning(f"[{trace_id}] Package {package_id} vanished before consumption")
                return False

            remaining = package.session_count - 1
            session.add(
                ClientPackage(
                    client_id=client_id,
                    psychologist_id=psychologist_id,
                    package_id=package_id,
                    package_type=package.package_type,
                    total_sessions=package.session_count,
                    remaining_sessions=remaining,
                    total_amount=package.price,
                    amount_paid=package.price,
                    status=ClientPackageStatus.ACTIVE if remaining > 0 else ClientPackageStatus.COMPLETED,
                    purchased_at=datetime.combine(payment_received_date, time.min, tzinfo=UTC),
                    first_session_id=session_id,
                )
            )
            await session.commit()

        logger.info(
            f"[{trace_id}] Client package created for package {package_id} ({remaining} sessions left)",
            extra={"trace_id": trace_id, "session_id": str(session_id)},
        )
        return True

    except Exception as e:
        degraded = DegradedSideEffect(SideEffect.PACKAGE_UPDATE, str(e))
        logger.error(
            f"[{trace_id}] Failed to update client package {package_id} (booking still valid)",
            extra=degraded.log_extra(trace_id=trace_id, session_id=str(session_id)),
            exc_info=True,
        )
        return False
