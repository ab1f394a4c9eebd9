"""
Payment ledger writer for manually recorded payments.

Manual payments (cash, bank transfer, UPI outside the gateway) have no
gateway order id, so they get a generated transaction id of the form
``MANUAL-<unix millis>-<9 random base36 chars>`` and are stored with status
``success``: there is no verification step for money the admin confirms
was received.
"""

import logging
import secrets
import string
import time
from datetime import UTC, date, datetime, time as dt_time
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, update

from database.connection import get_async_session
from database.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

MANUAL_TRANSACTION_PREFIX = "MANUAL"
_BASE36_ALPHABET = string.digits + string.ascii_lowercase
_RANDOM_SUFFIX_LENGTH = 9


def generate_manual_transaction_id(now_ms: int | None = None) -> str:
    """
    Generate a human-traceable, practically unique manual transaction id.

    Example:
        >>> generate_manual_transaction_id(1704067200000)
        'MANUAL-1704067200000-k3j9x0q2a'
    """
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(_RANDOM_SUFFIX_LENGTH))
    return f"{MANUAL_TRANSACTION_PREFIX}-{now_ms}-{suffix}"


async def create_manual_payment(
    client_id: UUID,
    psychologist_id: UUID,
    package_id: UUID | None,
    amount: Decimal,
    payment_method: str,
    payment_received_date: date,
    created_by: str | None,
    session_type: str = "individual",
) -> Payment:
    """
    Insert a manual payment record with no session attached yet.

    Raises:
        SQLAlchemyError: Insert failed (the caller decides how to map it)
    """
    now = datetime.now(UTC)
    metadata: dict[str, Any] = {
        "manual": True,
        "admin_created": True,
        "payment_method": payment_method,
        "created_by": created_by,
        "created_at": now.isoformat(),
        "payment_received_date": payment_received_date.isoformat(),
    }

    payment = Payment(
        transaction_id=generate_manual_transaction_id(),
        session_id=None,
        client_id=client_id,
        psychologist_id=psychologist_id,
        package_id=package_id,
        amount=amount,
        session_type=session_type,
        status=PaymentStatus.SUCCESS,
        payment_method=payment_method,
        metadata_=metadata,
        completed_at=datetime.combine(payment_received_date, dt_time.min, tzinfo=UTC),
        created_at=now,
    )

    async with get_async_session() as session:
        session.add(payment)
        await session.commit()

    logger.info(
        f"Manual payment recorded: {payment.transaction_id}",
        extra={"payment_id": str(payment.id), "client_id": str(client_id)},
    )
    return payment


async def attach_session(payment_id: UUID, session_id: UUID) -> None:
    """
    Link a payment to the session it paid for.

    Raises:
        SQLAlchemyError: Update failed
        LookupError: The payment row no longer exists
    """
    async with get_async_session() as session:
        result = await session.execute(
            update(Payment).where(Payment.id == payment_id).values(session_id=session_id)
        )
        if result.rowcount != 1:
            raise LookupError(f"Payment {payment_id} not found while linking session {session_id}")
        await session.commit()

    logger.info(
        f"Payment {payment_id} linked to session {session_id}",
        extra={"payment_id": str(payment_id), "session_id": str(session_id)},
    )


async def delete_payment(payment_id: UUID) -> None:
    """Delete a payment record. Only used to compensate an aborted booking."""
    async with get_async_session() as session:
        await session.execute(delete(Payment).where(Payment.id == payment_id))
        await session.commit()

    logger.info(f"Payment {payment_id} deleted", extra={"payment_id": str(payment_id)})
