"""
Entity resolution for booking requests.

Looks up the client, psychologist and (optional) package a booking refers
to. The admin panel sometimes sends the client's linked user id instead of
the client id, so the client lookup falls back to ``clients.user_id``.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking.transactions.errors import NotFoundError
from database.models import Client, Package, Psychologist

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedEntities:
    client: Client
    psychologist: Psychologist
    package: Package | None


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


async def resolve_client(session: AsyncSession, client_ref: str) -> Client:
    """
    Resolve a client by primary key, falling back to the linked user id.

    Raises:
        NotFoundError: If neither lookup matches
    """
    ref = _as_uuid(client_ref)
    if ref is None:
        raise NotFoundError("client", client_ref)

    client = await session.get(Client, ref)
    if client is not None:
        return client

    logger.info(f"Client {client_ref} not found by id, trying user_id lookup")
    result = await session.execute(select(Client).where(Client.user_id == ref))
    client = result.scalar_one_or_none()
    if client is None:
        raise NotFoundError("client", client_ref)

    logger.info(f"Resolved client {client.id} from user_id {client_ref}")
    return client


async def resolve_booking_entities(
    session: AsyncSession,
    client_ref: str,
    psychologist_id: UUID,
    package_id: UUID | None,
) -> ResolvedEntities:
    """
    Resolve every entity a booking request references. Read-only.

    Raises:
        NotFoundError: For the first entity that does not exist
    """
    client = await resolve_client(session, client_ref)

    psychologist = await session.get(Psychologist, psychologist_id)
    if psychologist is None:
        raise NotFoundError("psychologist", psychologist_id)

    package = None
    if package_id is not None:
        package = await session.get(Package, package_id)
        if package is None:
            raise NotFoundError("package", package_id)

    return ResolvedEntities(client=client, psychologist=psychologist, package=package)
