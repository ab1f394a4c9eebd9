"""
Manual Booking Transaction - admin-recorded booking with an offline payment.

One booking touches four independently written records (payment, session,
per-day availability, client package) plus Google Calendar and the
notification channels. There is no transaction spanning all of them, so the
flow is a saga:

    Validating -> Resolving -> CheckingSlot -> PayingManually
        -> ProvisioningMeeting -> WritingSession -> [Conflict | Committed]
        -> UpdatingSideEffects -> Responding

- Validating / Resolving / CheckingSlot write nothing; failures there are
  returned to the caller as-is.
- PayingManually through payment linkage are durable writes. Each one is
  recorded in a SagaLog, and any failure from here until Committed undoes
  them in reverse order (session, calendar event, payment) before the error
  is raised.
- The session insert is the only mutual exclusion point. Concurrent requests
  for the same slot can all pass CheckingSlot; the partial unique index on
  ``sessions`` lets exactly one insert through and the rest become
  ConflictError.
- After Committed nothing can revert the booking. Slot consumption runs
  inline, package consumption and notifications run detached; their
  failures are logged and swallowed.

ManualBookingTransaction.execute() is the single entry point. It is called
by the admin API route in api/routes/bookings.py.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from booking.schemas import BookingRequest
from booking.services.availability_service import check_slot_availability, consume_slot
from booking.services.entity_resolver import ResolvedEntities, resolve_booking_entities
from booking.services.meet_link_service import (
    METHOD_ERROR,
    METHOD_FALLBACK,
    MeetingResult,
    build_meeting_request,
    cancel_meeting,
    persist_refreshed_credentials,
    provision_meeting,
)
from booking.services.notification_service import BookingContext, dispatch_booking_notifications
from booking.services.package_service import apply_package_consumption
from booking.services.payment_service import attach_session, create_manual_payment, delete_payment
from booking.services.session_writer import create_session, delete_session
from booking.transactions.compensation import SagaLog, StepKind, compensate
from booking.transactions.errors import (
    BookingError,
    DegradedSideEffect,
    InternalError,
    SideEffect,
    SlotUnavailableError,
)
from booking.workers.background_tasks import BackgroundTaskRunner, get_background_runner
from database.connection import get_async_session
from database.models import Payment, Session

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    VALIDATING = "validating"
    RESOLVING = "resolving"
    CHECKING_SLOT = "checking_slot"
    PAYING_MANUALLY = "paying_manually"
    PROVISIONING_MEETING = "provisioning_meeting"
    WRITING_SESSION = "writing_session"
    CONFLICT = "conflict"
    COMMITTED = "committed"
    UPDATING_SIDE_EFFECTS = "updating_side_effects"
    RESPONDING = "responding"
    FAILED = "failed"


class ManualBookingTransaction:
    """
    Saga coordinator for one manual booking.

    Create one instance per booking; ``state`` and ``history`` describe the
    run. Detached work goes to ``runner`` (the process-wide runner by default).
    """

    def __init__(self, runner: Optional[BackgroundTaskRunner] = None):
        self.runner = runner or get_background_runner()
        self.state: Optional[BookingState] = None
        self.history: list[BookingState] = []
        self.trace_id = "-"

    def _transition(self, state: BookingState, **extra: Any) -> None:
        self.state = state
        self.history.append(state)
        logger.info(
            f"[{self.trace_id}] -> {state.value}",
            extra={"trace_id": self.trace_id, "state": state.value, **extra},
        )

    async def execute(
        self,
        request: BookingRequest | dict[str, Any],
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Execute the manual booking saga.

        Args:
            request: BookingRequest, or the raw payload to validate
            created_by: Admin user recorded in the payment metadata

        Returns:
            Joined booking record:
                {
                    "success": True,
                    "session_id": str,
                    "payment_id": str,
                    "transaction_id": str,
                    "session": {...},
                    "client": {...},
                    "psychologist": {...},
                    "package": {...} | None,
                    "payment": {...},
                    "meeting": {...},
                }

        Raises:
            ValidationError: Malformed request (nothing written)
            NotFoundError: Unknown client, psychologist or package (nothing written)
            SlotUnavailableError: Slot rejected by the availability check (nothing written)
            ConflictError: Slot taken by a concurrent booking (writes undone)
            InternalError: Any other failure (writes undone)

        Example:
            >>> result = await ManualBookingTransaction().execute(
            ...     {"client_id": "...", "psychologist_id": "...", "scheduled_date": "2025-03-10",
            ...      "scheduled_time": "14:00", "amount": 1000, "payment_received_date": "2025-03-09"},
            ...     created_by="admin@example.com",
            ... )
            >>> result["session"]["status"]
            'booked'
        """
        self._transition(BookingState.VALIDATING)
        if not isinstance(request, BookingRequest):
            request = BookingRequest.from_payload(request)

        self.trace_id = (
            f"{request.client_id}_{request.scheduled_date.isoformat()}_{request.scheduled_time}_{uuid4().hex[:8]}"
        )
        logger.info(
            f"[{self.trace_id}] Starting manual booking transaction",
            extra={
                "trace_id": self.trace_id,
                "psychologist_id": str(request.psychologist_id),
                "client_id": request.client_id,
            },
        )

        saga = SagaLog(trace_id=self.trace_id)
        try:
            entities = await self._resolve(request)
            await self._check_slot(request)
            payment = await self._record_payment(request, entities, created_by, saga)
            meeting = await self._provision_meeting(request, entities, saga)
            session = await self._write_session(request, entities, payment, meeting, saga)
        except asyncio.CancelledError:
            self._transition(BookingState.FAILED)
            await compensate(saga)
            raise
        except BookingError as e:
            if self.state != BookingState.CONFLICT:
                self._transition(BookingState.FAILED, error=e.error_code)
            if saga.steps:
                await compensate(saga)
            raise
        except Exception as e:
            self._transition(BookingState.FAILED, error=str(e))
            logger.error(f"[{self.trace_id}] Unexpected error in booking transaction", exc_info=True)
            await compensate(saga)
            raise InternalError("Unexpected error while processing the booking", details={"error": str(e)}) from e

        self._transition(BookingState.COMMITTED, session_id=str(session.id), payment_id=str(payment.id))

        await self._run_side_effects(request, entities, session, payment, meeting)

        self._transition(BookingState.RESPONDING, session_id=str(session.id))
        return self._response(request, entities, session, payment, meeting)

    # ========================================================================
    # Saga steps
    # ========================================================================

    async def _resolve(self, request: BookingRequest) -> ResolvedEntities:
        self._transition(BookingState.RESOLVING)
        try:
            async with get_async_session() as db:
                return await resolve_booking_entities(
                    db, request.client_id, request.psychologist_id, request.package_id
                )
        except SQLAlchemyError as e:
            raise InternalError("Failed to look up booking entities", details={"error": str(e)}) from e

    async def _check_slot(self, request: BookingRequest) -> None:
        self._transition(BookingState.CHECKING_SLOT)
        try:
            availability = await check_slot_availability(
                request.psychologist_id, request.scheduled_date, request.scheduled_time
            )
        except SQLAlchemyError as e:
            raise InternalError("Failed to check slot availability", details={"error": str(e)}) from e

        if not availability["available"]:
            logger.warning(
                f"[{self.trace_id}] Slot availability check failed: {availability['conflict_type']}",
                extra={"trace_id": self.trace_id},
            )
            raise SlotUnavailableError(
                "Selected time slot is not available",
                details={
                    "conflict_type": availability["conflict_type"],
                    "conflict_details": availability["conflict_details"],
                    "conflicting_session_id": availability.get("conflicting_session_id"),
                },
            )

    async def _record_payment(
        self,
        request: BookingRequest,
        entities: ResolvedEntities,
        created_by: Optional[str],
        saga: SagaLog,
    ) -> Payment:
        self._transition(BookingState.PAYING_MANUALLY)
        try:
            payment = await create_manual_payment(
                client_id=entities.client.id,
                psychologist_id=entities.psychologist.id,
                package_id=request.package_id,
                amount=request.amount,
                payment_method=request.payment_method,
                payment_received_date=request.payment_received_date,
                created_by=created_by,
                session_type=request.session_type,
            )
        except SQLAlchemyError as e:
            raise InternalError("Failed to record payment", details={"error": str(e)}) from e

        saga.record(StepKind.PAYMENT, payment.id, lambda: delete_payment(payment.id))
        return payment

    async def _provision_meeting(
        self,
        request: BookingRequest,
        entities: ResolvedEntities,
        saga: SagaLog,
    ) -> MeetingResult:
        self._transition(BookingState.PROVISIONING_MEETING)
        credentials = entities.psychologist.google_calendar_credentials
        meeting = await provision_meeting(
            build_meeting_request(
                entities.client, entities.psychologist, request.scheduled_date, request.scheduled_time
            ),
            credentials,
            trace_id=self.trace_id,
        )

        if meeting.event_id:
            saga.record(StepKind.CALENDAR_EVENT, meeting.event_id, lambda: cancel_meeting(meeting, credentials))

        if meeting.method in (METHOD_ERROR, METHOD_FALLBACK):
            degraded = DegradedSideEffect(SideEffect.MEETING_LINK, meeting.error or meeting.method)
            logger.warning(
                f"[{self.trace_id}] Meeting link unavailable, booking without one",
                extra=degraded.log_extra(trace_id=self.trace_id),
            )
        return meeting

    async def _write_session(
        self,
        request: BookingRequest,
        entities: ResolvedEntities,
        payment: Payment,
        meeting: MeetingResult,
        saga: SagaLog,
    ) -> Session:
        self._transition(BookingState.WRITING_SESSION)
        try:
            session = await create_session(
                client_id=entities.client.id,
                psychologist_id=entities.psychologist.id,
                package_id=request.package_id,
                scheduled_date=request.scheduled_date,
                scheduled_time=request.scheduled_time,
                payment_id=payment.id,
                price=request.amount,
                notes=request.notes,
                meeting=meeting,
            )
        except BookingError as e:
            if e.status_code == 409:
                self._transition(BookingState.CONFLICT)
            raise

        saga.record(StepKind.SESSION, session.id, lambda: delete_session(session.id))

        try:
            await attach_session(payment.id, session.id)
        except (SQLAlchemyError, LookupError) as e:
            logger.error(
                f"[{self.trace_id}] Failed to link payment to session",
                extra={"trace_id": self.trace_id, "payment_id": str(payment.id), "session_id": str(session.id)},
                exc_info=True,
            )
            raise InternalError("Failed to link payment to session", details={"error": str(e)}) from e

        payment.session_id = session.id
        return session

    async def _run_side_effects(
        self,
        request: BookingRequest,
        entities: ResolvedEntities,
        session: Session,
        payment: Payment,
        meeting: MeetingResult,
    ) -> None:
        """Best-effort follow-up. Nothing here may raise or revert the booking."""
        self._transition(BookingState.UPDATING_SIDE_EFFECTS, session_id=str(session.id))

        await consume_slot(request.psychologist_id, request.scheduled_date, request.scheduled_time)

        if request.package_id is not None:
            self.runner.submit(
                f"package_consumption:{session.id}",
                apply_package_consumption(
                    client_id=entities.client.id,
                    psychologist_id=entities.psychologist.id,
                    package_id=request.package_id,
                    session_id=session.id,
                    payment_received_date=request.payment_received_date,
                    trace_id=self.trace_id,
                ),
            )

        if meeting.refreshed_credentials:
            self.runner.submit(
                f"store_credentials:{entities.psychologist.id}",
                persist_refreshed_credentials(entities.psychologist.id, meeting.refreshed_credentials),
            )

        context = BookingContext.from_booking(
            session_id=session.id,
            client=entities.client,
            psychologist=entities.psychologist,
            scheduled_date=request.scheduled_date,
            scheduled_time=request.scheduled_time,
            meeting=meeting,
            transaction_id=payment.transaction_id,
            amount=request.amount,
            trace_id=self.trace_id,
        )
        self.runner.submit(f"notifications:{session.id}", dispatch_booking_notifications(context))

    # ========================================================================
    # Response
    # ========================================================================

    def _response(
        self,
        request: BookingRequest,
        entities: ResolvedEntities,
        session: Session,
        payment: Payment,
        meeting: MeetingResult,
    ) -> dict[str, Any]:
        client = entities.client
        psychologist = entities.psychologist
        package = entities.package

        return {
            "success": True,
            "session_id": str(session.id),
            "payment_id": str(payment.id),
            "transaction_id": payment.transaction_id,
            "session": {
                "id": str(session.id),
                "status": session.status.value,
                "scheduled_date": request.scheduled_date.isoformat(),
                "scheduled_time": request.scheduled_time,
                "price": str(session.price),
                "session_notes": session.session_notes,
                "package_id": str(request.package_id) if request.package_id else None,
                "google_meet_link": session.google_meet_link,
                "google_calendar_event_id": session.google_calendar_event_id,
                "google_calendar_link": session.google_calendar_link,
            },
            "client": {
                "id": str(client.id),
                "name": client.display_name,
                "email": client.email,
                "phone_number": client.phone_number,
            },
            "psychologist": {
                "id": str(psychologist.id),
                "name": psychologist.full_name,
                "email": psychologist.email,
            },
            "package": (
                {
                    "id": str(package.id),
                    "package_type": package.package_type,
                    "session_count": package.session_count,
                    "price": str(package.price),
                }
                if package is not None
                else None
            ),
            "payment": {
                "id": str(payment.id),
                "transaction_id": payment.transaction_id,
                "amount": str(payment.amount),
                "payment_method": payment.payment_method,
                "status": payment.status.value,
                "session_id": str(session.id),
            },
            "meeting": meeting.to_dict(),
        }
