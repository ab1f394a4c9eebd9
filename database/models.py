"""
SQLAlchemy ORM models for the booking tables.

This module defines the tables touched by the manual booking transaction:
- clients: People receiving therapy (linked to a user account)
- psychologists: Practitioners with optional Google Calendar OAuth credentials
- packages: Prepaid session bundles offered by a psychologist
- payments: Payment ledger (manual/cash/bank entries are created here)
- sessions: Canonical booking record, guarded by a partial unique index
- availability: Per-day list of bookable time slots for a psychologist
- client_packages: Remaining-session tracking for purchased packages

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSON (JSONB on PostgreSQL) for flexible metadata storage
- Portable index definitions so the same schema runs on PostgreSQL and SQLite
"""

from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DATE,
    JSON,
    TIME,
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class SessionStatus(PyEnum):
    """Therapy session lifecycle status."""

    BOOKED = "booked"
    RESCHEDULED = "rescheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    def __str__(self):
        return self.value


# Statuses that occupy a slot. Mirrored in the partial unique index below.
ACTIVE_SESSION_STATUSES = (
    SessionStatus.BOOKED,
    SessionStatus.RESCHEDULED,
    SessionStatus.CONFIRMED,
)


class PaymentStatus(PyEnum):
    """Payment ledger status."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


class ClientPackageStatus(PyEnum):
    """Status of a purchased package."""

    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"

    def __str__(self):
        return self.value


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


_ACTIVE_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in ACTIVE_SESSION_STATUSES)
)


# ============================================================================
# Core Models
# ============================================================================


class Client(Base):
    """
    Client model - person (or parent of a child) receiving therapy.

    ``user_id`` is the linked account key; the admin panel sometimes sends it
    instead of the client's own id.
    """

    __tablename__ = "clients"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(
        Uuid, unique=True, nullable=True, index=True
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    child_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    sessions: Mapped[list["Session"]] = relationship("Session", back_populates="client")

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def display_name(self) -> str:
        """Child name when it is a real name, otherwise the client's full name."""
        child = (self.child_name or "").strip()
        if child and child.lower() != "pending":
            return child
        return self.full_name or "Client"

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, name='{self.full_name}')>"


class Psychologist(Base):
    """
    Psychologist model - practitioners running the sessions.

    ``google_calendar_credentials`` holds the OAuth tokens stored when the
    psychologist connected their Google Calendar:
    ``{"access_token", "refresh_token", "expiry_date" (epoch ms)}``.
    """

    __tablename__ = "psychologists"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    google_calendar_credentials: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    sessions: Mapped[list["Session"]] = relationship("Session", back_populates="psychologist")

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self) -> str:
        return f"<Psychologist(id={self.id}, name='{self.full_name}')>"


class Package(Base):
    """Package model - prepaid bundle of sessions with one psychologist."""

    __tablename__ = "packages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    psychologist_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("psychologists.id", ondelete="CASCADE"), nullable=True, index=True
    )
    package_type: Mapped[str] = mapped_column(String(50), nullable=False, default="custom")
    session_count: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("session_count > 0", name="check_package_session_count_positive"),
    )

    def __repr__(self) -> str:
        return f"<Package(id={self.id}, sessions={self.session_count}, price={self.price})>"


# ============================================================================
# Transactional Models
# ============================================================================


class Payment(Base):
    """
    Payment ledger entry.

    Manual bookings create the payment BEFORE the session exists, so
    ``session_id`` is nullable and is filled in once the session row is
    committed. Plain column, not a foreign key: ``sessions.payment_id`` already
    points the other way.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    client_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    psychologist_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    package_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("packages.id", ondelete="SET NULL"), nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    session_type: Mapped[str] = mapped_column(String(20), nullable=False, default="individual")
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False, default="cash")

    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, default=dict, nullable=False
    )

    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_payment_amount_positive"),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, transaction_id='{self.transaction_id}', status='{self.status}')>"


class Session(Base):
    """
    Therapy session - the source of truth for "this booking exists".

    The partial unique index ``uq_sessions_active_slot`` allows at most one
    active session per (psychologist, date, time). Concurrent bookings that
    both pass the advisory availability check are decided here.
    """

    __tablename__ = "sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    client_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    psychologist_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    package_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("packages.id", ondelete="SET NULL"), nullable=True
    )
    payment_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )

    scheduled_date: Mapped[date] = mapped_column(DATE, nullable=False)
    scheduled_time: Mapped[time] = mapped_column(TIME, nullable=False)

    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(SessionStatus, name="session_status", values_callable=_enum_values),
        default=SessionStatus.BOOKED,
        nullable=False,
        index=True,
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    session_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Google Calendar / Meet
    google_calendar_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    google_calendar_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    google_meet_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    google_meet_join_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    google_meet_start_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    reminder_sent_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    client: Mapped["Client"] = relationship("Client", back_populates="sessions")
    psychologist: Mapped["Psychologist"] = relationship("Psychologist", back_populates="sessions")
    package: Mapped[Optional["Package"]] = relationship("Package")
    payment: Mapped[Optional["Payment"]] = relationship("Payment", foreign_keys=[payment_id])

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_session_price_non_negative"),
        Index(
            "uq_sessions_active_slot",
            "psychologist_id",
            "scheduled_date",
            "scheduled_time",
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_SQL),
            sqlite_where=text(_ACTIVE_STATUS_SQL),
        ),
        Index("idx_sessions_reminder", "scheduled_date", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Session(id={self.id}, psychologist_id={self.psychologist_id}, "
            f"{self.scheduled_date} {self.scheduled_time}, status='{self.status}')>"
        )


class Availability(Base):
    """
    Per-day availability for a psychologist.

    ``time_slots`` is the list of bookable times as displayed to clients
    (``"2:00 PM"``). ``blocked_slots`` holds times blocked by the external
    calendar sync. The list is advisory only: the sessions index decides.
    """

    __tablename__ = "availability"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    psychologist_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("psychologists.id", ondelete="CASCADE"), nullable=False
    )
    slot_date: Mapped[date] = mapped_column("date", DATE, nullable=False)
    time_slots: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    blocked_slots: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("psychologist_id", "date", name="uq_availability_psychologist_date"),
    )

    def __repr__(self) -> str:
        return f"<Availability(psychologist_id={self.psychologist_id}, date={self.slot_date}, slots={len(self.time_slots or [])})>"


class ClientPackage(Base):
    """Remaining sessions of a package purchased by a client."""

    __tablename__ = "client_packages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    client_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    psychologist_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("psychologists.id", ondelete="RESTRICT"), nullable=False
    )
    package_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("packages.id", ondelete="RESTRICT"), nullable=False
    )
    package_type: Mapped[str] = mapped_column(String(50), nullable=False)
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[ClientPackageStatus] = mapped_column(
        SQLEnum(ClientPackageStatus, name="client_package_status", values_callable=_enum_values),
        default=ClientPackageStatus.ACTIVE,
        nullable=False,
    )
    purchased_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    first_session_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_client_packages_lookup", "client_id", "package_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ClientPackage(id={self.id}, remaining={self.remaining_sessions}/{self.total_sessions})>"
