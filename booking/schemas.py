"""
Typed input for the manual booking transaction.

The admin panel posts a loosely-typed JSON object; ``BookingRequest`` pins
down exactly which fields are required and normalizes them once, before any
lookup or write happens.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from booking.transactions.errors import ValidationError
from booking.utils.time_format import normalize_time_to_24h

DEFAULT_PAYMENT_METHOD = "cash"


class BookingRequest(BaseModel):
    """Manual booking request. Immutable once accepted."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    client_id: str = Field(..., min_length=1, description="Client UUID or the linked user UUID")
    psychologist_id: UUID
    package_id: UUID | None = None
    scheduled_date: date
    scheduled_time: str = Field(..., description="HH:MM (24h)")
    amount: Decimal = Field(..., gt=0)
    payment_received_date: date
    payment_method: str = DEFAULT_PAYMENT_METHOD
    notes: str | None = None

    @field_validator("scheduled_time")
    @classmethod
    def normalize_scheduled_time(cls, value: str) -> str:
        return normalize_time_to_24h(value)

    @field_validator("payment_method", mode="before")
    @classmethod
    def normalize_payment_method(cls, value: Any) -> str:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_PAYMENT_METHOD
        return str(value).strip().lower()

    @field_validator("notes")
    @classmethod
    def empty_notes_to_none(cls, value: str | None) -> str | None:
        return value or None

    @property
    def session_type(self) -> str:
        return "package" if self.package_id else "individual"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "BookingRequest":
        """
        Build a request from a raw payload.

        Raises:
            ValidationError: With the offending fields in ``details["fields"]``
        """
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            fields = sorted({".".join(str(loc) for loc in err["loc"]) for err in e.errors()})
            missing = sorted(
                {".".join(str(loc) for loc in err["loc"]) for err in e.errors() if err["type"] == "missing"}
            )
            message = (
                f"Missing required fields: {', '.join(missing)}"
                if missing
                else f"Invalid fields: {', '.join(fields)}"
            )
            raise ValidationError(message, details={"fields": fields}) from e
