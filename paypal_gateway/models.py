from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


CENT = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    """
    Return a positive amount at cent precision, the form PayPal is sent.

    Raises ValueError for non-finite, non-positive or sub-cent amounts.
    """
    if not value.is_finite() or value <= 0:
        raise ValueError("Amount must be a positive number")
    try:
        cents = value.quantize(CENT)
    except InvalidOperation:
        raise ValueError("Amount is too large")
    if cents != value:
        raise ValueError("Amount must have at most two decimal places")
    return cents


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        # only pending may move, and only to a terminal status
        return self is PaymentStatus.PENDING and target.is_terminal


class PaymentRecord(BaseModel):
    """Last-known state of one payment, keyed by the PayPal order id."""
    model_config = ConfigDict(frozen=True)

    id: str
    customer_name: str
    customer_email: str
    amount: Decimal
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PENDING
    payment_url: Optional[str] = None
    raw_processor_response: Optional[dict[str, Any]] = None
    created_at: datetime = PydanticField(default_factory=utcnow)
    updated_at: datetime = PydanticField(default_factory=utcnow)

    def evolve(self, **changes: Any) -> "PaymentRecord":
        changes.setdefault("updated_at", utcnow())
        return self.model_copy(update=changes)


class PaymentRow(SQLModel, table=True):
    __tablename__ = "payments"

    id: str = Field(primary_key=True)
    customer_name: str
    customer_email: str
    amount: Decimal = Field(max_digits=18, decimal_places=2)
    currency: str = "USD"
    status: str = Field(default=PaymentStatus.PENDING.value, index=True)  # pending, completed, cancelled, failed
    payment_url: Optional[str] = None
    raw_processor_response: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentRow":
        data = record.model_dump(mode="python")
        data["status"] = record.status.value
        return cls(**data)

    def to_record(self) -> PaymentRecord:
        return PaymentRecord(
            id=self.id,
            customer_name=self.customer_name,
            customer_email=self.customer_email,
            amount=Decimal(str(self.amount)),
            currency=self.currency,
            status=PaymentStatus(self.status),
            payment_url=self.payment_url,
            raw_processor_response=self.raw_processor_response,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
