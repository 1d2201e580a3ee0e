import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator

from .models import PaymentRecord, to_cents

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
AMOUNT_RE = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)")


def _strip_amount_noise(v: str) -> str:
    # currency symbols, thousands separators and whitespace
    return "".join(c for c in v if not (c.isspace() or c == "," or unicodedata.category(c) == "Sc"))


class CreatePaymentIn(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: str
    amount: Decimal = Field(..., description="Amount as number or string e.g. '$1,200.50'")

    @field_validator("customer_name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("customer_name must not be empty")
        return v

    @field_validator("customer_email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        if v is None or isinstance(v, bool):
            raise ValueError("Amount must be a positive number")
        if isinstance(v, str):
            v = _strip_amount_noise(v)
            if not AMOUNT_RE.fullmatch(v):
                raise ValueError("Amount must be a positive number")
        try:
            value = Decimal(str(v))
        except (InvalidOperation, ValueError):
            raise ValueError("Amount must be a positive number")
        return to_cents(value)


class PaymentOut(BaseModel):
    id: str
    customer_name: str
    customer_email: str
    amount: float
    currency: str
    status: str
    payment_url: Optional[str] = None
    paypal_response: Optional[dict] = None

    @classmethod
    def from_record(cls, record: PaymentRecord, include_raw: bool = True) -> "PaymentOut":
        return cls(
            id=record.id,
            customer_name=record.customer_name,
            customer_email=record.customer_email,
            amount=float(record.amount),
            currency=record.currency,
            status=record.status.value,
            payment_url=record.payment_url,
            paypal_response=record.raw_processor_response if include_raw else None,
        )


class PaymentEnvelope(BaseModel):
    status: str = "success"
    message: Optional[str] = None
    payment: PaymentOut


class ErrorEnvelope(BaseModel):
    status: str = "error"
    message: str
    error: Optional[dict] = None
