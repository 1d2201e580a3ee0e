import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from ..schemas import CreatePaymentIn, PaymentEnvelope, PaymentOut
from ..services.payments import PaymentLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payments(request: Request) -> PaymentLifecycleManager:
    return request.app.state.payments


def _envelope(request: Request, record, message: str) -> PaymentEnvelope:
    include_raw = request.app.state.settings.development
    return PaymentEnvelope(message=message, payment=PaymentOut.from_record(record, include_raw=include_raw))


@router.post("", response_model=PaymentEnvelope, status_code=201)
async def initiate_payment(payload: CreatePaymentIn, request: Request,
                           payments: PaymentLifecycleManager = Depends(get_payments)):
    """Create a PayPal order and return the approve URL for the payer."""
    record = await payments.initiate(payload.customer_name, payload.customer_email, payload.amount)
    return _envelope(request, record, "Payment initiated successfully")


# callback routes are declared before /{payment_id} so they are not shadowed by it
@router.get("/callback", response_model=PaymentEnvelope)
async def payment_callback(request: Request, token: Optional[str] = None, PayerID: Optional[str] = None,
                           payments: PaymentLifecycleManager = Depends(get_payments)):
    """PayPal redirects the payer here after approval; capture the order."""
    if not token:
        raise HTTPException(status_code=400, detail="Payment token is required")
    logger.info("Received PayPal callback for order %s (payer %s)", token, PayerID)
    record = await payments.capture(token)
    return _envelope(request, record, "Payment completed successfully")


@router.get("/callback/cancel", response_model=PaymentEnvelope)
async def payment_cancel(request: Request, token: Optional[str] = None,
                         payments: PaymentLifecycleManager = Depends(get_payments)):
    if not token:
        raise HTTPException(status_code=400, detail="Payment token is required")
    logger.info("Payer cancelled PayPal order %s", token)
    record = await payments.cancel(token)
    return _envelope(request, record, "Payment was cancelled")


@router.get("/{payment_id}", response_model=PaymentEnvelope)
async def payment_status(payment_id: str, request: Request, refresh: bool = False,
                         payments: PaymentLifecycleManager = Depends(get_payments)):
    """Return the stored payment, asking PayPal when it is unknown or refresh=true."""
    record = await payments.lookup(payment_id, refresh=refresh)
    if record is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return _envelope(request, record, "Payment details retrieved successfully")
