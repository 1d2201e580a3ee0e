"""
Payment lifecycle: initiate, look up, capture and cancel PayPal-backed
payments while keeping the local store consistent with PayPal.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from ..config import ProcessorConfig
from ..errors import (
    InvalidAmount,
    InvalidStatusTransition,
    OrderAlreadyCaptured,
    OrderNotFound,
    PaymentCaptureFailed,
    PaymentError,
    PaymentInitiationFailed,
    PaymentStatusUnavailable,
    ProcessorRequestFailed,
    UnknownPayment,
)
from ..models import PaymentRecord, PaymentStatus, to_cents
from ..store import PaymentStore
from .paypal import FAILED_CAPTURE_STATUSES, CaptureDetails, OrderDetails, PayPalClient, extract_capture

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def __contains__(self, key: str) -> bool:
        return key in self._locks


def _positive_amount(amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmount()
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount()
    try:
        return to_cents(value)
    except ValueError as exc:
        raise InvalidAmount(str(exc))


class PaymentLifecycleManager:
    def __init__(self, client: PayPalClient, store: PaymentStore,
                 config: Optional[ProcessorConfig] = None):
        self.client = client
        self.store = store
        self.config = config or client.config
        self._locks = KeyedLock()

    async def aclose(self) -> None:
        await self.client.aclose()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    async def initiate(self, customer_name: str, customer_email: str, amount) -> PaymentRecord:
        value = _positive_amount(amount)
        cfg = self.config
        try:
            order = await self.client.create_order(
                value,
                cfg.currency,
                cfg.return_url,
                cfg.cancel_url,
                {"customer_name": customer_name, "customer_email": customer_email},
            )
        except PaymentError as exc:
            logger.error("Payment initiation for %s failed: %s (%s)", customer_email, exc.message, exc.kind)
            raise PaymentInitiationFailed() from exc

        record = PaymentRecord(
            id=order.processor_id,
            customer_name=customer_name,
            customer_email=customer_email,
            amount=value,
            currency=cfg.currency,
            status=PaymentStatus.PENDING,
            payment_url=order.approve_url,
            raw_processor_response=order.raw,
        )
        await self.store.put(record.id, record)
        logger.info("Initiated payment %s for %s", record.id, customer_email)
        return record

    async def lookup(self, payment_id: str, refresh: bool = False) -> Optional[PaymentRecord]:
        if not payment_id:
            raise UnknownPayment("Payment ID is required")
        if not refresh:
            local = await self.store.get(payment_id)
            if local is not None:
                return local

        async with self._locks.hold(payment_id):
            local = await self.store.get(payment_id)
            if local is not None and not refresh:
                return local
            try:
                order = await self.client.get_order(payment_id)
            except OrderNotFound:
                logger.info("Payment %s not found at PayPal", payment_id)
                return None
            except PaymentError as exc:
                fallback = await self.store.get(payment_id)
                if fallback is not None:
                    logger.warning("Serving cached payment %s; PayPal lookup failed: %s (status %s)",
                                   payment_id, exc.kind, exc.upstream_status)
                    return fallback
                logger.error("Lookup of payment %s failed: %s (status %s)",
                             payment_id, exc.kind, exc.upstream_status)
                raise PaymentStatusUnavailable(payment_id=payment_id) from exc

            record = self._reconcile(local, order)
            await self.store.put(payment_id, record)
            return record

    def _reconcile(self, local: Optional[PaymentRecord], order: OrderDetails) -> PaymentRecord:
        if local is None:
            return PaymentRecord(
                id=order.processor_id,
                customer_name=order.payer_name,
                customer_email=order.payer_email,
                amount=order.amount,
                currency=order.currency,
                status=order.status,
                payment_url=order.approve_url,
                raw_processor_response=order.raw,
            )
        status = local.status
        if order.status != status and status.can_transition_to(order.status):
            logger.info("Payment %s moved %s -> %s at PayPal", local.id, status.value, order.status.value)
            status = order.status
        elif order.status != status and status.is_terminal:
            logger.warning("Ignoring PayPal status %s for %s payment %s",
                           order.status.value, status.value, local.id)
        return local.evolve(status=status, raw_processor_response=order.raw)

    async def capture(self, payment_id: str) -> PaymentRecord:
        async with self._locks.hold(payment_id):
            stored = await self.store.get(payment_id)
            if stored is None:
                logger.error("Capture requested for unknown payment %s", payment_id)
                raise UnknownPayment(payment_id=payment_id)
            if stored.status is PaymentStatus.COMPLETED:
                logger.info("Payment %s already completed; capture is a no-op", payment_id)
                return stored
            if stored.status.is_terminal:
                logger.error("Refusing to capture %s payment %s", stored.status.value, payment_id)
                raise PaymentCaptureFailed(payment_id=payment_id) from InvalidStatusTransition(
                    f"Cannot capture a {stored.status.value} payment", payment_id=payment_id)

            try:
                amount, currency, raw = await self._capture_remote(payment_id)
            except PaymentError as exc:
                logger.error("Capture of payment %s failed: %s (status %s)",
                             payment_id, exc.kind, exc.upstream_status)
                raise PaymentCaptureFailed(payment_id=payment_id) from exc

            record = stored.evolve(
                status=PaymentStatus.COMPLETED,
                amount=amount,
                currency=currency,
                raw_processor_response=raw,
            )
            await self.store.put(payment_id, record)
            logger.info("Payment %s completed", payment_id)
            return record

    async def _capture_remote(self, payment_id: str):
        try:
            raw = await self.client.capture_order(payment_id)
        except OrderAlreadyCaptured:
            order = await self.client.get_order(payment_id)
            if order.status is not PaymentStatus.COMPLETED:
                raise
            logger.info("PayPal reports order %s already captured", payment_id)
            return order.amount, order.currency, order.raw

        capture: CaptureDetails = extract_capture(raw)
        if (capture.status or "").upper() in FAILED_CAPTURE_STATUSES:
            raise ProcessorRequestFailed(f"PayPal capture was {capture.status}",
                                         detail=raw, payment_id=payment_id)
        return capture.amount, capture.currency, raw

    async def cancel(self, payment_id: str) -> PaymentRecord:
        async with self._locks.hold(payment_id):
            stored = await self.store.get(payment_id)
            if stored is None:
                raise UnknownPayment(payment_id=payment_id)
            if stored.status is PaymentStatus.CANCELLED:
                return stored
            if not stored.status.can_transition_to(PaymentStatus.CANCELLED):
                raise InvalidStatusTransition(
                    f"Cannot cancel a {stored.status.value} payment", payment_id=payment_id)
            record = stored.evolve(status=PaymentStatus.CANCELLED)
            await self.store.put(payment_id, record)
            logger.info("Payment %s cancelled by payer", payment_id)
            return record
