import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from ..config import ProcessorConfig
from ..errors import (
    ApprovalLinkMissing,
    CaptureDataMissing,
    OrderAlreadyCaptured,
    OrderNotFound,
    ProcessorRequestFailed,
    ProcessorUnreachable,
)
from ..models import PaymentStatus
from .auth import TokenCache, error_body

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
FAILED_CAPTURE_STATUSES = {"DECLINED", "FAILED"}


@dataclass(frozen=True)
class CreatedOrder:
    processor_id: str
    approve_url: str
    raw: dict


@dataclass(frozen=True)
class OrderDetails:
    processor_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    payer_name: str
    payer_email: str
    approve_url: Optional[str]
    raw: dict


@dataclass(frozen=True)
class CaptureDetails:
    capture_id: Optional[str]
    status: Optional[str]
    amount: Decimal
    currency: str


def find_link(links: Any, rel: str) -> Optional[str]:
    for link in links or []:
        if isinstance(link, dict) and link.get("rel") == rel and link.get("href"):
            return link["href"]
    return None


def _captures(order: dict) -> list:
    units = order.get("purchase_units") or []
    if not units or not isinstance(units[0], dict):
        return []
    return (units[0].get("payments") or {}).get("captures") or []


def map_order_status(order: dict) -> PaymentStatus:
    """
    Translate a PayPal order into our status vocabulary.

    VOIDED and CANCELLED orders become ``cancelled``; ``failed`` is kept for
    orders whose capture was declined or failed.
    """
    status = str(order.get("status") or "").upper()
    if status == "COMPLETED":
        return PaymentStatus.COMPLETED
    if status in ("CANCELLED", "VOIDED"):
        return PaymentStatus.CANCELLED
    for capture in _captures(order):
        if str(capture.get("status") or "").upper() in FAILED_CAPTURE_STATUSES:
            return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def extract_capture(raw: dict) -> CaptureDetails:
    """Read the first capture of a capture response, or raise CaptureDataMissing."""
    captures = _captures(raw or {})
    capture = captures[0] if captures else None
    if not isinstance(capture, dict) or not isinstance(capture.get("amount"), dict):
        raise CaptureDataMissing(detail=raw)
    amount = capture["amount"]
    value = _parse_amount(amount.get("value"))
    if value is None:
        logger.error("PayPal capture %s has an unreadable amount %r", capture.get("id"), amount.get("value"))
        raise CaptureDataMissing(detail=raw)
    return CaptureDetails(
        capture_id=capture.get("id"),
        status=capture.get("status"),
        amount=value,
        currency=amount.get("currency_code") or "USD",
    )


def _issues(body: Any) -> set:
    if not isinstance(body, dict):
        return set()
    return {d.get("issue") for d in body.get("details") or [] if isinstance(d, dict)}


class PayPalClient:
    """Maps our calls onto PayPal's v2 checkout orders API."""

    def __init__(self, config: ProcessorConfig, client: Optional[httpx.AsyncClient] = None,
                 tokens: Optional[TokenCache] = None):
        self.config = config
        self._owns_client = client is None
        self.http = client or httpx.AsyncClient(timeout=config.timeout)
        self.tokens = tokens or TokenCache(config, self.http)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _request(self, method: str, path: str, *, op: str, order_id: Optional[str] = None,
                       json: Optional[dict] = None) -> dict:
        url = f"{self.config.base_url}{path}"
        for attempt in (1, 2):
            token = await self.tokens.get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            try:
                resp = await self.http.request(method, url, json=json, headers=headers,
                                               timeout=self.config.timeout)
            except httpx.TransportError as exc:
                logger.error("PayPal %s failed for order %s: %s", op, order_id, exc)
                raise ProcessorUnreachable(detail=str(exc), payment_id=order_id) from exc
            if resp.status_code == 401 and attempt == 1:
                # token expired or revoked upstream
                logger.warning("PayPal %s returned 401 for order %s; refreshing token", op, order_id)
                self.tokens.invalidate()
                continue
            break

        if resp.status_code == 401:
            self.tokens.invalidate()
        if resp.is_error:
            body = error_body(resp)
            logger.error("PayPal %s failed for order %s with status %s", op, order_id, resp.status_code)
            if resp.status_code == 404:
                raise OrderNotFound(upstream_status=404, detail=body, payment_id=order_id)
            if resp.status_code == 422 and "ORDER_ALREADY_CAPTURED" in _issues(body):
                raise OrderAlreadyCaptured(upstream_status=422, detail=body, payment_id=order_id)
            raise ProcessorRequestFailed(f"PayPal {op} failed with status {resp.status_code}",
                                         upstream_status=resp.status_code, detail=body,
                                         payment_id=order_id)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProcessorRequestFailed(f"PayPal {op} returned a non-JSON body",
                                         upstream_status=resp.status_code, detail=resp.text,
                                         payment_id=order_id) from exc
        if not isinstance(data, dict):
            raise ProcessorRequestFailed(f"PayPal {op} returned an unexpected body",
                                         upstream_status=resp.status_code, detail=data,
                                         payment_id=order_id)
        return data

    async def create_order(self, amount: Decimal, currency: str, return_url: str, cancel_url: str,
                           metadata: Optional[dict] = None) -> CreatedOrder:
        metadata = metadata or {}
        customer_name = metadata.get("customer_name")
        unit = {
            "amount": {"currency_code": currency, "value": f"{Decimal(amount):.2f}"},
            "description": metadata.get("description")
            or (f"Payment for {customer_name}" if customer_name else "Payment"),
        }
        custom_id = metadata.get("custom_id") or metadata.get("customer_email")
        if custom_id:
            unit["custom_id"] = custom_id
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [unit],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "brand_name": self.config.brand_name,
                "landing_page": "LOGIN",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        data = await self._request("POST", "/v2/checkout/orders", op="create_order", json=payload)
        order_id = data.get("id")
        approve_url = find_link(data.get("links"), "approve")
        if not order_id or not approve_url:
            logger.error("PayPal order %s has no approve link", order_id)
            raise ApprovalLinkMissing(detail=data, payment_id=order_id)
        logger.info("Created PayPal order %s", order_id)
        return CreatedOrder(processor_id=order_id, approve_url=approve_url, raw=data)

    async def get_order(self, order_id: str) -> OrderDetails:
        data = await self._request("GET", f"/v2/checkout/orders/{order_id}",
                                   op="get_order", order_id=order_id)
        units = data.get("purchase_units") or [{}]
        amount = (units[0] or {}).get("amount") or {}

        payer = data.get("payer") or {}
        name = payer.get("name") or {}
        full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p)

        value = _parse_amount(amount.get("value"))
        if value is None:
            logger.error("PayPal order %s has an unreadable amount %r", order_id, amount.get("value"))
            raise ProcessorRequestFailed("PayPal order has no readable amount", detail=data, payment_id=order_id)

        return OrderDetails(
            processor_id=data.get("id") or order_id,
            status=map_order_status(data),
            amount=value,
            currency=amount.get("currency_code") or self.config.currency,
            payer_name=full_name or UNKNOWN,
            payer_email=payer.get("email_address") or UNKNOWN,
            approve_url=find_link(data.get("links"), "approve"),
            raw=data,
        )

    async def capture_order(self, order_id: str) -> dict:
        data = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture",
                                   op="capture_order", order_id=order_id, json={})
        logger.info("Captured PayPal order %s (status %s)", order_id, data.get("status"))
        return data
