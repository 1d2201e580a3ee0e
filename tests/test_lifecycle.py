import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from paypal_gateway.errors import (
    ApprovalLinkMissing,
    InvalidAmount,
    InvalidStatusTransition,
    PaymentCaptureFailed,
    PaymentInitiationFailed,
    PaymentStatusUnavailable,
    ProcessorRequestFailed,
    UnknownPayment,
)
from paypal_gateway.models import PaymentRecord, PaymentStatus
from paypal_gateway.services.payments import KeyedLock

from .conftest import ORDERS


async def initiate_jane(manager, amount=50):
    return await manager.initiate("Jane Doe", "jane@x.com", amount)


@pytest.mark.asyncio
async def test_initiate_end_to_end(manager, store, paypal):
    paypal.queue("POST", ORDERS, httpx.Response(201, json={
        "id": "ORDER-1",
        "status": "CREATED",
        "links": [{"rel": "approve", "href": "https://pay/ORDER-1"}],
    }))

    record = await initiate_jane(manager)

    assert record.id == "ORDER-1"
    assert record.status is PaymentStatus.PENDING
    assert record.payment_url == "https://pay/ORDER-1"
    assert record.customer_name == "Jane Doe"
    assert record.customer_email == "jane@x.com"
    assert record.amount == Decimal("50")
    assert record.currency == "USD"
    assert await store.get("ORDER-1") is record


@pytest.mark.asyncio
async def test_lookup_after_initiate_is_served_locally(manager, client):
    record = await initiate_jane(manager)

    with patch.object(client, "get_order", new=AsyncMock(wraps=client.get_order)) as get_order:
        found = await manager.lookup(record.id)

    assert found == record
    assert get_order.await_count == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc", None, True, float("nan"), float("inf")])
async def test_initiate_rejects_bad_amount_before_calling_paypal(manager, paypal, amount):
    with pytest.raises(InvalidAmount):
        await initiate_jane(manager, amount=amount)
    assert paypal.requests == []


@pytest.mark.asyncio
async def test_initiate_failure_stores_nothing(manager, store, paypal):
    paypal.queue("POST", ORDERS, httpx.Response(201, json={"id": "ORDER-1", "links": []}))

    with pytest.raises(PaymentInitiationFailed) as exc_info:
        await initiate_jane(manager)

    assert isinstance(exc_info.value.__cause__, ApprovalLinkMissing)
    assert await store.get("ORDER-1") is None


@pytest.mark.asyncio
async def test_lookup_unknown_everywhere_returns_none(manager, paypal):
    assert await manager.lookup("NOPE") is None
    assert len(paypal.calls("GET", f"{ORDERS}/NOPE")) == 1


@pytest.mark.asyncio
async def test_lookup_fetches_and_caches_remote_order(manager, store, paypal):
    paypal.add_order("ORDER-42", status="COMPLETED", value="75.50", payer={
        "name": {"given_name": "John", "surname": "Smith"},
        "email_address": "john@example.com",
    })

    record = await manager.lookup("ORDER-42")

    assert record.status is PaymentStatus.COMPLETED
    assert record.customer_name == "John Smith"
    assert record.customer_email == "john@example.com"
    assert record.amount == Decimal("75.50")
    assert record.raw_processor_response["id"] == "ORDER-42"
    assert await store.get("ORDER-42") == record

    await manager.lookup("ORDER-42")
    assert len(paypal.calls("GET", f"{ORDERS}/ORDER-42")) == 1


@pytest.mark.asyncio
async def test_lookup_maps_voided_orders_to_cancelled(manager, paypal):
    paypal.add_order("ORDER-V", status="VOIDED")
    record = await manager.lookup("ORDER-V")
    assert record.status is PaymentStatus.CANCELLED
    assert record.customer_name == "Unknown"


@pytest.mark.asyncio
async def test_lookup_failure_without_local_copy(manager, paypal):
    paypal.queue("GET", f"{ORDERS}/ORDER-1", httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"}))
    with pytest.raises(PaymentStatusUnavailable) as exc_info:
        await manager.lookup("ORDER-1")
    assert isinstance(exc_info.value.__cause__, ProcessorRequestFailed)


@pytest.mark.asyncio
async def test_refresh_falls_back_to_local_copy_on_failure(manager, paypal):
    record = await initiate_jane(manager)
    paypal.queue("GET", f"{ORDERS}/{record.id}", httpx.ConnectError("down"))

    assert await manager.lookup(record.id, refresh=True) is record


@pytest.mark.asyncio
async def test_refresh_promotes_status_and_keeps_customer(manager, paypal):
    record = await initiate_jane(manager)
    paypal.orders[record.id]["status"] = "VOIDED"

    refreshed = await manager.lookup(record.id, refresh=True)

    assert refreshed.status is PaymentStatus.CANCELLED
    assert refreshed.customer_name == "Jane Doe"
    assert refreshed.customer_email == "jane@x.com"
    assert refreshed.payment_url == record.payment_url


@pytest.mark.asyncio
async def test_refresh_never_leaves_terminal_status(manager, paypal):
    record = await initiate_jane(manager)
    await manager.cancel(record.id)
    paypal.orders[record.id]["status"] = "COMPLETED"

    refreshed = await manager.lookup(record.id, refresh=True)

    assert refreshed.status is PaymentStatus.CANCELLED


@pytest.mark.asyncio
async def test_capture_unknown_payment(manager, paypal):
    with pytest.raises(UnknownPayment):
        await manager.capture("ORDER-404")
    assert paypal.calls("POST", f"{ORDERS}/ORDER-404/capture") == []


@pytest.mark.asyncio
async def test_capture_then_lookup_preserves_customer(manager, paypal):
    record = await initiate_jane(manager, amount="50")

    captured = await manager.capture(record.id)
    found = await manager.lookup(record.id)

    assert found.status is PaymentStatus.COMPLETED
    assert found.customer_name == "Jane Doe"
    assert found.customer_email == "jane@x.com"
    assert found.amount == Decimal("50.00")
    assert found.currency == "USD"
    assert found.payment_url == record.payment_url
    assert found.raw_processor_response["status"] == "COMPLETED"
    assert found == captured


@pytest.mark.asyncio
async def test_second_capture_reconfirms_without_field_loss(manager, client, paypal):
    record = await initiate_jane(manager)
    first = await manager.capture(record.id)

    with patch.object(client, "capture_order", new=AsyncMock(wraps=client.capture_order)) as capture_order:
        second = await manager.capture(record.id)

    assert second == first
    assert second.customer_name == "Jane Doe"
    assert capture_order.await_count == 0


@pytest.mark.asyncio
async def test_capture_reconciles_order_already_captured_upstream(manager, paypal):
    record = await initiate_jane(manager)
    # captured through another channel; our copy is still pending
    paypal.orders[record.id]["status"] = "COMPLETED"

    captured = await manager.capture(record.id)

    assert captured.status is PaymentStatus.COMPLETED
    assert captured.customer_email == "jane@x.com"
    assert len(paypal.calls("GET", f"{ORDERS}/{record.id}")) == 1


@pytest.mark.asyncio
async def test_failed_capture_leaves_record_untouched(manager, store, paypal):
    record = await initiate_jane(manager)
    paypal.queue("POST", f"{ORDERS}/{record.id}/capture",
                 httpx.Response(422, json={"details": [{"issue": "ORDER_NOT_APPROVED"}]}))

    with pytest.raises(PaymentCaptureFailed) as exc_info:
        await manager.capture(record.id)

    assert exc_info.value.__cause__.upstream_status == 422
    assert await store.get(record.id) is record


@pytest.mark.asyncio
async def test_declined_capture_fails(manager, store, paypal):
    record = await initiate_jane(manager)
    paypal.queue("POST", f"{ORDERS}/{record.id}/capture", httpx.Response(201, json={
        "id": record.id,
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [
            {"id": "CAP-1", "status": "DECLINED", "amount": {"currency_code": "USD", "value": "50.00"}},
        ]}}],
    }))

    with pytest.raises(PaymentCaptureFailed):
        await manager.capture(record.id)
    assert (await store.get(record.id)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_capture_of_cancelled_payment_is_refused(manager, paypal):
    record = await initiate_jane(manager)
    await manager.cancel(record.id)

    with pytest.raises(PaymentCaptureFailed) as exc_info:
        await manager.capture(record.id)

    assert isinstance(exc_info.value.__cause__, InvalidStatusTransition)
    assert paypal.calls("POST", f"{ORDERS}/{record.id}/capture") == []


@pytest.mark.asyncio
async def test_cancel_transitions(manager):
    record = await initiate_jane(manager)

    cancelled = await manager.cancel(record.id)
    assert cancelled.status is PaymentStatus.CANCELLED
    assert cancelled.customer_name == "Jane Doe"
    assert await manager.cancel(record.id) == cancelled

    with pytest.raises(UnknownPayment):
        await manager.cancel("ORDER-404")


@pytest.mark.asyncio
async def test_cannot_cancel_completed_payment(manager):
    record = await initiate_jane(manager)
    await manager.capture(record.id)
    with pytest.raises(InvalidStatusTransition):
        await manager.cancel(record.id)


@pytest.mark.asyncio
async def test_concurrent_captures_capture_once(manager, paypal):
    record = await initiate_jane(manager)

    results = await asyncio.gather(manager.capture(record.id), manager.capture(record.id))

    assert results[0] == results[1]
    assert len(paypal.calls("POST", f"{ORDERS}/{record.id}/capture")) == 1


@pytest.mark.asyncio
async def test_keyed_lock_releases_entries():
    locks = KeyedLock()
    async with locks.hold("a"):
        assert "a" in locks
    assert "a" not in locks


def test_status_transitions():
    pending = PaymentStatus.PENDING
    assert pending.can_transition_to(PaymentStatus.COMPLETED)
    assert pending.can_transition_to(PaymentStatus.CANCELLED)
    assert pending.can_transition_to(PaymentStatus.FAILED)
    assert not pending.can_transition_to(PaymentStatus.PENDING)
    for terminal in (PaymentStatus.COMPLETED, PaymentStatus.CANCELLED, PaymentStatus.FAILED):
        assert terminal.is_terminal
        assert not any(terminal.can_transition_to(s) for s in PaymentStatus)


def test_records_are_immutable():
    record = PaymentRecord(id="ORDER-1", customer_name="Jane", customer_email="j@x.com", amount=Decimal("1"))
    with pytest.raises(Exception):
        record.status = PaymentStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["10.005", "0.001", Decimal("0.009")])
async def test_initiate_rejects_sub_cent_amounts(manager, paypal, amount):
    with pytest.raises(InvalidAmount) as exc_info:
        await initiate_jane(manager, amount=amount)
    assert exc_info.value.message == "Amount must have at most two decimal places"
    assert paypal.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["10.5", "10.500", 10.5, Decimal("10.50")])
async def test_stored_amount_matches_amount_sent_to_paypal(manager, store, paypal, amount):
    record = await initiate_jane(manager, amount=amount)

    sent = json.loads(paypal.calls("POST", ORDERS)[0].content)["purchase_units"][0]["amount"]["value"]
    assert sent == "10.50"
    assert record.amount == Decimal(sent)
    assert str(record.amount) == "10.50"
    assert (await store.get(record.id)).amount == Decimal(sent)
