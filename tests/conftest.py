import asyncio
import itertools
import json
from collections import defaultdict

import httpx
import pytest

from paypal_gateway.config import ProcessorConfig
from paypal_gateway.services.payments import PaymentLifecycleManager
from paypal_gateway.services.paypal import PayPalClient
from paypal_gateway.store import InMemoryPaymentStore

CALLBACK = "http://localhost:8000/api/v1/payments/callback"
ORDERS = "/v2/checkout/orders"


def json_response(status_code, body):
    return httpx.Response(status_code, json=body)


class FakePayPal:
    """
    In-process stand-in for the PayPal REST API, served through
    httpx.MockTransport. Tests can queue canned responses (or transport
    errors) per (method, path) with ``queue``.
    """

    def __init__(self):
        self.requests = []
        self.orders = {}
        self.overrides = defaultdict(list)
        self.token_delay = 0.0
        self.expires_in = 32400
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

    def queue(self, method, path, *responses):
        self.overrides[(method, path)].extend(responses)

    def calls(self, method=None, path=None):
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    @property
    def token_requests(self):
        return self.calls("POST", "/v1/oauth2/token")

    def add_order(self, order_id, status="APPROVED", value="50.00", currency="USD", **extra):
        order = {
            "id": order_id,
            "status": status,
            "purchase_units": [{"amount": {"currency_code": currency, "value": value}}],
            "links": [{"rel": "approve", "href": f"https://pay/{order_id}"}],
        }
        order.update(extra)
        self.orders[order_id] = order
        return order

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if self.overrides.get(key):
            canned = self.overrides[key].pop(0)
            if isinstance(canned, Exception):
                raise canned
            return canned

        if key == ("POST", "/v1/oauth2/token"):
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            return json_response(200, {
                "access_token": f"token-{next(self._tokens)}",
                "token_type": "Bearer",
                "expires_in": self.expires_in,
            })
        if key == ("POST", ORDERS):
            payload = json.loads(request.content)
            order_id = f"ORDER-{next(self._ids)}"
            unit = payload["purchase_units"][0]
            order = self.add_order(order_id, status="CREATED",
                                   value=unit["amount"]["value"],
                                   currency=unit["amount"]["currency_code"])
            return json_response(201, order)

        parts = request.url.path[len(ORDERS) + 1:].split("/")
        order = self.orders.get(parts[0])
        if order is None:
            return json_response(404, {"name": "RESOURCE_NOT_FOUND", "details": [{"issue": "INVALID_RESOURCE_ID"}]})
        if request.method == "GET" and len(parts) == 1:
            return json_response(200, order)
        if request.method == "POST" and parts[1:] == ["capture"]:
            if order["status"] == "COMPLETED":
                return json_response(422, {"name": "UNPROCESSABLE_ENTITY",
                                           "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
            amount = order["purchase_units"][0]["amount"]
            order["status"] = "COMPLETED"
            order["purchase_units"][0]["payments"] = {
                "captures": [{"id": f"CAP-{parts[0]}", "status": "COMPLETED", "amount": dict(amount)}]
            }
            return json_response(201, order)
        return json_response(405, {"name": "METHOD_NOT_SUPPORTED"})


@pytest.fixture
def config():
    return ProcessorConfig(
        mode="sandbox",
        client_id="client-id",
        client_secret="client-secret",
        return_url=CALLBACK,
        cancel_url=f"{CALLBACK}/cancel",
    )


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def http(paypal):
    return httpx.AsyncClient(transport=httpx.MockTransport(paypal.handler))


@pytest.fixture
def client(config, http):
    return PayPalClient(config, http)


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def manager(client, store, config):
    return PaymentLifecycleManager(client, store, config)
