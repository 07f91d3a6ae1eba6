import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
import stripe
from fastapi.testclient import TestClient

from main import app, get_http_client
from settings import Settings, get_settings

N8N_BASE = "https://n8n.test/webhook"


class FakeServices:
    """Stands in for Airtable and n8n behind one httpx MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.customers: list[dict[str, Any]] = []
        self.products: list[dict[str, Any]] = []
        self.airtable_page_size = 100
        self.airtable_status = 200
        self.webhook_status: dict[str, int] = {}

    # request helpers

    def calls_to(self, host: str, path_suffix: str = "") -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host and r.url.path.endswith(path_suffix)]

    def webhook_payloads(self, endpoint: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls_to("n8n.test", endpoint)]

    # transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "api.airtable.com":
            return self._airtable(request)
        if host == "n8n.test":
            status = self.webhook_status.get(request.url.path.rsplit("/", 1)[-1], 200)
            return httpx.Response(status, json={"received": True} if status < 400 else {"error": "boom"})
        return httpx.Response(404)

    def _airtable(self, request: httpx.Request) -> httpx.Response:
        if self.airtable_status >= 400:
            return httpx.Response(self.airtable_status, json={"error": "unavailable"})
        if request.url.path.endswith("/Products"):
            start = int(request.url.params.get("offset", 0))
            end = start + self.airtable_page_size
            body: dict[str, Any] = {"records": self.products[start:end]}
            if end < len(self.products):
                body["offset"] = str(end)
            return httpx.Response(200, json=body)
        formula = request.url.params.get("filterByFormula", "")
        matches = [c for c in self.customers if f'"{c["fields"].get("email")}"' in formula]
        return httpx.Response(200, json={"records": matches})


class FakeStripeResource:
    """Records the params of every ``create_async`` call for one Stripe resource."""

    def __init__(self, prefix: str, fail_names: set[str]) -> None:
        self.prefix = prefix
        self.fail_names = fail_names
        self.created: list[dict[str, Any]] = []

    async def create_async(self, params: dict[str, Any], options: Any = None) -> SimpleNamespace:
        if params.get("name") in self.fail_names:
            raise stripe.InvalidRequestError("invalid product", "name")
        self.created.append(params)
        return SimpleNamespace(id=f"{self.prefix}_{len(self.created)}", **params)


class FakeStripe:
    """Replaces ``stripe.StripeClient``; every client built shares this state."""

    def __init__(self) -> None:
        self.api_keys: list[str] = []
        self.fail_product_names: set[str] = set()
        self.products = FakeStripeResource("prod", self.fail_product_names)
        self.prices = FakeStripeResource("price", set())

    def __call__(self, api_key: str, **kwargs: Any) -> "FakeStripe":
        self.api_keys.append(api_key)
        return self


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        AIRTABLE_BASE_ID="appTEST",
        AIRTABLE_API_KEY="keyTEST",
        N8N_WEBHOOK_URL=N8N_BASE,
        STRIPE_SECRET_KEY="sk_test_123",
        DOUBLE_OPT_IN=False,
    )


@pytest.fixture
def fake() -> FakeServices:
    return FakeServices()


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    monkeypatch.setattr(stripe, "StripeClient", fake)
    return fake


@pytest.fixture
def http_client(fake):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))


@pytest.fixture
def client(fake, fake_stripe, settings):
    async def _client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)) as c:
            yield c

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_http_client] = _client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
