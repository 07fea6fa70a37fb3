import json
import time
import weakref
from types import SimpleNamespace

import httpx
import pytest

from photolister.models import Credential
from photolister.services import ebay_auth, ebay_seller, http, image_analyzer, settings, store

OWNER = "owner-1"
PHOTO = "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQ=="


class Router:
    """Tiny request router for httpx.MockTransport. Paths ending in '*' match by prefix."""

    def __init__(self):
        self.routes = []
        self.calls: list[httpx.Request] = []

    def add(self, method: str, path: str, handler):
        self.routes.insert(0, (method.upper(), path, handler))

    def json(self, method: str, path: str, body=None, status: int = 200):
        self.add(method, path, lambda request: httpx.Response(status, json=body if body is not None else {}))

    def calls_to(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.calls
            if r.method == method.upper() and (
                r.url.path.startswith(path[:-1]) if path.endswith("*") else r.url.path == path
            )
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        for method, path, handler in self.routes:
            if method != request.method:
                continue
            if path.endswith("*"):
                matched = request.url.path.startswith(path[:-1])
            else:
                matched = request.url.path == path
            if matched:
                return handler(request)
        return httpx.Response(404, json={"errors": [{"message": f"no route for {request.url.path}"}]})


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", tmp_path / "photolister.db")
    monkeypatch.setattr(settings, "EBAY_APP_ID", "test-app")
    monkeypatch.setattr(settings, "EBAY_CERT_ID", "test-cert")
    monkeypatch.setattr(settings, "EBAY_REDIRECT_URI", "Test-RuName")
    monkeypatch.setattr(settings, "EBAY_SANDBOX_MODE", False)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(settings, "IMGBB_API_KEY", "test-imgbb")
    monkeypatch.setattr(image_analyzer, "_client", None)
    monkeypatch.setattr(ebay_auth, "_owner_locks", weakref.WeakValueDictionary())
    monkeypatch.setattr(ebay_seller, "_draft_locks", weakref.WeakValueDictionary())


@pytest.fixture
def router(monkeypatch) -> Router:
    r = Router()
    monkeypatch.setattr(http, "_transport", httpx.MockTransport(r))
    return r


@pytest.fixture
async def credential() -> Credential:
    """A stored credential that is valid for another hour."""
    return await store.save_credential(Credential(
        owner_id=OWNER,
        access_token="access-current",
        refresh_token="refresh-current",
        expires_at=time.time() + 3600,
    ))


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def openai_stub(monkeypatch):
    """Install a fake AsyncOpenAI client; returns its completions recorder."""

    def install(content=None, error=None) -> FakeCompletions:
        completions = FakeCompletions(content, error)
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
        monkeypatch.setattr(
            image_analyzer, "_client", SimpleNamespace(chat=SimpleNamespace(completions=completions))
        )
        return completions

    return install


INVENTORY_ITEM = "/sell/inventory/v1/inventory_item/*"
OFFER = "/sell/inventory/v1/offer"
IMGBB = "/1/upload"
HOSTED_URL = "https://i.ibb.co/abc/photo.jpg"

SEARCH_BY_IMAGE = "/buy/browse/v1/item_summary/search_by_image"
SEARCH = "/buy/browse/v1/item_summary/search"
ITEM = "/buy/browse/v1/item/*"


def stub_marketplace(router: Router, offer_status=201, inventory_status=204, delete_status=204):
    """Account, image host and Inventory API routes for a publish."""
    router.json("GET", "/sell/account/v1/fulfillment_policy",
                {"fulfillmentPolicies": [{"fulfillmentPolicyId": "F-1"}]})
    router.json("GET", "/sell/account/v1/payment_policy",
                {"paymentPolicies": [{"paymentPolicyId": "P-1"}]})
    router.json("GET", "/sell/account/v1/return_policy",
                {"returnPolicies": [{"returnPolicyId": "R-1"}]})
    router.json("POST", IMGBB, {"success": True, "data": {"display_url": HOSTED_URL}})
    router.add("PUT", INVENTORY_ITEM, lambda r: httpx.Response(
        inventory_status,
        json={} if inventory_status < 300 else {"errors": [{"longMessage": "Bad aspects"}]},
    ))
    router.add("DELETE", INVENTORY_ITEM, lambda r: httpx.Response(delete_status))
    router.add("POST", OFFER, lambda r: httpx.Response(
        offer_status,
        json={"offerId": "OFFER-1"} if offer_status < 300 else
        {"errors": [{"message": "Invalid category", "longMessage": "Category 139971 is not a leaf"}]},
    ))


def stub_search(router: Router):
    """Browse API routes: one similar item, three sold comparables, item aspects."""
    router.json("POST", SEARCH_BY_IMAGE, {"itemSummaries": [{
        "itemId": "v1|111|0",
        "title": "Nintendo Switch Console Gray HAC-001",
        "price": {"value": "199.99", "currency": "USD"},
        "categories": [{"categoryId": "139971", "categoryName": "Video Game Consoles"}],
    }]})
    router.json("GET", SEARCH, {"itemSummaries": [
        {"itemId": "v1|2|0", "title": "Switch A", "soldPrice": {"value": "150.00", "currency": "USD"},
         "soldDate": "2024-03-01"},
        {"itemId": "v1|3|0", "title": "Switch B", "soldPrice": {"value": "180.00", "currency": "USD"}},
        {"itemId": "v1|4|0", "title": "Switch C", "soldPrice": {"value": "210.00", "currency": "USD"}},
    ]})
    router.json("GET", ITEM, {"localizedAspects": [{"name": "Model", "value": "HAC-001"}]})
