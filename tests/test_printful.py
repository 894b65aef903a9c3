import json

import httpx
import pytest
from fastapi.testclient import TestClient

from services.fulfillment_service.main import app
from services.fulfillment_service.printful import (
    PrintfulClient, PrintfulError, PrintfulAuthError, bearer_token, get_printful_client
)


class PrintfulStub:
    """Routes (method, path) to canned responses and records every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        status_code, body = self.routes.get(key, (404, {"code": 404, "result": "Not found"}))
        return httpx.Response(status_code, json=body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def make_client(routes, token="pf_token", store_id=None):
    stub = PrintfulStub(routes)
    return PrintfulClient(token, store_id, transport=httpx.MockTransport(stub)), stub


@pytest.fixture
def api():
    def build(routes, token="pf_token"):
        client, stub = make_client(routes, token)
        app.dependency_overrides[get_printful_client] = lambda: client
        return TestClient(app), stub
    yield build
    app.dependency_overrides.clear()


# --- Client ---

def test_bearer_token_strips_prefix():
    assert bearer_token("Bearer abc123") == "abc123"
    assert bearer_token("  abc123 ") == "abc123"


def test_missing_token_is_auth_error():
    with pytest.raises(PrintfulAuthError) as exc:
        bearer_token(None)
    assert exc.value.is_auth_error


@pytest.mark.asyncio
async def test_catalog_request_headers_and_params():
    client, stub = make_client({("GET", "/catalog/products"): (200, {"code": 200, "result": [{"id": 71}]})}, token="Bearer pf_token", store_id="123")
    products = await client.get_products(category_id="24")

    assert products == [{"id": 71}]
    request = stub.requests[0]
    assert request.headers["Authorization"] == "Bearer pf_token"
    assert request.headers["X-PF-Store-Id"] == "123"
    assert request.url.params["limit"] == "100"
    assert request.url.params["category_id"] == "24"


@pytest.mark.asyncio
async def test_catalog_nested_products_shape():
    client, _ = make_client({("GET", "/catalog/products"): (200, {"result": {"products": [{"id": 1}]}})})
    assert await client.get_products() == [{"id": 1}]


@pytest.mark.asyncio
async def test_v2_endpoints_unwrap_data():
    client, stub = make_client({("POST", "/v2/mockup-generator/tasks"): (200, {"data": {"task_key": "gt-1"}})})
    assert await client.create_mockup({"variant_ids": [1]}) == {"task_key": "gt-1"}
    assert str(stub.requests[0].url) == "https://api.printful.com/v2/mockup-generator/tasks"


@pytest.mark.asyncio
async def test_order_lookup_by_external_id():
    client, stub = make_client({("GET", "/orders/@ext-42"): (200, {"result": {"id": 9, "external_id": "ext-42"}})})
    assert (await client.get_order("ext-42"))["id"] == 9


@pytest.mark.asyncio
async def test_error_carries_status_and_message():
    client, _ = make_client({("GET", "/catalog/products"): (401, {"code": 401, "result": "Unauthorized", "error": {"message": "Invalid token"}})})

    with pytest.raises(PrintfulError) as exc:
        await client.get_products()
    assert exc.value.status_code == 401
    assert exc.value.is_auth_error
    assert "Unauthorized" in str(exc.value)


@pytest.mark.asyncio
async def test_network_failure_is_printful_error():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = PrintfulClient("pf_token", transport=httpx.MockTransport(unreachable))
    with pytest.raises(PrintfulError) as exc:
        await client.get_products()
    assert exc.value.status_code is None


# --- Catalog routes ---

def test_products_route(api):
    client, _ = api({("GET", "/catalog/products"): (200, {"result": [{"id": 1}, {"id": 2}]})})
    response = client.get("/api/printful-products")

    assert response.status_code == 200
    assert response.json() == {"success": True, "products": [{"id": 1}, {"id": 2}]}


def test_single_product_route(api):
    client, _ = api({("GET", "/catalog/products/71"): (200, {"result": {"product": {"id": 71}, "variants": []}})})
    response = client.get("/api/printful-products", params={"product_id": "71"})

    assert response.json() == {"success": True, "product": {"id": 71}}


def test_products_auth_failure(api):
    client, _ = api({("GET", "/catalog/products"): (401, {"result": "Unauthorized"})})
    response = client.get("/api/printful-products")

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Authentication failed"
    assert body["requiresAuth"] is True


def test_products_upstream_failure(api):
    client, _ = api({("GET", "/catalog/products"): (502, {"result": "Bad gateway"})})
    body = client.get("/api/printful-products").json()

    assert body["error"] == "Failed to fetch products"
    assert body["requiresAuth"] is False


def test_products_without_token(api):
    client, stub = api({}, token=None)
    body = client.get("/api/printful-products").json()

    assert body["requiresAuth"] is True
    assert "PRINTFUL_OAUTH_TOKEN" in body["message"]
    assert stub.requests == []


# --- Mockups ---

def test_mockup_requires_fields(api):
    client, stub = api({})
    response = client.post("/api/printful-mockup", json={"variant_ids": [4012]})

    assert response.status_code == 400
    assert response.json()["error"] == "Missing required fields: variant_ids, files"
    assert stub.requests == []


def test_mockup_defaults_and_wrapping(api):
    client, stub = api({("POST", "/v2/mockup-generator/tasks"): (200, {"data": {"task_key": "gt-1"}})})
    response = client.post("/api/printful-mockup", json={
        "variant_ids": 4012,
        "files": {"placement": "front", "image_url": "https://cdn.example.com/art.png"},
    })

    assert response.json() == {"success": True, "task_key": "gt-1"}
    assert stub.last_json == {
        "variant_ids": [4012],
        "format": "jpg",
        "width": 1000,
        "files": [{"placement": "front", "image_url": "https://cdn.example.com/art.png"}],
    }


def test_mockup_task_poll(api):
    client, _ = api({("GET", "/v2/mockup-generator/tasks/gt-1"): (200, {"data": {"status": "completed"}})})

    assert client.get("/api/printful-mockup").status_code == 400
    response = client.get("/api/printful-mockup", params={"task_key": "gt-1"})
    assert response.json() == {"success": True, "task": {"status": "completed"}}


def test_mockup_upstream_failure(api):
    client, _ = api({("POST", "/v2/mockup-generator/tasks"): (400, {"error": {"message": "Invalid variant"}})})
    response = client.post("/api/printful-mockup", json={"variant_ids": [1], "files": [{"url": "https://x"}]})

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to process mockup request"


# --- Orders ---

def test_order_create(api):
    client, stub = api({("POST", "/v2/orders"): (200, {"data": {"id": 77}})})
    order_data = {"recipient": {"name": "Fan"}, "order_items": [{"catalog_variant_id": 4012, "quantity": 1}]}
    response = client.post("/api/printful-order", json={"action": "create", "order_data": order_data})

    assert response.json() == {"success": True, "order": {"id": 77}}
    assert stub.last_json == order_data


def test_shipping_estimate(api):
    client, _ = api({("POST", "/v2/shipping-rates"): (200, {"data": [{"shipping": "STANDARD", "rate": "4.99"}]})})
    response = client.post("/api/printful-order", json={"action": "estimate_shipping", "shipping_data": {"recipient": {}}})

    assert response.json() == {"success": True, "rates": [{"shipping": "STANDARD", "rate": "4.99"}]}


@pytest.mark.parametrize("body,error", [
    ({"action": "refund"}, 'Invalid action. Use "create" or "estimate_shipping"'),
    ({}, 'Invalid action. Use "create" or "estimate_shipping"'),
    ({"action": "create"}, "Missing order_data"),
    ({"action": "estimate_shipping"}, "Missing shipping_data"),
])
def test_order_action_validation(api, body, error):
    client, _ = api({})
    response = client.post("/api/printful-order", json=body)

    assert response.status_code == 400
    assert response.json()["error"] == error


def test_order_fetch(api):
    client, _ = api({("GET", "/orders/@ext-42"): (200, {"result": {"id": 9}})})

    assert client.get("/api/printful-order").status_code == 400
    assert client.get("/api/printful-order", params={"order_id": "ext-42"}).json() == {"success": True, "order": {"id": 9}}


def test_order_upstream_failure(api):
    client, _ = api({})
    response = client.get("/api/printful-order", params={"order_id": "missing"})

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to process order"


# --- Embedded designer ---

def test_designer_nonce(api):
    client, stub = api({("POST", "/embedded-designer/nonces"): (200, {"result": {"nonce": "n-1", "expires_at": 1700000000}})})
    response = client.post("/api/printful-designer-nonce", json={"external_product_id": "tee-1", "external_customer_id": "fan-9"})

    assert response.json() == {"success": True, "nonce": "n-1", "expires_at": 1700000000}
    assert stub.last_json == {"external_product_id": "tee-1", "external_customer_id": "fan-9"}


def test_designer_nonce_requires_product(api):
    client, _ = api({})
    response = client.post("/api/printful-designer-nonce", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "Missing required field: external_product_id"


def test_designer_without_access(api):
    client, _ = api({})
    response = client.post("/api/printful-designer-nonce", json={"external_product_id": "tee-1"})

    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "Embedded Design Maker access required"
    assert body["requiresAccess"] is True


def test_design_by_nonce(api):
    client, _ = api({("GET", "/embedded-designer/designs"): (200, {"result": {"template_id": 5}})})

    assert client.get("/api/printful-designer-nonce").json()["error"] == "Missing nonce parameter"
    response = client.get("/api/printful-designer-nonce", params={"nonce": "n-1"})
    assert response.json() == {"success": True, "design": {"template_id": 5}}


def test_designer_upstream_failure(api):
    client, _ = api({("GET", "/embedded-designer/designs"): (500, {"result": "boom"})})
    response = client.get("/api/printful-designer-nonce", params={"nonce": "n-1"})

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to process designer request"
