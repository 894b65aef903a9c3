import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from shared.utils import settings

logger = logging.getLogger("fulfillment-service")

PRINTFUL_API_URL = "https://api.printful.com"
PRINTFUL_API_V2_URL = "https://api.printful.com/v2"


class PrintfulError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code == 401

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class PrintfulAuthError(PrintfulError):
    def __init__(self, message: str):
        super().__init__(message, status_code=401)


def bearer_token(raw: Optional[str]) -> str:
    if not raw:
        raise PrintfulAuthError(
            "Printful OAuth token not configured. Please set PRINTFUL_OAUTH_TOKEN environment variable. "
            "Get your OAuth token from https://developers.printful.com/"
        )
    return re.sub(r"^Bearer\s+", "", raw.strip(), flags=re.IGNORECASE)


class PrintfulClient:
    """
    Bearer-authenticated Printful REST client.

    Catalog, order lookup and the embedded designer use the v1 API; mockups,
    order creation and shipping rates use v2. v1 wraps payloads in `result`,
    v2 in `data`.
    """

    def __init__(self, token: Optional[str], store_id: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.token = token
        self.store_id = store_id
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {bearer_token(self.token)}",
            "Content-Type": "application/json",
        }
        if self.store_id:
            headers["X-PF-Store-Id"] = self.store_id
        return headers

    async def request(self, method: str, endpoint: str, *, v2: bool = False, json: Any = None, params: Optional[dict] = None) -> dict:
        base_url = PRINTFUL_API_V2_URL if v2 else PRINTFUL_API_URL
        url = f"{base_url}{endpoint}"
        headers = self._headers()

        async with httpx.AsyncClient(transport=self.transport, timeout=30.0) as client:
            try:
                response = await client.request(method, url, headers=headers, json=json, params=params)
            except httpx.RequestError as e:
                raise PrintfulError(f"Printful API unreachable: {e}") from e

        if response.is_error:
            try:
                error = response.json()
            except ValueError:
                error = None
            if not isinstance(error, dict):
                error = {"message": response.text or response.reason_phrase}
            detail = error.get("message") or error.get("result") or response.reason_phrase
            if isinstance(detail, dict):
                detail = detail.get("message") or response.reason_phrase
            logger.error(
                "Printful API Error",
                extra={"path": endpoint, "status_code": response.status_code, "reason": str(detail)},
            )
            raise PrintfulError(f"Printful API error: {detail} ({response.status_code})", status_code=response.status_code)

        return response.json()

    # --- Catalog (v1) ---
    async def get_products(self, category_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        params: Dict[str, Any] = {"limit": limit}
        if category_id:
            params["category_id"] = category_id
        data = await self.request("GET", "/catalog/products", params=params)
        result = data.get("result")
        if isinstance(result, dict):
            return result.get("products") or []
        return result or []

    async def get_product(self, product_id: str) -> Optional[dict]:
        data = await self.request("GET", f"/catalog/products/{product_id}")
        result = data.get("result") or {}
        return result.get("product") or result or None

    # --- Mockups (v2) ---
    async def create_mockup(self, mockup_data: dict) -> Optional[dict]:
        data = await self.request("POST", "/mockup-generator/tasks", v2=True, json=mockup_data)
        return data.get("data")

    async def get_mockup_task(self, task_key: str) -> Optional[dict]:
        data = await self.request("GET", f"/mockup-generator/tasks/{task_key}", v2=True)
        return data.get("data")

    # --- Orders ---
    async def create_order(self, order_data: dict) -> Optional[dict]:
        data = await self.request("POST", "/orders", v2=True, json=order_data)
        return data.get("data")

    async def get_order(self, order_id: str) -> Optional[dict]:
        # '@' addresses the order by its external id
        data = await self.request("GET", f"/orders/@{order_id}")
        return data.get("result")

    async def estimate_shipping(self, shipping_data: dict) -> Optional[dict]:
        data = await self.request("POST", "/shipping-rates", v2=True, json=shipping_data)
        return data.get("data")

    # --- Embedded Design Maker (v1) ---
    async def generate_designer_nonce(self, external_product_id: str, external_customer_id: Optional[str] = None) -> Optional[dict]:
        payload = {"external_product_id": external_product_id}
        if external_customer_id:
            payload["external_customer_id"] = external_customer_id
        data = await self.request("POST", "/embedded-designer/nonces", json=payload)
        return data.get("result")

    async def get_design_by_nonce(self, nonce: str) -> Optional[dict]:
        data = await self.request("GET", "/embedded-designer/designs", params={"nonce": nonce})
        return data.get("result")


def get_printful_client() -> PrintfulClient:
    return PrintfulClient(settings.PRINTFUL_OAUTH_TOKEN, settings.PRINTFUL_STORE_ID)
