from fastapi import FastAPI, APIRouter, Depends, Query, Request
from typing import Optional

from shared.utils import ValidationException, UpstreamException, ForbiddenException, setup_exception_handlers
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import (
    setup_rate_limiting, SecurityHeadersMiddleware, CORSPolicyMiddleware, limiter
)

from services.fulfillment_service.printful import PrintfulClient, PrintfulError, get_printful_client
from services.fulfillment_service.schemas import (
    ProductsResponse, ProductResponse, MockupCreate, MockupTaskCreated, MockupTaskResponse,
    OrderAction, DesignerNonceCreate, DesignerNonceResponse
)

# Setup Logging
logger = setup_logging("fulfillment-service")

EDM_ACCESS_MESSAGE = (
    "The Printful Embedded Design Maker requires special enterprise access. Please request access at "
    "https://developers.printful.com/docs/edm/ or contact Printful support."
)

router = APIRouter()

def _as_list(value):
    return value if isinstance(value, list) else [value]

# --- Catalog ---
@router.get("/api/printful-products")
@limiter.limit("60/minute")
async def printful_products(
    request: Request,
    product_id: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    printful: PrintfulClient = Depends(get_printful_client),
):
    try:
        if product_id:
            product = await printful.get_product(product_id)
            return ProductResponse(product=product)

        products = await printful.get_products(category_id or None)
    except PrintfulError as e:
        logger.error("Error fetching Printful products", exc_info=True)
        raise UpstreamException(
            "Authentication failed" if e.is_auth_error else "Failed to fetch products",
            message=str(e) or "Unknown error occurred",
            extra={"success": False, "requiresAuth": e.is_auth_error},
        )

    if not isinstance(products, list):
        logger.error("Products is not an array")
        raise UpstreamException(
            "Invalid products response format",
            message="Products data is not in expected format",
            extra={"success": False},
        )
    return ProductsResponse(products=products)

# --- Mockups ---
@router.post("/api/printful-mockup", response_model=MockupTaskCreated)
async def create_mockup(mockup: MockupCreate, printful: PrintfulClient = Depends(get_printful_client)):
    if not mockup.variant_ids or not mockup.files:
        raise ValidationException("Missing required fields: variant_ids, files")

    mockup_data = {
        "variant_ids": _as_list(mockup.variant_ids),
        "format": mockup.format or "jpg",
        "width": mockup.width or 1000,
        "files": _as_list(mockup.files),
    }
    try:
        result = await printful.create_mockup(mockup_data)
    except PrintfulError as e:
        logger.error("Error with Printful mockup", exc_info=True)
        raise UpstreamException("Failed to process mockup request", message=str(e))
    return MockupTaskCreated(task_key=(result or {}).get("task_key"))

@router.get("/api/printful-mockup", response_model=MockupTaskResponse)
async def get_mockup_task(task_key: Optional[str] = Query(None), printful: PrintfulClient = Depends(get_printful_client)):
    if not task_key:
        raise ValidationException("Missing task_key parameter")
    try:
        task = await printful.get_mockup_task(task_key)
    except PrintfulError as e:
        logger.error("Error with Printful mockup", exc_info=True)
        raise UpstreamException("Failed to process mockup request", message=str(e))
    return MockupTaskResponse(task=task)

# --- Orders ---
@router.post("/api/printful-order")
async def printful_order(order: OrderAction, printful: PrintfulClient = Depends(get_printful_client)):
    if order.action == "create":
        if not order.order_data:
            raise ValidationException("Missing order_data")
        call, key, payload = printful.create_order, "order", order.order_data
    elif order.action == "estimate_shipping":
        if not order.shipping_data:
            raise ValidationException("Missing shipping_data")
        call, key, payload = printful.estimate_shipping, "rates", order.shipping_data
    else:
        raise ValidationException('Invalid action. Use "create" or "estimate_shipping"')

    try:
        result = await call(payload)
    except PrintfulError as e:
        logger.error("Error with Printful order", extra={"reason": order.action}, exc_info=True)
        raise UpstreamException("Failed to process order", message=str(e))
    return {"success": True, key: result}

@router.get("/api/printful-order")
async def get_printful_order(order_id: Optional[str] = Query(None), printful: PrintfulClient = Depends(get_printful_client)):
    if not order_id:
        raise ValidationException("Missing order_id parameter")
    try:
        result = await printful.get_order(order_id)
    except PrintfulError as e:
        logger.error("Error with Printful order", exc_info=True)
        raise UpstreamException("Failed to process order", message=str(e))
    return {"success": True, "order": result}

# --- Embedded Design Maker ---
def designer_failure(e: PrintfulError):
    if e.is_not_found:
        # A 404 here means the account has no EDM access
        return ForbiddenException(
            "Embedded Design Maker access required",
            message=EDM_ACCESS_MESSAGE,
            extra={"requiresAccess": True},
        )
    return UpstreamException("Failed to process designer request", message=str(e))

@router.post("/api/printful-designer-nonce", response_model=DesignerNonceResponse)
async def create_designer_nonce(body: DesignerNonceCreate, printful: PrintfulClient = Depends(get_printful_client)):
    if not body.external_product_id:
        raise ValidationException("Missing required field: external_product_id")
    try:
        result = await printful.generate_designer_nonce(body.external_product_id, body.external_customer_id or None)
    except PrintfulError as e:
        logger.error("Error with Printful designer", exc_info=True)
        raise designer_failure(e)
    result = result or {}
    return DesignerNonceResponse(nonce=result.get("nonce"), expires_at=result.get("expires_at"))

@router.get("/api/printful-designer-nonce")
async def get_design(nonce: Optional[str] = Query(None), printful: PrintfulClient = Depends(get_printful_client)):
    if not nonce:
        raise ValidationException("Missing nonce parameter")
    try:
        design = await printful.get_design_by_nonce(nonce)
    except PrintfulError as e:
        logger.error("Error with Printful designer", exc_info=True)
        raise designer_failure(e)
    return {"success": True, "design": design}


app = FastAPI(title="Fulfillment Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="fulfillment-service")
app.add_middleware(CORSPolicyMiddleware)

app.include_router(router)
