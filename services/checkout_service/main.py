from fastapi import FastAPI, APIRouter, BackgroundTasks, Depends, Query, Request, status
from pymongo.errors import PyMongoError
from datetime import datetime
from decimal import Decimal
from typing import Optional
import secrets
import time
import stripe

from shared.utils import (
    settings, AppException, ConfigurationException, ValidationException,
    StorageError, StorageUnavailable, setup_exception_handlers
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import (
    setup_rate_limiting, SecurityHeadersMiddleware, CORSPolicyMiddleware, limiter
)

from services.checkout_service.database import OrderStore, get_order_store
from services.checkout_service.models import OrderDB, OrderItemDB
from services.checkout_service.payments import StripePayments, get_payments, resolve_publishable_key
from services.checkout_service.pricing import (
    CartItemError, FreeCheckout, PaidCheckout, price_cart, order_items, serialize_items,
    resolve_redirect, DEFAULT_SUCCESS_PATH, DEFAULT_CANCEL_PATH
)
from services.checkout_service.reconciliation import run_reconciliation, log_unhandled_event
from services.checkout_service.schemas import (
    CheckoutRequest, CheckoutSessionResponse, SessionDetailsResponse,
    PublishableKeyResponse, WebhookAck
)

# Setup Logging
logger = setup_logging("checkout-service")

# Stripe rejects metadata values longer than this
METADATA_VALUE_LIMIT = 500

WEBHOOK_TROUBLESHOOTING = [
    "1. Ensure STRIPE_WEBHOOK_SECRET matches the webhook endpoint secret in the Stripe Dashboard",
    "2. Make sure nothing between Stripe and this service re-encodes the request body",
    "3. Verify the webhook endpoint URL in the Stripe Dashboard points at /api/stripe-webhook",
    "4. Try sending a test webhook from the Stripe Dashboard",
]

router = APIRouter()

def checkout_failed(detail: str = "Failed to create checkout session") -> AppException:
    return AppException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail)

# --- Checkout Initiator ---
async def complete_free_order(
    intent: FreeCheckout, checkout: CheckoutRequest, success_url: str, store: OrderStore
) -> CheckoutSessionResponse:
    session_id = "free_" + secrets.token_hex(16)
    logger.info("Processing free order", extra={"session_id": session_id, "items_count": len(intent.items)})

    order = OrderDB(
        session_id=session_id,
        customer_email=checkout.customer_email,
        amount_total=Decimal(0),
        currency=settings.CURRENCY,
        payment_status="paid", # Free orders are automatically "paid"
        items=[OrderItemDB(**item) for item in order_items(intent.items)],
    )

    try:
        saved, _ = await store.save_order(order)
    except StorageError as e:
        # A free order is never blocked by the database; the response carries a warning instead
        fallback_id = f"free_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
        logger.error(
            "CRITICAL: Failed to save free order",
            extra={"session_id": fallback_id, "items_count": len(intent.items)},
            exc_info=True,
        )
        if isinstance(e, StorageUnavailable):
            warning, error = "Order processed but not saved to database", "Database not configured"
        else:
            warning, error = "Order processed but database save failed - check logs", str(e)
        return CheckoutSessionResponse(
            id=fallback_id,
            url=f"{success_url}?session_id={fallback_id}&free=true",
            free=True,
            warning=warning,
            error=error,
        )

    logger.info("Free order saved", extra={"session_id": session_id, "order_id": saved["id"]})
    return CheckoutSessionResponse(
        id=session_id,
        url=f"{success_url}?session_id={session_id}&free=true",
        free=True,
        orderId=saved["id"],
        saved=True,
        message="Free order saved to database successfully",
    )

def session_metadata(intent: PaidCheckout) -> dict:
    product_names = ", ".join(item.name for item in intent.items)
    metadata = {
        "artist": settings.ARTIST_NAME,
        "website": settings.STORE_NAME,
        "product_names": product_names[:METADATA_VALUE_LIMIT],
    }
    items = serialize_items(intent.items)
    if len(items) <= METADATA_VALUE_LIMIT:
        metadata["items"] = items
    else:
        # The webhook falls back to the session's expanded line items
        logger.warning("Cart too large for session metadata", extra={"items_count": len(intent.items)})
    return metadata

@router.post("/api/create-checkout-session", response_model=CheckoutSessionResponse, response_model_exclude_none=True)
@limiter.limit("20/minute")
async def create_checkout_session(
    checkout: CheckoutRequest,
    request: Request,
    store: OrderStore = Depends(get_order_store),
    payments: StripePayments = Depends(get_payments),
):
    base_url = settings.base_url
    success_url = resolve_redirect(checkout.successUrl, base_url, DEFAULT_SUCCESS_PATH)
    cancel_url = resolve_redirect(checkout.cancelUrl, base_url, DEFAULT_CANCEL_PATH)

    try:
        intent = price_cart(
            checkout.items,
            max_price=settings.MAX_ITEM_PRICE,
            max_quantity=settings.MAX_ITEM_QUANTITY,
            max_items=settings.MAX_CART_ITEMS,
            currency=settings.CURRENCY,
        )
    except CartItemError as e:
        # Never echo which item or value was rejected
        logger.warning("Cart item rejected", extra={"reason": str(e)})
        raise checkout_failed()

    if isinstance(intent, FreeCheckout):
        return await complete_free_order(intent, checkout, success_url, store)

    try:
        session = await payments.create_checkout_session(
            line_items=[line.to_stripe() for line in intent.line_items],
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            metadata=session_metadata(intent),
            customer_email=checkout.customer_email,
        )
    except stripe.InvalidRequestError:
        logger.error("Stripe rejected checkout session", exc_info=True)
        raise checkout_failed("Invalid payment request")
    except stripe.StripeError:
        logger.error("Stripe checkout error", exc_info=True)
        raise checkout_failed()

    logger.info("Checkout session created", extra={"session_id": session.get("id"), "items_count": len(intent.items)})
    return CheckoutSessionResponse(id=session["id"], url=session["url"])

# --- Session details ---
@router.get("/api/get-session-details", response_model=SessionDetailsResponse)
async def get_session_details(
    session_id: Optional[str] = Query(None),
    store: OrderStore = Depends(get_order_store),
    payments: StripePayments = Depends(get_payments),
):
    if not session_id:
        raise ValidationException("Session ID is required")

    if session_id.startswith("free_"):
        order = None
        try:
            order = await store.find_order(session_id)
        except StorageError:
            logger.warning("Free order lookup failed", extra={"session_id": session_id}, exc_info=True)
        return SessionDetailsResponse(
            amount_total=0,
            currency=(order or {}).get("currency") or settings.CURRENCY,
            payment_status="paid",
            customer_email=(order or {}).get("customer_email"),
        )

    try:
        session = await payments.retrieve_session(session_id)
    except stripe.StripeError:
        logger.error("Error fetching session details", extra={"session_id": session_id}, exc_info=True)
        raise AppException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch session details")

    details = session.get("customer_details") or {}
    return SessionDetailsResponse(
        amount_total=(session.get("amount_total") or 0) / 100,
        currency=session.get("currency"),
        payment_status=session.get("payment_status"),
        customer_email=details.get("email"),
    )

# --- Webhook Reconciler ---
@router.post("/api/stripe-webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    store: OrderStore = Depends(get_order_store),
    payments: StripePayments = Depends(get_payments),
):
    endpoint_secret = settings.STRIPE_WEBHOOK_SECRET
    if not endpoint_secret:
        logger.error("Missing STRIPE_WEBHOOK_SECRET environment variable")
        raise ConfigurationException("Webhook secret not configured")

    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.error("Missing Stripe signature header")
        raise ValidationException("Missing Stripe signature")

    # Signature covers the exact bytes; the body must not be parsed first
    payload = await request.body()
    try:
        if not payload:
            raise ValueError("Raw body is empty or could not be read")
        event = StripePayments.verify_webhook(payload, signature, endpoint_secret)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error(
            "Webhook signature verification failed",
            extra={"reason": str(e), "headers": {"content-type": request.headers.get("content-type")}},
        )
        raise AppException(
            status.HTTP_400_BAD_REQUEST,
            f"Webhook signature verification failed: {e}",
            message="The request body may have been modified before signature verification",
            extra={"troubleshooting": WEBHOOK_TROUBLESHOOTING},
        )

    event_type = event.get("type") or "unknown"
    logger.info("Webhook signature verified", extra={"event_id": event.get("id"), "event_type": event_type})

    if event_type == "checkout.session.completed":
        session = (event.get("data") or {}).get("object") or {}
        background_tasks.add_task(run_reconciliation, session, store, payments)
    else:
        log_unhandled_event(event)

    return WebhookAck(eventType=event_type, timestamp=datetime.utcnow())

# --- Publishable key ---
@router.get("/api/stripe-publishable-key", response_model=PublishableKeyResponse)
@limiter.limit("60/minute")
async def stripe_publishable_key(request: Request):
    publishable_key = resolve_publishable_key(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_PUBLISHABLE_KEY,
        settings.STRIPE_PUBLISHABLE_KEY_TEST,
    )
    return PublishableKeyResponse(publishableKey=publishable_key)


async def ensure_store_indexes():
    store = get_order_store()
    if not store.configured:
        logger.warning("Backing store not configured - orders will not be persisted")
        return
    try:
        await store.ensure_indexes()
    except PyMongoError:
        logger.error("Failed to create order indexes", exc_info=True)


app = FastAPI(title="Checkout Service")

# Security Setup
setup_rate_limiting(app)
setup_exception_handlers(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="checkout-service")
app.add_middleware(CORSPolicyMiddleware)

app.include_router(router)

@app.on_event("startup")
async def startup_db_client():
    await ensure_store_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    get_order_store().close()
