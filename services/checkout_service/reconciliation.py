"""
Checkout-completed reconciliation.

Runs after the webhook has been acknowledged: recover the purchased items,
record the order, issue download grants for digital goods, notify the
merchant. Every step is best-effort and logs its own failures; nothing
here propagates back to the payment provider.
"""
import json
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import stripe

from shared.utils import settings, AppException, StorageError

from services.checkout_service.database import OrderStore
from services.checkout_service.models import OrderDB, OrderItemDB, DigitalAccessDB
from services.checkout_service.notifications import send_merchant_notification
from services.checkout_service.payments import StripePayments
from services.checkout_service.pricing import slugify

logger = logging.getLogger("checkout-service")

ItemList = List[dict]
RecoveryStrategy = Callable[[dict, StripePayments], Awaitable[Optional[ItemList]]]


def _minor_to_major(amount: Any) -> float:
    return float(Decimal(amount or 0) / 100)


def customer_email_of(session: dict) -> Optional[str]:
    details = session.get("customer_details") or {}
    return details.get("email") or session.get("customer_email")


# --- Item recovery ---
async def items_from_metadata(session: dict, payments: StripePayments) -> Optional[ItemList]:
    raw = (session.get("metadata") or {}).get("items")
    if not raw:
        return None
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        logger.error("Failed to parse metadata items", extra={"session_id": session.get("id")})
        return None
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        logger.error("Metadata items are not a list of objects", extra={"session_id": session.get("id")})
        return None
    try:
        return [_coerce_item(item) for item in items]
    except (TypeError, ValueError, ArithmeticError) as e:
        logger.error("Metadata items hold invalid values: %s", e, extra={"session_id": session.get("id")})
        return None


def _coerce_item(item: dict) -> dict:
    """Normalize price and quantity so the order row can always be built."""
    raw_price = item.get("price")
    if isinstance(raw_price, bool):
        raise ValueError("price is not numeric")
    price = Decimal(str(raw_price if raw_price is not None else 0))
    if not price.is_finite():
        raise ValueError("price is not finite")

    raw_quantity = item.get("quantity")
    if isinstance(raw_quantity, bool):
        raise ValueError("quantity is not an integer")
    quantity = Decimal(str(raw_quantity if raw_quantity not in (None, "") else 1))
    if not quantity.is_finite() or quantity != quantity.to_integral_value():
        raise ValueError("quantity is not an integer")

    return {**item, "price": float(price), "quantity": int(quantity)}


def _map_line_item(line: dict) -> dict:
    price = line.get("price") or {}
    product_data = price.get("product_data") or {}
    unit_amount = price.get("unit_amount")
    product = price.get("product")
    return {
        "id": product if isinstance(product, str) else (product or {}).get("id", "unknown"),
        "name": line.get("description") or product_data.get("name") or "Product",
        "price": _minor_to_major(unit_amount) if unit_amount else 0,
        "quantity": line.get("quantity") or 1,
    }


async def items_from_line_items(session: dict, payments: StripePayments) -> Optional[ItemList]:
    try:
        expanded = await payments.retrieve_session(session["id"], expand=["line_items"])
    except (stripe.StripeError, AppException, KeyError) as e:
        logger.error("Failed to retrieve line items: %s", e, extra={"session_id": session.get("id")})
        return None
    lines = (expanded.get("line_items") or {}).get("data")
    if not lines:
        return None
    return [_map_line_item(line) for line in lines]


async def items_from_session_totals(session: dict, payments: StripePayments) -> Optional[ItemList]:
    name = (session.get("metadata") or {}).get("product_names") or "Product"
    return [{
        "id": slugify(name),
        "name": name,
        "price": _minor_to_major(session.get("amount_total")),
        "quantity": 1,
    }]


RECOVERY_STRATEGIES: Sequence[RecoveryStrategy] = (
    items_from_metadata,
    items_from_line_items,
    items_from_session_totals,
)


async def recover_items(
    session: dict,
    payments: StripePayments,
    strategies: Sequence[RecoveryStrategy] = RECOVERY_STRATEGIES,
) -> ItemList:
    """First strategy to return a list wins."""
    for strategy in strategies:
        items = await strategy(session, payments)
        if items is not None:
            logger.info(
                "Items recovered",
                extra={"session_id": session.get("id"), "reason": strategy.__name__, "items_count": len(items)},
            )
            return items
    return []


# --- Digital access ---
def product_id_of(item: dict) -> str:
    return str(item.get("id") or slugify(str(item.get("name") or "product")))


def is_digital_product(item: dict, keyword: Optional[str] = None) -> bool:
    keyword = (keyword or settings.DIGITAL_PRODUCT_KEYWORD).lower()
    return slugify(keyword) in product_id_of(item).lower() or keyword in str(item.get("name") or "").lower()


def new_download_token() -> str:
    return secrets.token_hex(32)


async def issue_digital_access(store: OrderStore, order: dict, items: ItemList) -> int:
    """One grant per digital item. A failed grant does not stop the rest."""
    issued = 0
    for item in items:
        if not is_digital_product(item):
            continue
        product_id = product_id_of(item)
        grant = DigitalAccessDB(
            order_id=order.get("id"),
            session_id=order["session_id"],
            customer_email=order.get("customer_email"),
            product_id=product_id,
            download_token=new_download_token(),
            expires_at=datetime.utcnow() + timedelta(days=settings.DIGITAL_ACCESS_DAYS),
        )
        try:
            await store.create_digital_access(grant)
        except StorageError:
            logger.error(
                "Failed to create digital access",
                extra={"session_id": order["session_id"], "product_id": product_id},
                exc_info=True,
            )
            continue
        issued += 1
        logger.info("Digital access token created", extra={"session_id": order["session_id"], "product_id": product_id})
    return issued


# --- Orchestration ---
def _order_from_session(session: dict, items: ItemList) -> OrderDB:
    return OrderDB(
        session_id=session["id"],
        customer_email=customer_email_of(session),
        amount_total=Decimal(str(_minor_to_major(session.get("amount_total")))),
        currency=session.get("currency") or settings.CURRENCY,
        payment_status=session.get("payment_status") or "unpaid",
        items=[
            OrderItemDB(
                id=product_id_of(item),
                name=str(item.get("name") or "Product"),
                price=Decimal(str(item.get("price") or 0)),
                quantity=int(item.get("quantity") or 1),
            )
            for item in items
        ],
    )


async def reconcile_checkout_completed(session: dict, store: OrderStore, payments: StripePayments):
    session_id = session.get("id")
    logger.info(
        "Checkout completed",
        extra={
            "session_id": session_id,
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
            "payment_status": session.get("payment_status"),
        },
    )

    items = await recover_items(session, payments)
    order = _order_from_session(session, items)
    order_record = {**order.model_dump(exclude={"id"}), "items": items}

    try:
        saved, created = await store.save_order(order)
    except StorageError:
        # Payment already succeeded; the gap is surfaced through logs only
        logger.error(
            "CRITICAL: Failed to save paid order",
            extra={"session_id": session_id, "items_count": len(items)},
            exc_info=True,
        )
    else:
        if not created:
            logger.warning("Duplicate checkout.session.completed delivery ignored", extra={"session_id": session_id, "order_id": saved.get("id")})
            return
        order_record["id"] = saved.get("id")
        count = await issue_digital_access(store, order_record, items)
        if count:
            logger.info("Digital access tokens created", extra={"session_id": session_id, "items_count": count})

    result = await send_merchant_notification(order_record)
    if not result.get("sent"):
        logger.warning("Merchant notification email not sent", extra={"session_id": session_id, "reason": result.get("reason") or result.get("error")})


async def run_reconciliation(session: dict, store: OrderStore, payments: StripePayments):
    """Background task entry point. Nothing may escape: the event is already acknowledged."""
    try:
        await reconcile_checkout_completed(session, store, payments)
    except Exception:
        logger.exception("Error processing checkout.session.completed", extra={"session_id": session.get("id")})


def log_unhandled_event(event: dict):
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    extra = {"event_id": event.get("id"), "event_type": event_type, "session_id": obj.get("id")}

    if event_type == "payment_intent.succeeded":
        logger.info("Payment succeeded", extra={**extra, "amount_total": obj.get("amount"), "currency": obj.get("currency")})
    elif event_type == "checkout.session.expired":
        logger.info("Checkout expired", extra=extra)
    elif event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        logger.warning("Payment failed", extra={**extra, "reason": error.get("message") or error.get("code")})
    else:
        logger.info("Unhandled event type", extra=extra)
