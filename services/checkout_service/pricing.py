"""
Cart pricing for the checkout initiator.

Everything here is pure: client cart data goes in, a FreeCheckout or a
PaidCheckout comes out. Persistence and payment-provider calls happen in
the route handler depending on which variant is returned.
"""
import json
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional, Sequence, Union

from shared.security_config import sanitize_text, filter_image_urls
from shared.utils import ValidationException

from services.checkout_service.schemas import CartItem, PricedLineItem

NAME_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 500
MAX_IMAGES = 8

# Redirect targets must equal one of these under the deployment origin
ALLOWED_REDIRECT_PATHS = ("/success.html", "/checkout.html")
DEFAULT_SUCCESS_PATH = "/success.html"
DEFAULT_CANCEL_PATH = "/checkout.html"


class CartItemError(ValueError):
    """An item failed the price/quantity bounds. The message is for logs only."""


@dataclass(frozen=True)
class FreeCheckout:
    items: List[CartItem]
    line_items: List[PricedLineItem]
    total: int = 0


@dataclass(frozen=True)
class PaidCheckout:
    items: List[CartItem]
    line_items: List[PricedLineItem]
    total: int


CheckoutIntent = Union[FreeCheckout, PaidCheckout]


def slugify(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip().lower())


def _parse_price(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise CartItemError("price missing")
    if isinstance(value, float) and not math.isfinite(value):
        raise CartItemError("price not finite")
    try:
        price = Decimal(str(value).strip())
    except InvalidOperation:
        raise CartItemError("price not numeric")
    if not price.is_finite():
        raise CartItemError("price not finite")
    return price


def _parse_quantity(value: Any) -> int:
    if value is None or value == "":
        return 1
    if isinstance(value, bool):
        raise CartItemError("quantity not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    raise CartItemError("quantity not an integer")


def sanitize_item(raw: Any, max_price: float, max_quantity: int) -> CartItem:
    if not isinstance(raw, dict):
        raise CartItemError("item is not an object")

    price = _parse_price(raw.get("price"))
    if price < 0 or price > Decimal(str(max_price)):
        raise CartItemError("price out of bounds")

    quantity = _parse_quantity(raw.get("quantity"))
    if quantity < 1 or quantity > max_quantity:
        raise CartItemError("quantity out of bounds")

    name = sanitize_text(raw.get("name"), NAME_MAX_LENGTH, default="Product")
    item_id = sanitize_text(raw.get("id"), NAME_MAX_LENGTH) or slugify(name)

    return CartItem(
        id=item_id,
        name=name,
        price=price,
        quantity=quantity,
        description=sanitize_text(raw.get("description"), DESCRIPTION_MAX_LENGTH),
        images=filter_image_urls(raw.get("images"), MAX_IMAGES),
    )


def to_minor_units(price: Decimal) -> int:
    return int((price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def price_item(item: CartItem, currency: str) -> PricedLineItem:
    return PricedLineItem(
        currency=currency,
        unit_amount=to_minor_units(item.price),
        name=item.name,
        description=item.description,
        images=item.images,
        quantity=item.quantity,
    )


def price_cart(
    raw_items: Optional[Sequence[Any]],
    *,
    max_price: float,
    max_quantity: int,
    max_items: int,
    currency: str = "usd",
) -> CheckoutIntent:
    """
    Validate and price a client cart.

    Raises ValidationException (safe to echo) for a missing, empty or oversized
    cart and CartItemError for any item outside the configured bounds.
    """
    if not raw_items:
        raise ValidationException("Items are required")
    if len(raw_items) > max_items:
        raise ValidationException(f"Maximum {max_items} items allowed")

    items = [sanitize_item(raw, max_price, max_quantity) for raw in raw_items]
    line_items = [price_item(item, currency) for item in items]
    total = sum(line.unit_amount * line.quantity for line in line_items)

    if total == 0:
        return FreeCheckout(items=items, line_items=line_items)
    return PaidCheckout(items=items, line_items=line_items, total=total)


def order_items(items: Sequence[CartItem]) -> List[dict]:
    """The {id, name, price, quantity} shape persisted with orders and sent as session metadata."""
    return [
        {"id": item.id, "name": item.name, "price": float(item.price), "quantity": item.quantity}
        for item in items
    ]


def serialize_items(items: Sequence[CartItem]) -> str:
    return json.dumps(order_items(items), separators=(",", ":"))


def resolve_redirect(candidate: Optional[str], base_url: str, default_path: str) -> str:
    """Accept candidate only when it exactly equals an allowed path on our own origin."""
    allowed = {f"{base_url}{path}" for path in ALLOWED_REDIRECT_PATHS}
    if candidate and candidate in allowed:
        return candidate
    return f"{base_url}{default_path}"
