import html
import logging
import smtplib
from datetime import datetime, timezone
from decimal import Decimal
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional
from zoneinfo import ZoneInfo

from starlette.concurrency import run_in_threadpool

from shared.utils import settings

logger = logging.getLogger("checkout-service")

MERCHANT_TIMEZONE = ZoneInfo("America/Los_Angeles")


def format_order_time(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    local = moment.astimezone(MERCHANT_TIMEZONE)
    return local.strftime("%B %d, %Y at %I:%M:%S %p") + " PST/PDT"


def _line_total(item: dict) -> Decimal:
    return Decimal(str(item.get("price") or 0)) * int(item.get("quantity") or 1)


def build_merchant_message(order: dict, sender: str, recipient: str, ordered_at: Optional[datetime] = None) -> MIMEMultipart:
    items = order.get("items") or []
    total = sum((_line_total(item) for item in items), Decimal(0))
    currency = (order.get("currency") or "usd").upper()
    customer = order.get("customer_email") or "Not provided"
    order_time = format_order_time(ordered_at)

    items_text = "\n".join(
        f"  - {item.get('name', 'Product')} ({item.get('quantity', 1)}x) - ${_line_total(item):.2f}"
        for item in items
    )
    text = (
        "New Order Received!\n\n"
        "Order Details:\n"
        f"- Order ID: {order.get('session_id')}\n"
        f"- Customer Email: {customer}\n"
        f"- Total Amount: ${total:.2f} {currency}\n"
        f"- Payment Status: {order.get('payment_status')}\n"
        f"- Order Time: {order_time}\n\n"
        f"Items:\n{items_text}\n\n"
        "---\n"
        "This is an automated notification from your store."
    )

    items_html = "".join(
        f"<div class=\"item\"><strong>{html.escape(str(item.get('name', 'Product')))}</strong>"
        f" &times; {item.get('quantity', 1)} - ${_line_total(item):.2f}</div>"
        for item in items
    )
    body_html = f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1>New Order Received!</h1>
    <h3>Order Details</h3>
    <p><strong>Order ID:</strong> {html.escape(str(order.get('session_id')))}</p>
    <p><strong>Customer Email:</strong> {html.escape(customer)}</p>
    <p><strong>Payment Status:</strong> {html.escape(str(order.get('payment_status')))}</p>
    <p><strong>Order Time:</strong> {order_time}</p>
    <h3>Items Ordered</h3>
    {items_html}
    <p style="font-size: 18px; font-weight: bold;">Total: ${total:.2f} {currency}</p>
    <p style="color: #999; font-size: 12px;">This is an automated notification from your store.</p>
  </div>
</body>
</html>"""

    msg = MIMEMultipart("alternative")
    msg["Subject"] = f"New Order Received - ${total:.2f}"
    msg["From"] = sender
    msg["To"] = recipient
    msg["Message-ID"] = make_msgid()
    msg.attach(MIMEText(text, "plain"))
    msg.attach(MIMEText(body_html, "html"))
    return msg


def _deliver(msg: MIMEMultipart):
    if settings.SMTP_PORT == 465:
        with smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.send_message(msg)
    else:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.starttls()
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.send_message(msg)


async def send_merchant_notification(order: dict) -> dict:
    """Best-effort notification. Never raises; the result says what happened."""
    if not settings.MERCHANT_EMAIL:
        logger.info("MERCHANT_EMAIL not configured - skipping email notification")
        return {"sent": False, "reason": "MERCHANT_EMAIL not configured"}

    if not (settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASSWORD):
        logger.info("Email not configured - SMTP settings missing")
        return {"sent": False, "reason": "SMTP not configured"}

    sender = settings.SMTP_FROM or settings.SMTP_USER
    try:
        msg = build_merchant_message(order, sender, settings.MERCHANT_EMAIL)
        await run_in_threadpool(_deliver, msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send merchant notification email", extra={"session_id": order.get("session_id")}, exc_info=True)
        return {"sent": False, "error": str(e)}

    logger.info("Merchant notification email sent", extra={"session_id": order.get("session_id")})
    return {"sent": True, "message_id": msg.get("Message-ID")}
