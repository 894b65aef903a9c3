from pydantic import BaseModel, Field
from typing import Optional, List, Any
from decimal import Decimal
from datetime import datetime

class CheckoutRequest(BaseModel):
    items: Optional[List[Any]] = None
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None
    customerEmail: Optional[str] = None
    email: Optional[str] = None

    @property
    def customer_email(self) -> Optional[str]:
        return self.customerEmail or self.email or None

class CartItem(BaseModel):
    """A client cart entry after sanitization and bounds checks."""
    id: Optional[str] = None
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    description: Optional[str] = None
    images: List[str] = []

class PricedLineItem(BaseModel):
    currency: str
    unit_amount: int = Field(..., ge=0)
    name: str
    description: Optional[str] = None
    images: List[str] = []
    quantity: int

    def to_stripe(self) -> dict:
        product_data = {"name": self.name, "images": self.images}
        if self.description:
            product_data["description"] = self.description
        return {
            "price_data": {
                "currency": self.currency,
                "product_data": product_data,
                "unit_amount": self.unit_amount,
            },
            "quantity": self.quantity,
        }

class CheckoutSessionResponse(BaseModel):
    id: str
    url: str
    free: Optional[bool] = None
    orderId: Optional[str] = None
    saved: Optional[bool] = None
    message: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None

class SessionDetailsResponse(BaseModel):
    amount_total: float
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None

class PublishableKeyResponse(BaseModel):
    publishableKey: str

class WebhookAck(BaseModel):
    received: bool = True
    eventType: str
    timestamp: datetime
