from datetime import datetime
from typing import Optional, List
from decimal import Decimal
import json
from pydantic import BaseModel, Field

class OrderItemDB(BaseModel):
    id: Optional[str] = None
    name: str
    price: Decimal
    quantity: int = 1

class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    session_id: str
    customer_email: Optional[str] = None
    amount_total: Decimal
    currency: str = "usd"
    payment_status: str # paid, unpaid, no_payment_required
    items: List[OrderItemDB]
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    def to_document(self) -> dict:
        doc = self.model_dump(exclude={"id"})
        # Mongo has no Decimal codec configured; items are kept as serialized text
        doc["amount_total"] = float(doc["amount_total"])
        doc["items"] = json.dumps([
            {**item, "price": float(item["price"])} for item in doc["items"]
        ])
        return doc

class DigitalAccessDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    order_id: Optional[str] = None
    session_id: str
    customer_email: Optional[str] = None
    product_id: str
    download_token: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    def to_document(self) -> dict:
        return self.model_dump(exclude={"id"})
