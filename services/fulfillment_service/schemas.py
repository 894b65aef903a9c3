from pydantic import BaseModel
from typing import Optional, List, Any, Union

class ProductsResponse(BaseModel):
    success: bool = True
    products: List[Any] = []

class ProductResponse(BaseModel):
    success: bool = True
    product: Optional[Any] = None

class MockupCreate(BaseModel):
    variant_ids: Optional[Union[List[Any], int, str]] = None
    format: Optional[str] = None
    width: Optional[int] = None
    files: Optional[Union[List[Any], dict]] = None

class MockupTaskCreated(BaseModel):
    success: bool = True
    task_key: Optional[str] = None

class MockupTaskResponse(BaseModel):
    success: bool = True
    task: Optional[Any] = None

class OrderAction(BaseModel):
    action: Optional[str] = None
    order_data: Optional[dict] = None
    shipping_data: Optional[dict] = None

class DesignerNonceCreate(BaseModel):
    external_product_id: Optional[str] = None
    external_customer_id: Optional[str] = None

class DesignerNonceResponse(BaseModel):
    success: bool = True
    nonce: Optional[str] = None
    expires_at: Optional[Any] = None
