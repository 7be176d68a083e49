from typing import Optional
from pydantic import BaseModel


class VariantPricing(BaseModel):
    variant_id: int
    product_id: int
    name: str
    sku: str
    color_name: Optional[str] = None
    size_name: Optional[str] = None
    unit_price: int
    available_stock: int


class VoucherCheck(BaseModel):
    valid: bool
    discount_amount: int = 0
    error: Optional[str] = None
