from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from config.constants import (
    COUPON_PRODUCT_SCOPES,
    COUPON_SELLER_SCOPES,
    COUPON_TYPES,
    COUPON_USER_SCOPES,
)
from models.order import LineItemIn


class BuyXGetY(BaseModel):
    buy_quantity: int = Field(..., ge=1)
    get_quantity: int = Field(..., ge=1)
    product_id: Optional[str] = None


class OfferCreate(BaseModel):
    code: str = Field(..., min_length=3, max_length=32)
    type: str
    value: Optional[float] = Field(None, ge=0)
    min_order_value: float = Field(0, ge=0)
    max_discount_value: Optional[float] = Field(None, gt=0)
    description: str
    start_date: datetime
    end_date: datetime
    is_active: bool = True

    applicable_for: str = "all"
    specific_users: List[str] = []
    applicable_products: str = "all"
    specific_products: List[str] = []
    specific_categories: List[str] = []
    applicable_sellers: str = "all"
    specific_sellers: List[str] = []

    usage_limit: int = Field(-1, ge=-1)
    per_user_limit: int = Field(1, ge=-1)
    buy_x_get_y: Optional[BuyXGetY] = None
    terms_and_conditions: Optional[str] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def check_offer(self):
        if self.type not in COUPON_TYPES:
            raise ValueError(f"Invalid coupon type. Allowed: {', '.join(sorted(COUPON_TYPES))}")
        if self.type != "free_shipping" and self.value is None:
            raise ValueError("Coupon value is required")
        if self.type == "percentage" and self.value is not None and self.value > 100:
            raise ValueError("Percentage coupons cannot exceed 100")
        if self.end_date < self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.applicable_for not in COUPON_USER_SCOPES:
            raise ValueError("Invalid applicable_for")
        if self.applicable_products not in COUPON_PRODUCT_SCOPES:
            raise ValueError("Invalid applicable_products")
        if self.applicable_sellers not in COUPON_SELLER_SCOPES:
            raise ValueError("Invalid applicable_sellers")
        return self


class OfferUpdate(BaseModel):
    description: Optional[str] = None
    value: Optional[float] = Field(None, ge=0)
    min_order_value: Optional[float] = Field(None, ge=0)
    max_discount_value: Optional[float] = Field(None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = Field(None, ge=-1)
    per_user_limit: Optional[int] = Field(None, ge=-1)


class CouponPreview(BaseModel):
    code: str
    items: List[LineItemIn] = Field(..., min_length=1)
