from pydantic import BaseModel, Field, field_validator
from typing import List, Optional

from config.constants import PAYMENT_METHODS


class AddressIn(BaseModel):
    name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    country: str = "India"


class LineItemIn(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[LineItemIn] = Field(..., min_length=1)
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    payment_method: str
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    is_gift: bool = False
    gift_message: Optional[str] = None

    @field_validator("payment_method")
    @classmethod
    def check_payment_method(cls, value: str) -> str:
        method = (value or "").strip().lower()
        if method not in PAYMENT_METHODS:
            raise ValueError(f"Invalid payment method. Allowed: {', '.join(sorted(PAYMENT_METHODS))}")
        return method


class TrackingIn(BaseModel):
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipping_provider: Optional[str] = None


class StatusUpdate(TrackingIn):
    status: str
    comment: Optional[str] = None
    cancellation_reason: Optional[str] = None

    def tracking(self) -> dict:
        return {
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "shipping_provider": self.shipping_provider,
        }
