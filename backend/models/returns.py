from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from config.constants import RETURN_REASON_CATEGORIES, RETURN_TRANSITIONS, RETURN_TYPES


class VideoIn(BaseModel):
    url: str = Field(..., min_length=1)


class ReturnCreate(BaseModel):
    order_id: str
    order_item_id: str
    type: str = "return"
    reason: str = Field(..., min_length=1)
    reason_category: str
    description: str = Field(..., min_length=1)
    images: List[str] = []
    video: Optional[VideoIn] = None

    @field_validator("type")
    @classmethod
    def check_type(cls, value: str) -> str:
        if value not in RETURN_TYPES:
            raise ValueError(f"Invalid return type. Allowed: {', '.join(sorted(RETURN_TYPES))}")
        return value

    @field_validator("reason_category")
    @classmethod
    def check_reason_category(cls, value: str) -> str:
        if value not in RETURN_REASON_CATEGORIES:
            raise ValueError(
                f"Invalid reason category. Allowed: {', '.join(sorted(RETURN_REASON_CATEGORIES))}"
            )
        return value


class VideoReview(BaseModel):
    comments: Optional[str] = None


class ReturnStatusUpdate(BaseModel):
    status: str
    comment: Optional[str] = None
    rejection_reason: Optional[str] = None
    pickup_date: Optional[datetime] = None
    pickup_slot: Optional[str] = None
    received_condition: Optional[str] = None
    refund_amount: Optional[float] = Field(None, ge=0)

    @field_validator("status")
    @classmethod
    def check_status(cls, value: str) -> str:
        if value not in RETURN_TRANSITIONS:
            raise ValueError(f"Invalid return status. Allowed: {', '.join(RETURN_TRANSITIONS)}")
        return value
