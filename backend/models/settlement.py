from typing import Optional

from pydantic import BaseModel, field_validator

from config.constants import SETTLEMENT_TRANSITIONS


class SettlementUpdate(BaseModel):
    status: str
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("status")
    @classmethod
    def check_status(cls, value: str) -> str:
        if value not in SETTLEMENT_TRANSITIONS:
            raise ValueError(f"Invalid settlement status. Allowed: {', '.join(SETTLEMENT_TRANSITIONS)}")
        return value
