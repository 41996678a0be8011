from bson import ObjectId
from bson.errors import InvalidId

from utils.errors import ValidationError

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {name}", kind="InvalidId")


# -------------------------------
# Directory Guards
# -------------------------------

def is_seller_available(seller: dict | None) -> bool:
    if not seller:
        return False
    return seller.get("status") == "active" and bool(seller.get("is_verified"))


def same_id(a, b) -> bool:
    if a is None or b is None:
        return False
    return str(a) == str(b)
