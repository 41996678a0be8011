from utils.mongo import serialize_doc

ORDER_INTERNAL_FIELDS = {"version"}
ITEM_INTERNAL_FIELDS = {"stock_restored", "category_id", "tax_rate"}
SETTLEMENT_INTERNAL_FIELDS = {"claim_started_at"}


def serialize_order(order: dict) -> dict:
    data = serialize_doc(order)
    for field in ORDER_INTERNAL_FIELDS:
        data.pop(field, None)

    items = []
    for item in data.get("items", []):
        item = dict(item)
        for field in ITEM_INTERNAL_FIELDS:
            item.pop(field, None)
        if "_id" in item:
            item["id"] = item.pop("_id")
        items.append(item)
    data["items"] = items
    return data


def serialize_return(ret: dict) -> dict:
    return serialize_doc(ret)


def serialize_settlement(settlement: dict) -> dict:
    data = serialize_doc(settlement)
    for field in SETTLEMENT_INTERNAL_FIELDS:
        data.pop(field, None)
    return data
