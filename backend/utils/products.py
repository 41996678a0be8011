from utils.errors import NotFoundError


async def get_product(db, product_id) -> dict:
    product = await db.products.find_one({"_id": product_id})
    if not product:
        raise NotFoundError(f"Product not found: {product_id}", kind="ProductNotFound")
    return product


def find_variant(product: dict, variant_id) -> dict | None:
    for variant in product.get("variants") or []:
        if str(variant.get("_id")) == str(variant_id):
            return variant
    return None


# ======================================================
# STOCK PRIMITIVES (ATOMIC PER PRODUCT)
# ======================================================

async def reserve_stock(db, product_id, quantity: int) -> bool:
    """
    Conditional decrement: succeeds only if stock covers the quantity
    at the moment of the write.
    """
    result = await db.products.update_one(
        {"_id": product_id, "stock_quantity": {"$gte": quantity}},
        {"$inc": {"stock_quantity": -quantity, "sales_count": quantity}},
    )
    return result.modified_count == 1


async def release_stock(db, product_id, quantity: int) -> None:
    await db.products.update_one(
        {"_id": product_id},
        {"$inc": {"stock_quantity": quantity, "sales_count": -quantity}},
    )


async def reserve_lines(db, lines: list[dict]) -> list[dict] | None:
    """
    Reserve every line or none. Returns the reserved lines, or None if any
    line could not be reserved (earlier reservations are released).
    """
    reserved = []
    for line in lines:
        ok = await reserve_stock(db, line["product_id"], line["quantity"])
        if not ok:
            await release_lines(db, reserved)
            return None
        reserved.append(line)
    return reserved


async def release_lines(db, lines: list[dict]) -> None:
    for line in lines:
        await release_stock(db, line["product_id"], line["quantity"])
