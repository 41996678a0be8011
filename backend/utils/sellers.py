from utils.errors import NotFoundError


async def get_seller(db, seller_id) -> dict | None:
    return await db.sellers.find_one({"_id": seller_id})


async def get_seller_for_user(db, user_id) -> dict:
    seller = await db.sellers.find_one({"user_id": user_id})
    if not seller:
        raise NotFoundError("Seller profile not found", kind="SellerNotFound")
    return seller


async def get_sellers(db, seller_ids) -> dict:
    ids = list({sid for sid in seller_ids})
    sellers = await db.sellers.find({"_id": {"$in": ids}}).to_list(None)
    return {str(s["_id"]): s for s in sellers}
