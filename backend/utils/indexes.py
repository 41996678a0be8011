from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("order_number", ASCENDING)],
        name="orders_number_unique_idx",
        unique=True,
    )
    await _create_index_safe(
        db.orders,
        [("invoice.number", ASCENDING)],
        name="orders_invoice_number_unique_idx",
        unique=True,
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_user_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("items.seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_item_seller_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("is_settled", ASCENDING), ("delivered_at", ASCENDING)],
        name="orders_settlement_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("is_deleted", ASCENDING), ("created_at", ASCENDING)],
        name="orders_archive_idx",
    )

    # Offers
    await _create_index_safe(
        db.offers,
        [("code", ASCENDING)],
        name="offers_code_unique_idx",
        unique=True,
    )

    # Returns
    await _create_index_safe(
        db.returns,
        [("order_id", ASCENDING)],
        name="returns_order_idx",
    )
    await _create_index_safe(
        db.returns,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="returns_seller_created_at_idx",
    )
    await _create_index_safe(
        db.returns,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="returns_user_created_at_idx",
    )
    await _create_index_safe(
        db.returns,
        [("video.uploaded_at", ASCENDING), ("penalty_applied", ASCENDING)],
        name="returns_penalty_sweep_idx",
    )

    # Settlements
    await _create_index_safe(
        db.settlements,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="settlements_seller_created_at_idx",
    )
    await _create_index_safe(
        db.settlements,
        [("status", ASCENDING), ("claim_started_at", ASCENDING)],
        name="settlements_status_claim_idx",
    )

    # Notifications
    await _create_index_safe(
        db.notifications,
        [("recipient_id", ASCENDING), ("read", ASCENDING), ("created_at", DESCENDING)],
        name="notifications_recipient_idx",
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("created_at", ASCENDING)],
        name="audit_logs_created_at_idx",
    )
