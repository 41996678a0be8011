# backend/config/constants.py

# -----------------------------
# ORDER / ITEM STATUS
# -----------------------------

ORDER_STATUSES = (
    "pending",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "returned",
)

TERMINAL_ORDER_STATUSES = {"delivered", "cancelled", "returned"}

# who may set what
SELLER_ALLOWED_STATUSES = {"processing", "shipped"}
# item states a seller may move from
SELLER_SOURCE_STATUSES = {"pending", "processing"}
USER_ALLOWED_STATUSES = {"cancelled"}

PAYMENT_METHODS = {
    "credit_card",
    "debit_card",
    "upi",
    "net_banking",
    "wallet",
    "cod",
    "emi",
}

ORDER_NUMBER_PREFIX = "ORD"
INVOICE_NUMBER_PREFIX = "INV"

# -----------------------------
# COUPONS
# -----------------------------

COUPON_TYPES = {"percentage", "fixed", "free_shipping", "buy_x_get_y"}
COUPON_USER_SCOPES = {"all", "new_users", "existing_users", "specific_users"}
COUPON_PRODUCT_SCOPES = {"all", "specific_products", "specific_categories"}
COUPON_SELLER_SCOPES = {"all", "specific_sellers"}
UNLIMITED = -1

# -----------------------------
# RETURNS
# -----------------------------

RETURN_TYPES = {"return", "exchange"}

RETURN_REASON_CATEGORIES = {
    "damaged",
    "defective",
    "wrong_item",
    "not_as_described",
    "size_issue",
    "quality_issue",
    "other",
}

RETURN_TRANSITIONS = {
    "pending": {"approved", "rejected"},
    "approved": {"pickup_scheduled"},
    "pickup_scheduled": {"picked_up"},
    "picked_up": {"received"},
    "received": {"refunded", "exchanged"},
    "refunded": {"closed"},
    "exchanged": {"closed"},
    "rejected": {"closed"},
    "closed": set(),
}

# -----------------------------
# SETTLEMENTS
# -----------------------------

SETTLEMENT_TRANSITIONS = {
    "pending": {"processing", "failed"},
    "processing": {"paid", "failed"},
    "failed": {"pending"},
    "paid": set(),
}

SETTLEMENT_DRAFT_STALE_MINUTES = 30

# -----------------------------
# CONCURRENCY
# -----------------------------

ORDER_CAS_RETRIES = 5
COUPON_CAS_RETRIES = 5
ORDER_NUMBER_RETRIES = 3

# -----------------------------
# WORKER INTERVALS
# -----------------------------

PENALTY_SWEEP_INTERVAL_SECONDS = 60 * 60            # hourly
SETTLEMENT_SWEEP_INTERVAL_SECONDS = 60 * 60 * 24 * 7  # weekly
ARCHIVE_SWEEP_INTERVAL_SECONDS = 60 * 60 * 24       # daily
