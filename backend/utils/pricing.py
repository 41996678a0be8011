from config.env import DEFAULT_COMMISSION_PERCENT
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.guards import is_seller_available
from utils.products import find_variant

# ============================================================
# PRICING ENGINE
# ============================================================
# Pure functions over catalog snapshots. No I/O, no mutation of
# the inputs. Money is rounded to 2 decimals per component, and
# derived components are computed from the rounded parts so that
#   seller_amount + platform_fee == price * quantity
#   total == price * quantity + tax
# hold on the stored numbers.


def _money(value) -> float:
    return round(float(value or 0), 2)


def commission_percent_for(seller: dict) -> float:
    settings = seller.get("commission_settings") or {}
    percent = settings.get("percentage")
    if percent is None:
        return DEFAULT_COMMISSION_PERCENT
    return float(percent)


def price_line(product: dict, seller: dict | None, quantity: int, variant_id=None) -> dict:
    """
    Price one order line against the product/seller snapshot.

    Raises ValidationError (ProductUnavailable / SellerUnavailable),
    NotFoundError (unknown variant) or ConflictError (OutOfStock).
    """
    name = product.get("name")

    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be at least 1", kind="InvalidQuantity")

    if product.get("status") != "active":
        raise ValidationError(f"Product is not available: {name}", kind="ProductUnavailable")

    images = product.get("images") or []
    unit_price = product.get("price")
    sku = product.get("sku")
    image = images[0] if images else None

    if variant_id is not None and product.get("variants"):
        variant = find_variant(product, variant_id)
        if not variant:
            raise NotFoundError(f"Variant not found for product: {name}", kind="VariantNotFound")
        if variant.get("price") is not None:
            unit_price = variant["price"]
        sku = variant.get("sku") or sku
        image = variant.get("image") or image

    if unit_price is None:
        raise ValidationError(f"Product price not configured: {name}", kind="ProductUnavailable")

    if product.get("stock_quantity", 0) < quantity:
        raise ConflictError(f"Insufficient stock for product: {name}", kind="OutOfStock")

    if not is_seller_available(seller):
        raise ValidationError(f"Seller is not active for product: {name}", kind="SellerUnavailable")

    price = _money(unit_price)
    item_total = _money(price * quantity)
    tax_rate = float(product.get("tax_rate") or 0)
    item_tax = _money(item_total * tax_rate / 100)

    commission = commission_percent_for(seller)
    platform_fee = _money(item_total * commission / 100)
    seller_amount = _money(item_total - platform_fee)

    return {
        "product_id": product["_id"],
        "variant_id": str(variant_id) if variant_id is not None else None,
        "category_id": product.get("category_id"),
        "name": name,
        "sku": sku,
        "image": image,
        "price": price,
        "quantity": quantity,
        "tax_rate": tax_rate,
        "tax": item_tax,
        "total": _money(item_total + item_tax),
        "seller_id": seller["_id"],
        "commission_percent": commission,
        "platform_fee": platform_fee,
        "seller_amount": seller_amount,
    }


def line_subtotal(line: dict) -> float:
    return _money(line["price"] * line["quantity"])


def summarize_lines(lines: list[dict]) -> dict:
    subtotal = 0.0
    tax = 0.0
    for line in lines:
        subtotal += line_subtotal(line)
        tax += line["tax"]
    return {"subtotal": _money(subtotal), "tax": _money(tax)}


def price_order(lines: list[dict], coupon_outcome: dict | None = None, shipping_cost: float = 0) -> dict:
    """
    Order totals from priced lines and an optional coupon outcome
    ({"discount": float, "free_shipping": bool}).
    """
    sums = summarize_lines(lines)
    discount = 0.0
    shipping = _money(shipping_cost)

    if coupon_outcome:
        discount = _money(coupon_outcome.get("discount", 0))
        if coupon_outcome.get("free_shipping"):
            shipping = 0.0

    total = _money(sums["subtotal"] + sums["tax"] + shipping - discount)

    return {
        "subtotal": sums["subtotal"],
        "tax": sums["tax"],
        "shipping_cost": shipping,
        "discount": discount,
        "total": total,
    }
