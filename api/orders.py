"""Order lifecycle rules: building a new order from a cart, and which status moves are legal."""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from analytics import to_amount

STATUSES = ("pending", "processing", "shipped", "delivered", "canceled")

# forward path; "canceled" is reachable from anything not yet delivered
_NEXT_STATUS = {
    "pending": "processing",
    "processing": "shipped",
    "shipped": "delivered",
}
# admins may walk a mistaken move back one step; canceled stays terminal
_PREV_STATUS = {nxt: cur for cur, nxt in _NEXT_STATUS.items()}


class OrderValidationError(ValueError):
    pass


class InvalidTransition(ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"cannot move order from '{current}' to '{target}'")
        self.current = current
        self.target = target


def generate_order_number(now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"ORD-{str(now_ms)[-8:]}"


def coerce_quantity(value: Any) -> int:
    try:
        qty = int(float(value))
    except (TypeError, ValueError):
        return 1
    return max(1, qty)


def build_order(retailer_id: Optional[str], items: List[Dict[str, Any]],
                products: List[Dict[str, Any]], *,
                delivery_date: Optional[str] = None,
                promotion_code: Optional[str] = None,
                location_id: Optional[str] = None,
                include_samples: bool = False,
                order_number: Optional[str] = None) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """
    Price a cart against the catalog.
    Returns (order_row, item_rows); item rows lack order_id until the order is inserted.
    Raises OrderValidationError for an empty cart, a missing retailer or an unknown product.
    """
    if not retailer_id or not items:
        raise OrderValidationError("Invalid order payload")

    catalog = {p["id"]: p for p in products or [] if p.get("id")}
    lines = []
    for item in items:
        product = catalog.get(item.get("product_id"))
        if product is None:
            raise OrderValidationError("Invalid product selection")
        unit_price = to_amount(product.get("price"))
        quantity = coerce_quantity(item.get("quantity"))
        lines.append({
            "product_id": product["id"],
            "quantity": quantity,
            "unit_price": unit_price,
            "total_price": unit_price * quantity,
            "product": product,
        })

    subtotal = sum(line["total_price"] for line in lines)
    order = {
        "order_number": order_number or generate_order_number(),
        "retailer_id": retailer_id,
        "location_id": location_id or None,
        "status": "pending",
        "delivery_date": delivery_date or None,
        "promotion_code": promotion_code or None,
        "subtotal": subtotal,
        "total": subtotal,
        "include_samples": bool(include_samples),
    }
    return order, lines


def can_transition(current: str, target: str) -> bool:
    if target not in STATUSES:
        return False
    if current == target:
        return True
    if target == "canceled":
        return current != "delivered"
    return target in (_NEXT_STATUS.get(current), _PREV_STATUS.get(current))


def apply_status(order: Dict[str, Any], target: str, *,
                 tracking_number: Optional[str] = None,
                 tracking_carrier: Optional[str] = None,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the column patch for moving `order` to `target` ({} when nothing changes)."""
    current = (order.get("status") or "pending").lower()
    target = (target or "").lower()
    if current == "cancelled":
        current = "canceled"
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    if current == target:
        return {}

    patch: Dict[str, Any] = {"status": target}
    if target == "shipped" and _NEXT_STATUS.get(current) == "shipped":
        now = now or datetime.now()
        patch["shipped_at"] = now.isoformat()
        if tracking_number:
            patch["tracking_number"] = tracking_number
        if tracking_carrier:
            patch["tracking_carrier"] = tracking_carrier
    return patch
