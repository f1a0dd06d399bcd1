"""CSV export of order lists (admin: all retailers; retailer: own orders)."""
import csv
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from analytics import as_record, parse_ts, to_amount

ADMIN_COLUMNS = [
    "Order Number", "Status", "Retailer", "Address", "Phone",
    "Subtotal", "Total", "Tracking Number", "Promotion Code", "Delivery Date", "Order Date",
]
RETAILER_COLUMNS = [c for c in ADMIN_COLUMNS if c not in ("Retailer", "Address", "Phone")]


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    ts = parse_ts(value)
    return ts.date() if ts else None


def filter_orders(orders: Iterable[Dict[str, Any]], status: Optional[str] = None,
                  start_date: Any = None, end_date: Any = None) -> List[Dict[str, Any]]:
    """status 'all'/None means no status filter; the date bounds are inclusive calendar days."""
    start, end = _as_date(start_date), _as_date(end_date)
    out = []
    for o in orders or []:
        if status and status != "all" and o.get("status") != status:
            continue
        created = parse_ts(o.get("created_at"))
        if (start or end) and created is None:
            continue
        if start and created.date() < start:
            continue
        if end and created.date() > end:
            continue
        out.append(o)
    # newest first
    return sorted(out, key=lambda o: parse_ts(o.get("created_at")) or datetime.min, reverse=True)


def _row(order: Dict[str, Any]) -> Dict[str, str]:
    retailer = as_record(order.get("retailer")) or {}
    created = parse_ts(order.get("created_at"))
    return {
        "Order Number": order.get("order_number") or "",
        "Status": order.get("status") or "",
        "Retailer": retailer.get("company_name") or "",
        "Address": retailer.get("business_address") or "",
        "Phone": retailer.get("phone") or "",
        "Subtotal": f"{to_amount(order.get('subtotal')):.2f}",
        "Total": f"{to_amount(order.get('total')):.2f}",
        "Tracking Number": order.get("tracking_number") or "",
        "Promotion Code": order.get("promotion_code") or "",
        "Delivery Date": str(order.get("delivery_date") or ""),
        "Order Date": created.date().isoformat() if created else "",
    }


def orders_to_csv(orders: Iterable[Dict[str, Any]], include_retailer: bool = True) -> str:
    columns = ADMIN_COLUMNS if include_retailer else RETAILER_COLUMNS
    df = pd.DataFrame([_row(o) for o in orders or []], columns=ADMIN_COLUMNS)
    return df[columns].to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


def export_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"orders-{today.isoformat()}.csv"
