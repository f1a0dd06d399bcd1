"""
Order analytics for the admin and retailer views.

Everything in here is a pure function over JSON-shaped records that were already
fetched (orders with nested order_items/product and retailer joins, the product
catalog, the retailer list). Records are flattened into pandas frames (one row per
billable order, one row per order line) and the group-bys, buckets and rankings run
on those. Nothing raises on partial data: missing amounts, joins or addresses
contribute zero or fall out of the bucket they would have fed.
"""
import math
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from addresses import extract_state

Record = Dict[str, Any]

CANCELED_STATUSES = {"canceled", "cancelled"}
ONE_DAY = timedelta(days=1)
_MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

ORDER_FRAME_COLUMNS = ["order_id", "retailer_id", "created_at", "status", "total",
                       "include_samples", "retailer"]
ITEM_FRAME_COLUMNS = ["order_id", "key", "product_id", "name", "size", "label",
                      "quantity", "revenue"]

# ===================== coercion helpers =====================

def to_amount(value: Any) -> float:
    # Backend numerics arrive as numbers, strings ("12.50") or null
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(out) or math.isinf(out) else out

def to_quantity(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0

def parse_ts(value: Any) -> Optional[datetime]:
    """ISO string / date / datetime -> naive local datetime (None if unparseable)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt

def as_record(value: Any) -> Optional[Record]:
    # Joined relations come back as an object or a one-element array
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value or None

# ===================== 1) filtering & normalization =====================

def normalize_product(product: Any) -> Optional[Record]:
    return as_record(product)

def normalize_orders(orders: Iterable[Record]) -> List[Record]:
    """Copy orders so every item's `product` (and the order's `retailer`) is an object or None."""
    out = []
    for order in orders or []:
        items = []
        for item in order.get("order_items") or []:
            items.append({**item, "product": normalize_product(item.get("product"))})
        normalized = {**order, "order_items": items}
        if "retailer" in order:
            normalized["retailer"] = as_record(order.get("retailer"))
        out.append(normalized)
    return out

def is_canceled(order: Record) -> bool:
    return str(order.get("status") or "").strip().lower() in CANCELED_STATUSES

def billable_orders(orders: Iterable[Record]) -> List[Record]:
    return [o for o in orders or [] if not is_canceled(o)]

def order_total(order: Record) -> float:
    return to_amount(order.get("total"))

def line_total(item: Record) -> float:
    if item.get("total_price") is not None:
        return to_amount(item.get("total_price"))
    return to_amount(item.get("unit_price")) * to_quantity(item.get("quantity"))

def _product_id(item: Record) -> Optional[str]:
    product = normalize_product(item.get("product")) or {}
    return item.get("product_id") or product.get("id")

def _retailer_id(order: Record) -> Optional[str]:
    return order.get("retailer_id") or (as_record(order.get("retailer")) or {}).get("id")

def _py_datetime(value: Any) -> Optional[datetime]:
    return None if pd.isna(value) else pd.Timestamp(value).to_pydatetime()

def _py_value(value: Any) -> Any:
    return None if value is None or (isinstance(value, float) and math.isnan(value)) else value

def orders_frame(orders: Iterable[Record]) -> pd.DataFrame:
    """One row per billable order; created_at is datetime64 (NaT when unparseable)."""
    rows = [
        {
            "order_id": o.get("id"),
            "retailer_id": _retailer_id(o),
            "created_at": parse_ts(o.get("created_at")),
            "status": o.get("status"),
            "total": order_total(o),
            "include_samples": bool(o.get("include_samples")),
            "retailer": as_record(o.get("retailer")),
        }
        for o in billable_orders(orders)
    ]
    df = pd.DataFrame(rows, columns=ORDER_FRAME_COLUMNS)
    df["created_at"] = pd.to_datetime(df["created_at"], errors="coerce")
    df["total"] = df["total"].astype(float)
    return df

def items_frame(orders: Iterable[Record]) -> pd.DataFrame:
    """One row per line of a billable order, keyed by product id (or 'name • size' without one)."""
    rows = []
    for o in billable_orders(orders):
        for item in o.get("order_items") or []:
            product = normalize_product(item.get("product")) or {}
            name = product.get("name") or "Unknown"
            size = product.get("size") or "—"
            label = f"{name} • {size}"
            pid = _product_id(item)
            rows.append({
                "order_id": o.get("id"),
                "key": pid or label,
                "product_id": pid,
                "name": name,
                "size": size,
                "label": label,
                "quantity": to_quantity(item.get("quantity")),
                "revenue": line_total(item),
            })
    df = pd.DataFrame(rows, columns=ITEM_FRAME_COLUMNS)
    df["quantity"] = df["quantity"].astype(int)
    df["revenue"] = df["revenue"].astype(float)
    return df

# ===================== 2) revenue & margin =====================

def units_sold(orders: Iterable[Record]) -> int:
    return int(items_frame(orders)["quantity"].sum())

def revenue_summary(orders: Iterable[Record], products: Iterable[Record]) -> Dict[str, float]:
    """
    Wholesale spend vs. what the same units would fetch at MSRP.
    Margin is relative to MSRP; lines whose product is not in the catalog or has no
    msrp add nothing to the MSRP side.
    """
    msrp = {p.get("id"): to_amount(p.get("msrp")) for p in products or [] if p.get("id")}
    valid = billable_orders(orders)
    df = orders_frame(valid)
    items = items_frame(valid)

    total_wholesale = float(df["total"].sum())
    unit_msrp = items["product_id"].map(msrp).fillna(0.0)
    total_msrp = float((unit_msrp * items["quantity"]).sum())

    total_orders = len(df)
    potential_profit = total_msrp - total_wholesale
    return {
        "total_orders": total_orders,
        "total_wholesale": total_wholesale,
        "total_msrp": total_msrp,
        "potential_profit": potential_profit,
        "profit_margin": (potential_profit / total_msrp) * 100 if total_msrp > 0 else 0.0,
        "avg_order_value": total_wholesale / total_orders if total_orders > 0 else 0.0,
    }

DATE_RANGES = ("all", "last30", "last90", "ytd", "lastYear")

def filter_orders_by_range(orders: Iterable[Record], range_key: str = "all",
                           now: Optional[datetime] = None) -> List[Record]:
    now = now or datetime.now()
    if range_key not in DATE_RANGES:
        raise ValueError(f"unknown date range: {range_key}")
    orders = list(orders or [])
    if range_key == "all":
        return orders

    if range_key == "last30":
        start, end = now - 30 * ONE_DAY, None
    elif range_key == "last90":
        start, end = now - 90 * ONE_DAY, None
    elif range_key == "ytd":
        start, end = datetime(now.year, 1, 1), None
    else:  # lastYear, Dec 31 included
        start, end = datetime(now.year - 1, 1, 1), datetime(now.year, 1, 1)

    out = []
    for o in orders:
        ts = parse_ts(o.get("created_at"))
        if ts is None or ts < start:
            continue
        if end is not None and ts >= end:
            continue
        out.append(o)
    return out

def dashboard_stats(orders: Iterable[Record], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now()
    today = datetime(now.year, now.month, now.day)
    week_ago = today - 7 * ONE_DAY
    month_ago = today - 30 * ONE_DAY
    df = orders_frame(orders)

    def _since(start: datetime) -> float:
        return float(df.loc[df["created_at"] >= start, "total"].sum())

    return {
        "total_orders": len(df),
        "pending_orders": int((df["status"] == "pending").sum()),
        "shipped_orders": int((df["status"] == "shipped").sum()),
        "total_revenue": float(df["total"].sum()),
        "today_revenue": _since(today),
        "week_revenue": _since(week_ago),
        "month_revenue": _since(month_ago),
    }

# ===================== 3) time bucketing =====================

def trailing_months(count: int, now: Optional[datetime] = None) -> List[Dict[str, str]]:
    """Oldest-first [{key: 'YYYY-MM', label: 'Mon YY'}] ending with the current month."""
    now = now or datetime.now()
    months = []
    for index in range(count):
        offset = count - 1 - index
        year, month0 = divmod(now.year * 12 + (now.month - 1) - offset, 12)
        months.append({
            "key": f"{year}-{month0 + 1:02d}",
            "label": f"{_MONTH_ABBR[month0]} {str(year)[-2:]}",
        })
    return months

def monthly_revenue(orders: Iterable[Record], months: int = 12,
                    now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Dense trailing-N-month revenue (sum of order totals); empty months are 0."""
    df = orders_frame(orders).dropna(subset=["created_at"])
    window = trailing_months(months, now)
    by_month = df.groupby(df["created_at"].dt.to_period("M").astype(str))["total"].sum()
    by_month = by_month.reindex([m["key"] for m in window], fill_value=0.0)
    return [
        {"key": m["key"], "month": m["label"], "revenue": float(by_month[m["key"]])}
        for m in window
    ]

def growth_rate(prev: float, last: float) -> float:
    """Period-over-period % change; a zero base reads as +100% (or 0% if still zero)."""
    if prev == 0:
        return 100.0 if last > 0 else 0.0
    return ((last - prev) / prev) * 100

def bucket_growth(buckets: List[Dict[str, Any]], value_key: str = "revenue") -> float:
    last = buckets[-1][value_key] if len(buckets) >= 1 else 0.0
    prev = buckets[-2][value_key] if len(buckets) >= 2 else 0.0
    return growth_rate(prev or 0.0, last or 0.0)

def quarter_start(ts: datetime) -> date:
    return date(ts.year, ((ts.month - 1) // 3) * 3 + 1, 1)

def quarter_label(ts: datetime) -> str:
    return f"Q{(ts.month - 1) // 3 + 1} {ts.year}"

def quarterly_averages(orders: Iterable[Record], limit: Optional[int] = 6) -> List[Dict[str, Any]]:
    """
    Average order total per calendar quarter, oldest first, last `limit` observed quarters.
    Unlike monthly_revenue the value is a mean, and quarters without orders are not filled.
    """
    df = orders_frame(orders).dropna(subset=["created_at"])
    if df.empty:
        return []
    grouped = (
        df.groupby(df["created_at"].dt.to_period("Q"))["total"]
        .agg(total="sum", count="size", average="mean")
        .sort_index()
    )
    if limit:
        grouped = grouped.tail(limit)
    points = []
    for period, row in grouped.iterrows():
        start = period.start_time
        points.append({
            "label": quarter_label(start),
            "start": quarter_start(start),
            "total": float(row["total"]),
            "count": int(row["count"]),
            "average": float(row["average"]),
        })
    return points

def quarter_trend(points: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if len(points) < 2:
        return None
    latest, previous = points[-1], points[-2]
    if previous["average"] == 0:
        change = 0.0
    else:
        change = ((latest["average"] - previous["average"]) / previous["average"]) * 100
    return {
        "change": change,
        "direction": "up" if change >= 0 else "down",
        "latest": latest,
        "previous": previous,
    }

# ===================== 4) retailer cohorts =====================

def retailer_stats(orders: Iterable[Record],
                   retailers: Optional[Iterable[Record]] = None) -> Dict[str, Record]:
    """Per-retailer lifetime totals over non-canceled orders, keyed by retailer id."""
    directory = {r.get("id"): r for r in retailers or [] if r.get("id")}
    df = orders_frame(orders)
    df = df[df["retailer_id"].fillna("") != ""]
    if df.empty:
        return {}
    grouped = df.groupby("retailer_id", sort=False).agg(
        total_orders=("order_id", "size"),
        total_spent=("total", "sum"),
        last_order_date=("created_at", "max"),
        retailer=("retailer", "first"),
    )
    stats: Dict[str, Record] = {}
    for rid, row in grouped.iterrows():
        info = row["retailer"] if isinstance(row["retailer"], dict) else directory.get(rid) or {}
        stats[rid] = {
            "id": rid,
            "company_name": info.get("company_name"),
            "business_address": info.get("business_address"),
            "total_orders": int(row["total_orders"]),
            "total_spent": float(row["total_spent"]),
            "last_order_date": _py_datetime(row["last_order_date"]),
        }
    return stats

def reorder_rate(stats: Dict[str, Record]) -> float:
    active = len(stats)
    if active == 0:
        return 0.0
    repeat = sum(1 for s in stats.values() if s["total_orders"] >= 2)
    return (repeat / active) * 100

def new_retailers_this_month(retailers: Iterable[Record], now: Optional[datetime] = None) -> int:
    now = now or datetime.now()
    start_of_month = datetime(now.year, now.month, 1)
    count = 0
    for r in retailers or []:
        created = parse_ts(r.get("created_at"))
        if created is not None and created >= start_of_month:
            count += 1
    return count

def days_between(later: datetime, earlier: datetime) -> int:
    return math.floor((later - earlier) / ONE_DAY)

def at_risk_retailers(stats: Dict[str, Record], now: Optional[datetime] = None,
                      days: int = 90) -> List[Record]:
    """Retailers whose last order is strictly older than `days` days, longest-silent first."""
    now = now or datetime.now()
    threshold = now - days * ONE_DAY
    out = [
        {
            "id": s["id"],
            "company_name": s["company_name"],
            "last_order_date": s["last_order_date"],
            "days_since": days_between(now, s["last_order_date"]),
        }
        for s in stats.values()
        if s["last_order_date"] is not None and s["last_order_date"] < threshold
    ]
    return sorted(out, key=lambda r: r["days_since"], reverse=True)

def top_by_revenue(stats: Dict[str, Record], top_n: int = 10) -> List[Record]:
    return sorted(stats.values(), key=lambda s: s["total_spent"], reverse=True)[:top_n]

def top_by_orders(stats: Dict[str, Record], top_n: int = 10) -> List[Record]:
    # ties on order count go to the more recent buyer
    rows = sorted(stats.values(), key=lambda s: s["last_order_date"] or datetime.min, reverse=True)
    rows = sorted(rows, key=lambda s: s["total_orders"], reverse=True)
    return rows[:top_n]

def avg_days_between_orders(orders: Iterable[Record]) -> Optional[float]:
    stamps = pd.to_datetime(
        pd.Series([parse_ts(o.get("created_at")) for o in orders or []], dtype=object),
        errors="coerce",
    ).dropna().sort_values()
    if len(stamps) < 2:
        return None
    gaps = stamps.diff().dropna() / pd.Timedelta(days=1)
    return float(gaps.mean())

def retailer_order_summary(orders: Iterable[Record], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Drill-down numbers for one retailer's order history."""
    now = now or datetime.now()
    valid = billable_orders(orders)
    df = orders_frame(valid)
    total_orders = len(df)
    total_spent = float(df["total"].sum())
    last_order = _py_datetime(df["created_at"].max())
    return {
        "total_orders": total_orders,
        "total_spent": total_spent,
        "avg_order": total_spent / total_orders if total_orders > 0 else 0.0,
        "last_order_date": last_order,
        "days_since_last_order": days_between(now, last_order) if last_order else None,
        "total_samples": int(df["include_samples"].sum()),
        "avg_days_between": avg_days_between_orders(valid),
    }

# ===================== 5) SKU ranking =====================

def sku_ranking(orders: Iterable[Record], top_n: Optional[int] = None) -> List[Record]:
    """Units and revenue per product, most units first. Equal quantities keep first-seen order."""
    items = items_frame(orders)
    if items.empty:
        return []
    grouped = items.groupby("key", sort=False).agg(
        product_id=("product_id", "first"),
        name=("name", "first"),
        size=("size", "first"),
        label=("label", "first"),
        quantity=("quantity", "sum"),
        revenue=("revenue", "sum"),
    )
    ranked = grouped.sort_values("quantity", ascending=False, kind="stable")
    if top_n:
        ranked = ranked.head(top_n)
    return [
        {
            "product_id": _py_value(row["product_id"]),
            "name": row["name"],
            "size": row["size"],
            "label": row["label"],
            "quantity": int(row["quantity"]),
            "revenue": float(row["revenue"]),
        }
        for _, row in ranked.iterrows()
    ]

# Display order for order-detail pages. Anything not matched sorts after these.
CANONICAL_SKU_ORDER = (
    ("chicken", 6), ("chicken", 12),
    ("salmon", 6), ("salmon", 12),
    ("beef", 6), ("beef", 12),
    ("lamb", None), ("minnow", None), ("bison", None),
)

def _size_re(ounces: int):
    return re.compile(rf"(?<!\d){ounces}\s*oz\b")

_CANONICAL_RULES = [(flavor, _size_re(oz) if oz else None) for flavor, oz in CANONICAL_SKU_ORDER]

def canonical_rank(product: Optional[Record]) -> int:
    product = product or {}
    text = f"{product.get('name') or ''} {product.get('size') or ''}".lower()
    for rank, (flavor, size_re) in enumerate(_CANONICAL_RULES):
        if flavor in text and (size_re is None or size_re.search(text)):
            return rank
    return len(_CANONICAL_RULES)

def canonical_sort_items(items: Iterable[Record]) -> List[Record]:
    """Order-detail sort: product display_order when set, else the flavor/size table, then name, size."""
    def _key(item: Record):
        product = normalize_product(item.get("product")) or {}
        name = (product.get("name") or "").lower()
        size = (product.get("size") or "").lower()
        display_order = product.get("display_order")
        if display_order is not None:
            return (0, to_quantity(display_order), name, size)
        return (1, canonical_rank(product), name, size)
    return sorted(items or [], key=_key)

# ===================== 6) geographic rollup =====================

def revenue_by_state(orders: Iterable[Record], retailers: Optional[Iterable[Record]] = None,
                     top_n: int = 10) -> List[Dict[str, Any]]:
    directory = {r.get("id"): r for r in retailers or [] if r.get("id")}
    df = orders_frame(orders)
    df["state"] = [
        extract_state(((r if isinstance(r, dict) else None) or directory.get(rid) or {}).get("business_address"))
        for r, rid in zip(df["retailer"], df["retailer_id"])
    ]
    df = df.dropna(subset=["state"])
    if df.empty:
        return []
    totals = (
        df.groupby("state", sort=False)["total"].sum()
        .sort_values(ascending=False, kind="stable")
        .head(top_n)
    )
    return [{"state": state, "revenue": float(revenue)} for state, revenue in totals.items()]

def active_state_count(stats: Dict[str, Record]) -> int:
    states = {extract_state(s.get("business_address")) for s in stats.values()}
    states.discard(None)
    return len(states)

# ===================== composite views =====================

def admin_insights(orders: Iterable[Record], retailers: Iterable[Record],
                   now: Optional[datetime] = None, at_risk_days: int = 90) -> Dict[str, Any]:
    now = now or datetime.now()
    orders = normalize_orders(orders)
    retailers = list(retailers or [])
    valid = billable_orders(orders)

    total_revenue = float(orders_frame(valid)["total"].sum())
    monthly = monthly_revenue(valid, months=12, now=now)
    stats = retailer_stats(valid, retailers)

    return {
        "total_revenue": total_revenue,
        "total_orders": len(valid),
        "units_sold": units_sold(valid),
        "avg_order_value": total_revenue / len(valid) if valid else 0.0,
        "monthly_revenue": monthly,
        "growth_rate": bucket_growth(monthly),
        "active_retailers": len(stats),
        "new_retailers_this_month": new_retailers_this_month(retailers, now),
        "reorder_rate": reorder_rate(stats),
        "at_risk_retailers": at_risk_retailers(stats, now, days=at_risk_days),
        "revenue_by_state": revenue_by_state(valid, retailers, top_n=10),
        "active_states": active_state_count(stats),
        "top_retailers_by_revenue": top_by_revenue(stats, 10),
        "top_retailers_by_orders": top_by_orders(stats, 10),
    }

def retailer_drilldown(orders: Iterable[Record], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now()
    orders = normalize_orders(orders)
    valid = billable_orders(orders)
    points = quarterly_averages(valid, limit=6)
    return {
        "stats": retailer_order_summary(valid, now),
        "top_skus": sku_ranking(valid, top_n=6),
        "quarters": points,
        "trend": quarter_trend(points),
    }
