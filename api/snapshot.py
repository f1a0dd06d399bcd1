"""
Local DuckDB snapshot of the backend tables.

sync_snapshot() pulls each table through the repository, flattens it to a DataFrame and writes
it to DuckDB plus a Parquet copy. SnapshotRepository answers the analytics reads from that
file and reassembles the nested order shape. Writes never go through it.
"""
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import duckdb
import pandas as pd

from repository import SNAPSHOT_TABLES

NUMERIC_COLUMNS = {
    "subtotal", "total", "quantity", "unit_price", "total_price", "price", "msrp",
    "stock_quantity", "invoice_sent_count", "display_order",
}
BOOL_COLUMNS = {"include_samples", "is_active", "is_default"}

# used when a table comes back empty so the snapshot still has its columns
BASE_COLUMNS = {
    "orders": ["id", "order_number", "retailer_id", "location_id", "status", "subtotal", "total",
               "created_at", "delivery_date", "promotion_code", "tracking_number", "include_samples"],
    "order_items": ["id", "order_id", "product_id", "quantity", "unit_price", "total_price"],
    "products": ["id", "name", "size", "category", "price", "msrp", "stock_quantity", "is_active"],
    "retailers": ["id", "company_name", "business_address", "phone", "created_at"],
    "retailer_locations": ["id", "retailer_id", "location_name", "business_address", "phone",
                           "is_default", "created_at"],
}


def _as_text(v: Any) -> Optional[str]:
    if v is None or (not isinstance(v, (dict, list)) and pd.isna(v)):
        return None
    if isinstance(v, (dict, list)):
        return json.dumps(v)
    return str(v)


def flatten(table: str, rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """Rows -> DataFrame with embedded joins dropped and one stable type per column."""
    flat = [{k: v for k, v in r.items() if not isinstance(v, (dict, list))} for r in rows or []]
    if not flat:
        return pd.DataFrame({c: pd.Series(dtype="object") for c in BASE_COLUMNS.get(table, ["id"])})

    df = pd.DataFrame(flat)
    for col in df.columns:
        if col in NUMERIC_COLUMNS:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        elif col in BOOL_COLUMNS:
            df[col] = df[col].map(lambda v: None if pd.isna(v) else bool(v)).astype("boolean")
        else:
            df[col] = df[col].map(_as_text).astype("object")
    return df


def save_parquet(df: pd.DataFrame, path: str) -> None:
    df.to_parquet(path, index=False)


def save_duckdb(frames: Dict[str, pd.DataFrame], path: str) -> None:
    con = duckdb.connect(path)
    try:
        for table, df in frames.items():
            con.register("snapshot_df", df)
            con.execute(f"CREATE OR REPLACE TABLE {table} AS SELECT * FROM snapshot_df")
            con.unregister("snapshot_df")
    finally:
        con.close()


def sync_snapshot(repo, db_path: str, data_dir: str,
                  progress: Callable[[str], None] = lambda msg: None) -> Dict[str, int]:
    Path(data_dir).mkdir(parents=True, exist_ok=True)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    frames = {}
    for table in SNAPSHOT_TABLES:
        frames[table] = flatten(table, repo.dump_table(table))
        progress(f"{table}: {len(frames[table])} rows")

    for table, df in frames.items():
        parquet_path = os.path.join(data_dir, f"{table}.parquet")
        save_parquet(df, parquet_path)
        progress(f"Parquet written: {parquet_path}")

    save_duckdb(frames, db_path)
    progress(f"DuckDB written: {db_path}")
    return {table: len(df) for table, df in frames.items()}


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    clean = df.astype(object).where(pd.notna(df), None)
    return clean.to_dict("records")


class SnapshotRepository:
    """Read-only stand-in for PortalRepository backed by the DuckDB snapshot."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _table(self, table: str) -> List[Dict[str, Any]]:
        if table not in SNAPSHOT_TABLES:
            raise ValueError(f"not a snapshot table: {table}")
        if not os.path.exists(self.db_path):
            raise FileNotFoundError(f"snapshot not found: {self.db_path} (run etl/run.py)")
        # a fresh read-only connection per query so a newer snapshot is picked up
        with duckdb.connect(self.db_path, read_only=True) as con:
            return _records(con.execute(f"SELECT * FROM {table}").fetchdf())

    def dump_table(self, table: str) -> List[Dict[str, Any]]:
        return self._table(table)

    def _assemble(self, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        products = {p["id"]: p for p in self._table("products")}
        retailers = {r["id"]: r for r in self._table("retailers")}
        items_by_order: Dict[str, List[Dict[str, Any]]] = {}
        for item in self._table("order_items"):
            item["product"] = products.get(item.get("product_id"))
            items_by_order.setdefault(item.get("order_id"), []).append(item)
        for o in orders:
            o["order_items"] = items_by_order.get(o.get("id"), [])
            o["retailer"] = retailers.get(o.get("retailer_id"))
        return sorted(orders, key=lambda o: o.get("created_at") or "", reverse=True)

    def list_orders(self, retailer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        orders = self._table("orders")
        if retailer_id:
            orders = [o for o in orders if o.get("retailer_id") == retailer_id]
        return self._assemble(orders)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        orders = [o for o in self._table("orders") if o.get("id") == order_id]
        return self._assemble(orders)[0] if orders else None

    def list_products(self, ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        products = self._table("products")
        if not ids:
            return products
        wanted = set(ids)
        return [p for p in products if p.get("id") in wanted]

    def list_retailers(self) -> List[Dict[str, Any]]:
        return self._table("retailers")

    def get_retailer(self, retailer_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self._table("retailers") if r.get("id") == retailer_id), None)

    def list_locations(self, retailer_id: str) -> List[Dict[str, Any]]:
        rows = [r for r in self._table("retailer_locations") if r.get("retailer_id") == retailer_id]
        return sorted(rows, key=lambda r: r.get("created_at") or "")
