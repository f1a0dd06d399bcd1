"""Portal data access over supabase-py. Reads return JSON-shaped dicts as PostgREST sends them."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from backend import BackendError, get_client, run

log = logging.getLogger("uvicorn.error")

ORDER_COLUMNS = "*, order_items(*, product:products(*)), retailer:retailers(*)"
SNAPSHOT_TABLES = ("orders", "order_items", "products", "retailers", "retailer_locations")


def _first(rows: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


class PortalRepository:
    def __init__(self, client: Optional[Client] = None):
        self.client = client or get_client()

    # ---- reads
    def list_orders(self, retailer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.client.table("orders").select(ORDER_COLUMNS)
        if retailer_id:
            query = query.eq("retailer_id", retailer_id)
        return run(query.order("created_at", desc=True), "list orders") or []

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        query = self.client.table("orders").select(ORDER_COLUMNS).eq("id", order_id).limit(1)
        return _first(run(query, "get order"))

    def list_products(self, ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        query = self.client.table("products").select("*")
        if ids:
            query = query.in_("id", list(ids))
        return run(query, "list products") or []

    def list_retailers(self) -> List[Dict[str, Any]]:
        query = self.client.table("retailers").select("*").order("created_at", desc=True)
        return run(query, "list retailers") or []

    def get_retailer(self, retailer_id: str) -> Optional[Dict[str, Any]]:
        query = self.client.table("retailers").select("*").eq("id", retailer_id).limit(1)
        return _first(run(query, "get retailer"))

    def list_locations(self, retailer_id: str) -> List[Dict[str, Any]]:
        query = (
            self.client.table("retailer_locations")
            .select("*")
            .eq("retailer_id", retailer_id)
            .order("created_at")
        )
        return run(query, "list locations") or []

    def get_location(self, retailer_id: str, location_id: str) -> Optional[Dict[str, Any]]:
        query = (
            self.client.table("retailer_locations")
            .select("*")
            .eq("id", location_id)
            .eq("retailer_id", retailer_id)
            .limit(1)
        )
        return _first(run(query, "get location"))

    def pending_sample_request(self, retailer_id: str) -> Optional[Dict[str, Any]]:
        query = (
            self.client.table("sample_requests")
            .select("*")
            .eq("retailer_id", retailer_id)
            .eq("status", "pending")
            .order("created_at")
            .limit(1)
        )
        return _first(run(query, "find sample request"))

    def dump_table(self, table: str) -> List[Dict[str, Any]]:
        return run(self.client.table(table).select("*"), f"dump {table}") or []

    # ---- writes (always against the backend)
    def create_order(self, order: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Insert the order and its lines; the order row is removed again if the lines fail."""
        created = _first(run(self.client.table("orders").insert(order), "insert order"))
        if not created or not created.get("id"):
            raise BackendError("backend did not return the created order")
        rows = [
            {**{k: v for k, v in item.items() if k != "product"}, "order_id": created["id"]}
            for item in items
        ]
        if rows:
            try:
                run(self.client.table("order_items").insert(rows), "insert order items")
            except BackendError:
                log.warning("order items for %s failed; removing the order row", created["id"])
                run(self.client.table("orders").delete().eq("id", created["id"]), "remove orphaned order")
                raise
        return created

    def update_order(self, order_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return _first(run(self.client.table("orders").update(values).eq("id", order_id), "update order"))

    def create_location(self, retailer_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        row = {**values, "retailer_id": retailer_id}
        created = _first(run(self.client.table("retailer_locations").insert(row), "insert location"))
        if not created or not created.get("id"):
            raise BackendError("backend did not return the created location")
        return created

    def set_default_location(self, retailer_id: str, location_id: str) -> None:
        # clears the old default and sets the new one in one transaction
        run(
            self.client.rpc("set_default_location", {"p_retailer_id": retailer_id, "p_location_id": location_id}),
            "set default location",
        )

    def delete_location(self, retailer_id: str, location_id: str) -> None:
        query = self.client.table("retailer_locations").delete().eq("id", location_id).eq("retailer_id", retailer_id)
        run(query, "delete location")

    def create_sample_request(self, retailer_id: str) -> Dict[str, Any]:
        query = self.client.table("sample_requests").insert({"retailer_id": retailer_id, "status": "pending"})
        return _first(run(query, "insert sample request")) or {}

    def fulfil_sample_request(self, request_id: str, order_id: str,
                              now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        query = (
            self.client.table("sample_requests")
            .update({"status": "fulfilled", "fulfilled_order_id": order_id, "fulfilled_at": now.isoformat()})
            .eq("id", request_id)
        )
        run(query, "fulfil sample request")
