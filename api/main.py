import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

import analytics
import settings
from addresses import parse_business_address
from backend import BackendError
from exports import export_filename, filter_orders, orders_to_csv
from mailer import (EmailError, Mailer, invoice_email, retailer_confirmation_email,
                    sample_request_email, shipping_email, team_order_email)
from orders import InvalidTransition, OrderValidationError, apply_status, build_order
from repository import PortalRepository
from snapshot import SnapshotRepository

log = logging.getLogger("uvicorn.error")

# ---- App/version
APP_VERSION = "0.1.0"
app = FastAPI(title="Wholesale Insights API", version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], allow_credentials=True,
    allow_methods=["*"], allow_headers=["*"],
)

# ---- Lazily created collaborators (tests swap these out)
_reader = None   # analytics reads: backend or DuckDB snapshot
_writer = None   # writes and the reads that guard them: always the backend
_mailer = None

def _ensure_writer() -> PortalRepository:
    global _writer
    if _writer is None:
        _writer = PortalRepository()
    return _writer

def _ensure_reader():
    global _reader
    if _reader is None:
        if settings.DATA_SOURCE == "snapshot":
            _reader = SnapshotRepository(settings.SNAPSHOT_DB)
        elif settings.DATA_SOURCE == "backend":
            _reader = _ensure_writer()
        else:
            raise HTTPException(status_code=500, detail=f"unknown DATA_SOURCE '{settings.DATA_SOURCE}'")
    return _reader

def _ensure_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = Mailer()
    return _mailer

# ---- Error mapping
@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    log.error("backend error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})

@app.exception_handler(FileNotFoundError)
async def snapshot_missing_handler(request: Request, exc: FileNotFoundError):
    log.error("snapshot unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})

# ----- Request bodies -----
class OrderItemIn(BaseModel):
    product_id: str
    quantity: Any = 1

class CreateOrderRequest(BaseModel):
    retailer_id: str = ""
    items: List[OrderItemIn] = []
    delivery_date: Optional[str] = None
    promotion_code: Optional[str] = None
    location_id: Optional[str] = None
    include_samples: bool = False

class StatusUpdate(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    tracking_carrier: Optional[str] = None

class InvoiceRequest(BaseModel):
    invoice_url: str = ""

class LocationIn(BaseModel):
    location_name: str = ""
    business_address: str = ""
    phone: Optional[str] = None
    make_default: bool = False

# ---- small helpers
def _retailer_of(order: Dict[str, Any]) -> Dict[str, Any]:
    retailer = analytics.as_record(order.get("retailer"))
    if retailer is None and order.get("retailer_id"):
        retailer = _ensure_writer().get_retailer(order["retailer_id"])
    return retailer or {}

def _try_send(what: str, fn, *args, **kwargs) -> bool:
    try:
        fn(*args, **kwargs)
        return True
    except EmailError as e:
        log.warning("%s email failed: %s", what, e)
        return False

def _order_row(order: Dict[str, Any]) -> Dict[str, Any]:
    retailer = analytics.as_record(order.get("retailer")) or {}
    return {
        "id": order.get("id"),
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "total": analytics.order_total(order),
        "created_at": order.get("created_at"),
        "company_name": retailer.get("company_name"),
        "item_count": len(order.get("order_items") or []),
        "include_samples": bool(order.get("include_samples")),
    }

def _newest_first(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(orders, key=lambda o: analytics.parse_ts(o.get("created_at")) or datetime.min, reverse=True)

def _csv_response(orders: List[Dict[str, Any]], include_retailer: bool) -> Response:
    return Response(
        content=orders_to_csv(orders, include_retailer=include_retailer),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )

# ===================== Health =====================
@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION, "data_source": settings.DATA_SOURCE}

# ===================== Admin analytics =====================
@app.get("/admin/insights")
def admin_insights():
    reader = _ensure_reader()
    return analytics.admin_insights(
        reader.list_orders(), reader.list_retailers(), at_risk_days=settings.AT_RISK_DAYS
    )

@app.get("/admin/dashboard")
def admin_dashboard():
    reader = _ensure_reader()
    orders = analytics.normalize_orders(reader.list_orders())
    stats = analytics.retailer_stats(orders, reader.list_retailers())
    return {
        "stats": analytics.dashboard_stats(orders),
        "top_products": analytics.sku_ranking(orders, top_n=5),
        "top_retailers": analytics.top_by_revenue(stats, top_n=5),
        "recent_orders": [_order_row(o) for o in _newest_first(orders)[:5]],
    }

@app.get("/admin/retailers/{retailer_id}")
def admin_retailer_detail(retailer_id: str):
    reader = _ensure_reader()
    retailer = reader.get_retailer(retailer_id)
    if not retailer:
        raise HTTPException(status_code=404, detail="Retailer not found")
    orders = analytics.normalize_orders(reader.list_orders(retailer_id))
    return {
        "retailer": {**retailer, "address": parse_business_address(retailer.get("business_address"))},
        "locations": reader.list_locations(retailer_id),
        **analytics.retailer_drilldown(orders),
        "orders": [_order_row(o) for o in _newest_first(orders)],
    }

# ===================== Retailer analytics =====================
@app.get("/retailers/{retailer_id}/analytics")
def retailer_analytics(retailer_id: str,
                       range_key: Literal["all", "last30", "last90", "ytd", "lastYear"] = Query("all", alias="range")):
    reader = _ensure_reader()
    orders = analytics.normalize_orders(reader.list_orders(retailer_id))
    in_range = analytics.filter_orders_by_range(orders, range_key)
    summary = analytics.revenue_summary(in_range, reader.list_products())
    return {
        "range": range_key,
        **summary,
        "top_products": analytics.sku_ranking(in_range, top_n=5),
    }

# ===================== Orders: export (declared before /admin/orders/{order_id}) =====================
@app.get("/admin/orders/export")
def export_admin_orders(status: Optional[str] = None,
                        start_date: Optional[str] = None,
                        end_date: Optional[str] = None):
    orders = filter_orders(_ensure_reader().list_orders(), status, start_date, end_date)
    return _csv_response(orders, include_retailer=True)

@app.get("/retailers/{retailer_id}/orders/export")
def export_retailer_orders(retailer_id: str,
                           status: Optional[str] = None,
                           start_date: Optional[str] = None,
                           end_date: Optional[str] = None):
    orders = filter_orders(_ensure_reader().list_orders(retailer_id), status, start_date, end_date)
    return _csv_response(orders, include_retailer=False)

# ===================== Orders: detail & lifecycle =====================
@app.get("/admin/orders/{order_id}")
def admin_order_detail(order_id: str):
    order = _ensure_reader().get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    order = analytics.normalize_orders([order])[0]
    order["order_items"] = analytics.canonical_sort_items(order["order_items"])
    return order

@app.post("/admin/orders")
def create_order(body: CreateOrderRequest):
    writer = _ensure_writer()
    if not body.retailer_id or not body.items:
        raise HTTPException(status_code=400, detail="Invalid order payload")

    retailer = writer.get_retailer(body.retailer_id)
    if not retailer:
        raise HTTPException(status_code=404, detail="Retailer not found")

    location = None
    if body.location_id:
        location = writer.get_location(body.retailer_id, body.location_id)
        if not location:
            raise HTTPException(status_code=400, detail="Invalid ship-to location")

    items = [item.model_dump() for item in body.items]
    product_ids = sorted({i["product_id"] for i in items})
    products = writer.list_products(product_ids)
    sample = writer.pending_sample_request(body.retailer_id)

    try:
        order, lines = build_order(
            body.retailer_id, items, products,
            delivery_date=body.delivery_date,
            promotion_code=body.promotion_code,
            location_id=location["id"] if location else None,
            include_samples=body.include_samples or bool(sample),
        )
    except OrderValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    created = writer.create_order(order, lines)
    if sample:
        writer.fulfil_sample_request(sample["id"], created["id"])
    log.info("order %s created for retailer %s (%.2f)", order["order_number"], body.retailer_id, order["total"])

    mailer = _ensure_mailer()
    subject, text = team_order_email(order, lines, retailer, location, brand=mailer.brand)
    _try_send("team order", mailer.send_team, subject, text)
    if retailer.get("email"):
        subject, text = retailer_confirmation_email(order, lines, retailer, location, brand=mailer.brand)
        _try_send("order confirmation", mailer.send, retailer["email"], subject, text)

    return {
        "success": True,
        "order_id": created["id"],
        "order_number": order["order_number"],
        "total": order["total"],
        "include_samples": order["include_samples"],
    }

@app.post("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate):
    writer = _ensure_writer()
    order = writer.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    try:
        patch = apply_status(order, body.status,
                             tracking_number=body.tracking_number,
                             tracking_carrier=body.tracking_carrier)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not patch:
        return {"success": True, "changed": False, "order": order}

    updated = writer.update_order(order_id, patch) or {**order, **patch}
    if "shipped_at" in patch:
        retailer = _retailer_of(order)
        if retailer.get("email"):
            mailer = _ensure_mailer()
            subject, text = shipping_email({**order, **patch}, brand=mailer.brand)
            _try_send("shipping", mailer.send, retailer["email"], subject, text)
        else:
            log.warning("order %s shipped but retailer has no email on file", order_id)
    return {"success": True, "changed": True, "order": updated}

@app.post("/admin/orders/{order_id}/invoice")
def send_invoice(order_id: str, body: InvoiceRequest):
    invoice_url = body.invoice_url.strip()
    if not invoice_url:
        raise HTTPException(status_code=400, detail="Missing invoice_url")
    writer = _ensure_writer()
    order = writer.get_order(order_id)
    if not order or not order.get("retailer_id"):
        raise HTTPException(status_code=404, detail="Order not found")
    retailer = _retailer_of(order)
    if not retailer.get("email"):
        raise HTTPException(status_code=404, detail="Retailer email not found")

    mailer = _ensure_mailer()
    subject, text, html = invoice_email(order, invoice_url, brand=mailer.brand)
    try:
        mailer.send(retailer["email"], subject, text, html=html)
    except EmailError as e:
        log.error("invoice email for order %s failed: %s", order_id, e)
        raise HTTPException(status_code=502, detail="Failed to send invoice")

    patch = {
        "invoice_url": invoice_url,
        "invoice_sent_at": datetime.now(timezone.utc).isoformat(),
        "invoice_sent_count": analytics.to_quantity(order.get("invoice_sent_count")) + 1,
    }
    writer.update_order(order_id, patch)
    return {"success": True, **patch}

# ===================== Ship-to locations =====================
@app.post("/retailers/{retailer_id}/locations")
def add_location(retailer_id: str, body: LocationIn):
    name = body.location_name.strip()
    address = body.business_address.strip()
    if not name or not address:
        raise HTTPException(status_code=400, detail="Location name and address are required")
    writer = _ensure_writer()
    if not writer.get_retailer(retailer_id):
        raise HTTPException(status_code=404, detail="Retailer not found")

    # a retailer's first location is always its default
    first = not writer.list_locations(retailer_id)
    location = writer.create_location(retailer_id, {
        "location_name": name,
        "business_address": address,
        "phone": (body.phone or "").strip() or None,
        "is_default": first,
    })
    if body.make_default and not first:
        writer.set_default_location(retailer_id, location["id"])
        location = {**location, "is_default": True}
    return {"success": True, "location": location}

@app.post("/retailers/{retailer_id}/locations/{location_id}/default")
def set_default_location(retailer_id: str, location_id: str):
    writer = _ensure_writer()
    if not writer.get_location(retailer_id, location_id):
        raise HTTPException(status_code=404, detail="Location not found")
    writer.set_default_location(retailer_id, location_id)
    return {"success": True, "default_location_id": location_id}

@app.delete("/retailers/{retailer_id}/locations/{location_id}")
def delete_location(retailer_id: str, location_id: str):
    writer = _ensure_writer()
    location = writer.get_location(retailer_id, location_id)
    if not location:
        raise HTTPException(status_code=404, detail="Location not found")
    writer.delete_location(retailer_id, location_id)

    new_default = None
    if location.get("is_default"):
        # oldest remaining location takes over
        remaining = [l for l in writer.list_locations(retailer_id) if l.get("id") != location_id]
        if remaining:
            new_default = remaining[0]["id"]
            writer.set_default_location(retailer_id, new_default)
    return {"success": True, "deleted": location_id, "default_location_id": new_default}

# ===================== Samples =====================
@app.post("/retailers/{retailer_id}/sample-requests")
def request_samples(retailer_id: str):
    writer = _ensure_writer()
    retailer = writer.get_retailer(retailer_id)
    if not retailer:
        raise HTTPException(status_code=404, detail="Retailer not found")
    if writer.pending_sample_request(retailer_id):
        return {
            "success": True,
            "already_pending": True,
            "message": "Your request is already on file. Samples will be added to your next order.",
        }

    writer.create_sample_request(retailer_id)
    if retailer.get("email"):
        subject, text = sample_request_email()
        _try_send("sample request", _ensure_mailer().send, retailer["email"], subject, text)
    return {
        "success": True,
        "already_pending": False,
        "message": "Request submitted. Samples will be added to your next order.",
    }
