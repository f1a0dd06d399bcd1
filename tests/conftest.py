import copy
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import main


def make_order(oid, retailer_id, total, created_at, status="pending", items=None, **extra):
    order = {
        "id": oid,
        "order_number": f"ORD-{oid}",
        "retailer_id": retailer_id,
        "subtotal": total,
        "total": total,
        "status": status,
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
        "order_items": items or [],
    }
    order.update(extra)
    return order


def make_item(product, quantity, unit_price=None):
    price = product["price"] if unit_price is None else unit_price
    return {
        "product_id": product["id"],
        "quantity": quantity,
        "unit_price": price,
        "total_price": price * quantity,
        "product": product,
    }


PRODUCTS = [
    {"id": "p-chk6", "name": "Chicken Bites", "size": "6oz", "price": 10.0, "msrp": 16.0},
    {"id": "p-sal12", "name": "Salmon Bites", "size": "12oz", "price": 18.0, "msrp": 30.0},
    {"id": "p-bison", "name": "Bison Jerky", "size": "4oz", "price": 12.0, "msrp": None},
]


class FakeRepository:
    """In-memory stand-in for PortalRepository that records writes."""

    def __init__(self, orders=None, retailers=None, products=None, locations=None, sample_requests=None):
        self.orders = copy.deepcopy(orders or [])
        self.retailers = copy.deepcopy(retailers or [])
        self.products = copy.deepcopy(products if products is not None else PRODUCTS)
        self.locations = copy.deepcopy(locations or [])
        self.sample_requests = copy.deepcopy(sample_requests or [])
        self.created = []
        self.updates = []
        self.default_calls = []
        self.deleted_locations = []
        self.fulfilled = []

    # ---- reads
    def list_orders(self, retailer_id=None):
        rows = [o for o in self.orders if retailer_id is None or o["retailer_id"] == retailer_id]
        out = []
        for o in rows:
            retailer = self.get_retailer(o["retailer_id"])
            out.append({**copy.deepcopy(o), "retailer": copy.deepcopy(retailer)})
        return out

    def get_order(self, order_id):
        return next((o for o in self.list_orders() if o["id"] == order_id), None)

    def list_products(self, ids=None):
        return [p for p in self.products if not ids or p["id"] in ids]

    def list_retailers(self):
        return list(self.retailers)

    def get_retailer(self, retailer_id):
        return next((r for r in self.retailers if r["id"] == retailer_id), None)

    def list_locations(self, retailer_id):
        rows = [l for l in self.locations if l["retailer_id"] == retailer_id]
        return sorted(rows, key=lambda l: l["created_at"])

    def get_location(self, retailer_id, location_id):
        return next((l for l in self.list_locations(retailer_id) if l["id"] == location_id), None)

    def pending_sample_request(self, retailer_id):
        return next(
            (s for s in self.sample_requests if s["retailer_id"] == retailer_id and s["status"] == "pending"),
            None,
        )

    def dump_table(self, table):
        if table == "orders":
            return [{k: v for k, v in o.items() if k != "order_items"} for o in self.orders]
        if table == "order_items":
            rows = []
            for o in self.orders:
                for n, item in enumerate(o.get("order_items") or []):
                    rows.append({**item, "id": f"{o['id']}-{n}", "order_id": o["id"]})
            return rows
        return {
            "products": self.products,
            "retailers": self.retailers,
            "retailer_locations": self.locations,
        }[table]

    # ---- writes
    def create_order(self, order, items):
        created = {**order, "id": f"new-{len(self.created) + 1}"}
        self.created.append((created, items))
        return created

    def update_order(self, order_id, values):
        self.updates.append((order_id, values))
        for o in self.orders:
            if o["id"] == order_id:
                o.update(values)
                return dict(o)
        return None

    def create_location(self, retailer_id, values):
        row = {**values, "id": f"l{len(self.locations) + 1}-new", "retailer_id": retailer_id,
               "created_at": "2025-06-01T09:00:00"}
        self.locations.append(row)
        return dict(row)

    def set_default_location(self, retailer_id, location_id):
        self.default_calls.append((retailer_id, location_id))
        for l in self.locations:
            if l["retailer_id"] == retailer_id:
                l["is_default"] = l["id"] == location_id

    def delete_location(self, retailer_id, location_id):
        self.deleted_locations.append(location_id)
        self.locations = [l for l in self.locations if l["id"] != location_id]

    def create_sample_request(self, retailer_id):
        row = {"id": f"s-{len(self.sample_requests) + 1}", "retailer_id": retailer_id, "status": "pending"}
        self.sample_requests.append(row)
        return row

    def fulfil_sample_request(self, request_id, order_id, now=None):
        self.fulfilled.append((request_id, order_id))
        for s in self.sample_requests:
            if s["id"] == request_id:
                s.update(status="fulfilled", fulfilled_order_id=order_id)


@pytest.fixture
def retailers():
    return [
        {"id": "r1", "company_name": "Paws & Co", "business_address": "12 Oak St, Springfield, IL 62704",
         "phone": "555-0100", "email": "buyer@paws.example", "created_at": "2024-01-10T09:00:00"},
        {"id": "r2", "company_name": "Barkery", "business_address": "9 Pine Rd, Austin, TX 78701",
         "phone": "555-0200", "email": None, "created_at": "2025-03-02T09:00:00"},
    ]


@pytest.fixture
def fake_repo(retailers):
    chk, sal = PRODUCTS[0], PRODUCTS[1]
    now = datetime.now()
    orders = [
        make_order("o1", "r1", 100.0, now - timedelta(days=2), "pending", [make_item(chk, 10)]),
        make_order("o2", "r1", 54.0, now - timedelta(days=40), "shipped", [make_item(sal, 3)],
                   tracking_number="1Z999"),
        make_order("o3", "r2", 36.0, now - timedelta(days=200), "delivered", [make_item(sal, 2)]),
        make_order("o4", "r2", 500.0, now - timedelta(days=1), "canceled", [make_item(chk, 50)]),
    ]
    locations = [
        {"id": "l1", "retailer_id": "r1", "location_name": "Main", "business_address": "12 Oak St",
         "is_default": True, "created_at": "2024-01-10T09:00:00"},
        {"id": "l2", "retailer_id": "r1", "location_name": "Annex", "business_address": "40 Elm St",
         "is_default": False, "created_at": "2024-02-10T09:00:00"},
        {"id": "l3", "retailer_id": "r1", "location_name": "Depot", "business_address": "1 Dock Rd",
         "is_default": False, "created_at": "2024-03-10T09:00:00"},
    ]
    return FakeRepository(orders=orders, retailers=retailers, locations=locations)


@pytest.fixture
def fake_mailer():
    mailer = MagicMock()
    mailer.brand = "Bare Naked Pet Co."
    return mailer


@pytest.fixture
def client(fake_repo, fake_mailer, monkeypatch):
    monkeypatch.setattr(main, "_reader", fake_repo)
    monkeypatch.setattr(main, "_writer", fake_repo)
    monkeypatch.setattr(main, "_mailer", fake_mailer)
    return TestClient(main.app)
