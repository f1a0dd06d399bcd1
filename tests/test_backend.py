from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError

import backend
from backend import BackendError, get_client, run
from repository import ORDER_COLUMNS, PortalRepository


class FakeQuery:
    """Records the builder chain and hands back the next canned result on execute()."""

    def __init__(self, client, target):
        self.client = client
        self.calls = [target]

    def __getattr__(self, name):
        def step(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return step

    def execute(self):
        self.client.executed.append(self.calls)
        outcome = self.client.results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(data=outcome)


class FakeClient:
    def __init__(self, *results):
        self.results = list(results)
        self.executed = []

    def table(self, name):
        return FakeQuery(self, ("table", name))

    def rpc(self, fn, params=None):
        return FakeQuery(self, ("rpc", fn, params))


def _api_error(message="duplicate key value", code="23505"):
    return APIError({"message": message, "code": code, "hint": None, "details": None})


def test_run_returns_rows():
    client = FakeClient([{"id": "o1"}])
    assert run(client.table("orders").select("*"), "list orders") == [{"id": "o1"}]


def test_run_maps_postgrest_errors():
    client = FakeClient(_api_error())
    with pytest.raises(BackendError) as exc:
        run(client.table("orders").select("*"), "list orders")
    assert exc.value.code == "23505"
    assert "duplicate key value" in str(exc.value)


def test_run_maps_transport_errors():
    client = FakeClient(httpx.ConnectTimeout("slow"))
    with pytest.raises(BackendError) as exc:
        run(client.table("orders").select("*"), "list orders")
    assert "unreachable" in str(exc.value)


def test_get_client_requires_configuration(monkeypatch):
    monkeypatch.setattr(backend.settings, "SUPABASE_SERVICE_KEY", "")
    with pytest.raises(BackendError):
        get_client(url="https://proj.supabase.co")


def test_get_client_passes_timeout(monkeypatch):
    seen = {}

    def fake_create_client(url, key, options=None):
        seen.update(url=url, key=key, options=options)
        return "client"

    monkeypatch.setattr(backend, "create_client", fake_create_client)
    assert get_client("https://proj.supabase.co", "svc", timeout=5) == "client"
    assert seen["key"] == "svc"
    assert seen["options"].postgrest_client_timeout == 5


def test_list_orders_query_shape():
    client = FakeClient([{"id": "o1"}])
    assert PortalRepository(client).list_orders("r1") == [{"id": "o1"}]
    assert client.executed[0] == [
        ("table", "orders"),
        ("select", (ORDER_COLUMNS,), {}),
        ("eq", ("retailer_id", "r1"), {}),
        ("order", ("created_at",), {"desc": True}),
    ]


def test_list_products_passes_ids_as_a_list():
    client = FakeClient([])
    PortalRepository(client).list_products(["p,1", "p2"])
    assert ("in_", ("id", ["p,1", "p2"]), {}) in client.executed[0]


def test_missing_rows_read_as_none():
    client = FakeClient([], None)
    repo = PortalRepository(client)
    assert repo.get_order("nope") is None
    assert repo.list_retailers() == []


def test_set_default_location_is_one_rpc():
    client = FakeClient(None)
    PortalRepository(client).set_default_location("r1", "l2")
    assert client.executed == [[("rpc", "set_default_location", {"p_retailer_id": "r1", "p_location_id": "l2"})]]


def test_create_order_inserts_items_with_order_id():
    client = FakeClient([{"id": "o9"}], [])
    created = PortalRepository(client).create_order(
        {"order_number": "ORD-1", "total": 20},
        [{"product_id": "p1", "quantity": 2, "unit_price": 10, "total_price": 20, "product": {"id": "p1"}}],
    )
    assert created == {"id": "o9"}
    items_call = client.executed[1]
    assert items_call[0] == ("table", "order_items")
    assert items_call[1] == (
        "insert",
        ([{"product_id": "p1", "quantity": 2, "unit_price": 10, "total_price": 20, "order_id": "o9"}],),
        {},
    )


def test_create_order_removes_order_when_items_fail():
    client = FakeClient([{"id": "o-1"}], _api_error("items rejected", "23503"), [{"id": "o-1"}])
    with pytest.raises(BackendError) as exc:
        PortalRepository(client).create_order(
            {"order_number": "ORD-1", "total": 10},
            [{"product_id": "p1", "quantity": 1, "unit_price": 10, "total_price": 10}],
        )
    assert "items rejected" in str(exc.value)
    assert client.executed[2] == [("table", "orders"), ("delete", (), {}), ("eq", ("id", "o-1"), {})]


def test_create_order_without_returned_row():
    client = FakeClient([])
    with pytest.raises(BackendError):
        PortalRepository(client).create_order({"order_number": "ORD-1"}, [])


def test_create_location_sets_retailer():
    client = FakeClient([{"id": "l9", "retailer_id": "r1", "is_default": True}])
    row = PortalRepository(client).create_location("r1", {"location_name": "Main", "is_default": True})
    assert row["id"] == "l9"
    assert client.executed[0][1] == ("insert", ({"location_name": "Main", "is_default": True, "retailer_id": "r1"},), {})
