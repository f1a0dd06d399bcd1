"""HTTP API tests against the in-memory repository from conftest."""
import csv
import io

import pytest

import main
from backend import BackendError
from mailer import EmailError


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"


class TestAnalytics:
    def test_admin_insights(self, client):
        r = client.get("/admin/insights")
        assert r.status_code == 200
        data = r.json()
        assert data["total_orders"] == 3
        assert data["total_revenue"] == pytest.approx(190)
        assert data["active_retailers"] == 2
        assert data["reorder_rate"] == 50
        assert [x["id"] for x in data["at_risk_retailers"]] == ["r2"]
        assert {s["state"] for s in data["revenue_by_state"]} == {"IL", "TX"}
        assert len(data["monthly_revenue"]) == 12

    def test_admin_dashboard(self, client):
        data = client.get("/admin/dashboard").json()
        assert data["stats"]["total_orders"] == 3
        assert data["stats"]["pending_orders"] == 1
        assert data["top_products"][0]["product_id"] == "p-chk6"
        assert data["top_retailers"][0]["id"] == "r1"
        assert data["recent_orders"][0]["id"] == "o4"

    def test_retailer_detail(self, client):
        r = client.get("/admin/retailers/r1")
        assert r.status_code == 200
        data = r.json()
        assert data["retailer"]["address"]["state"] == "IL"
        assert data["stats"]["total_orders"] == 2
        assert data["stats"]["total_spent"] == pytest.approx(154)
        assert [s["product_id"] for s in data["top_skus"]] == ["p-chk6", "p-sal12"]
        assert len(data["locations"]) == 3
        assert [o["id"] for o in data["orders"]] == ["o1", "o2"]

    def test_retailer_detail_unknown(self, client):
        assert client.get("/admin/retailers/nope").status_code == 404

    def test_retailer_analytics_range(self, client):
        data = client.get("/retailers/r1/analytics", params={"range": "last30"}).json()
        assert data["range"] == "last30"
        assert data["total_orders"] == 1
        assert data["total_wholesale"] == 100
        assert data["total_msrp"] == 160
        assert data["profit_margin"] == pytest.approx(37.5)
        assert data["top_products"][0]["name"] == "Chicken Bites"

    def test_retailer_analytics_rejects_unknown_range(self, client):
        assert client.get("/retailers/r1/analytics", params={"range": "forever"}).status_code == 422

    def test_order_detail_sorts_items(self, client, fake_repo):
        fake_repo.orders[0]["order_items"] = [
            {"product_id": "p-sal12", "quantity": 1, "product": {"name": "Salmon Bites", "size": "12oz"}},
            {"product_id": "p-chk6", "quantity": 1, "product": [{"name": "Chicken Bites", "size": "6oz"}]},
        ]
        data = client.get("/admin/orders/o1").json()
        assert [i["product_id"] for i in data["order_items"]] == ["p-chk6", "p-sal12"]
        assert client.get("/admin/orders/missing").status_code == 404

    def test_backend_failure_maps_to_502(self, client, fake_repo, monkeypatch):
        def boom(*args, **kwargs):
            raise BackendError("backend unreachable")
        monkeypatch.setattr(fake_repo, "list_orders", boom)
        r = client.get("/admin/insights")
        assert r.status_code == 502
        assert "unreachable" in r.json()["detail"]


class TestExport:
    def test_admin_export(self, client):
        r = client.get("/admin/orders/export", params={"status": "pending"})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert 'filename="orders-' in r.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(r.text)))
        assert rows[0][2] == "Retailer"
        assert [row[0] for row in rows[1:]] == ["ORD-o1"]

    def test_retailer_export(self, client):
        rows = list(csv.reader(io.StringIO(client.get("/retailers/r1/orders/export").text)))
        assert "Retailer" not in rows[0]
        assert [row[0] for row in rows[1:]] == ["ORD-o1", "ORD-o2"]


class TestCreateOrder:
    def test_creates_order_and_emails(self, client, fake_repo, fake_mailer):
        r = client.post("/admin/orders", json={
            "retailer_id": "r1",
            "items": [{"product_id": "p-chk6", "quantity": 2}, {"product_id": "p-sal12", "quantity": 0}],
            "location_id": "l2",
        })
        assert r.status_code == 200
        data = r.json()
        assert data["order_number"].startswith("ORD-")
        assert data["total"] == pytest.approx(38)
        order, lines = fake_repo.created[0]
        assert order["location_id"] == "l2"
        assert [l["quantity"] for l in lines] == [2, 1]
        fake_mailer.send_team.assert_called_once()
        fake_mailer.send.assert_called_once()
        assert fake_mailer.send.call_args.args[0] == "buyer@paws.example"

    def test_pending_sample_request_is_fulfilled(self, client, fake_repo):
        fake_repo.sample_requests.append({"id": "s1", "retailer_id": "r1", "status": "pending"})
        data = client.post("/admin/orders", json={
            "retailer_id": "r1", "items": [{"product_id": "p-chk6", "quantity": 1}],
        }).json()
        assert data["include_samples"] is True
        assert fake_repo.fulfilled == [("s1", data["order_id"])]

    @pytest.mark.parametrize("payload,status", [
        ({"retailer_id": "r1", "items": []}, 400),
        ({"retailer_id": "", "items": [{"product_id": "p-chk6"}]}, 400),
        ({"retailer_id": "r1", "items": [{"product_id": "nope"}]}, 400),
        ({"retailer_id": "r1", "items": [{"product_id": "p-chk6"}], "location_id": "elsewhere"}, 400),
        ({"retailer_id": "ghost", "items": [{"product_id": "p-chk6"}]}, 404),
    ])
    def test_rejects_bad_payloads(self, client, fake_repo, payload, status):
        assert client.post("/admin/orders", json=payload).status_code == status
        assert fake_repo.created == []

    def test_email_failure_is_not_fatal(self, client, fake_mailer):
        fake_mailer.send_team.side_effect = EmailError("relay down")
        r = client.post("/admin/orders", json={"retailer_id": "r1", "items": [{"product_id": "p-chk6"}]})
        assert r.status_code == 200


class TestStatus:
    def test_ship_records_tracking_and_notifies(self, client, fake_repo, fake_mailer):
        fake_repo.orders[0]["status"] = "processing"
        r = client.post("/admin/orders/o1/status", json={"status": "shipped", "tracking_number": "1Z1"})
        assert r.status_code == 200
        assert r.json()["changed"] is True
        _, patch = fake_repo.updates[0]
        assert patch["status"] == "shipped"
        assert patch["tracking_number"] == "1Z1"
        assert "shipped_at" in patch
        fake_mailer.send.assert_called_once()

    def test_illegal_transition_is_409(self, client, fake_repo):
        r = client.post("/admin/orders/o3/status", json={"status": "pending"})
        assert r.status_code == 409
        assert fake_repo.updates == []

    def test_walking_back_from_delivered_does_not_renotify(self, client, fake_repo, fake_mailer):
        r = client.post("/admin/orders/o3/status", json={"status": "shipped"})
        assert r.status_code == 200
        assert fake_repo.updates == [("o3", {"status": "shipped"})]
        fake_mailer.send.assert_not_called()

    def test_same_status_is_noop(self, client, fake_repo):
        r = client.post("/admin/orders/o1/status", json={"status": "pending"})
        assert r.json()["changed"] is False
        assert fake_repo.updates == []

    def test_unknown_order(self, client):
        assert client.post("/admin/orders/zzz/status", json={"status": "processing"}).status_code == 404


class TestInvoice:
    def test_sends_and_counts(self, client, fake_repo, fake_mailer):
        fake_repo.orders[0]["invoice_sent_count"] = 2
        r = client.post("/admin/orders/o1/invoice", json={"invoice_url": "https://pay.example/1"})
        assert r.status_code == 200
        assert r.json()["invoice_sent_count"] == 3
        _, patch = fake_repo.updates[0]
        assert patch["invoice_url"] == "https://pay.example/1"
        assert fake_mailer.send.call_args.kwargs["html"]

    def test_requires_url(self, client):
        assert client.post("/admin/orders/o1/invoice", json={"invoice_url": " "}).status_code == 400

    def test_retailer_without_email(self, client):
        assert client.post("/admin/orders/o3/invoice", json={"invoice_url": "https://x"}).status_code == 404

    def test_email_failure_is_502_and_not_recorded(self, client, fake_repo, fake_mailer):
        fake_mailer.send.side_effect = EmailError("relay down")
        r = client.post("/admin/orders/o1/invoice", json={"invoice_url": "https://x"})
        assert r.status_code == 502
        assert fake_repo.updates == []


class TestLocations:
    def test_set_default(self, client, fake_repo):
        r = client.post("/retailers/r1/locations/l3/default")
        assert r.status_code == 200
        assert fake_repo.default_calls == [("r1", "l3")]
        assert [l["id"] for l in fake_repo.locations if l["is_default"]] == ["l3"]

    def test_set_default_wrong_retailer(self, client, fake_repo):
        assert client.post("/retailers/r2/locations/l1/default").status_code == 404
        assert fake_repo.default_calls == []

    def test_deleting_default_promotes_oldest_remaining(self, client, fake_repo):
        r = client.delete("/retailers/r1/locations/l1")
        assert r.status_code == 200
        assert r.json()["default_location_id"] == "l2"
        assert fake_repo.default_calls == [("r1", "l2")]

    def test_deleting_other_location_keeps_default(self, client, fake_repo):
        r = client.delete("/retailers/r1/locations/l3")
        assert r.json()["default_location_id"] is None
        assert fake_repo.default_calls == []

    def test_first_location_becomes_default(self, client, fake_repo):
        r = client.post("/retailers/r2/locations",
                        json={"location_name": " Store ", "business_address": "9 Pine Rd, Austin, TX 78701"})
        assert r.status_code == 200
        location = r.json()["location"]
        assert location["is_default"] is True
        assert location["location_name"] == "Store"
        assert location["phone"] is None
        assert fake_repo.default_calls == []

    def test_added_location_is_not_default_unless_asked(self, client, fake_repo):
        r = client.post("/retailers/r1/locations", json={"location_name": "Kiosk", "business_address": "2 Mall Way"})
        assert r.json()["location"]["is_default"] is False
        assert [l["id"] for l in fake_repo.locations if l["is_default"]] == ["l1"]

    def test_make_default_moves_the_default(self, client, fake_repo):
        r = client.post("/retailers/r1/locations",
                        json={"location_name": "Kiosk", "business_address": "2 Mall Way", "make_default": True})
        new_id = r.json()["location"]["id"]
        assert r.json()["location"]["is_default"] is True
        assert fake_repo.default_calls == [("r1", new_id)]
        assert [l["id"] for l in fake_repo.locations if l["is_default"]] == [new_id]

    @pytest.mark.parametrize("retailer_id,payload,status", [
        ("r1", {"location_name": " ", "business_address": "2 Mall Way"}, 400),
        ("r1", {"location_name": "Kiosk"}, 400),
        ("ghost", {"location_name": "Kiosk", "business_address": "2 Mall Way"}, 404),
    ])
    def test_add_location_rejects(self, client, fake_repo, retailer_id, payload, status):
        assert client.post(f"/retailers/{retailer_id}/locations", json=payload).status_code == status
        assert len(fake_repo.locations) == 3


class TestSamples:
    def test_new_request(self, client, fake_repo, fake_mailer):
        data = client.post("/retailers/r1/sample-requests").json()
        assert data["already_pending"] is False
        assert fake_repo.sample_requests[0]["status"] == "pending"
        fake_mailer.send.assert_called_once()

    def test_already_pending(self, client, fake_repo, fake_mailer):
        fake_repo.sample_requests.append({"id": "s1", "retailer_id": "r1", "status": "pending"})
        data = client.post("/retailers/r1/sample-requests").json()
        assert data["already_pending"] is True
        assert len(fake_repo.sample_requests) == 1
        fake_mailer.send.assert_not_called()


def test_snapshot_reader_selected_by_config(monkeypatch, tmp_path):
    monkeypatch.setattr(main, "_reader", None)
    monkeypatch.setattr(main.settings, "DATA_SOURCE", "snapshot")
    monkeypatch.setattr(main.settings, "SNAPSHOT_DB", str(tmp_path / "portal.duckdb"))
    reader = main._ensure_reader()
    assert isinstance(reader, main.SnapshotRepository)
    assert reader.db_path.endswith("portal.duckdb")
