import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from pos_pricing.app.config import settings
from pos_pricing.app.routers import pricing as pricing_router
from pos_pricing.tests.fakes import FakeAsyncConn, fake_get_conn, price_row


PRODUCT = {"id": 7, "price": "50", "srp": "500", "allow_pack_sale": True}
CREATED = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn(monkeypatch):
    c = FakeAsyncConn(price_rows=[price_row(1, value="450")], products=[PRODUCT])
    monkeypatch.setattr(pricing_router, "get_conn", fake_get_conn(c))
    monkeypatch.setattr(settings, "pricing_rules_file", None)
    return c


def _static_rules_file(tmp_path, monkeypatch, rules):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps(rules), encoding="utf-8")
    monkeypatch.setattr(settings, "pricing_rules_file", str(path))


def test_quote_uses_customer_price(conn):
    data = pricing_router.QuoteIn(customer_id=5, items=[{"product_id": 7, "qty": "2", "unit_kind": "pack"}])
    res = asyncio.run(pricing_router.quote(data))
    assert res["total"] == Decimal("900.00")
    line = res["items"][0]
    assert line["base_unit_price"] == Decimal("500.00")
    assert line["effective_unit_price"] == Decimal("450.00")
    assert line["discount_per_unit"] == Decimal("50.00")


def test_quote_without_items_does_not_touch_the_db(conn):
    res = asyncio.run(pricing_router.quote(pricing_router.QuoteIn(items=[])))
    assert res == {"items": [], "total": Decimal("0")}
    assert conn.executed == []


def test_allowed_price_applies_static_rules(conn, tmp_path, monkeypatch):
    _static_rules_file(tmp_path, monkeypatch, [{"id": "P10", "kind": "PERCENT_OFF", "percentOff": 10}])
    res = asyncio.run(pricing_router.allowed_price(7, cid=None, unit="pack"))
    assert res == {"ok": True, "allowed": Decimal("450.00"), "base": Decimal("500.00"), "unit": "PACK"}
    res = asyncio.run(pricing_router.allowed_price(7, cid=5, unit="PACK"))
    assert res["allowed"] == Decimal("405.00")


def test_allowed_price_unknown_product(conn):
    with pytest.raises(HTTPException) as ei:
        asyncio.run(pricing_router.allowed_price(99, cid=5, unit="PACK"))
    assert ei.value.status_code == 404


def test_broken_static_rules_file_is_an_error(conn, tmp_path, monkeypatch):
    _static_rules_file(tmp_path, monkeypatch, [{"id": "bad", "kind": "PERCENT_OFF", "percentOff": 150}])
    with pytest.raises(HTTPException) as ei:
        asyncio.run(pricing_router.allowed_price(7, cid=None, unit="PACK"))
    assert ei.value.status_code == 500


def test_customer_rules_are_listed_in_wire_form(conn):
    conn.price_rows.append(price_row(2, mode="FIXED_DISCOUNT", value="15", unit_kind="RETAIL"))
    res = asyncio.run(pricing_router.customer_rules(5))
    by_id = {r["id"]: r for r in res["rules"]}
    assert by_id["CIP:1"]["kind"] == "PRICE_OVERRIDE"
    assert by_id["CIP:1"]["selector"]["productIds"] == [7]
    assert by_id["CIP:2"]["priceOverride"] == "35.00"
    assert asyncio.run(pricing_router.customer_rules(0)) == {"rules": []}


def test_preview_combines_submitted_and_customer_rules(conn):
    data = pricing_router.PreviewIn(
        customer_id=5,
        items=[{"id": 1, "product_id": 7, "qty": 2}],
        rules=[{"id": "P10", "kind": "PERCENT_OFF", "percentOff": 10}],
    )
    res = asyncio.run(pricing_router.preview(data))
    assert res["subtotal"] == Decimal("1000.00")
    assert res["total"] == Decimal("810.00")
    assert res["discount_total"] == Decimal("190.00")
    assert [(d["rule_id"], d["amount"]) for d in res["discounts"]] == [
        ("CIP:1", Decimal("100.00")),
        ("P10", Decimal("90.00")),
    ]
    assert res["adjusted_items"][0]["effective_unit_price"] == Decimal("405.00")


def test_preview_rejects_invalid_rules(conn):
    data = pricing_router.PreviewIn(items=[], rules=[{"id": "x", "kind": "BOGO"}])
    with pytest.raises(HTTPException) as ei:
        asyncio.run(pricing_router.preview(data))
    assert ei.value.status_code == 400


def test_guard_endpoint(conn):
    ok = pricing_router.GuardIn(customer_id=5, lines=[{"id": 1, "product_id": 7, "unit_price": "450", "unit_kind": "PACK"}])
    assert asyncio.run(pricing_router.guard(ok)) == {"ok": True, "approved_below_allowed": []}

    over = pricing_router.GuardIn(customer_id=5, lines=[{"id": 1, "product_id": 7, "unit_price": "500", "unit_kind": "PACK"}])
    with pytest.raises(HTTPException) as ei:
        asyncio.run(pricing_router.guard(over))
    assert ei.value.status_code == 400

    approved = pricing_router.GuardIn(
        customer_id=5,
        lines=[{"id": 1, "product_id": 7, "unit_price": "400", "unit_kind": "PACK"}],
        discount_approved_by="Maria",
    )
    res = asyncio.run(pricing_router.guard(approved))
    assert res["approved_below_allowed"] == [{"line_id": 1, "allowed": Decimal("450.00"), "actual": Decimal("400")}]


def _order_rows(conn, line_totals):
    conn.orders.append(
        {"id": 1001, "customer_id": 5, "created_at": CREATED, "subtotal": None, "total_before_discount": None}
    )
    for i, lt in enumerate(line_totals, start=1):
        conn.order_items.append(
            {"id": i, "order_id": 1001, "product_id": 7, "name": "LPG", "qty": "2", "unit_price": "500",
             "unit_kind": "PACK", "base_unit_price": None, "discount_amount": None, "line_total": lt}
        )


def test_order_total_of_frozen_order(conn):
    _order_rows(conn, ["900", "900"])
    res = asyncio.run(pricing_router.order_total(1001))
    assert res["final_total"] == Decimal("1800.00")
    assert res["basis"] == "LINE_TOTALS"
    assert res["discount_view"]["discount_total"] == Decimal("200.00")
    assert conn.rule_reads == 0


def test_order_total_of_legacy_order(conn):
    _order_rows(conn, [None])
    res = asyncio.run(pricing_router.order_total(1001))
    assert res["final_total"] == Decimal("900.00")
    assert res["basis"] == "RULES_AT_TIME"
    assert res["has_line_totals"] is False


def test_order_total_unknown_order(conn):
    with pytest.raises(HTTPException) as ei:
        asyncio.run(pricing_router.order_total(404))
    assert ei.value.status_code == 404


def test_category_scoped_store_rule_prices_the_same_everywhere(conn, tmp_path, monkeypatch):
    conn.products[0]["category_id"] = 3
    _static_rules_file(
        tmp_path,
        monkeypatch,
        [{"id": "CAT3", "kind": "PERCENT_OFF", "percentOff": 10, "selector": {"categoryIds": [3]}}],
    )
    preview = asyncio.run(
        pricing_router.preview(pricing_router.PreviewIn(items=[{"id": 1, "product_id": 7, "unit_price": "100"}]))
    )
    assert preview["total"] == Decimal("90.00")

    allowed = asyncio.run(pricing_router.allowed_price(7, cid=None, unit="PACK"))
    assert allowed["allowed"] == Decimal("450.00")
    quoted = asyncio.run(pricing_router.quote(pricing_router.QuoteIn(items=[{"product_id": 7}])))
    assert quoted["total"] == Decimal("450.00")

    ok = pricing_router.GuardIn(lines=[{"id": 1, "product_id": 7, "unit_price": "450", "unit_kind": "PACK"}])
    assert asyncio.run(pricing_router.guard(ok))["ok"] is True
    full = pricing_router.GuardIn(lines=[{"id": 1, "product_id": 7, "unit_price": "500", "unit_kind": "PACK"}])
    with pytest.raises(HTTPException):
        asyncio.run(pricing_router.guard(full))
