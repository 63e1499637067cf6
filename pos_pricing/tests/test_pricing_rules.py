import json
from decimal import Decimal

import pytest
from pydantic import ValidationError

from pos_pricing.app.pricing_rules import (
    CartItem,
    PercentOffRule,
    PriceOverrideRule,
    Selector,
    dump_rules,
    load_static_rules,
    matches,
    parse_rules,
)


def _item(**kw):
    base = dict(id=1, product_id=7, name="LPG 11kg", qty=Decimal("1"), unit_price=Decimal("100"), unit_kind="PACK")
    base.update(kw)
    return CartItem(**base)


def test_absent_or_empty_selector_matches_everything():
    assert matches(_item(), None) is True
    assert matches(_item(), Selector()) is True
    assert matches(_item(), Selector(product_ids=(), category_ids=())) is True


def test_selector_fields_are_conjunctive():
    sel = Selector(product_ids=(7, 8), unit_kind="PACK")
    assert matches(_item(), sel) is True
    assert matches(_item(product_id=9), sel) is False
    assert matches(_item(unit_kind="RETAIL"), sel) is False


def test_unit_kind_scope_isolates_retail_lines():
    sel = Selector(product_ids=(7,), unit_kind="PACK")
    assert matches(_item(unit_kind="RETAIL"), sel) is False
    # A line with no unit kind cannot satisfy a unit-kind scoped rule.
    assert matches(_item(unit_kind=None), sel) is False


def test_category_brand_and_sku_are_exact():
    assert matches(_item(category_id=3), Selector(category_ids=(3,))) is True
    assert matches(_item(category_id=None), Selector(category_ids=(3,))) is False
    assert matches(_item(brand_id=2), Selector(brand_ids=(1,))) is False
    assert matches(_item(sku="LPG-11"), Selector(sku="LPG-11")) is True
    assert matches(_item(sku="LPG-11K"), Selector(sku="LPG-11")) is False
    assert matches(_item(sku=None), Selector(sku="LPG-11")) is False


def test_parse_rules_accepts_camel_case_config():
    rules = parse_rules(
        [
            {"id": "A", "name": "Promo", "kind": "PERCENT_OFF", "percentOff": 20, "selector": {"productIds": [7], "unitKind": "pack"}},
            {"id": "B", "kind": "PRICE_OVERRIDE", "priceOverride": "35.50", "priority": 3},
        ]
    )
    assert isinstance(rules[0], PercentOffRule)
    assert rules[0].percent_off == Decimal("20")
    assert rules[0].selector.product_ids == (7,)
    assert rules[0].selector.unit_kind == "PACK"
    assert rules[0].stackable is True
    assert isinstance(rules[1], PriceOverrideRule)
    assert rules[1].price_override == Decimal("35.50")
    assert rules[1].priority == 3
    assert rules[1].enabled is True


def test_parse_rules_rejects_negative_values_and_unknown_kinds():
    with pytest.raises(ValidationError):
        parse_rules([{"id": "A", "kind": "PRICE_OVERRIDE", "priceOverride": -1}])
    with pytest.raises(ValidationError):
        parse_rules([{"id": "A", "kind": "PERCENT_OFF", "percentOff": 150}])
    with pytest.raises(ValidationError):
        parse_rules([{"id": "A", "kind": "BUY_X_GET_Y"}])


def test_dump_rules_uses_client_field_names():
    dumped = dump_rules([PriceOverrideRule(id="CIP:1", name="Customer Price", price_override=Decimal("35"))])
    assert dumped[0]["kind"] == "PRICE_OVERRIDE"
    assert dumped[0]["id"] == "CIP:1"
    assert "priceOverride" in dumped[0]


def test_load_static_rules_from_file(tmp_path):
    assert load_static_rules(None) == []
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([{"id": "S1", "kind": "PERCENT_OFF", "percentOff": 5}]), encoding="utf-8")
    rules = load_static_rules(str(path))
    assert [r.id for r in rules] == ["S1"]
