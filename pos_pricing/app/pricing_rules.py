from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .validation import UnitKind


@dataclass(frozen=True)
class CartItem:
    """
    One line as the cashier/kiosk sees it.

    `unit_price` is the undiscounted base for the line's unit kind (already
    resolved from product retail/pack prices by the caller).
    """

    id: int
    product_id: int
    name: str
    qty: Decimal
    unit_price: Decimal
    unit_kind: Optional[str] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    sku: Optional[str] = None


class _Model(BaseModel):
    # Static rule files and the POS client send camelCase; python code uses snake_case.
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class Selector(_Model):
    product_ids: Optional[tuple[int, ...]] = None
    unit_kind: Optional[UnitKind] = None
    category_ids: Optional[tuple[int, ...]] = None
    brand_ids: Optional[tuple[int, ...]] = None
    sku: Optional[str] = None


class _RuleBase(_Model):
    id: str
    name: str = ""
    scope: Literal["ITEM"] = "ITEM"
    selector: Optional[Selector] = None
    priority: int = 0
    enabled: bool = True
    stackable: bool = False
    notes: Optional[str] = None


class PriceOverrideRule(_RuleBase):
    kind: Literal["PRICE_OVERRIDE"] = "PRICE_OVERRIDE"
    price_override: Decimal = Field(ge=0)


class PercentOffRule(_RuleBase):
    kind: Literal["PERCENT_OFF"] = "PERCENT_OFF"
    percent_off: Decimal = Field(ge=0, le=100)
    stackable: bool = True


Rule = Annotated[Union[PriceOverrideRule, PercentOffRule], Field(discriminator="kind")]

_RULE_LIST = TypeAdapter(list[Rule])


def parse_rules(raw) -> list:
    """Validate statically configured rules (list of dicts) into typed rules."""
    return _RULE_LIST.validate_python(list(raw or []))


def dump_rules(rules) -> list[dict]:
    return _RULE_LIST.dump_python(list(rules), mode="json", by_alias=True)


def load_static_rules(path: Optional[str]) -> list:
    if not path:
        return []
    return parse_rules(json.loads(Path(path).read_text(encoding="utf-8")))


def matches(item: CartItem, selector: Optional[Selector]) -> bool:
    # Empty collections count as "not set" so an all-empty selector still matches everything.
    if selector is None:
        return True
    if selector.product_ids and item.product_id not in selector.product_ids:
        return False
    if selector.unit_kind and selector.unit_kind != item.unit_kind:
        return False
    if selector.category_ids and item.category_id not in selector.category_ids:
        return False
    if selector.brand_ids and item.brand_id not in selector.brand_ids:
        return False
    if selector.sku and selector.sku != item.sku:
        return False
    return True
