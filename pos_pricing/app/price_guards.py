from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, Mapping, Optional, Sequence

from fastapi import HTTPException

from .customer_rules import compute_unit_price_for_customer
from .log import json_log
from .money import MONEY_EPS, peso, to_number
from .product_prices import ProductPrices, canonical_base, infer_unit_kind, selector_attrs


@dataclass(frozen=True)
class SubmittedLine:
    id: int
    product_id: int
    name: str
    unit_price: Decimal
    unit_kind: Optional[str] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    sku: Optional[str] = None


@dataclass(frozen=True)
class PriceViolation:
    line_id: int
    name: str
    unit_kind: str
    allowed: Decimal
    actual: Decimal
    direction: Literal["overcharge", "underprice"]


async def allowed_price_for_line(
    conn,
    customer_id: Optional[int],
    line: SubmittedLine,
    product: ProductPrices,
    extra_rules: Sequence = (),
) -> tuple[str, Decimal]:
    attrs = selector_attrs(product, category_id=line.category_id, brand_id=line.brand_id, sku=line.sku)
    if line.unit_kind:
        kind = line.unit_kind
    else:
        # Lines saved before unit kind was recorded: price both ways, keep the closest.
        allowed = {}
        for k in ("RETAIL", "PACK"):
            base = canonical_base(product, k)
            if base > 0:
                allowed[k] = await compute_unit_price_for_customer(
                    conn,
                    customer_id=customer_id,
                    product_id=product.id,
                    unit_kind=k,
                    base_unit_price=base,
                    extra_rules=extra_rules,
                    **attrs,
                )
        kind = infer_unit_kind(product, line.unit_price, allowed.get("RETAIL"), allowed.get("PACK"))
        if kind in allowed:
            return kind, allowed[kind]
    allowed_price = await compute_unit_price_for_customer(
        conn,
        customer_id=customer_id,
        product_id=product.id,
        unit_kind=kind,
        base_unit_price=canonical_base(product, kind),
        extra_rules=extra_rules,
        **attrs,
    )
    return kind, allowed_price


async def find_price_violations(
    conn,
    customer_id: Optional[int],
    lines: Sequence[SubmittedLine],
    products: Mapping[int, ProductPrices],
    extra_rules: Sequence = (),
) -> list[PriceViolation]:
    """
    Compare submitted unit prices with what the pricing rules allow.

    A failed rule read propagates: checkout must stop rather than fall back to
    the undiscounted price.
    """
    out: list[PriceViolation] = []
    for line in lines or []:
        product = products.get(line.product_id)
        if product is None:
            continue
        kind, allowed = await allowed_price_for_line(conn, customer_id, line, product, extra_rules)
        actual = to_number(line.unit_price)
        direction = None
        if actual > allowed + MONEY_EPS:
            direction = "overcharge"
        elif actual + MONEY_EPS < allowed:
            direction = "underprice"
        if direction:
            out.append(
                PriceViolation(
                    line_id=line.id,
                    name=line.name,
                    unit_kind=kind,
                    allowed=allowed,
                    actual=actual,
                    direction=direction,
                )
            )
    return out


def assert_prices_allowed(violations: Sequence[PriceViolation], discount_approved_by: Optional[str] = None):
    # Charging more than the rules allow is never accepted; pricing below them needs a manager.
    approver = (discount_approved_by or "").strip()
    blocking = [v for v in violations or [] if v.direction == "overcharge" or not approver]
    if not blocking:
        return
    for v in blocking:
        json_log(
            "warning",
            "pricing.guard.violation",
            line_id=v.line_id,
            direction=v.direction,
            allowed=v.allowed,
            actual=v.actual,
        )
    lines = [f"{v.name}: allowed {peso(v.allowed)}, actual {peso(v.actual)}" for v in blocking]
    if any(v.direction == "overcharge" for v in blocking):
        detail = "price exceeds allowed customer price: " + "; ".join(lines)
    else:
        detail = "price below allowed customer price requires manager approval: " + "; ".join(lines)
    raise HTTPException(status_code=400, detail=detail)
