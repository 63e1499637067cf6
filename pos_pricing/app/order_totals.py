from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Literal, Mapping, Optional

from .customer_rules import fetch_rules_valid_at
from .discounts import apply_discounts
from .log import json_log
from .money import MONEY_EPS, ZERO, round2, to_number
from .pricing_rules import CartItem
from .product_prices import ProductPrices, canonical_bases, infer_unit_kind, selector_attrs
from .validation import norm_unit_kind

TotalBasis = Literal["LINE_TOTALS", "ORDER_TOTAL", "RULES_AT_TIME"]


def _opt_decimal(v) -> Optional[Decimal]:
    if v is None:
        return None
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class OrderItem:
    id: int
    product_id: int
    name: str
    qty: Decimal
    unit_price: Decimal
    # Frozen at checkout; None on orders that predate the snapshot columns.
    line_total: Optional[Decimal] = None
    base_unit_price: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    unit_kind: Optional[str] = None

    @classmethod
    def from_db(cls, row: dict) -> "OrderItem":
        return cls(
            id=int(row["id"]),
            product_id=int(row["product_id"]),
            name=str(row.get("name") or ""),
            qty=to_number(row.get("qty")),
            unit_price=to_number(row.get("unit_price")),
            line_total=_opt_decimal(row.get("line_total")),
            base_unit_price=_opt_decimal(row.get("base_unit_price")),
            discount_amount=_opt_decimal(row.get("discount_amount")),
            unit_kind=norm_unit_kind(row.get("unit_kind")),
        )


@dataclass(frozen=True)
class Order:
    id: int
    customer_id: Optional[int]
    created_at: datetime
    subtotal: Optional[Decimal] = None
    # Historical column name; holds the order-level payable total.
    total_before_discount: Optional[Decimal] = None
    items: tuple[OrderItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FinalTotal:
    final_total: Decimal
    basis: TotalBasis
    has_line_totals: bool


def _is_frozen(v) -> bool:
    if v is None:
        return False
    try:
        return Decimal(str(v)).is_finite()
    except (InvalidOperation, ValueError, TypeError):
        return False


def has_frozen_line_totals(items) -> bool:
    items = list(items or [])
    return bool(items) and all(_is_frozen(it.line_total) for it in items)


def order_is_sealed(order: Order) -> bool:
    """Majority of lines carry a frozen total: the order's history is closed."""
    items = list(order.items or [])
    frozen = sum(1 for it in items if _is_frozen(it.line_total))
    return bool(items) and frozen * 2 > len(items)


def build_cart_from_order_items(items, products: Optional[Mapping[int, ProductPrices]] = None) -> list[CartItem]:
    products = products or {}
    cart = []
    for it in items or []:
        kind = it.unit_kind
        if kind is None:
            p = products.get(it.product_id)
            kind = infer_unit_kind(p, it.unit_price) if p is not None else "PACK"
        cart.append(
            CartItem(
                id=it.id,
                product_id=it.product_id,
                name=it.name,
                qty=to_number(it.qty),
                unit_price=to_number(it.unit_price),
                unit_kind=kind,
                **selector_attrs(products.get(it.product_id)),
            )
        )
    return cart


async def resolve_final_total(
    conn,
    order: Order,
    products: Optional[Mapping[int, ProductPrices]] = None,
) -> FinalTotal:
    """
    Authoritative final total of a persisted order, freeze-first.

    1) LINE_TOTALS: every line carries a frozen line_total -> their sum. No rule
       lookup happens, so later rule edits cannot move the number.
    2) ORDER_TOTAL: the order-level total column is set -> use it as-is.
    3) RULES_AT_TIME: legacy orders only. Rebuild the cart and re-price it with
       the customer's rules as they stood at order.created_at (not now).
    """
    items = list(order.items or [])
    if has_frozen_line_totals(items):
        total = round2(sum((to_number(it.line_total) for it in items), ZERO))
        return FinalTotal(final_total=total, basis="LINE_TOTALS", has_line_totals=True)

    if _is_frozen(order.total_before_discount):
        return FinalTotal(final_total=round2(order.total_before_discount), basis="ORDER_TOTAL", has_line_totals=False)

    if order_is_sealed(order):
        json_log("warning", "pricing.order_total.sealed_fallback", order_id=order.id, item_count=len(items))
    json_log("info", "pricing.order_total.legacy_fallback", order_id=order.id, customer_id=order.customer_id)

    products = products or {}
    rules = await fetch_rules_valid_at(
        conn,
        order.customer_id,
        order.created_at,
        canonical_bases=canonical_bases(products.values()),
    )
    cart = build_cart_from_order_items(items, products)
    pricing = apply_discounts(cart, rules)
    return FinalTotal(final_total=pricing.total, basis="RULES_AT_TIME", has_line_totals=False)


@dataclass(frozen=True)
class DiscountViewRow:
    id: int
    name: str
    qty: Decimal
    orig_unit: Decimal
    eff_unit: Decimal
    per_unit_disc: Decimal
    line_disc: Decimal
    line_final: Decimal


@dataclass(frozen=True)
class DiscountView:
    rows: tuple[DiscountViewRow, ...]
    subtotal: Decimal
    total_after: Decimal
    discount_total: Decimal


def build_discount_view(order: Order) -> DiscountView:
    # Display only. Without frozen line totals the per-rule attribution is gone,
    # so rows show no per-line discount even if one was given at the time.
    items = list(order.items or [])
    frozen = has_frozen_line_totals(items)
    rows = []
    for it in items:
        qty = to_number(it.qty)
        orig = round2(it.unit_price)
        eff = round2(to_number(it.line_total) / qty) if frozen and qty > 0 else orig
        per_unit = max(ZERO, round2(orig - eff))
        rows.append(
            DiscountViewRow(
                id=it.id,
                name=it.name,
                qty=qty,
                orig_unit=orig,
                eff_unit=eff,
                per_unit_disc=per_unit,
                line_disc=round2(per_unit * qty),
                line_final=round2(eff * qty),
            )
        )

    subtotal = round2(sum((r.orig_unit * r.qty for r in rows), ZERO))
    if frozen:
        total_after = round2(sum((r.line_final for r in rows), ZERO))
    elif _is_frozen(order.total_before_discount):
        total_after = round2(order.total_before_discount)
    else:
        total_after = subtotal
    return DiscountView(
        rows=tuple(rows),
        subtotal=subtotal,
        total_after=total_after,
        discount_total=max(ZERO, round2(subtotal - total_after)),
    )


@dataclass(frozen=True)
class FrozenPricing:
    computed_subtotal: Decimal
    computed_total_before_discount: Decimal
    computed_discount_total: Decimal
    db_subtotal: Optional[Decimal]
    db_total_before: Optional[Decimal]
    subtotal_mismatch: bool
    total_before_mismatch: bool

    @property
    def mismatch(self) -> bool:
        return self.subtotal_mismatch or self.total_before_mismatch


def read_frozen_pricing(order: Order, tolerance: Decimal = MONEY_EPS) -> FrozenPricing:
    """
    Totals read only from the frozen line snapshots, checked against the header.

    Not a pricing engine: no rules, no product prices. Used to detect header
    totals that drifted from the lines they summarize.
    """
    items = list(order.items or [])
    computed_subtotal = round2(sum((to_number(it.line_total) for it in items), ZERO))
    computed_before = round2(sum((to_number(it.qty) * to_number(it.base_unit_price) for it in items), ZERO))
    computed_discount = round2(sum((to_number(it.qty) * to_number(it.discount_amount) for it in items), ZERO))

    db_subtotal = None if order.subtotal is None else round2(order.subtotal)
    db_before = None if order.total_before_discount is None else round2(order.total_before_discount)
    return FrozenPricing(
        computed_subtotal=computed_subtotal,
        computed_total_before_discount=computed_before,
        computed_discount_total=computed_discount,
        db_subtotal=db_subtotal,
        db_total_before=db_before,
        subtotal_mismatch=db_subtotal is not None and abs(db_subtotal - computed_subtotal) > tolerance,
        total_before_mismatch=db_before is not None and abs(db_before - computed_before) > tolerance,
    )
