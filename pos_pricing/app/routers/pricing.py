from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ValidationError

from ..config import settings
from ..customer_rules import (
    compute_unit_price_for_customer,
    fetch_rows_valid_at,
    fetch_rules_now,
    rules_from_rows,
)
from ..db import get_conn
from ..discounts import apply_discounts
from ..money import ZERO, clamp0, round2
from ..order_totals import (
    Order,
    OrderItem,
    build_discount_view,
    read_frozen_pricing,
    resolve_final_total,
)
from ..price_guards import SubmittedLine, assert_prices_allowed, find_price_violations
from ..pricing_rules import CartItem, dump_rules, load_static_rules, parse_rules
from ..product_prices import canonical_base, canonical_bases, load_products, selector_attrs
from ..validation import UnitKind

router = APIRouter(prefix="/pricing", tags=["pricing"])


def _static_rules() -> list:
    try:
        return load_static_rules(settings.pricing_rules_file)
    except (OSError, ValueError) as ex:
        # ValidationError is a ValueError: a broken rules file must not price silently.
        raise HTTPException(status_code=500, detail=f"invalid pricing rules file: {ex}")


def _customer_id(v: Optional[int]) -> Optional[int]:
    return int(v) if v is not None and int(v) > 0 else None


class QuoteItemIn(BaseModel):
    product_id: int
    qty: Decimal = Decimal("1")
    unit_kind: UnitKind = "PACK"
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    sku: Optional[str] = None


class QuoteIn(BaseModel):
    customer_id: Optional[int] = None
    items: List[QuoteItemIn] = []


@router.post("/quote")
async def quote(data: QuoteIn):
    """
    Live quote for the cashier/kiosk screens.

    Uses the same allowed-price function as the checkout guard, so what the
    customer is shown is exactly what checkout will enforce.
    """
    customer_id = _customer_id(data.customer_id)
    items = [it for it in data.items if it.product_id > 0]
    if not items:
        return {"items": [], "total": ZERO}
    static_rules = _static_rules()

    out = []
    total = ZERO
    async with get_conn() as conn:
        products = await load_products(conn, [it.product_id for it in items])
        for it in items:
            p = products.get(it.product_id)
            if p is None:
                continue
            qty = clamp0(it.qty)
            base = canonical_base(p, it.unit_kind)
            eff = await compute_unit_price_for_customer(
                conn,
                customer_id=customer_id,
                product_id=p.id,
                unit_kind=it.unit_kind,
                base_unit_price=base,
                extra_rules=static_rules,
                **selector_attrs(p, category_id=it.category_id, brand_id=it.brand_id, sku=it.sku),
            )
            line_total = round2(eff * qty)
            total += line_total
            out.append(
                {
                    "product_id": p.id,
                    "unit_kind": it.unit_kind,
                    "base_unit_price": round2(base),
                    "effective_unit_price": eff,
                    "discount_per_unit": max(ZERO, round2(base - eff)),
                    "line_total": line_total,
                }
            )
    return {"items": out, "total": round2(total)}


@router.get("/allowed")
async def allowed_price(
    pid: int,
    cid: Optional[int] = None,
    unit: str = Query("PACK"),
):
    if pid <= 0:
        raise HTTPException(status_code=400, detail="invalid pid")
    kind = "RETAIL" if (unit or "").strip().upper() == "RETAIL" else "PACK"
    async with get_conn() as conn:
        products = await load_products(conn, [pid])
        p = products.get(pid)
        if p is None:
            raise HTTPException(status_code=404, detail="product not found")
        base = canonical_base(p, kind)
        if base <= 0:
            raise HTTPException(status_code=400, detail="no base price")
        allowed = await compute_unit_price_for_customer(
            conn,
            customer_id=_customer_id(cid),
            product_id=pid,
            unit_kind=kind,
            base_unit_price=base,
            extra_rules=_static_rules(),
            **selector_attrs(p),
        )
    return {"ok": True, "allowed": allowed, "base": round2(base), "unit": kind}


@router.get("/customers/{customer_id}/rules")
async def customer_rules(customer_id: int):
    if customer_id <= 0:
        return {"rules": []}
    async with get_conn() as conn:
        rows = await fetch_rows_valid_at(conn, customer_id, datetime.now(timezone.utc))
        products = await load_products(conn, [r.product_id for r in rows])
    return {"rules": dump_rules(rules_from_rows(rows, canonical_bases(products.values())))}


class PreviewItemIn(BaseModel):
    id: int
    product_id: int
    name: str = ""
    qty: Decimal = Decimal("1")
    unit_price: Optional[Decimal] = None
    unit_kind: UnitKind = "PACK"
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    sku: Optional[str] = None


class PreviewIn(BaseModel):
    customer_id: Optional[int] = None
    items: List[PreviewItemIn] = []
    rules: List[dict] = []


@router.post("/preview")
async def preview(data: PreviewIn):
    try:
        submitted = parse_rules(data.rules)
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=f"invalid rules: {ex.error_count()} error(s)")
    customer_id = _customer_id(data.customer_id)

    async with get_conn() as conn:
        products = await load_products(conn, [it.product_id for it in data.items])
        cart = []
        for it in data.items:
            p = products.get(it.product_id)
            unit_price = it.unit_price
            if unit_price is None:
                unit_price = canonical_base(p, it.unit_kind) if p is not None else ZERO
            cart.append(
                CartItem(
                    id=it.id,
                    product_id=it.product_id,
                    name=it.name,
                    qty=clamp0(it.qty),
                    unit_price=clamp0(unit_price),
                    unit_kind=it.unit_kind,
                    **selector_attrs(p, category_id=it.category_id, brand_id=it.brand_id, sku=it.sku),
                )
            )
        rules = _static_rules() + submitted
        rules += await fetch_rules_now(conn, customer_id, canonical_bases=canonical_bases(products.values()))

    res = apply_discounts(cart, rules)
    return {
        "subtotal": res.subtotal,
        "discounts": [{"rule_id": d.rule_id, "name": d.name, "amount": d.amount} for d in res.discounts],
        "discount_total": res.discount_total,
        "total": res.total,
        "adjusted_items": [
            {"id": a.id, "product_id": a.product_id, "effective_unit_price": a.effective_unit_price}
            for a in res.adjusted_items
        ],
    }


class GuardLineIn(BaseModel):
    id: int
    product_id: int
    name: str = ""
    unit_price: Decimal
    unit_kind: Optional[UnitKind] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    sku: Optional[str] = None


class GuardIn(BaseModel):
    customer_id: Optional[int] = None
    lines: List[GuardLineIn] = []
    discount_approved_by: Optional[str] = None


@router.post("/guard")
async def guard(data: GuardIn):
    lines = [
        SubmittedLine(
            id=l.id,
            product_id=l.product_id,
            name=l.name,
            unit_price=l.unit_price,
            unit_kind=l.unit_kind,
            category_id=l.category_id,
            brand_id=l.brand_id,
            sku=l.sku,
        )
        for l in data.lines
    ]
    async with get_conn() as conn:
        products = await load_products(conn, [l.product_id for l in lines])
        violations = await find_price_violations(
            conn, _customer_id(data.customer_id), lines, products, extra_rules=_static_rules()
        )
    assert_prices_allowed(violations, data.discount_approved_by)
    return {
        "ok": True,
        "approved_below_allowed": [
            {"line_id": v.line_id, "allowed": v.allowed, "actual": v.actual} for v in violations
        ],
    }


async def _load_order(conn, order_id: int) -> Optional[Order]:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            SELECT id, customer_id, created_at, subtotal, total_before_discount
            FROM orders
            WHERE id = %s
            """,
            (order_id,),
        )
        head = await cur.fetchone()
        if not head:
            return None
        await cur.execute(
            """
            SELECT id, product_id, name, qty, unit_price, unit_kind,
                   base_unit_price, discount_amount, line_total
            FROM order_items
            WHERE order_id = %s
            ORDER BY id
            """,
            (order_id,),
        )
        items = await cur.fetchall()
    return Order(
        id=int(head["id"]),
        customer_id=head.get("customer_id"),
        created_at=head.get("created_at") or datetime.now(timezone.utc),
        subtotal=head.get("subtotal"),
        total_before_discount=head.get("total_before_discount"),
        items=tuple(OrderItem.from_db(r) for r in (items or [])),
    )


@router.get("/orders/{order_id}/total")
async def order_total(order_id: int):
    async with get_conn() as conn:
        order = await _load_order(conn, order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="order not found")
        products = await load_products(conn, [it.product_id for it in order.items])
        resolved = await resolve_final_total(conn, order, products)

    view = build_discount_view(order)
    frozen = read_frozen_pricing(order)
    return {
        "order_id": order.id,
        "final_total": resolved.final_total,
        "basis": resolved.basis,
        "has_line_totals": resolved.has_line_totals,
        "discount_view": {
            "rows": [asdict(r) for r in view.rows],
            "subtotal": view.subtotal,
            "total_after": view.total_after,
            "discount_total": view.discount_total,
        },
        "frozen_mismatch": frozen.mismatch,
    }
