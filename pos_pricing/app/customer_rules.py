from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from .discounts import apply_discounts
from .log import json_log
from .money import ZERO, round2, to_number
from .pricing_rules import CartItem, PercentOffRule, PriceOverrideRule, Selector

# Customer-specific rules outrank the default (0) priority of store-wide rules.
CUSTOMER_RULE_PRIORITY = 10
CUSTOMER_RULE_PREFIX = "CIP:"


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    # timestamp(3) columns come back naive; they are stored in UTC.
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


@dataclass(frozen=True)
class CustomerPriceRow:
    id: int
    customer_id: int
    product_id: int
    unit_kind: str
    mode: str
    value: Decimal
    active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    note: Optional[str] = None

    @classmethod
    def from_db(cls, row: dict) -> "CustomerPriceRow":
        return cls(
            id=int(row["id"]),
            customer_id=int(row["customer_id"]),
            product_id=int(row["product_id"]),
            unit_kind=str(row["unit_kind"]).strip().upper(),
            mode=str(row["mode"]).strip().upper(),
            value=to_number(row.get("value")),
            active=bool(row.get("active", True)),
            starts_at=row.get("starts_at"),
            ends_at=row.get("ends_at"),
            note=row.get("note"),
        )


def is_valid_at(row: CustomerPriceRow, at: datetime) -> bool:
    if not row.active:
        return False
    at = _as_utc(at)
    starts = _as_utc(row.starts_at)
    ends = _as_utc(row.ends_at)
    if starts is not None and at < starts:
        return False
    if ends is not None and at > ends:
        return False
    return True


def rule_from_row(row: CustomerPriceRow, canonical_base: Optional[Decimal] = None):
    """
    Translate one persisted customer price row into an in-memory rule.

    FIXED_DISCOUNT ("X off") becomes a price override against the canonical base
    for the row's unit kind, so the discount engine only ever sees overrides and
    percentages. Returns None when that base is unknown: converting against a
    zero base would give the product away.
    """
    common = dict(
        id=f"{CUSTOMER_RULE_PREFIX}{row.id}",
        selector=Selector(product_ids=(row.product_id,), unit_kind=row.unit_kind),
        priority=CUSTOMER_RULE_PRIORITY,
        enabled=True,
        notes=row.note,
    )
    value = max(ZERO, to_number(row.value))
    if row.mode == "FIXED_PRICE":
        return PriceOverrideRule(name="Customer Price", price_override=value, stackable=False, **common)
    if row.mode == "PERCENT_DISCOUNT":
        return PercentOffRule(name="Customer % Off", percent_off=min(value, Decimal("100")), stackable=True, **common)
    if row.mode == "FIXED_DISCOUNT":
        if canonical_base is None:
            return None
        override = max(ZERO, round2(to_number(canonical_base) - value))
        return PriceOverrideRule(name="Customer Fixed Off", price_override=override, stackable=False, **common)
    raise ValueError(f"unsupported customer price mode: {row.mode}")


def rules_from_rows(
    rows: Sequence[CustomerPriceRow],
    canonical_bases: Optional[Mapping[tuple[int, str], Decimal]] = None,
) -> list:
    bases = canonical_bases or {}
    rules = []
    for row in rows:
        rule = rule_from_row(row, bases.get((row.product_id, row.unit_kind)))
        if rule is None:
            json_log(
                "warning",
                "pricing.customer_rule.skipped",
                rule_id=f"{CUSTOMER_RULE_PREFIX}{row.id}",
                customer_id=row.customer_id,
                product_id=row.product_id,
                unit_kind=row.unit_kind,
                reason="missing_canonical_base",
            )
            continue
        rules.append(rule)
    return rules


async def fetch_rows_valid_at(
    conn,
    customer_id: int,
    at: datetime,
    *,
    product_id: Optional[int] = None,
    unit_kind: Optional[str] = None,
) -> list[CustomerPriceRow]:
    at = _as_utc(at)
    where = [
        "customer_id = %s",
        "active = true",
        "(starts_at IS NULL OR starts_at <= %s)",
        "(ends_at IS NULL OR ends_at >= %s)",
    ]
    params: list = [customer_id, at, at]
    if product_id is not None:
        where.append("product_id = %s")
        params.append(product_id)
    if unit_kind is not None:
        where.append("unit_kind = %s")
        params.append(unit_kind)
    async with conn.cursor() as cur:
        await cur.execute(
            f"""
            SELECT id, customer_id, product_id, unit_kind, mode, value, note,
                   active, starts_at, ends_at
            FROM customer_item_prices
            WHERE {' AND '.join(where)}
            ORDER BY created_at DESC, id DESC
            """,
            params,
        )
        raw = await cur.fetchall()
    rows = [CustomerPriceRow.from_db(r) for r in (raw or [])]
    return [r for r in rows if is_valid_at(r, at)]


async def fetch_rules_valid_at(
    conn,
    customer_id: Optional[int],
    at: datetime,
    *,
    canonical_bases: Optional[Mapping[tuple[int, str], Decimal]] = None,
    product_id: Optional[int] = None,
    unit_kind: Optional[str] = None,
) -> list:
    """
    A customer's pricing rules as they stood at `at` (one read, one snapshot).

    `canonical_bases` maps (product_id, unit_kind) to the undiscounted base the
    caller resolved from product prices; it is only needed for FIXED_DISCOUNT rows.
    """
    if not customer_id:
        return []
    rows = await fetch_rows_valid_at(conn, customer_id, at, product_id=product_id, unit_kind=unit_kind)
    return rules_from_rows(rows, canonical_bases)


async def fetch_rules_now(conn, customer_id: Optional[int], **kwargs) -> list:
    return await fetch_rules_valid_at(conn, customer_id, datetime.now(timezone.utc), **kwargs)


async def compute_unit_price_for_customer(
    conn,
    *,
    customer_id: Optional[int],
    product_id: int,
    unit_kind: str,
    base_unit_price,
    extra_rules: Sequence = (),
    category_id: Optional[int] = None,
    brand_id: Optional[int] = None,
    sku: Optional[str] = None,
) -> Decimal:
    """
    Allowed unit price for one product/unit kind for this customer, right now.

    Quote previews and the checkout price guard must both go through here so the
    price shown and the price enforced can never diverge. Pass the line's
    category, brand and sku too, or rules scoped by them will not match here.
    """
    base = round2(base_unit_price)
    if not product_id or base <= 0:
        return base
    rules = list(extra_rules or [])
    if customer_id:
        rules += await fetch_rules_now(
            conn,
            customer_id,
            canonical_bases={(product_id, unit_kind): base},
            product_id=product_id,
            unit_kind=unit_kind,
        )
    if not rules:
        return base
    line = CartItem(
        id=0,
        product_id=product_id,
        name="",
        qty=Decimal("1"),
        unit_price=base,
        unit_kind=unit_kind,
        category_id=category_id,
        brand_id=brand_id,
        sku=sku,
    )
    out = apply_discounts([line], rules)
    eff = out.effective_price(0)
    return round2(base if eff is None else eff)
