from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from .money import clamp0, to_number

# Snapshot price vs retail base tolerance when no allowed price is available.
RETAIL_MATCH_TOLERANCE = Decimal("0.25")


@dataclass(frozen=True)
class ProductPrices:
    id: int
    price: Decimal  # retail (per-unit) base
    srp: Decimal  # pack (whole) base
    allow_pack_sale: bool = True  # legacy column name: retail sale allowed
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    sku: Optional[str] = None

    @classmethod
    def from_db(cls, row: dict) -> "ProductPrices":
        allow = row.get("allow_pack_sale")
        return cls(
            id=int(row["id"]),
            price=clamp0(row.get("price")),
            srp=clamp0(row.get("srp")),
            allow_pack_sale=True if allow is None else bool(allow),
            category_id=row.get("category_id"),
            brand_id=row.get("brand_id"),
            sku=row.get("sku"),
        )


def retail_enabled(p: ProductPrices) -> bool:
    return bool(p.allow_pack_sale) and p.price > 0


def pack_base(p: ProductPrices) -> Decimal:
    return p.srp if p.srp > 0 else p.price


def canonical_base(p: ProductPrices, unit_kind: str) -> Decimal:
    """
    Undiscounted starting price for a product sold as `unit_kind`.

    - PACK: srp when set, else the retail price.
    - RETAIL: the retail price when retail sale is enabled; otherwise the line
      is priced as a pack.
    """
    if unit_kind == "RETAIL" and retail_enabled(p):
        return p.price
    return pack_base(p)


def selector_attrs(
    p: Optional[ProductPrices],
    *,
    category_id: Optional[int] = None,
    brand_id: Optional[int] = None,
    sku: Optional[str] = None,
) -> dict:
    # Attributes sent with the line win; the product row fills the gaps.
    if p is not None:
        category_id = p.category_id if category_id is None else category_id
        brand_id = p.brand_id if brand_id is None else brand_id
        sku = sku or p.sku
    return {"category_id": category_id, "brand_id": brand_id, "sku": sku}


def canonical_bases(products: Iterable[ProductPrices]) -> dict[tuple[int, str], Decimal]:
    out: dict[tuple[int, str], Decimal] = {}
    for p in products or []:
        out[(p.id, "PACK")] = canonical_base(p, "PACK")
        out[(p.id, "RETAIL")] = canonical_base(p, "RETAIL")
    return out


def infer_unit_kind(
    p: ProductPrices,
    unit_price,
    allowed_retail: Optional[Decimal] = None,
    allowed_pack: Optional[Decimal] = None,
) -> str:
    """
    Guess whether a legacy order line (no unit kind recorded) was sold retail or as a pack.

    The snapshot unit price is compared against the allowed price of each unit kind;
    the closest wins (ties go to RETAIL). Without allowed prices we fall back to a
    loose match against the retail base, else PACK.
    """
    price = to_number(unit_price)
    d_retail = abs(price - allowed_retail) if (allowed_retail is not None and retail_enabled(p)) else None
    d_pack = abs(price - allowed_pack) if allowed_pack is not None else None
    if d_retail is not None and (d_pack is None or d_retail <= d_pack):
        return "RETAIL"
    if d_pack is not None:
        return "PACK"
    if retail_enabled(p) and abs(price - p.price) <= RETAIL_MATCH_TOLERANCE:
        return "RETAIL"
    return "PACK"


async def load_products(conn, product_ids) -> dict[int, ProductPrices]:
    ids = sorted({int(x) for x in (product_ids or []) if x is not None and int(x) > 0})
    if not ids:
        return {}
    async with conn.cursor() as cur:
        await cur.execute(
            """
            SELECT id, price, srp, allow_pack_sale, category_id, brand_id, sku
            FROM products
            WHERE id = ANY(%s)
            """,
            (ids,),
        )
        rows = await cur.fetchall()
    products = [ProductPrices.from_db(r) for r in (rows or [])]
    return {p.id: p for p in products}
