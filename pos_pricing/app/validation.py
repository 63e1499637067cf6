from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror the Postgres enums used by the order and pricing tables.
UnitKind = Annotated[Literal["RETAIL", "PACK"], BeforeValidator(_to_upper_str)]
PriceMode = Annotated[
    Literal["FIXED_PRICE", "FIXED_DISCOUNT", "PERCENT_DISCOUNT"],
    BeforeValidator(_to_upper_str),
]

UNIT_KINDS = ("RETAIL", "PACK")
PRICE_MODES = ("FIXED_PRICE", "FIXED_DISCOUNT", "PERCENT_DISCOUNT")


def norm_unit_kind(v, *, default: str | None = None) -> str | None:
    c = (str(v or "")).strip().upper()
    return c if c in UNIT_KINDS else default
