from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext, MAX_EMAX, MAX_PREC


CENT = Decimal("0.01")
ZERO = Decimal("0")

# Commercial money threshold for "is this price different" gates.
MONEY_EPS = Decimal("0.01")


def to_number(v) -> Decimal:
    """
    Coerce any value to a finite Decimal.

    None, NaN, +/-Infinity and unparseable input all become 0. Strings may
    carry thousands separators ("1,250.50"). Never raises.
    """
    if v is None or isinstance(v, bool):
        return ZERO
    if isinstance(v, Decimal):
        d = v
    else:
        raw = v.replace(",", "").strip() if isinstance(v, str) else v
        try:
            # str() keeps floats at their shortest repr (0.285 stays 0.285, not 0.28499...).
            d = Decimal(str(raw))
        except (InvalidOperation, ValueError, TypeError):
            return ZERO
    if not d.is_finite():
        return ZERO
    return d


def round2(v) -> Decimal:
    # Half rounds up (away from zero), same as ROUND_HALF_UP everywhere else in the ledger.
    d = to_number(v)
    with localcontext() as ctx:
        # Cents of a huge amount need more digits than the default 28.
        ctx.prec = min(MAX_PREC, max(ctx.prec, d.adjusted() + 4))
        ctx.Emax = min(MAX_EMAX, max(ctx.Emax, d.adjusted() + 1))
        return d.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp0(v) -> Decimal:
    d = to_number(v)
    return d if d > 0 else ZERO


def peso(v) -> str:
    return f"₱{round2(v):,.2f}"
