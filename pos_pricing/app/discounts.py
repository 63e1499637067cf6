from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from .money import ZERO, round2, to_number
from .pricing_rules import CartItem, PercentOffRule, PriceOverrideRule, matches


@dataclass(frozen=True)
class AppliedDiscount:
    rule_id: str
    name: str
    amount: Decimal  # total removed by this rule across all lines/qty


@dataclass(frozen=True)
class AdjustedItem:
    id: int
    product_id: int
    effective_unit_price: Decimal


@dataclass(frozen=True)
class PricingResult:
    subtotal: Decimal
    discounts: tuple[AppliedDiscount, ...]
    discount_total: Decimal
    total: Decimal
    adjusted_items: tuple[AdjustedItem, ...]

    def effective_price(self, line_id) -> Optional[Decimal]:
        for a in self.adjusted_items:
            if a.id == line_id:
                return a.effective_unit_price
        return None

    def effective_by_line(self) -> dict:
        return {a.id: a.effective_unit_price for a in self.adjusted_items}


def sort_rules(rules) -> list:
    # Load-bearing order: decides which override wins a line. Priority desc, then id asc.
    active = [r for r in (rules or []) if r.enabled is not False]
    return sorted(active, key=lambda r: (-int(r.priority or 0), str(r.id)))


def _split_by_kind(rules) -> tuple[list[PriceOverrideRule], list[PercentOffRule]]:
    overrides: list[PriceOverrideRule] = []
    percents: list[PercentOffRule] = []
    for r in rules:
        if isinstance(r, PriceOverrideRule):
            overrides.append(r)
        elif isinstance(r, PercentOffRule):
            percents.append(r)
        else:
            raise TypeError(f"unsupported rule kind: {getattr(r, 'kind', type(r).__name__)}")
    return overrides, percents


class _Ledger:
    """Per-rule running totals, kept in first-touch order."""

    def __init__(self) -> None:
        self._entries: dict[str, list] = {}

    def add(self, rule, delta: Decimal) -> None:
        # A rule enters the report on its first non-zero amount, not its first match.
        if delta <= 0:
            return
        entry = self._entries.setdefault(rule.id, [rule.name, ZERO])
        entry[1] = round2(entry[1] + delta)

    def applied(self) -> tuple[AppliedDiscount, ...]:
        return tuple(
            AppliedDiscount(rule_id=rid, name=name, amount=amount)
            for rid, (name, amount) in self._entries.items()
            if amount != 0
        )


def apply_discounts(cart: Sequence[CartItem], rules) -> PricingResult:
    """
    Price a cart against a rule set.

    Per line, independently:
      - at most one PRICE_OVERRIDE applies: the first matching one in sorted order
        (overrides never combine, whatever `stackable` says);
      - then every matching PERCENT_OFF applies in sorted order, each against the
        price left by the previous step (10% + 10% on 100 gives 81, not 80).

    Override-class rules always run before percent-class rules, even when a
    percent rule carries the higher priority. Receipts already printed rely on
    this ordering.

    Every intermediate amount is rounded to cents before it is carried forward,
    so a live preview and the checkout guard reproduce identical totals.
    Time windows are not evaluated here; callers pass only rules valid for the
    instant being priced.
    """
    ordered = sort_rules(rules)
    ledger = _Ledger()
    adjusted: list[AdjustedItem] = []
    subtotal = ZERO
    total = ZERO

    for it in cart or []:
        orig_unit = to_number(it.unit_price)
        qty = to_number(it.qty)
        subtotal += round2(orig_unit * qty)

        overrides, percents = _split_by_kind([r for r in ordered if matches(it, r.selector)])
        eff = orig_unit

        if overrides:
            rule = overrides[0]
            target = round2(rule.price_override)
            ledger.add(rule, max(ZERO, round2((eff - target) * qty)))
            # An override priced above the current price never raises it.
            eff = min(eff, target)

        for rule in percents:
            pct = min(to_number(rule.percent_off), Decimal("100"))
            if pct <= 0:
                continue
            nxt = round2(eff * (1 - pct / 100))
            ledger.add(rule, max(ZERO, round2((eff - nxt) * qty)))
            eff = nxt

        adjusted.append(AdjustedItem(id=it.id, product_id=it.product_id, effective_unit_price=eff))
        total += round2(eff * qty)

    subtotal = round2(subtotal)
    total = round2(total)
    return PricingResult(
        subtotal=subtotal,
        discounts=ledger.applied(),
        discount_total=round2(subtotal - total),
        total=total,
        adjusted_items=tuple(adjusted),
    )
