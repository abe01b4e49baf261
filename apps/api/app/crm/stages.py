from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from app.core.errors import ValidationFailedError
from app.crm.models import LEAD_STATUSES, PIPELINE_STAGES, QUOTE_STATUSES, TERMINAL_STAGES

_STAGE_ALIASES = {
    "Closed Won": "ClosedWon",
    "Closed Lost": "ClosedLost",
}

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


def normalize_stage(value: str) -> str:
    stage = _STAGE_ALIASES.get(value.strip(), value.strip())
    if stage not in PIPELINE_STAGES:
        raise ValidationFailedError("invalid stage", details={"stage": value, "allowed": list(PIPELINE_STAGES)})
    return stage


def is_terminal(stage: str) -> bool:
    return stage in TERMINAL_STAGES


def quote_status_for_stage(stage: str) -> str:
    return "Accepted" if stage == "ClosedWon" else "Declined"


def normalize_quote_status(value: str) -> str:
    if value not in QUOTE_STATUSES:
        raise ValidationFailedError("invalid quote status", details={"status": value, "allowed": list(QUOTE_STATUSES)})
    return value


def normalize_lead_status(value: str) -> str:
    if value not in LEAD_STATUSES:
        raise ValidationFailedError("invalid lead status", details={"status": value, "allowed": list(LEAD_STATUSES)})
    return value


def money(value: Decimal | int | str | None) -> Decimal:
    return Decimal(value or 0).quantize(_CENT, rounding=ROUND_HALF_UP)


def line_total(quantity: int, price: Decimal) -> Decimal:
    return money(Decimal(quantity) * Decimal(price))


def quote_total(
    amount: Decimal,
    line_totals: Iterable[Decimal],
    *,
    discount: Decimal = Decimal("0"),
    tax: Decimal = Decimal("0"),
    shipping_cost: Decimal = Decimal("0"),
) -> Decimal:
    """Amount (or the sum of line totals when amount is zero), less discount %, plus tax %, plus shipping."""

    subtotal = money(amount) or money(sum(line_totals, Decimal("0")))
    discounted = subtotal - subtotal * Decimal(discount) / _HUNDRED
    taxed = discounted + discounted * Decimal(tax) / _HUNDRED
    return money(taxed + Decimal(shipping_cost))
