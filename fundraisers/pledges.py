"""Pledge evaluation: what a donor owes for a given level count."""

from __future__ import annotations

import enum
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from .errors import FundraiserServiceError, MalformedPledgeError

PLEDGE_FLAT = "flat"
PLEDGE_PER_LEVEL = "per_level"
PLEDGE_TYPES = (PLEDGE_FLAT, PLEDGE_PER_LEVEL)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_ESTIMATED_LEVELS = 5
# Largest value a Numeric(10, 2) pledge column holds.
MAX_PLEDGE_AMOUNT = Decimal("99999999.99")


class MissingProgressPolicy(str, enum.Enum):
    """Level count used when a player-targeted pledge has no progress row."""

    ZERO = "zero"
    FUNDRAISER_TOTAL = "fundraiser_total"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "MissingProgressPolicy":
        value = (raw or "").strip().lower()
        for policy in cls:
            if policy.value == value:
                return policy
        return cls.ZERO


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a stored money value to Decimal, going through str for floats."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def amount_owed(pledge, levels_earned: int) -> Decimal:
    """Return the amount owed by ``pledge`` once ``levels_earned`` levels are counted.

    Flat pledges ignore the level count. Per-level pledges pay the rate for
    every level, never more than the cap. Bad rows raise MalformedPledgeError
    so the caller can drop that one pledge.
    """
    if isinstance(levels_earned, bool) or not isinstance(levels_earned, int) or levels_earned < 0:
        raise ValueError(f"levels_earned must be a non-negative int, got {levels_earned!r}")

    if pledge.pledge_type == PLEDGE_FLAT:
        flat = pledge.flat_amount
        if flat is None or flat <= 0:
            raise MalformedPledgeError(pledge.id, "flat pledge has no positive flat_amount")
        return quantize(flat)

    if pledge.pledge_type == PLEDGE_PER_LEVEL:
        rate = pledge.amount_per_level
        cap = pledge.max_amount
        if rate is None or cap is None or rate <= 0 or cap < rate:
            raise MalformedPledgeError(pledge.id, "per-level pledge needs 0 < amount_per_level <= max_amount")
        return quantize(min(rate * levels_earned, cap))

    raise MalformedPledgeError(pledge.id, f"unknown pledge type {pledge.pledge_type!r}")


def levels_for_pledge(
    pledge,
    progress_by_player: Mapping[str, int],
    fundraiser_total: int,
    policy: MissingProgressPolicy = MissingProgressPolicy.ZERO,
) -> int:
    """Pick the level count a pledge is evaluated against."""
    if not pledge.player_id:
        return fundraiser_total
    if pledge.player_id in progress_by_player:
        return progress_by_player[pledge.player_id]
    if policy is MissingProgressPolicy.FUNDRAISER_TOTAL:
        return fundraiser_total
    return 0


def validate_pledge_terms(payload: Mapping[str, Any]) -> dict:
    """Normalize pledge form input or raise FundraiserServiceError."""
    pledge_type = (payload.get("pledge_type") or "").strip()
    if pledge_type not in PLEDGE_TYPES:
        raise FundraiserServiceError("Invalid pledge type", payload={"error": "invalid_pledge_type"})

    terms: dict = {
        "pledge_type": pledge_type,
        "amount_per_level": None,
        "max_amount": None,
        "flat_amount": None,
    }
    if pledge_type == PLEDGE_PER_LEVEL:
        rate = _pledge_amount(payload.get("amount_per_level"), "Amount per level")
        cap = _pledge_amount(payload.get("max_amount"), "Max amount")
        if cap < rate:
            raise FundraiserServiceError(
                f"Max amount ({cap}) must be at least as much as amount per level ({rate})"
            )
        terms["amount_per_level"] = rate
        terms["max_amount"] = cap
    else:
        terms["flat_amount"] = _pledge_amount(payload.get("flat_amount"), "Flat amount")
    return terms


def _pledge_amount(raw: Any, label: str) -> Decimal:
    """Parse a form amount to whole cents; checks run on the stored value."""
    amount = to_decimal(raw)
    if amount is None:
        raise FundraiserServiceError(f"{label} must be greater than 0")
    if abs(amount) > MAX_PLEDGE_AMOUNT:
        raise FundraiserServiceError(f"{label} must be at most {MAX_PLEDGE_AMOUNT}")
    amount = quantize(amount)
    if amount <= 0:
        raise FundraiserServiceError(f"{label} must be greater than 0")
    return amount


def estimated_amount(pledge, estimated_max_levels: Optional[int]) -> Decimal:
    """Projected amount shown to the donor when the pledge is made."""
    levels = estimated_max_levels or DEFAULT_ESTIMATED_LEVELS
    return amount_owed(pledge, max(0, int(levels)))


def describe_terms(pledge) -> str:
    if pledge.pledge_type == PLEDGE_FLAT and pledge.flat_amount is not None:
        return f"${quantize(pledge.flat_amount)} flat"
    if pledge.pledge_type == PLEDGE_PER_LEVEL and pledge.amount_per_level is not None:
        return f"${quantize(pledge.amount_per_level)}/level (max ${quantize(pledge.max_amount or ZERO)})"
    return "Unrecognised pledge"
