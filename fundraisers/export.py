"""Flat per-pledge settlement export (CSV for the owner summary and dashboard download)."""

from __future__ import annotations

import csv
import io
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .pledges import PLEDGE_FLAT, ZERO, quantize, to_decimal

TEAM_GENERAL_LABEL = "Team General"
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

CSV_COLUMNS = (
    "Donor Name",
    "Donor Email",
    "Player Supported",
    "Pledge Type",
    "Amount Per Level",
    "Max Amount",
    "Flat Amount",
    "Levels Counted",
    "Final Amount Owed",
    "Rewards Qualified",
    "Payment Status",
)


@dataclass
class PledgeSettlement:
    """A pledge together with the level count and amount it was settled at."""

    pledge: object
    levels: int
    amount: Optional[Decimal]


@dataclass
class ExportRow:
    donor_name: str
    donor_email: str
    player_supported: str
    pledge_type: str
    amount_per_level: Optional[Decimal]
    max_amount: Optional[Decimal]
    flat_amount: Optional[Decimal]
    levels_counted: Optional[int]
    final_amount_owed: Optional[Decimal]
    rewards_qualified: str
    payment_status: str

    def as_csv_row(self) -> List[str]:
        return [
            _cell(self.donor_name),
            _cell(self.donor_email),
            _cell(self.player_supported),
            self.pledge_type,
            _money(self.amount_per_level),
            _money(self.max_amount),
            _money(self.flat_amount),
            "" if self.levels_counted is None else str(self.levels_counted),
            _money(self.final_amount_owed),
            self.rewards_qualified,
            self.payment_status,
        ]


def donor_totals(settlements: Iterable[PledgeSettlement]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for item in settlements:
        if item.amount is not None:
            totals[item.pledge.donor_key] += item.amount
    return dict(totals)


def qualified_rewards(total: Decimal, prize_tiers: Sequence[Mapping]) -> str:
    """Prize tiers a donor's combined total reaches, highest first."""
    if not prize_tiers:
        return "N/A"
    reached = []
    for tier in prize_tiers:
        threshold = to_decimal(tier.get("amount"))
        if threshold is not None and total >= threshold:
            reached.append((threshold, tier.get("description") or ""))
    reached.sort(key=lambda pair: pair[0], reverse=True)
    if not reached:
        return "None"
    return "; ".join(f"${quantize(amount)}: {label}" for amount, label in reached)


def settlement_rows(
    settlements: Sequence[PledgeSettlement],
    player_names: Mapping[str, str],
    prize_tiers: Sequence[Mapping] = (),
) -> List[ExportRow]:
    """Project settled pledges into flat rows sorted by donor name."""
    totals = donor_totals(settlements)
    rows: List[ExportRow] = []
    for item in settlements:
        pledge = item.pledge
        is_flat = pledge.pledge_type == PLEDGE_FLAT
        if pledge.player_id:
            supported = player_names.get(pledge.player_id) or pledge.player_id
        else:
            supported = TEAM_GENERAL_LABEL
        rows.append(
            ExportRow(
                donor_name=pledge.donor_name or "Anonymous",
                donor_email=pledge.donor_email or "",
                player_supported=supported,
                pledge_type=pledge.pledge_type,
                amount_per_level=None if is_flat else pledge.amount_per_level,
                max_amount=None if is_flat else pledge.max_amount,
                flat_amount=pledge.flat_amount if is_flat else None,
                levels_counted=None if is_flat else item.levels,
                final_amount_owed=item.amount,
                rewards_qualified=qualified_rewards(totals.get(pledge.donor_key, ZERO), prize_tiers),
                payment_status=(pledge.payment_status or "pending").title(),
            )
        )
    rows.sort(key=lambda row: (row.donor_name.lower(), row.donor_email.lower()))
    return rows


def settlement_csv(rows: Iterable[ExportRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for row in rows:
        writer.writerow(row.as_csv_row())
    return buffer.getvalue()


def total_owed(settlements: Iterable[PledgeSettlement]) -> Decimal:
    total = ZERO
    for item in settlements:
        if item.amount is not None:
            total += item.amount
    return quantize(total)


def _cell(value: Optional[str]) -> str:
    """Keep spreadsheet apps from evaluating free-text cells as formulas."""
    text = value or ""
    if text.startswith(FORMULA_PREFIXES):
        return "'" + text
    return text


def _money(value: Optional[Decimal]) -> str:
    if value is None:
        return ""
    return f"{quantize(value):.2f}"
