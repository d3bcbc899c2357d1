"""Plain records handed between the store backends and the settlement engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from dateutil import parser as date_parser

from .pledges import to_decimal

FUNDRAISER_PLAYER = "player"
FUNDRAISER_TEAM = "team"
STATUS_ACTIVE = "active"
STATUS_ENDED = "ended"


@dataclass
class Person:
    id: str
    display_name: str = ""
    email: Optional[str] = None
    role: Optional[str] = None
    active_team_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Person":
        return cls(
            id=str(row.get("id")),
            display_name=row.get("display_name") or "",
            email=row.get("email"),
            role=row.get("role"),
            active_team_id=_coerce_str(row.get("active_team_id")),
        )


@dataclass
class Fundraiser:
    id: str
    fundraiser_type: str
    owner_id: str
    team_id: str
    title: str
    start_date: date
    end_date: date
    status: str
    created_by: str
    owner_type: str = "user"
    description: Optional[str] = None
    goal_amount: Optional[Decimal] = None
    estimated_min_levels: int = 0
    estimated_max_levels: int = 0
    prize_tiers: list = field(default_factory=list)
    ended_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    @property
    def owner_user_id(self) -> str:
        """User who receives the owner summary (player owner or creating coach)."""
        if self.fundraiser_type == FUNDRAISER_PLAYER:
            return self.owner_id
        return self.created_by

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Fundraiser":
        return cls(
            id=str(row.get("id")),
            fundraiser_type=row.get("fundraiser_type") or "",
            owner_type=row.get("owner_type") or "user",
            owner_id=str(row.get("owner_id")),
            team_id=str(row.get("team_id")),
            title=row.get("title") or "",
            description=row.get("description"),
            start_date=parse_date(row.get("start_date")),
            end_date=parse_date(row.get("end_date")),
            goal_amount=to_decimal(row.get("goal_amount")),
            estimated_min_levels=_coerce_int(row.get("estimated_min_levels")),
            estimated_max_levels=_coerce_int(row.get("estimated_max_levels")),
            prize_tiers=list(row.get("prize_tiers") or []),
            status=row.get("status") or STATUS_ACTIVE,
            created_by=str(row.get("created_by")),
            ended_at=parse_datetime(row.get("ended_at")),
            settled_at=parse_datetime(row.get("settled_at")),
        )


@dataclass
class FundraiserProgress:
    fundraiser_id: str
    user_id: str
    starting_points: int = 0
    starting_level: int = 0
    current_points: int = 0
    current_level: int = 0
    fundraiser_points_earned: int = 0
    fundraiser_levels_earned: int = 0
    last_updated: Optional[datetime] = None

    def with_totals(self, **changes) -> "FundraiserProgress":
        return replace(self, **changes)

    def to_row(self) -> dict[str, Any]:
        return {
            "fundraiser_id": self.fundraiser_id,
            "user_id": self.user_id,
            "starting_points": self.starting_points,
            "starting_level": self.starting_level,
            "current_points": self.current_points,
            "current_level": self.current_level,
            "fundraiser_points_earned": self.fundraiser_points_earned,
            "fundraiser_levels_earned": self.fundraiser_levels_earned,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "FundraiserProgress":
        return cls(
            fundraiser_id=str(row.get("fundraiser_id")),
            user_id=str(row.get("user_id")),
            starting_points=_coerce_int(row.get("starting_points")),
            starting_level=_coerce_int(row.get("starting_level")),
            current_points=_coerce_int(row.get("current_points")),
            current_level=_coerce_int(row.get("current_level")),
            fundraiser_points_earned=_coerce_int(row.get("fundraiser_points_earned")),
            fundraiser_levels_earned=_coerce_int(row.get("fundraiser_levels_earned")),
            last_updated=parse_datetime(row.get("last_updated")),
        )


@dataclass
class Pledge:
    id: str
    fundraiser_id: str
    pledge_type: str
    donor_name: str = "Anonymous"
    donor_email: Optional[str] = None
    donor_user_id: Optional[str] = None
    player_id: Optional[str] = None
    amount_per_level: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    final_amount_owed: Optional[Decimal] = None
    payment_status: str = "pending"

    @property
    def donor_key(self) -> str:
        """Grouping key for one-email-per-donor fan-out."""
        if self.donor_email:
            return self.donor_email.strip().lower()
        return f"user:{self.donor_user_id or self.id}"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Pledge":
        return cls(
            id=str(row.get("id")),
            fundraiser_id=str(row.get("fundraiser_id")),
            pledge_type=row.get("pledge_type") or "",
            donor_name=row.get("donor_name") or "Anonymous",
            donor_email=row.get("donor_email"),
            donor_user_id=_coerce_str(row.get("donor_user_id")),
            player_id=_coerce_str(row.get("player_id")),
            amount_per_level=to_decimal(row.get("amount_per_level")),
            max_amount=to_decimal(row.get("max_amount")),
            flat_amount=to_decimal(row.get("flat_amount")),
            final_amount_owed=to_decimal(row.get("final_amount_owed")),
            payment_status=row.get("payment_status") or "pending",
        )


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValueError("date value is required")
    return date_parser.isoparse(str(value)).date()


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _coerce_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _coerce_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
