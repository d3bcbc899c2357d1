"""Database models for the RepQuest Flask app (local mirror of the Supabase tables)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func

from extensions import db


def _new_id() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    """Player, coach, or fan account."""

    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    display_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="player")
    active_team_id = db.Column(db.String(36), nullable=True)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "active_team_id": self.active_team_id,
        }


class Team(db.Model):
    __tablename__ = "teams"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(120), nullable=False)
    coach_id = db.Column(db.String(36), nullable=True)

    def to_row(self) -> dict:
        return {"id": self.id, "name": self.name, "coach_id": self.coach_id}


class TeamMember(db.Model):
    __tablename__ = "team_members"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.String(36), index=True, nullable=False)
    user_id = db.Column(db.String(36), index=True, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("team_id", "user_id", name="uq_team_member"),
    )


class DrillResult(db.Model):
    """One completed drill; the raw points ledger."""

    __tablename__ = "drill_results"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), index=True, nullable=False)
    team_id = db.Column(db.String(36), index=True, nullable=True)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    completed_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class Fundraiser(db.Model):
    """A player or team fundraising campaign."""

    __tablename__ = "fundraisers"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    fundraiser_type = db.Column(db.String(10), nullable=False)
    owner_type = db.Column(db.String(10), nullable=False)
    owner_id = db.Column(db.String(36), nullable=False)
    team_id = db.Column(db.String(36), index=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    goal_amount = db.Column(db.Numeric(12, 2), nullable=True)
    estimated_min_levels = db.Column(db.Integer, nullable=False, default=0)
    estimated_max_levels = db.Column(db.Integer, nullable=False, default=0)
    prize_tiers = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(10), nullable=False, default="active", index=True)
    created_by = db.Column(db.String(36), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "fundraiser_type": self.fundraiser_type,
            "owner_type": self.owner_type,
            "owner_id": self.owner_id,
            "team_id": self.team_id,
            "title": self.title,
            "description": self.description,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "goal_amount": self.goal_amount,
            "estimated_min_levels": self.estimated_min_levels,
            "estimated_max_levels": self.estimated_max_levels,
            "prize_tiers": self.prize_tiers or [],
            "status": self.status,
            "created_by": self.created_by,
            "ended_at": _ensure_aware(self.ended_at),
            "settled_at": _ensure_aware(self.settled_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Fundraiser id={self.id} title={self.title!r} status={self.status!r}>"


class FundraiserProgress(db.Model):
    """Per-player progress snapshot and fundraiser-scoped accumulation."""

    __tablename__ = "fundraiser_progress"

    id = db.Column(db.Integer, primary_key=True)
    fundraiser_id = db.Column(db.String(36), index=True, nullable=False)
    user_id = db.Column(db.String(36), index=True, nullable=False)
    starting_points = db.Column(db.Integer, nullable=False, default=0)
    starting_level = db.Column(db.Integer, nullable=False, default=0)
    current_points = db.Column(db.Integer, nullable=False, default=0)
    current_level = db.Column(db.Integer, nullable=False, default=0)
    fundraiser_points_earned = db.Column(db.Integer, nullable=False, default=0)
    fundraiser_levels_earned = db.Column(db.Integer, nullable=False, default=0)
    last_updated = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("fundraiser_id", "user_id", name="uq_fundraiser_progress_user"),
    )

    def to_row(self) -> dict:
        return {
            "fundraiser_id": self.fundraiser_id,
            "user_id": self.user_id,
            "starting_points": self.starting_points,
            "starting_level": self.starting_level,
            "current_points": self.current_points,
            "current_level": self.current_level,
            "fundraiser_points_earned": self.fundraiser_points_earned,
            "fundraiser_levels_earned": self.fundraiser_levels_earned,
            "last_updated": _ensure_aware(self.last_updated),
        }


class FundraiserPledge(db.Model):
    """A donor's flat or per-level commitment to a fundraiser."""

    __tablename__ = "fundraiser_pledges"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    fundraiser_id = db.Column(db.String(36), index=True, nullable=False)
    player_id = db.Column(db.String(36), nullable=True)
    donor_user_id = db.Column(db.String(36), nullable=True)
    donor_name = db.Column(db.String(120), nullable=False, default="Anonymous")
    donor_email = db.Column(db.String(255), nullable=True)
    pledge_type = db.Column(db.String(20), nullable=False)
    amount_per_level = db.Column(db.Numeric(10, 2), nullable=True)
    max_amount = db.Column(db.Numeric(10, 2), nullable=True)
    flat_amount = db.Column(db.Numeric(10, 2), nullable=True)
    final_amount_owed = db.Column(db.Numeric(10, 2), nullable=True)
    payment_status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "fundraiser_id": self.fundraiser_id,
            "player_id": self.player_id,
            "donor_user_id": self.donor_user_id,
            "donor_name": self.donor_name,
            "donor_email": self.donor_email,
            "pledge_type": self.pledge_type,
            "amount_per_level": self.amount_per_level,
            "max_amount": self.max_amount,
            "flat_amount": self.flat_amount,
            "final_amount_owed": self.final_amount_owed,
            "payment_status": self.payment_status,
        }


class FundraiserNotification(db.Model):
    """Failed outbound emails kept for manual resend."""

    __tablename__ = "fundraiser_notifications"

    id = db.Column(db.Integer, primary_key=True)
    fundraiser_id = db.Column(db.String(36), index=True, nullable=True)
    kind = db.Column(db.String(40), nullable=False)
    recipient = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="failed")
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)


def _ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
