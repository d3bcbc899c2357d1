"""Data store adapters for fundraisers: Supabase in production, SQLAlchemy locally.

Both backends return the records in ``fundraisers.records`` so the settlement
engine never sees backend-specific rows. Every status transition that can be
raced (claiming a fundraiser for settlement, marking it settled, writing a
pledge's final amount) is a conditional update whose affected-row count tells
the caller whether it won.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from flask import current_app, has_app_context
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import DrillResult, Team, TeamMember, User
from models import Fundraiser as FundraiserRow
from models import FundraiserNotification as NotificationRow
from models import FundraiserPledge as PledgeRow
from models import FundraiserProgress as ProgressRow

from .errors import StoreError
from .records import (
    STATUS_ACTIVE,
    STATUS_ENDED,
    Fundraiser,
    FundraiserProgress,
    Person,
    Pledge,
    parse_date,
)


class FundraiserStore:
    """Operations the fundraiser services need from the relational store."""

    # Points ledger
    def team_points(self, player_id: str, team_id: str,
                    since: Optional[datetime] = None, until: Optional[datetime] = None) -> int:
        raise NotImplementedError

    def team_member_ids(self, team_id: str) -> List[str]:
        raise NotImplementedError

    def get_person(self, user_id: str) -> Optional[Person]:
        raise NotImplementedError

    def get_team(self, team_id: str) -> Optional[dict]:
        raise NotImplementedError

    # Fundraisers
    def insert_fundraiser(self, row: dict) -> Fundraiser:
        raise NotImplementedError

    def get_fundraiser(self, fundraiser_id: str) -> Optional[Fundraiser]:
        raise NotImplementedError

    def active_fundraisers_on(self, day: date) -> List[Fundraiser]:
        raise NotImplementedError

    def due_fundraisers(self, today: date) -> List[Fundraiser]:
        raise NotImplementedError

    def unsettled_fundraisers(self, claimed_before: datetime) -> List[Fundraiser]:
        raise NotImplementedError

    def claim_for_settlement(self, fundraiser_id: str, ended_at: datetime) -> bool:
        raise NotImplementedError

    def mark_settled(self, fundraiser_id: str, settled_at: datetime) -> bool:
        raise NotImplementedError

    # Progress
    def insert_progress_rows(self, rows: Iterable[FundraiserProgress]) -> None:
        raise NotImplementedError

    def get_progress(self, fundraiser_id: str, player_id: str) -> Optional[FundraiserProgress]:
        raise NotImplementedError

    def list_progress(self, fundraiser_id: str) -> List[FundraiserProgress]:
        raise NotImplementedError

    def save_progress(self, progress: FundraiserProgress) -> None:
        raise NotImplementedError

    # Pledges
    def insert_pledge(self, row: dict) -> Pledge:
        raise NotImplementedError

    def list_pledges(self, fundraiser_id: str) -> List[Pledge]:
        raise NotImplementedError

    def set_final_amount(self, pledge_id: str, amount: Decimal) -> bool:
        raise NotImplementedError

    # Notifications
    def log_notification(self, entry: dict) -> None:
        raise NotImplementedError


class SqlFundraiserStore(FundraiserStore):
    """Flask-SQLAlchemy backend (local development and tests)."""

    def team_points(self, player_id, team_id, since=None, until=None):
        query = db.session.query(func.coalesce(func.sum(DrillResult.points_earned), 0)).filter(
            DrillResult.user_id == player_id,
            DrillResult.team_id == team_id,
        )
        if since is not None:
            query = query.filter(DrillResult.completed_at >= since)
        if until is not None:
            query = query.filter(DrillResult.completed_at < until)
        return int(self._run("summing drill points", query.scalar) or 0)

    def team_member_ids(self, team_id):
        rows = self._run(
            "listing team members",
            TeamMember.query.filter_by(team_id=team_id).order_by(TeamMember.id.asc()).all,
        )
        return [row.user_id for row in rows]

    def get_person(self, user_id):
        user = self._run("loading person", lambda: db.session.get(User, user_id))
        return Person.from_row(user.to_row()) if user else None

    def get_team(self, team_id):
        team = self._run("loading team", lambda: db.session.get(Team, team_id))
        return team.to_row() if team else None

    def insert_fundraiser(self, row):
        payload = dict(row)
        payload["start_date"] = parse_date(payload["start_date"])
        payload["end_date"] = parse_date(payload["end_date"])
        fundraiser = FundraiserRow(**payload)
        db.session.add(fundraiser)
        self._commit("inserting fundraiser")
        return Fundraiser.from_row(fundraiser.to_row())

    def get_fundraiser(self, fundraiser_id):
        row = self._run("loading fundraiser", lambda: db.session.get(FundraiserRow, fundraiser_id))
        return Fundraiser.from_row(row.to_row()) if row else None

    def active_fundraisers_on(self, day):
        query = FundraiserRow.query.filter(
            FundraiserRow.status == STATUS_ACTIVE,
            FundraiserRow.start_date <= day,
            FundraiserRow.end_date >= day,
        )
        rows = self._run("listing active fundraisers", query.all)
        return [Fundraiser.from_row(row.to_row()) for row in rows]

    def due_fundraisers(self, today):
        query = FundraiserRow.query.filter(
            FundraiserRow.status == STATUS_ACTIVE,
            FundraiserRow.end_date < today,
        ).order_by(FundraiserRow.end_date.asc())
        rows = self._run("listing due fundraisers", query.all)
        return [Fundraiser.from_row(row.to_row()) for row in rows]

    def unsettled_fundraisers(self, claimed_before):
        query = FundraiserRow.query.filter(
            FundraiserRow.status == STATUS_ENDED,
            FundraiserRow.settled_at.is_(None),
            FundraiserRow.ended_at < claimed_before,
        )
        rows = self._run("listing unsettled fundraisers", query.all)
        return [Fundraiser.from_row(row.to_row()) for row in rows]

    def claim_for_settlement(self, fundraiser_id, ended_at):
        stmt = (
            update(FundraiserRow)
            .where(FundraiserRow.id == fundraiser_id, FundraiserRow.status == STATUS_ACTIVE)
            .values(status=STATUS_ENDED, ended_at=ended_at)
        )
        return self._conditional("claiming fundraiser", stmt)

    def mark_settled(self, fundraiser_id, settled_at):
        stmt = (
            update(FundraiserRow)
            .where(FundraiserRow.id == fundraiser_id, FundraiserRow.settled_at.is_(None))
            .values(settled_at=settled_at)
        )
        return self._conditional("marking fundraiser settled", stmt)

    def insert_progress_rows(self, rows):
        for progress in rows:
            db.session.add(ProgressRow(**_progress_columns(progress)))
        self._commit("inserting progress rows")

    def get_progress(self, fundraiser_id, player_id):
        row = self._run(
            "loading progress",
            ProgressRow.query.filter_by(fundraiser_id=fundraiser_id, user_id=player_id).first,
        )
        return FundraiserProgress.from_row(row.to_row()) if row else None

    def list_progress(self, fundraiser_id):
        rows = self._run(
            "listing progress",
            ProgressRow.query.filter_by(fundraiser_id=fundraiser_id).order_by(ProgressRow.id.asc()).all,
        )
        return [FundraiserProgress.from_row(row.to_row()) for row in rows]

    def save_progress(self, progress):
        columns = _progress_columns(progress)
        stmt = (
            update(ProgressRow)
            .where(
                ProgressRow.fundraiser_id == progress.fundraiser_id,
                ProgressRow.user_id == progress.user_id,
            )
            .values(**columns)
        )
        self._conditional("saving progress", stmt)

    def insert_pledge(self, row):
        pledge = PledgeRow(**row)
        db.session.add(pledge)
        self._commit("inserting pledge")
        return Pledge.from_row(pledge.to_row())

    def list_pledges(self, fundraiser_id):
        rows = self._run(
            "listing pledges",
            PledgeRow.query.filter_by(fundraiser_id=fundraiser_id).order_by(PledgeRow.created_at.asc()).all,
        )
        return [Pledge.from_row(row.to_row()) for row in rows]

    def set_final_amount(self, pledge_id, amount):
        stmt = (
            update(PledgeRow)
            .where(PledgeRow.id == pledge_id, PledgeRow.final_amount_owed.is_(None))
            .values(final_amount_owed=amount)
        )
        return self._conditional("writing final pledge amount", stmt)

    def log_notification(self, entry):
        db.session.add(NotificationRow(**entry))
        self._commit("logging notification")

    def _conditional(self, action: str, stmt) -> bool:
        try:
            result = db.session.execute(stmt.execution_options(synchronize_session=False))
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f"SQL error while {action}: {exc}") from exc
        return result.rowcount == 1

    def _commit(self, action: str) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f"SQL error while {action}: {exc}") from exc

    def _run(self, action: str, fn):
        try:
            return fn()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreError(f"SQL error while {action}: {exc}") from exc


class SupabaseFundraiserStore(FundraiserStore):
    """supabase-py backend over the managed Postgres tables."""

    def __init__(self, client):
        if client is None:
            raise ValueError("A Supabase client is required.")
        self.client = client

    def team_points(self, player_id, team_id, since=None, until=None):
        query = (
            self.client.table("drill_results")
            .select("points_earned")
            .eq("user_id", player_id)
            .eq("team_id", team_id)
        )
        if since is not None:
            query = query.gte("completed_at", since.isoformat())
        if until is not None:
            query = query.lt("completed_at", until.isoformat())
        rows = self._execute("summing drill points", query)
        return sum(int(row.get("points_earned") or 0) for row in rows)

    def team_member_ids(self, team_id):
        rows = self._execute(
            "listing team members",
            self.client.table("team_members").select("user_id").eq("team_id", team_id),
        )
        return [str(row["user_id"]) for row in rows if row.get("user_id")]

    def get_person(self, user_id):
        rows = self._execute(
            "loading user",
            self.client.table("users")
            .select("id, display_name, email, role, active_team_id")
            .eq("id", user_id)
            .limit(1),
        )
        return Person.from_row(rows[0]) if rows else None

    def get_team(self, team_id):
        rows = self._execute(
            "loading team",
            self.client.table("teams").select("id, name, coach_id").eq("id", team_id).limit(1),
        )
        return rows[0] if rows else None

    def insert_fundraiser(self, row):
        rows = self._execute(
            "inserting fundraiser",
            self.client.table("fundraisers").insert(_jsonable(row)),
        )
        if not rows:
            raise StoreError("Supabase returned no fundraiser row after insert")
        return Fundraiser.from_row(rows[0])

    def get_fundraiser(self, fundraiser_id):
        rows = self._execute(
            "loading fundraiser",
            self.client.table("fundraisers").select("*").eq("id", fundraiser_id).limit(1),
        )
        return Fundraiser.from_row(rows[0]) if rows else None

    def active_fundraisers_on(self, day):
        rows = self._execute(
            "listing active fundraisers",
            self.client.table("fundraisers")
            .select("*")
            .eq("status", STATUS_ACTIVE)
            .lte("start_date", day.isoformat())
            .gte("end_date", day.isoformat()),
        )
        return [Fundraiser.from_row(row) for row in rows]

    def due_fundraisers(self, today):
        rows = self._execute(
            "listing due fundraisers",
            self.client.table("fundraisers")
            .select("*")
            .eq("status", STATUS_ACTIVE)
            .lt("end_date", today.isoformat())
            .order("end_date", desc=False),
        )
        return [Fundraiser.from_row(row) for row in rows]

    def unsettled_fundraisers(self, claimed_before):
        rows = self._execute(
            "listing unsettled fundraisers",
            self.client.table("fundraisers")
            .select("*")
            .eq("status", STATUS_ENDED)
            .is_("settled_at", "null")
            .lt("ended_at", claimed_before.isoformat()),
        )
        return [Fundraiser.from_row(row) for row in rows]

    def claim_for_settlement(self, fundraiser_id, ended_at):
        rows = self._execute(
            "claiming fundraiser",
            self.client.table("fundraisers")
            .update({"status": STATUS_ENDED, "ended_at": ended_at.isoformat()})
            .eq("id", fundraiser_id)
            .eq("status", STATUS_ACTIVE),
        )
        return len(rows) == 1

    def mark_settled(self, fundraiser_id, settled_at):
        rows = self._execute(
            "marking fundraiser settled",
            self.client.table("fundraisers")
            .update({"settled_at": settled_at.isoformat()})
            .eq("id", fundraiser_id)
            .is_("settled_at", "null"),
        )
        return len(rows) == 1

    def insert_progress_rows(self, rows):
        payload = [progress.to_row() for progress in rows]
        if not payload:
            return
        self._execute("inserting progress rows", self.client.table("fundraiser_progress").insert(payload))

    def get_progress(self, fundraiser_id, player_id):
        rows = self._execute(
            "loading progress",
            self.client.table("fundraiser_progress")
            .select("*")
            .eq("fundraiser_id", fundraiser_id)
            .eq("user_id", player_id)
            .limit(1),
        )
        return FundraiserProgress.from_row(rows[0]) if rows else None

    def list_progress(self, fundraiser_id):
        rows = self._execute(
            "listing progress",
            self.client.table("fundraiser_progress").select("*").eq("fundraiser_id", fundraiser_id),
        )
        return [FundraiserProgress.from_row(row) for row in rows]

    def save_progress(self, progress):
        payload = progress.to_row()
        payload.pop("fundraiser_id", None)
        payload.pop("user_id", None)
        self._execute(
            "saving progress",
            self.client.table("fundraiser_progress")
            .update(payload)
            .eq("fundraiser_id", progress.fundraiser_id)
            .eq("user_id", progress.user_id),
        )

    def insert_pledge(self, row):
        rows = self._execute("inserting pledge", self.client.table("fundraiser_pledges").insert(_jsonable(row)))
        if not rows:
            raise StoreError("Supabase returned no pledge row after insert")
        return Pledge.from_row(rows[0])

    def list_pledges(self, fundraiser_id):
        rows = self._execute(
            "listing pledges",
            self.client.table("fundraiser_pledges")
            .select("*")
            .eq("fundraiser_id", fundraiser_id)
            .order("created_at", desc=False),
        )
        return [Pledge.from_row(row) for row in rows]

    def set_final_amount(self, pledge_id, amount):
        rows = self._execute(
            "writing final pledge amount",
            self.client.table("fundraiser_pledges")
            .update({"final_amount_owed": str(amount)})
            .eq("id", pledge_id)
            .is_("final_amount_owed", "null"),
        )
        return len(rows) == 1

    def log_notification(self, entry):
        self._execute(
            "logging notification",
            self.client.table("fundraiser_notifications").insert(entry, returning="minimal"),
        )

    def _execute(self, action: str, query) -> List[dict]:
        try:
            resp = query.execute()
        except Exception as exc:  # pragma: no cover - external service dependency
            _log_supabase_warning(action, exc)
            raise StoreError(f"Supabase error while {action}: {exc}") from exc
        return list(getattr(resp, "data", None) or [])


def _progress_columns(progress: FundraiserProgress) -> dict:
    return {
        "fundraiser_id": progress.fundraiser_id,
        "user_id": progress.user_id,
        "starting_points": progress.starting_points,
        "starting_level": progress.starting_level,
        "current_points": progress.current_points,
        "current_level": progress.current_level,
        "fundraiser_points_earned": progress.fundraiser_points_earned,
        "fundraiser_levels_earned": progress.fundraiser_levels_earned,
        "last_updated": progress.last_updated,
    }


def _jsonable(row: dict) -> dict:
    payload: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, (date, datetime)):
            payload[key] = value.isoformat()
        elif isinstance(value, Decimal):
            payload[key] = str(value)
        else:
            payload[key] = value
    return payload


def _log_supabase_warning(action: str, exc: Exception) -> None:
    if not has_app_context():
        return
    logger = getattr(current_app, "logger", None)
    if logger:
        logger.warning("Fundraiser Supabase error while %s: %s", action, exc)
