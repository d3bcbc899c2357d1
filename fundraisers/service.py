"""Fundraiser lifecycle: creation snapshots, pledges, progress tracking and settlement.

A fundraiser is ``active`` until the daily sweep finds its close date in the
past. The sweep claims it with a conditional ``active -> ended`` update, so
only one sweep ever settles a given fundraiser. Final pledge amounts are
written once (``final_amount_owed IS NULL`` guard), then a second conditional
update on ``settled_at`` picks the single process allowed to email donors and
the owner. A sweep that dies between the claim and ``settled_at`` leaves the
fundraiser to be resumed by a later sweep once the retry grace has passed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from flask import current_app

from . import emails
from .errors import FundraiserServiceError, MalformedPledgeError, StoreError
from .export import PledgeSettlement, settlement_csv, settlement_rows, total_owed
from .levels import level_for, points_to_next_level
from .notifications import DispatchReport, NotificationOutbox
from .pledges import (
    MAX_PLEDGE_AMOUNT,
    MissingProgressPolicy,
    amount_owed,
    estimated_amount,
    levels_for_pledge,
    quantize,
    to_decimal,
    validate_pledge_terms,
)
from .records import (
    FUNDRAISER_PLAYER,
    FUNDRAISER_TEAM,
    STATUS_ACTIVE,
    Fundraiser,
    FundraiserProgress,
    Person,
    Pledge,
    parse_date,
)
from .store import FundraiserStore

ROLE_PLAYER = "player"
ROLE_COACH = "coach"
DEFAULT_RETRY_GRACE = timedelta(hours=1)
# Largest value the Numeric(12, 2) goal column holds.
MAX_GOAL_AMOUNT = Decimal("9999999999.99")


class Clock:
    """Source of "now" for the engine; tests pin it to a fixed instant."""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        raise NotImplementedError


class SystemClock(Clock):
    """UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


@dataclass
class ProgressUpdate:
    fundraiser_id: str
    old_level: int
    new_level: int
    fundraiser_points_earned: int

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level

    def to_dict(self) -> dict:
        return {
            "fundraiser_id": self.fundraiser_id,
            "old_level": self.old_level,
            "new_level": self.new_level,
            "fundraiser_points_earned": self.fundraiser_points_earned,
            "leveled_up": self.leveled_up,
        }


@dataclass
class ProgressResult:
    updates: List[ProgressUpdate] = field(default_factory=list)
    notifications: DispatchReport = field(default_factory=DispatchReport)

    def to_dict(self) -> dict:
        return {
            "updated": [update.to_dict() for update in self.updates],
            "notifications": self.notifications.to_dict(),
        }


@dataclass
class PledgeReceipt:
    pledge: Pledge
    estimated_amount: Decimal
    notifications: DispatchReport = field(default_factory=DispatchReport)


@dataclass
class FundraiserSettlement:
    fundraiser_id: str
    title: str
    total_levels: int = 0
    total_raised: Decimal = Decimal("0.00")
    pledges_settled: int = 0
    pledges_excluded: List[str] = field(default_factory=list)
    write_failures: int = 0
    donor_emails_attempted: int = 0
    owner_email_sent: bool = False
    resumed: bool = False
    complete: bool = False
    notifications: DispatchReport = field(default_factory=DispatchReport)

    def to_dict(self) -> dict:
        return {
            "fundraiser_id": self.fundraiser_id,
            "title": self.title,
            "total_levels": self.total_levels,
            "total_raised": f"{self.total_raised:.2f}",
            "pledges_settled": self.pledges_settled,
            "pledges_excluded": list(self.pledges_excluded),
            "write_failures": self.write_failures,
            "donor_emails_attempted": self.donor_emails_attempted,
            "owner_email_sent": self.owner_email_sent,
            "resumed": self.resumed,
            "complete": self.complete,
            "notifications": self.notifications.to_dict(),
        }


@dataclass
class SweepReport:
    processed: List[FundraiserSettlement] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": [item.to_dict() for item in self.processed],
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


class SettlementEngine:
    """Progress tracking and settlement for fundraisers over a FundraiserStore."""

    def __init__(
        self,
        store: FundraiserStore,
        outbox: NotificationOutbox,
        clock: Optional[Clock] = None,
        missing_progress_policy: MissingProgressPolicy = MissingProgressPolicy.ZERO,
        retry_grace: timedelta = DEFAULT_RETRY_GRACE,
    ):
        self.store = store
        self.outbox = outbox
        self.clock = clock or SystemClock()
        self.missing_progress_policy = missing_progress_policy
        self.retry_grace = retry_grace

    # ------------------------------------------------------------------
    # Creation and pledges
    # ------------------------------------------------------------------
    def create_fundraiser(self, actor: Person, payload: Mapping[str, Any]) -> Fundraiser:
        """Create a fundraiser and snapshot every participant's team points."""
        fundraiser_type = (payload.get("fundraiser_type") or "").strip()
        title = (payload.get("title") or "").strip()
        owner_id = payload.get("owner_id") or (actor.id if fundraiser_type == FUNDRAISER_PLAYER else None)
        if not fundraiser_type or not owner_id or not title:
            raise FundraiserServiceError("Missing required fields")
        if fundraiser_type not in (FUNDRAISER_PLAYER, FUNDRAISER_TEAM):
            raise FundraiserServiceError("Invalid fundraiser type")

        try:
            start_date = parse_date(payload.get("start_date"))
            end_date = parse_date(payload.get("end_date"))
        except (TypeError, ValueError, OverflowError):
            raise FundraiserServiceError("Start and end dates are required (YYYY-MM-DD)")
        if end_date <= start_date:
            raise FundraiserServiceError("End date must be after start date")

        if fundraiser_type == FUNDRAISER_PLAYER:
            if actor.role != ROLE_PLAYER:
                raise FundraiserServiceError("Only players can create player fundraisers", status_code=403)
            if str(owner_id) != actor.id:
                raise FundraiserServiceError("You can only create fundraisers for yourself", status_code=403)
            if not actor.active_team_id:
                raise FundraiserServiceError("You must be on a team to create a fundraiser")
            team_id = actor.active_team_id
            owner_type = "user"
        else:
            if actor.role != ROLE_COACH:
                raise FundraiserServiceError("Only coaches can create team fundraisers", status_code=403)
            team = self.store.get_team(str(owner_id))
            if not team:
                raise FundraiserServiceError("Team not found", status_code=404)
            if str(team.get("coach_id")) != actor.id:
                raise FundraiserServiceError("You do not own this team", status_code=403)
            team_id = str(owner_id)
            owner_type = "team"

        row = {
            "fundraiser_type": fundraiser_type,
            "owner_type": owner_type,
            "owner_id": str(owner_id),
            "team_id": team_id,
            "title": title,
            "description": (payload.get("description") or "").strip() or None,
            "start_date": start_date,
            "end_date": end_date,
            "goal_amount": _goal_amount(payload.get("goal_amount")),
            "estimated_min_levels": _non_negative_int(payload.get("estimated_min_levels")),
            "estimated_max_levels": _non_negative_int(payload.get("estimated_max_levels")),
            "prize_tiers": _clean_prize_tiers(payload.get("prize_tiers")),
            "created_by": actor.id,
            "status": STATUS_ACTIVE,
        }
        fundraiser = self.store.insert_fundraiser(row)

        if fundraiser_type == FUNDRAISER_PLAYER:
            participants = [fundraiser.owner_id]
        else:
            participants = self.store.team_member_ids(team_id)

        now = self.clock.now()
        snapshots = []
        for player_id in participants:
            points = self.store.team_points(player_id, team_id)
            level = level_for(points)
            snapshots.append(
                FundraiserProgress(
                    fundraiser_id=fundraiser.id,
                    user_id=player_id,
                    starting_points=points,
                    starting_level=level,
                    current_points=points,
                    current_level=level,
                    last_updated=now,
                )
            )
        self.store.insert_progress_rows(snapshots)
        current_app.logger.info(
            "Created %s fundraiser %s with %s participant(s)", fundraiser_type, fundraiser.id, len(snapshots)
        )
        return fundraiser

    def record_pledge(self, donor: Person, fundraiser_id: str, payload: Mapping[str, Any]) -> PledgeReceipt:
        """Store a donor's pledge against an active fundraiser and confirm it by email."""
        terms = validate_pledge_terms(payload)
        fundraiser = self.store.get_fundraiser(fundraiser_id)
        if not fundraiser:
            raise FundraiserServiceError("Fundraiser not found", status_code=404)
        if fundraiser.status != STATUS_ACTIVE or fundraiser.end_date < self.clock.today():
            raise FundraiserServiceError("This fundraiser has ended")

        player_id = payload.get("player_id") or None
        player = None
        if player_id:
            player_id = str(player_id)
            if not self.store.get_progress(fundraiser.id, player_id):
                raise FundraiserServiceError("That player is not part of this fundraiser")
            player = self.store.get_person(player_id)

        row = {
            "fundraiser_id": fundraiser.id,
            "player_id": player_id,
            "donor_user_id": donor.id,
            "donor_name": donor.display_name or "Anonymous",
            "donor_email": donor.email,
            **terms,
            "final_amount_owed": None,
            "payment_status": "pending",
        }
        pledge = self.store.insert_pledge(row)
        estimate = estimated_amount(pledge, fundraiser.estimated_max_levels)

        self.outbox.enqueue(
            emails.pledge_confirmation_message(
                fundraiser, pledge, estimate, player=player, team_name=self._team_name(fundraiser)
            )
        )
        report = self.outbox.flush()
        return PledgeReceipt(pledge=pledge, estimated_amount=estimate, notifications=report)

    # ------------------------------------------------------------------
    # Progress tracking
    # ------------------------------------------------------------------
    def update_progress(self, player_id: str, points_earned: int) -> ProgressResult:
        """Add newly earned points to every active fundraiser the player is part of.

        Totals are written as absolute values, so a retried call with the same
        starting row produces the same row. Level-up emails go out only after
        every write has been attempted.
        """
        if isinstance(points_earned, bool) or not isinstance(points_earned, int) or points_earned < 0:
            raise FundraiserServiceError("points_earned must be a non-negative whole number")

        result = ProgressResult()
        now = self.clock.now()
        leveled: List[tuple] = []

        for fundraiser in self.store.active_fundraisers_on(self.clock.today()):
            if fundraiser.fundraiser_type == FUNDRAISER_PLAYER and fundraiser.owner_id != player_id:
                continue
            progress = self.store.get_progress(fundraiser.id, player_id)
            if progress is None:
                current_app.logger.info(
                    "No progress record for player %s in fundraiser %s", player_id, fundraiser.id
                )
                continue

            new_points = progress.fundraiser_points_earned + points_earned
            old_level = progress.fundraiser_levels_earned
            new_level = max(level_for(new_points), old_level)
            updated = progress.with_totals(
                current_points=progress.starting_points + new_points,
                current_level=progress.starting_level + new_level,
                fundraiser_points_earned=new_points,
                fundraiser_levels_earned=new_level,
                last_updated=now,
            )
            try:
                self.store.save_progress(updated)
            except StoreError as exc:
                current_app.logger.error(
                    "Progress update failed for player %s in fundraiser %s: %s", player_id, fundraiser.id, exc
                )
                continue

            update = ProgressUpdate(fundraiser.id, old_level, new_level, new_points)
            result.updates.append(update)
            if update.leveled_up:
                current_app.logger.info(
                    "Player %s leveled up in fundraiser %s: %s -> %s", player_id, fundraiser.id, old_level, new_level
                )
                leveled.append((fundraiser, new_level))

        if leveled:
            self._queue_level_ups(player_id, leveled)
            result.notifications = self.outbox.flush()
        return result

    def _queue_level_ups(self, player_id: str, leveled: Sequence[tuple]) -> None:
        try:
            player = self.store.get_person(player_id)
        except StoreError as exc:
            current_app.logger.warning("Could not load player %s for level-up email: %s", player_id, exc)
            player = None
        for fundraiser, new_level in leveled:
            try:
                pledges = self.store.list_pledges(fundraiser.id)
                messages = emails.level_up_messages(
                    fundraiser,
                    player or Person(id=player_id),
                    new_level,
                    pledges,
                    team_name=self._team_name(fundraiser),
                )
            except Exception as exc:
                current_app.logger.warning(
                    "Skipping level-up emails for fundraiser %s: %s", fundraiser.id, exc
                )
                continue
            for message in messages:
                self.outbox.enqueue(message)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    def finalize_due(self) -> SweepReport:
        """Settle every fundraiser whose close date is before today."""
        report = SweepReport()
        now = self.clock.now()

        try:
            stranded = self.store.unsettled_fundraisers(now - self.retry_grace)
        except StoreError as exc:
            current_app.logger.error("Could not list unsettled fundraisers: %s", exc)
            stranded = []
            report.failed.append({"fundraiser_id": None, "error": str(exc)})
        for fundraiser in stranded:
            current_app.logger.warning("Resuming interrupted settlement for fundraiser %s", fundraiser.id)
            self._run_settlement(report, fundraiser, resumed=True)

        try:
            due = self.store.due_fundraisers(self.clock.today())
        except StoreError as exc:
            current_app.logger.error("Could not list due fundraisers: %s", exc)
            report.failed.append({"fundraiser_id": None, "error": str(exc)})
            return report
        for fundraiser in due:
            self._run_settlement(report, fundraiser, resumed=False)

        current_app.logger.info(
            "Fundraiser sweep finished: %s processed, %s skipped, %s failed",
            len(report.processed),
            len(report.skipped),
            len(report.failed),
        )
        return report

    def _run_settlement(self, report: SweepReport, fundraiser: Fundraiser, resumed: bool) -> None:
        try:
            if resumed:
                outcome = self._settle(fundraiser, resumed=True)
            else:
                outcome = self.finalize_fundraiser(fundraiser)
        except (StoreError, FundraiserServiceError) as exc:
            current_app.logger.error("Settlement of fundraiser %s aborted: %s", fundraiser.id, exc)
            report.failed.append({"fundraiser_id": fundraiser.id, "error": str(exc)})
            return
        if outcome is None:
            report.skipped.append(fundraiser.id)
        elif not outcome.complete:
            report.failed.append(
                {"fundraiser_id": fundraiser.id, "error": f"{outcome.write_failures} pledge write(s) failed"}
            )
        else:
            report.processed.append(outcome)

    def finalize_fundraiser(self, fundraiser: Fundraiser) -> Optional[FundraiserSettlement]:
        """Claim and settle one fundraiser. Returns None when another process owns it."""
        if fundraiser.end_date >= self.clock.today():
            raise FundraiserServiceError(
                "Fundraiser has not closed yet", status_code=409, payload={"error": "not_closed"}
            )
        if not self.store.claim_for_settlement(fundraiser.id, self.clock.now()):
            current_app.logger.info("Fundraiser %s already claimed by another sweep", fundraiser.id)
            return None
        return self._settle(fundraiser, resumed=False)

    def _settle(self, fundraiser: Fundraiser, resumed: bool) -> Optional[FundraiserSettlement]:
        outcome = FundraiserSettlement(fundraiser_id=fundraiser.id, title=fundraiser.title, resumed=resumed)
        progress = self.store.list_progress(fundraiser.id)
        levels_by_player = {row.user_id: row.fundraiser_levels_earned for row in progress}
        outcome.total_levels = sum(levels_by_player.values())

        settlements: List[PledgeSettlement] = []
        lost_writes = False
        for pledge in self.store.list_pledges(fundraiser.id):
            levels = levels_for_pledge(pledge, levels_by_player, outcome.total_levels, self.missing_progress_policy)
            if pledge.final_amount_owed is not None:
                settlements.append(PledgeSettlement(pledge, levels, pledge.final_amount_owed))
                continue
            try:
                amount = amount_owed(pledge, levels)
            except MalformedPledgeError as exc:
                current_app.logger.warning("Excluding malformed pledge from fundraiser %s: %s", fundraiser.id, exc)
                outcome.pledges_excluded.append(pledge.id)
                settlements.append(PledgeSettlement(pledge, levels, None))
                continue
            try:
                written = self.store.set_final_amount(pledge.id, amount)
            except StoreError as exc:
                current_app.logger.error(
                    "Could not write final amount for pledge %s (fundraiser %s): %s", pledge.id, fundraiser.id, exc
                )
                outcome.write_failures += 1
                continue
            lost_writes = lost_writes or not written
            settlements.append(PledgeSettlement(replace(pledge, final_amount_owed=amount), levels, amount))

        if outcome.write_failures:
            current_app.logger.error(
                "Fundraiser %s left unsettled after %s failed write(s); next sweep will resume it",
                fundraiser.id,
                outcome.write_failures,
            )
            return outcome

        if lost_writes:
            stored = {pledge.id: pledge.final_amount_owed for pledge in self.store.list_pledges(fundraiser.id)}
            settlements = [
                PledgeSettlement(item.pledge, item.levels, stored.get(item.pledge.id, item.amount))
                if item.amount is not None
                else item
                for item in settlements
            ]

        outcome.pledges_settled = sum(1 for item in settlements if item.amount is not None)
        outcome.total_raised = total_owed(settlements)

        if not self.store.mark_settled(fundraiser.id, self.clock.now()):
            current_app.logger.info("Fundraiser %s was settled by another sweep", fundraiser.id)
            return None
        outcome.complete = True
        current_app.logger.info(
            "Settled fundraiser %s: %s pledge(s), %s level(s), $%s",
            fundraiser.id,
            outcome.pledges_settled,
            outcome.total_levels,
            outcome.total_raised,
        )

        try:
            self._queue_settlement_emails(fundraiser, progress, settlements, outcome)
        except Exception as exc:
            current_app.logger.exception("Building settlement emails for fundraiser %s failed: %s", fundraiser.id, exc)
            self.outbox.discard()
        outcome.notifications = self.outbox.flush()
        if any(item.get("kind") == emails.KIND_OWNER_SUMMARY for item in outcome.notifications.failed):
            outcome.owner_email_sent = False
        return outcome

    def _queue_settlement_emails(
        self,
        fundraiser: Fundraiser,
        progress: Sequence[FundraiserProgress],
        settlements: Sequence[PledgeSettlement],
        outcome: FundraiserSettlement,
    ) -> None:
        owner_user_id = fundraiser.owner_user_id
        owner = self.store.get_person(owner_user_id)

        by_donor: "OrderedDict[str, List[PledgeSettlement]]" = OrderedDict()
        for item in settlements:
            if item.amount is None:
                continue
            if item.pledge.donor_user_id and item.pledge.donor_user_id == owner_user_id:
                continue
            by_donor.setdefault(item.pledge.donor_key, []).append(item)

        for donor_items in by_donor.values():
            total = quantize(sum((item.amount for item in donor_items), Decimal("0")))
            self.outbox.enqueue(
                emails.donor_settlement_message(fundraiser, donor_items, total, outcome.total_levels, owner=owner)
            )
        outcome.donor_emails_attempted = len(by_donor)

        if not owner or not owner.email:
            current_app.logger.warning("No owner email for fundraiser %s; skipping owner summary", fundraiser.id)
            return
        names = self._player_names(row.user_id for row in progress)
        rows = settlement_rows(settlements, names, fundraiser.prize_tiers)
        self.outbox.enqueue(
            emails.owner_summary_message(
                fundraiser,
                owner,
                outcome.total_raised,
                outcome.total_levels,
                pledge_count=len(settlements),
                donor_count=len({item.pledge.donor_key for item in settlements}),
                csv_text=settlement_csv(rows),
                excluded=len(outcome.pledges_excluded),
            )
        )
        outcome.owner_email_sent = True

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def fundraiser_summary(self, fundraiser_id: str) -> dict:
        """Current standing: per-player levels and projected or final pledge totals."""
        fundraiser = self._require_fundraiser(fundraiser_id)
        progress = self.store.list_progress(fundraiser.id)
        settlements = self._current_settlements(fundraiser, progress)
        names = self._player_names(row.user_id for row in progress)
        total_levels = sum(row.fundraiser_levels_earned for row in progress)
        return {
            "id": fundraiser.id,
            "title": fundraiser.title,
            "fundraiser_type": fundraiser.fundraiser_type,
            "status": fundraiser.status,
            "start_date": fundraiser.start_date.isoformat(),
            "end_date": fundraiser.end_date.isoformat(),
            "settled": fundraiser.settled_at is not None,
            "goal_amount": None if fundraiser.goal_amount is None else f"{quantize(fundraiser.goal_amount):.2f}",
            "total_levels": total_levels,
            "participants": [
                {
                    "user_id": row.user_id,
                    "display_name": names.get(row.user_id, ""),
                    "starting_level": row.starting_level,
                    "current_level": row.current_level,
                    "fundraiser_points_earned": row.fundraiser_points_earned,
                    "fundraiser_levels_earned": row.fundraiser_levels_earned,
                    "points_to_next_level": points_to_next_level(row.fundraiser_points_earned),
                }
                for row in progress
            ],
            "pledge_count": len(settlements),
            "pledged_total": f"{total_owed(settlements):.2f}",
        }

    def export_csv(self, fundraiser_id: str, requester: Person) -> str:
        """Per-pledge CSV of a fundraiser; only its owner or creator may download it."""
        fundraiser = self._require_fundraiser(fundraiser_id)
        if requester.id not in (fundraiser.owner_user_id, fundraiser.created_by):
            raise FundraiserServiceError("Only the fundraiser owner can export pledges", status_code=403)
        progress = self.store.list_progress(fundraiser.id)
        settlements = self._current_settlements(fundraiser, progress)
        names = self._player_names(row.user_id for row in progress)
        return settlement_csv(settlement_rows(settlements, names, fundraiser.prize_tiers))

    def _current_settlements(
        self, fundraiser: Fundraiser, progress: Sequence[FundraiserProgress]
    ) -> List[PledgeSettlement]:
        levels_by_player = {row.user_id: row.fundraiser_levels_earned for row in progress}
        total_levels = sum(levels_by_player.values())
        settlements = []
        for pledge in self.store.list_pledges(fundraiser.id):
            levels = levels_for_pledge(pledge, levels_by_player, total_levels, self.missing_progress_policy)
            amount = pledge.final_amount_owed
            if amount is None and fundraiser.settled_at is None:
                try:
                    amount = amount_owed(pledge, levels)
                except MalformedPledgeError:
                    amount = None
            settlements.append(PledgeSettlement(pledge, levels, amount))
        return settlements

    def _require_fundraiser(self, fundraiser_id: str) -> Fundraiser:
        fundraiser = self.store.get_fundraiser(fundraiser_id)
        if not fundraiser:
            raise FundraiserServiceError("Fundraiser not found", status_code=404)
        return fundraiser

    def _player_names(self, player_ids: Iterable[str]) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for player_id in player_ids:
            person = self.store.get_person(player_id)
            if person and person.display_name:
                names[player_id] = person.display_name
        return names

    def _team_name(self, fundraiser: Fundraiser) -> Optional[str]:
        try:
            team = self.store.get_team(fundraiser.team_id)
        except StoreError:
            return None
        return team.get("name") if team else None


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _goal_amount(raw: Any) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    goal = to_decimal(raw)
    if goal is None or goal < 0 or goal > MAX_GOAL_AMOUNT:
        raise FundraiserServiceError(f"Goal amount must be between 0 and {MAX_GOAL_AMOUNT}")
    return quantize(goal)


def _clean_prize_tiers(raw: Any) -> List[dict]:
    tiers = []
    for tier in raw or []:
        if not isinstance(tier, Mapping):
            continue
        amount = to_decimal(tier.get("amount"))
        if amount is None or amount > MAX_PLEDGE_AMOUNT:
            continue
        amount = quantize(amount)
        if amount <= 0:
            continue
        tiers.append({"amount": str(amount), "description": str(tier.get("description") or "").strip()})
    return tiers
