"""Shared fixtures for the fundraiser tests.

Every test gets its own app backed by an in-memory sqlite database, a sender
that records outgoing emails instead of calling Resend, and a clock pinned to
2025-03-10 12:00 UTC.
"""

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from fundraisers import build_engine  # noqa: E402
from fundraisers.records import Person  # noqa: E402
from fundraisers.service import Clock  # noqa: E402
from models import DrillResult, FundraiserPledge, Team, TeamMember, User  # noqa: E402

CRON_SECRET = "cron-test-secret"
START = date(2025, 3, 1)
END = date(2025, 3, 15)


class FixedClock(Clock):
    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def today(self) -> date:
        return self.current.date()

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class RecordingSender:
    """Captures notifications; recipients in ``fail_for`` raise like a Resend outage."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send(self, notification) -> None:
        if notification.recipient in self.fail_for:
            raise RuntimeError("resend unavailable")
        self.sent.append(notification)

    def to(self, recipient, kind=None):
        return [n for n in self.sent if n.recipient == recipient and (kind is None or n.kind == kind)]

    def of_kind(self, kind):
        return [n for n in self.sent if n.kind == kind]


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def app(clock, sender):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "USE_SUPABASE": False,
            "SUPABASE_CLIENT": None,
            "EMAIL_SENDER": sender,
            "FUNDRAISER_CLOCK": clock,
            "CRON_SECRET": CRON_SECRET,
            "APP_URL": "https://repquest.test",
            "MISSING_PROGRESS_POLICY": "zero",
            "SETTLEMENT_RETRY_GRACE_SECONDS": 3600,
        }
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def engine(app):
    return build_engine(app)


class Seeder:
    """Insert users, teams and drill points straight into the tables."""

    def user(self, user_id, name=None, role="player", email=None, team_id=None) -> Person:
        user = User(
            id=user_id,
            display_name=name or user_id.title(),
            email=email if email is not None else f"{user_id}@example.com",
            role=role,
            active_team_id=team_id,
        )
        db.session.add(user)
        db.session.commit()
        return Person.from_row(user.to_row())

    def team(self, team_id, coach_id, name="Thunder FC", members=()):
        db.session.add(Team(id=team_id, name=name, coach_id=coach_id))
        for member_id in members:
            db.session.add(TeamMember(team_id=team_id, user_id=member_id))
        db.session.commit()

    def points(self, user_id, team_id, points):
        db.session.add(DrillResult(user_id=user_id, team_id=team_id, points_earned=points))
        db.session.commit()

    def raw_pledge(self, fundraiser_id, **columns) -> str:
        row = FundraiserPledge(fundraiser_id=fundraiser_id, **columns)
        db.session.add(row)
        db.session.commit()
        return row.id


@pytest.fixture
def seed(app):
    return Seeder()


@pytest.fixture
def team_setup(seed):
    """Coach with a two-player team; alice already has 2500 team points."""
    coach = seed.user("coach", name="Coach Carter", role="coach", team_id="team-1")
    alice = seed.user("alice", name="Alice", team_id="team-1")
    bob = seed.user("bob", name="Bob", team_id="team-1")
    seed.team("team-1", coach_id="coach", members=("alice", "bob"))
    seed.points("alice", "team-1", 2500)
    return {"coach": coach, "alice": alice, "bob": bob}


def fundraiser_payload(**overrides):
    payload = {
        "fundraiser_type": "team",
        "owner_id": "team-1",
        "title": "Spring Kit Drive",
        "start_date": START.isoformat(),
        "end_date": END.isoformat(),
        "goal_amount": "500",
        "estimated_min_levels": 2,
        "estimated_max_levels": 6,
        "prize_tiers": [
            {"amount": 25, "description": "Team shout-out"},
            {"amount": 50, "description": "Signed ball"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def team_fundraiser(engine, team_setup):
    return engine.create_fundraiser(team_setup["coach"], fundraiser_payload())


@pytest.fixture
def donor(seed):
    return seed.user("dana", name="Dana Donor", role="fan", email="dana@example.com")
