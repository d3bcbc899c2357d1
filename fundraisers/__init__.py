"""Fundraiser pledges, progress tracking and end-of-fundraiser settlement."""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from .notifications import LoggingEmailSender, NotificationOutbox
from .pledges import MissingProgressPolicy
from .service import DEFAULT_RETRY_GRACE, SettlementEngine, SystemClock
from .store import SqlFundraiserStore, SupabaseFundraiserStore


def build_store(app=None):
    """Supabase when a client is configured, otherwise the local SQLAlchemy tables."""
    app = app or current_app
    client = app.config.get("SUPABASE_CLIENT")
    if app.config.get("USE_SUPABASE") and client is not None:
        return SupabaseFundraiserStore(client)
    return SqlFundraiserStore()


def build_engine(app=None) -> SettlementEngine:
    app = app or current_app
    store = build_store(app)
    sender = app.config.get("EMAIL_SENDER") or LoggingEmailSender()
    grace_seconds = app.config.get("SETTLEMENT_RETRY_GRACE_SECONDS")
    return SettlementEngine(
        store,
        NotificationOutbox(sender, store=store),
        clock=app.config.get("FUNDRAISER_CLOCK") or SystemClock(),
        missing_progress_policy=MissingProgressPolicy.parse(app.config.get("MISSING_PROGRESS_POLICY")),
        retry_grace=DEFAULT_RETRY_GRACE if grace_seconds in (None, "") else timedelta(seconds=int(grace_seconds)),
    )


from .routes import create_fundraisers_blueprint  # noqa: E402

__all__ = ["build_engine", "build_store", "create_fundraisers_blueprint", "SettlementEngine"]
