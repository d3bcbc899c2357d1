"""Fundraiser API Blueprint: creation, pledges, progress, export and the settlement sweep."""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Callable, Optional

from flask import Blueprint, Response, current_app, jsonify, request

from .errors import FundraiserServiceError, StoreError
from .records import Fundraiser, Person

UserProvider = Callable[[], Optional[Person]]


def create_fundraisers_blueprint(current_user_provider: UserProvider) -> Blueprint:
    """Factory so the main app can inject its session-based user lookup."""

    from . import build_engine

    bp = Blueprint("fundraisers", __name__)

    def _unauthorized():
        return jsonify({"error": "Unauthorized"}), 401

    def _store_failure(exc: StoreError):
        current_app.logger.error("Fundraiser store failure on %s: %s", request.path, exc)
        return jsonify({"error": "Storage unavailable, please try again"}), 503

    @bp.post("/api/fundraisers")
    def create_fundraiser():
        user = current_user_provider()
        if not user:
            return _unauthorized()
        try:
            fundraiser = build_engine().create_fundraiser(user, request.get_json(silent=True) or {})
        except FundraiserServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        except StoreError as exc:
            return _store_failure(exc)
        return jsonify({"success": True, "fundraiser": _fundraiser_json(fundraiser)}), 201

    @bp.get("/api/fundraisers/<fundraiser_id>")
    def fundraiser_summary(fundraiser_id: str):
        try:
            summary = build_engine().fundraiser_summary(fundraiser_id)
        except FundraiserServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        except StoreError as exc:
            return _store_failure(exc)
        return jsonify(summary)

    @bp.post("/api/fundraisers/<fundraiser_id>/pledges")
    def create_pledge(fundraiser_id: str):
        user = current_user_provider()
        if not user:
            return _unauthorized()
        try:
            receipt = build_engine().record_pledge(user, fundraiser_id, request.get_json(silent=True) or {})
        except FundraiserServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        except StoreError as exc:
            return _store_failure(exc)
        pledge = receipt.pledge
        return (
            jsonify(
                {
                    "success": True,
                    "pledge": {
                        "id": pledge.id,
                        "fundraiser_id": pledge.fundraiser_id,
                        "player_id": pledge.player_id,
                        "pledge_type": pledge.pledge_type,
                        "amount_per_level": _money(pledge.amount_per_level),
                        "max_amount": _money(pledge.max_amount),
                        "flat_amount": _money(pledge.flat_amount),
                        "payment_status": pledge.payment_status,
                    },
                    "estimated_amount": _money(receipt.estimated_amount),
                    "email_sent": receipt.notifications.ok,
                }
            ),
            201,
        )

    @bp.post("/api/fundraisers/progress")
    def update_progress():
        user = current_user_provider()
        if not user:
            return _unauthorized()
        data = request.get_json(silent=True) or {}
        player_id = str(data.get("player_id") or user.id)
        if player_id != user.id:
            return jsonify({"error": "You can only update your own progress"}), 403
        try:
            result = build_engine().update_progress(player_id, data.get("points_earned"))
        except FundraiserServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        except StoreError as exc:
            return _store_failure(exc)
        return jsonify({"success": True, **result.to_dict()})

    @bp.get("/api/fundraisers/<fundraiser_id>/export.csv")
    def export_pledges(fundraiser_id: str):
        user = current_user_provider()
        if not user:
            return _unauthorized()
        try:
            csv_text = build_engine().export_csv(fundraiser_id, user)
        except FundraiserServiceError as exc:
            return jsonify(exc.payload), exc.status_code
        except StoreError as exc:
            return _store_failure(exc)
        return Response(
            csv_text,
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename=fundraiser-{fundraiser_id}-pledges.csv"},
        )

    @bp.post("/api/fundraisers/end-fundraiser")
    def end_fundraisers():
        if not _cron_authorized():
            return _unauthorized()
        report = build_engine().finalize_due()
        return jsonify({"success": True, **report.to_dict()})

    @bp.route("/api/cron/daily", methods=["GET", "POST"])
    def daily_cron():
        if not _cron_authorized():
            return _unauthorized()
        report = build_engine().finalize_due()
        current_app.logger.info("Daily cron: %s fundraiser(s) settled", len(report.processed))
        return jsonify({"success": True, "timestamp": _now_iso(), "fundraisers": report.to_dict()})

    return bp


def _cron_authorized() -> bool:
    """Accept ``Authorization: Bearer <CRON_SECRET>`` or ``?secret=<CRON_SECRET>``."""
    secret = current_app.config.get("CRON_SECRET")
    if not secret:
        current_app.logger.warning("CRON_SECRET is not configured; refusing sweep request")
        return False
    header = request.headers.get("Authorization", "")
    supplied = header[len("Bearer "):] if header.startswith("Bearer ") else request.args.get("secret", "")
    return hmac.compare_digest(str(supplied).encode("utf-8"), str(secret).encode("utf-8"))


def _fundraiser_json(fundraiser: Fundraiser) -> dict:
    return {
        "id": fundraiser.id,
        "fundraiser_type": fundraiser.fundraiser_type,
        "owner_id": fundraiser.owner_id,
        "team_id": fundraiser.team_id,
        "title": fundraiser.title,
        "description": fundraiser.description,
        "start_date": fundraiser.start_date.isoformat(),
        "end_date": fundraiser.end_date.isoformat(),
        "goal_amount": _money(fundraiser.goal_amount),
        "estimated_min_levels": fundraiser.estimated_min_levels,
        "estimated_max_levels": fundraiser.estimated_max_levels,
        "prize_tiers": fundraiser.prize_tiers,
        "status": fundraiser.status,
    }


def _money(value) -> Optional[str]:
    return None if value is None else f"{value:.2f}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
