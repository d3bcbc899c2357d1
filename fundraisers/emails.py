"""Build fundraiser email notifications from the Jinja templates in templates/emails/."""

from __future__ import annotations

import base64
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from flask import current_app, render_template

from .export import PledgeSettlement
from .levels import level_tier
from .notifications import Notification
from .pledges import DEFAULT_ESTIMATED_LEVELS, PLEDGE_PER_LEVEL, describe_terms, quantize
from .records import Fundraiser, Person, Pledge

KIND_LEVEL_UP = "level_up"
KIND_PLEDGE_CONFIRMED = "pledge_confirmed"
KIND_DONOR_SETTLEMENT = "donor_settlement"
KIND_OWNER_SUMMARY = "owner_summary"


def fundraiser_url(fundraiser: Fundraiser) -> str:
    base = (current_app.config.get("APP_URL") or "").rstrip("/")
    return f"{base}/fundraiser/{fundraiser.id}"


def level_up_messages(
    fundraiser: Fundraiser,
    player: Optional[Person],
    new_level: int,
    pledges: Iterable[Pledge],
    team_name: Optional[str] = None,
) -> List[Notification]:
    """One email per donor backing this player (directly or fundraiser-wide)."""
    player_name = player.display_name if player and player.display_name else "Your player"
    player_id = player.id if player else None
    by_donor: Dict[str, List[Pledge]] = {}
    for pledge in pledges:
        if pledge.player_id and pledge.player_id != player_id:
            continue
        by_donor.setdefault(pledge.donor_key, []).append(pledge)

    messages = []
    for donor_pledges in by_donor.values():
        first = donor_pledges[0]
        per_level_terms = [describe_terms(p) for p in donor_pledges if p.pledge_type == PLEDGE_PER_LEVEL]
        html = render_template(
            "emails/level_up.html",
            donor_name=first.donor_name or "Supporter",
            player_name=player_name,
            new_level=new_level,
            tier=level_tier(new_level),
            fundraiser=fundraiser,
            per_level_terms=per_level_terms,
            team_name=team_name or "Team",
            fundraiser_url=fundraiser_url(fundraiser),
        )
        messages.append(
            Notification(
                kind=KIND_LEVEL_UP,
                recipient=first.donor_email,
                subject=f"🎉 {player_name} just leveled up!",
                html=html,
                fundraiser_id=fundraiser.id,
            )
        )
    return messages


def pledge_confirmation_message(
    fundraiser: Fundraiser,
    pledge: Pledge,
    estimate: Decimal,
    player: Optional[Person] = None,
    team_name: Optional[str] = None,
) -> Notification:
    html = render_template(
        "emails/pledge_confirmed.html",
        donor_name=pledge.donor_name or "Supporter",
        fundraiser=fundraiser,
        pledge=pledge,
        terms=describe_terms(pledge),
        is_per_level=pledge.pledge_type == PLEDGE_PER_LEVEL,
        estimate=quantize(estimate),
        estimated_levels=fundraiser.estimated_max_levels or DEFAULT_ESTIMATED_LEVELS,
        player_name=player.display_name if player else None,
        team_name=team_name or "Team",
        fundraiser_url=fundraiser_url(fundraiser),
    )
    return Notification(
        kind=KIND_PLEDGE_CONFIRMED,
        recipient=pledge.donor_email,
        subject=f"Pledge Confirmed: {fundraiser.title}",
        html=html,
        fundraiser_id=fundraiser.id,
    )


def donor_settlement_message(
    fundraiser: Fundraiser,
    settlements: Sequence[PledgeSettlement],
    total: Decimal,
    total_levels: int,
    owner: Optional[Person] = None,
) -> Notification:
    """Single summary email covering every pledge one donor made."""
    first = settlements[0].pledge
    lines = [
        {"terms": describe_terms(item.pledge), "levels": item.levels, "amount": quantize(item.amount)}
        for item in settlements
        if item.amount is not None
    ]
    html = render_template(
        "emails/donor_settlement.html",
        donor_name=first.donor_name or "Supporter",
        fundraiser=fundraiser,
        lines=lines,
        total=quantize(total),
        total_levels=total_levels,
        owner=owner,
        fundraiser_url=fundraiser_url(fundraiser),
    )
    return Notification(
        kind=KIND_DONOR_SETTLEMENT,
        recipient=first.donor_email,
        subject=f"Fundraiser Complete: {fundraiser.title} - Final Total: ${quantize(total)}",
        html=html,
        fundraiser_id=fundraiser.id,
    )


def owner_summary_message(
    fundraiser: Fundraiser,
    owner: Person,
    total_raised: Decimal,
    total_levels: int,
    pledge_count: int,
    donor_count: int,
    csv_text: str,
    excluded: int = 0,
) -> Notification:
    html = render_template(
        "emails/owner_summary.html",
        owner_name=owner.display_name or "Coach",
        fundraiser=fundraiser,
        total_raised=quantize(total_raised),
        total_levels=total_levels,
        pledge_count=pledge_count,
        donor_count=donor_count,
        excluded=excluded,
        goal_amount=quantize(fundraiser.goal_amount) if fundraiser.goal_amount is not None else None,
        fundraiser_url=fundraiser_url(fundraiser),
    )
    attachment = {
        "filename": f"fundraiser-{fundraiser.id}-pledges.csv",
        "content": base64.b64encode(csv_text.encode("utf-8")).decode("ascii"),
    }
    return Notification(
        kind=KIND_OWNER_SUMMARY,
        recipient=owner.email,
        subject=f"🎉 Fundraiser Complete: {fundraiser.title} - Raised ${quantize(total_raised)}!",
        html=html,
        fundraiser_id=fundraiser.id,
        attachments=[attachment],
    )
