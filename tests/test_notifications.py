"""Tests for the notification outbox and email builders."""

import base64
from datetime import date
from decimal import Decimal

from fundraisers import emails
from fundraisers.notifications import Notification, NotificationOutbox
from fundraisers.records import Fundraiser, Person, Pledge


class RecordingStore:
    def __init__(self):
        self.logged = []

    def log_notification(self, entry):
        self.logged.append(entry)


def _note(recipient, kind="level_up"):
    return Notification(kind=kind, recipient=recipient, subject="Hello", html="<p>hi</p>", fundraiser_id="f-1")


class TestOutbox:
    def test_nothing_sent_before_flush(self, sender):
        outbox = NotificationOutbox(sender)
        outbox.enqueue(_note("a@example.com"))
        assert len(outbox) == 1
        assert sender.sent == []

        report = outbox.flush()
        assert report.sent == ["a@example.com"]
        assert len(outbox) == 0

    def test_failure_is_recorded_and_others_still_sent(self, sender):
        store = RecordingStore()
        sender.fail_for.add("broken@example.com")
        outbox = NotificationOutbox(sender, store=store)
        for recipient in ("broken@example.com", None, "ok@example.com"):
            outbox.enqueue(_note(recipient))

        report = outbox.flush()

        assert not report.ok
        assert report.sent == ["ok@example.com"]
        assert [item["recipient"] for item in report.failed] == ["broken@example.com", None]
        assert store.logged[0]["status"] == "failed"
        assert store.logged[0]["error"] == "resend unavailable"
        assert store.logged[1]["error"] == "missing recipient"

    def test_discard(self, sender):
        outbox = NotificationOutbox(sender)
        outbox.enqueue(_note("a@example.com"))
        outbox.discard()
        assert outbox.flush().sent == []


def _fundraiser():
    return Fundraiser(
        id="f-1",
        fundraiser_type="team",
        owner_id="team-1",
        team_id="team-1",
        title="Spring Kit Drive",
        start_date=date(2025, 3, 1),
        end_date=date(2025, 3, 15),
        status="active",
        created_by="coach",
        goal_amount=Decimal("500"),
    )


def _pledge(pledge_id, email, player_id=None, pledge_type="per_level"):
    return Pledge(
        id=pledge_id,
        fundraiser_id="f-1",
        pledge_type=pledge_type,
        donor_name="Donor " + pledge_id,
        donor_email=email,
        player_id=player_id,
        amount_per_level=Decimal("5"),
        max_amount=Decimal("20"),
    )


def test_level_up_emails_go_to_backers_of_that_player(app):
    pledges = [
        _pledge("p1", "dana@example.com"),
        _pledge("p2", "Dana@example.com", player_id="alice"),
        _pledge("p3", "bob-fan@example.com", player_id="bob"),
    ]
    messages = emails.level_up_messages(_fundraiser(), Person(id="alice", display_name="Alice"), 3, pledges)

    assert [m.recipient for m in messages] == ["dana@example.com"]
    assert messages[0].subject == "🎉 Alice just leveled up!"
    assert "Level 3" in messages[0].html
    assert "https://repquest.test/fundraiser/f-1" in messages[0].html


def test_owner_summary_attaches_csv(app):
    owner = Person(id="coach", display_name="Coach Carter", email="coach@example.com")
    message = emails.owner_summary_message(
        _fundraiser(), owner, Decimal("55"), 4, pledge_count=2, donor_count=1, csv_text="Donor Name\nDana\n"
    )
    assert message.kind == emails.KIND_OWNER_SUMMARY
    assert message.subject.endswith("Raised $55.00!")
    attachment = message.attachments[0]
    assert base64.b64decode(attachment["content"]).decode("utf-8") == "Donor Name\nDana\n"
    assert "Goal: $500.00" in message.html
