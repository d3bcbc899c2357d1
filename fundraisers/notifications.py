"""Outbound email queue for fundraiser events.

Messages are queued while state changes happen and only flushed once those
changes are committed. A failed send is logged and recorded in
``fundraiser_notifications`` for a manual resend; it never propagates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import resend
from flask import current_app, has_app_context

DEFAULT_EMAIL_FROM = "RepQuest <noreply@mantistimer.com>"


@dataclass
class Notification:
    kind: str
    recipient: Optional[str]
    subject: str
    html: str
    fundraiser_id: Optional[str] = None
    attachments: List[dict] = field(default_factory=list)


@dataclass
class DispatchReport:
    sent: List[str] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {"sent": list(self.sent), "failed": list(self.failed)}


class ResendEmailSender:
    """Deliver notifications through the Resend API."""

    def __init__(self, api_key: str, sender: str = DEFAULT_EMAIL_FROM):
        if not api_key:
            raise ValueError("RESEND_API_KEY is required for the Resend sender.")
        resend.api_key = api_key
        self.sender = sender

    def send(self, notification: Notification) -> None:
        params = {
            "from": self.sender,
            "to": [notification.recipient],
            "subject": notification.subject,
            "html": notification.html,
        }
        if notification.attachments:
            params["attachments"] = notification.attachments
        resend.Emails.send(params)


class LoggingEmailSender:
    """Stand-in used when no Resend key is configured: log instead of sending."""

    def send(self, notification: Notification) -> None:
        _log("info", "Email (not sent, no RESEND_API_KEY) to %s: %s", notification.recipient, notification.subject)


class NotificationOutbox:
    """Queue of pending notifications, flushed after the state they describe is durable."""

    def __init__(self, sender, store=None):
        self.sender = sender
        self.store = store
        self._pending: List[Notification] = []

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, notification: Notification) -> None:
        self._pending.append(notification)

    def discard(self) -> None:
        self._pending.clear()

    def flush(self) -> DispatchReport:
        report = DispatchReport()
        pending, self._pending = self._pending, []
        for notification in pending:
            if not notification.recipient:
                self._record_failure(report, notification, "missing recipient")
                continue
            try:
                self.sender.send(notification)
            except Exception as exc:
                self._record_failure(report, notification, str(exc))
                continue
            _log("info", "Sent %s email to %s", notification.kind, notification.recipient)
            report.sent.append(notification.recipient)
        return report

    def _record_failure(self, report: DispatchReport, notification: Notification, error: str) -> None:
        _log(
            "warning",
            "Failed to send %s email to %s for fundraiser %s: %s",
            notification.kind,
            notification.recipient,
            notification.fundraiser_id,
            error,
        )
        report.failed.append(
            {"kind": notification.kind, "recipient": notification.recipient, "error": error}
        )
        if self.store is None:
            return
        try:
            self.store.log_notification(
                {
                    "fundraiser_id": notification.fundraiser_id,
                    "kind": notification.kind,
                    "recipient": notification.recipient,
                    "subject": notification.subject[:255],
                    "status": "failed",
                    "error": error,
                }
            )
        except Exception as exc:
            _log("error", "Could not record failed %s email for resend: %s", notification.kind, exc)


def _log(level: str, message: str, *args) -> None:
    if not has_app_context():
        return
    getattr(current_app.logger, level)(message, *args)
