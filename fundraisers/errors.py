"""Exceptions raised by the fundraiser services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class FundraiserServiceError(Exception):
    """Raised when a fundraiser operation is rejected."""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {"error": message}


class StoreError(Exception):
    """The data store could not complete a read or write."""


class MalformedPledgeError(Exception):
    """A pledge row cannot be evaluated (bad type or amounts)."""

    def __init__(self, pledge_id: Optional[str], reason: str):
        super().__init__(f"pledge {pledge_id}: {reason}")
        self.pledge_id = pledge_id
        self.reason = reason
