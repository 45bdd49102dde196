"""
Claim rules: a member links to at most one account, and an account claims at
most one member per bill. Shared by the client editor and the server.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .bill_models import Bill, Member
from .errors import ClaimError


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def claim(bill: Bill, member: Member, user_id: str, display_name: Optional[str] = None) -> bool:
    """Link `member` to `user_id`. Returns False when it was already linked to that account."""
    if not user_id:
        raise ClaimError("claim requires an account id")
    if member.linked_user_id and member.linked_user_id != user_id:
        raise ClaimError(f"member {member.id} is already claimed by another account")
    for other in bill.members:
        if other is not member and other.linked_user_id == user_id:
            raise ClaimError(f"account {user_id} already claimed member {other.id} in this bill")

    if member.linked_user_id == user_id:
        return False

    member.original_name = member.name
    if display_name:
        member.name = display_name
    member.linked_user_id = user_id
    member.claimed_at = _now_iso()
    return True


def unclaim(member: Member) -> bool:
    """Drop the link and restore the pre-claim name. Returns False if nothing was linked."""
    if member.linked_user_id is None and member.original_name is None:
        return False
    if member.original_name is not None:
        member.name = member.original_name
    member.original_name = None
    member.linked_user_id = None
    member.claimed_at = None
    return True
