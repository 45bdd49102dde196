"""
Working-copy edits that carry sync bookkeeping.

Deleting a synced entity records its server id on the bill before the entity
disappears, so the next delta can report the delete. Claim / unclaim follow
the bill's one-account-per-member rule.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from snapsplit.common import claims
from snapsplit.common.bill_models import Bill, Expense, ExpenseItem, Member, SettledTransfer
from snapsplit.common.money import D


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _touch(bill: Bill) -> None:
    if bill.sync_status in ("synced", "error"):
        bill.sync_status = "modified"


# -----------------------------
# Members
# -----------------------------
def add_member(bill: Bill, name: str) -> Member:
    member = Member(id=_new_id(), name=name)
    bill.members.append(member)
    _touch(bill)
    return member


def rename_member(bill: Bill, member_id: str, name: str) -> Member:
    member = _require_member(bill, member_id)
    member.name = name
    _touch(bill)
    return member


def remove_member(bill: Bill, member_id: str) -> None:
    member = _require_member(bill, member_id)
    if member.remote_id:
        bill.deleted_member_ids.append(member.remote_id)

    bill.members = [m for m in bill.members if m.id != member_id]
    bill.settled_transfers = [
        st for st in bill.settled_transfers if member_id not in (st.from_member_id, st.to_member_id)
    ]
    for e in bill.expenses:
        _strip_member(e, member_id)
        for item in e.items:
            _strip_member(item, member_id)
    _touch(bill)


def _strip_member(target, member_id: str) -> None:
    if target.paid_by == member_id:
        target.paid_by = None
    target.participants = [p for p in target.participants if p != member_id]


def claim_member(bill: Bill, member_id: str, user_id: str, display_name: Optional[str] = None) -> Member:
    member = _require_member(bill, member_id)
    if claims.claim(bill, member, user_id, display_name):
        _touch(bill)
    return member


def unclaim_member(bill: Bill, member_id: str) -> Member:
    member = _require_member(bill, member_id)
    if claims.unclaim(member):
        _touch(bill)
    return member


def _require_member(bill: Bill, member_id: str) -> Member:
    member = bill.find_member(member_id)
    if member is None:
        raise KeyError(f"member not found: {member_id}")
    return member


# -----------------------------
# Expenses / items
# -----------------------------
def add_expense(
    bill: Bill,
    name: str,
    amount: Decimal,
    *,
    paid_by: Optional[str] = None,
    participants: Optional[List[str]] = None,
    service_fee_percent: Decimal = D("0"),
    is_itemized: bool = False,
) -> Expense:
    expense = Expense(
        id=_new_id(),
        name=name,
        amount=D(str(amount)),
        service_fee_percent=D(str(service_fee_percent)),
        is_itemized=is_itemized,
        paid_by=None if is_itemized else paid_by,
        participants=[] if is_itemized else list(participants or []),
    )
    bill.expenses.append(expense)
    _touch(bill)
    return expense


def remove_expense(bill: Bill, expense_id: str) -> None:
    expense = bill.find_expense(expense_id)
    if expense is None:
        raise KeyError(f"expense not found: {expense_id}")
    if expense.remote_id:
        bill.deleted_expense_ids.append(expense.remote_id)
    bill.expenses = [e for e in bill.expenses if e.id != expense_id]
    _touch(bill)


def add_item(
    bill: Bill,
    expense_id: str,
    name: str,
    amount: Decimal,
    *,
    paid_by: Optional[str] = None,
    participants: Optional[List[str]] = None,
) -> ExpenseItem:
    expense = bill.find_expense(expense_id)
    if expense is None:
        raise KeyError(f"expense not found: {expense_id}")
    item = ExpenseItem(
        id=_new_id(),
        name=name,
        amount=D(str(amount)),
        paid_by=paid_by,
        participants=list(participants or []),
    )
    expense.items.append(item)
    _touch(bill)
    return item


def remove_item(bill: Bill, item_id: str) -> None:
    found = bill.find_item(item_id)
    if found is None:
        raise KeyError(f"expense item not found: {item_id}")
    expense, item = found
    if item.remote_id:
        bill.deleted_item_ids.append(item.remote_id)
    expense.items = [i for i in expense.items if i.id != item_id]
    _touch(bill)


# -----------------------------
# Settlement markers
# -----------------------------
def mark_settled(bill: Bill, from_member_id: str, to_member_id: str) -> None:
    if bill.is_transfer_settled(from_member_id, to_member_id):
        return
    bill.settled_transfers.append(SettledTransfer(from_member_id, to_member_id, settled_at=_now_iso()))
    _touch(bill)


def unmark_settled(bill: Bill, from_member_id: str, to_member_id: str) -> None:
    before = len(bill.settled_transfers)
    bill.settled_transfers = [
        st for st in bill.settled_transfers if st.key != (from_member_id, to_member_id)
    ]
    if len(bill.settled_transfers) != before:
        _touch(bill)
