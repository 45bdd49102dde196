"""
Delta Factory
=============

Purpose:
- Diff the working bill against its last-synced snapshot and build the
  per-kind add / update / delete change-set the server reconciles.

Rules:
- No server id                         -> Add, references resolved leniently.
- Server id + snapshot counterpart     -> Update, only if a tracked field differs.
- Server id, no snapshot counterpart   -> Update (no baseline to prove it unchanged).
- Update references resolve strictly; only entities that are new in this
  change-set may fall back to their local id.
- Deletes come from the caller-tracked server-id lists, plus snapshot entities
  that vanished while carrying a server id.
- Itemized expenses omit payer / participants in Add and Update entries.
- Settlements are a set difference of (from, to) markers, resolved strictly.
- Bill name is only sent when it differs from the snapshot.

A request with no populated section is the empty delta and is never sent.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from snapsplit.common.bill_models import Bill, Expense, ExpenseItem, Member
from snapsplit.common.delta_models import (
    BillMeta,
    DeltaSyncRequest,
    ExpenseAdd,
    ExpenseChanges,
    ExpenseItemAdd,
    ExpenseItemChanges,
    ExpenseItemUpdate,
    ExpenseUpdate,
    MemberAdd,
    MemberChanges,
    MemberUpdate,
    SettlementChanges,
    SettlementRef,
    is_empty_delta,
)

from .id_resolver import StrictIdResolver
from .snapshot import BillSnapshot

log = logging.getLogger("snapsplit.client")


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for i in ids:
        if i and i not in seen:
            seen.add(i)
            out.append(i)
    return out


def _relative_order(ids: Sequence[str], keep: set) -> Dict[str, int]:
    ordered = [i for i in ids if i in keep]
    return {mid: pos for pos, mid in enumerate(ordered)}


class DeltaFactory:
    def __init__(self, bill: Bill, snapshot: Optional[BillSnapshot]) -> None:
        self.bill = bill
        self.snapshot = snapshot
        self.resolver = StrictIdResolver(bill, snapshot)

    # -----------------------------
    # Reference helpers
    # -----------------------------
    def _lenient_members(self, ids: List[str]) -> List[str]:
        return [self.resolver.resolve_lenient("member", pid) for pid in ids]

    def _strict_members(self, ids: List[str]) -> List[str]:
        return [self.resolver.resolve("member", pid) for pid in ids]

    # -----------------------------
    # Members
    # -----------------------------
    def _member_changes(self) -> Optional[MemberChanges]:
        changes = MemberChanges()
        snap = self.snapshot

        reordered: set = set()
        if snap is not None:
            current_ids = [m.id for m in self.bill.members]
            shared = {m.id for m in snap.members} & set(current_ids)
            before = _relative_order([m.id for m in snap.members], shared)
            after = _relative_order(current_ids, shared)
            reordered = {mid for mid in shared if before[mid] != after[mid]}

        for index, m in enumerate(self.bill.members):
            if not m.remote_id:
                changes.add.append(
                    MemberAdd(
                        local_id=m.id,
                        name=m.name,
                        display_order=index,
                        original_name=m.original_name,
                        linked_user_id=m.linked_user_id,
                        claimed_at=m.claimed_at,
                    )
                )
                continue

            prev = snap.find_member(m.id) if snap is not None else None
            if prev is not None and not self._member_changed(m, prev) and m.id not in reordered:
                continue

            update = MemberUpdate(
                remote_id=m.remote_id,
                name=m.name,
                display_order=index if (prev is None or m.id in reordered) else None,
                original_name=m.original_name,
                linked_user_id=m.linked_user_id,
                claimed_at=m.claimed_at,
            )
            if prev is not None and prev.linked_user_id and not m.linked_user_id:
                update.clear_claim = True
            changes.update.append(update)

        deleted_from_snapshot = []
        if snap is not None:
            deleted_from_snapshot = [
                s.remote_id for s in snap.members if s.remote_id and self.bill.find_member(s.id) is None
            ]
        changes.delete = _dedupe(list(self.bill.deleted_member_ids) + deleted_from_snapshot)

        if not (changes.add or changes.update or changes.delete):
            return None
        return changes

    @staticmethod
    def _member_changed(m: Member, prev: Member) -> bool:
        return (
            m.name != prev.name
            or m.original_name != prev.original_name
            or m.linked_user_id != prev.linked_user_id
            or m.claimed_at != prev.claimed_at
        )

    # -----------------------------
    # Expenses
    # -----------------------------
    def _expense_changes(self) -> Optional[ExpenseChanges]:
        changes = ExpenseChanges()
        snap = self.snapshot

        for e in self.bill.expenses:
            if not e.remote_id:
                add = ExpenseAdd(
                    local_id=e.id,
                    name=e.name,
                    amount=e.amount,
                    service_fee_percent=e.service_fee_percent,
                    is_itemized=e.is_itemized,
                )
                if not e.is_itemized:
                    if e.paid_by:
                        add.paid_by_member_id = self.resolver.resolve_lenient("member", e.paid_by)
                    add.participant_ids = self._lenient_members(e.participants)
                changes.add.append(add)
                continue

            prev = snap.find_expense(e.id) if snap is not None else None
            if prev is not None and not self._expense_changed(e, prev):
                continue

            update = ExpenseUpdate(
                remote_id=e.remote_id,
                name=e.name,
                amount=e.amount,
                service_fee_percent=e.service_fee_percent,
                is_itemized=e.is_itemized,
            )
            if not e.is_itemized:
                if e.paid_by:
                    update.paid_by_member_id = self.resolver.resolve("member", e.paid_by)
                update.participant_ids = self._strict_members(e.participants)
            changes.update.append(update)

        deleted_from_snapshot = []
        if snap is not None:
            deleted_from_snapshot = [
                s.remote_id for s in snap.expenses if s.remote_id and self.bill.find_expense(s.id) is None
            ]
        changes.delete = _dedupe(list(self.bill.deleted_expense_ids) + deleted_from_snapshot)

        if not (changes.add or changes.update or changes.delete):
            return None
        return changes

    @staticmethod
    def _expense_changed(e: Expense, prev: Expense) -> bool:
        if (
            e.name != prev.name
            or e.amount != prev.amount
            or e.service_fee_percent != prev.service_fee_percent
            or e.is_itemized != prev.is_itemized
        ):
            return True
        if e.is_itemized:
            return False
        return e.paid_by != prev.paid_by or list(e.participants) != list(prev.participants)

    # -----------------------------
    # Expense items
    # -----------------------------
    def _item_changes(self) -> Optional[ExpenseItemChanges]:
        changes = ExpenseItemChanges()
        snap = self.snapshot

        for e in self.bill.expenses:
            if not e.is_itemized:
                continue
            parent_ref = e.remote_id or e.id
            for item in e.items:
                if not item.remote_id:
                    add = ExpenseItemAdd(
                        local_id=item.id,
                        expense_id=parent_ref,
                        name=item.name,
                        amount=item.amount,
                        participant_ids=self._lenient_members(item.participants),
                    )
                    if item.paid_by:
                        add.paid_by_member_id = self.resolver.resolve_lenient("member", item.paid_by)
                    changes.add.append(add)
                    continue

                prev = snap.find_item(item.id) if snap is not None else None
                if prev is not None and not self._item_changed(item, prev):
                    continue

                update = ExpenseItemUpdate(
                    remote_id=item.remote_id,
                    name=item.name,
                    amount=item.amount,
                    participant_ids=self._strict_members(item.participants),
                )
                if item.paid_by:
                    update.paid_by_member_id = self.resolver.resolve("member", item.paid_by)
                changes.update.append(update)

        deleted_from_snapshot: List[str] = []
        if snap is not None:
            for s_expense in snap.expenses:
                current = self.bill.find_expense(s_expense.id)
                if current is None:
                    # the expense delete cascades on the server
                    continue
                for s_item in s_expense.items:
                    if s_item.remote_id and current.find_item(s_item.id) is None:
                        deleted_from_snapshot.append(s_item.remote_id)
        changes.delete = _dedupe(list(self.bill.deleted_item_ids) + deleted_from_snapshot)

        if not (changes.add or changes.update or changes.delete):
            return None
        return changes

    @staticmethod
    def _item_changed(item: ExpenseItem, prev: ExpenseItem) -> bool:
        return (
            item.name != prev.name
            or item.amount != prev.amount
            or item.paid_by != prev.paid_by
            or list(item.participants) != list(prev.participants)
        )

    # -----------------------------
    # Settlements / bill meta
    # -----------------------------
    def _settlement_changes(self) -> Optional[SettlementChanges]:
        current: List[Tuple[str, str]] = [st.key for st in self.bill.settled_transfers]
        previous: List[Tuple[str, str]] = (
            [st.key for st in self.snapshot.settled_transfers] if self.snapshot is not None else []
        )
        current_set, previous_set = set(current), set(previous)

        changes = SettlementChanges()
        for f, t in current:
            if (f, t) in previous_set:
                continue
            changes.mark.append(
                SettlementRef(
                    from_member_id=self.resolver.resolve("member", f),
                    to_member_id=self.resolver.resolve("member", t),
                )
            )
        for f, t in previous:
            if (f, t) in current_set:
                continue
            if self.bill.find_member(f) is None or self.bill.find_member(t) is None:
                # deleting the member already removes its markers server-side
                continue
            changes.unmark.append(
                SettlementRef(
                    from_member_id=self.resolver.resolve("member", f),
                    to_member_id=self.resolver.resolve("member", t),
                )
            )

        if not (changes.mark or changes.unmark):
            return None
        return changes

    def _bill_meta(self) -> Optional[BillMeta]:
        if self.snapshot is not None and self.snapshot.name == self.bill.name:
            return None
        return BillMeta(name=self.bill.name)

    # -----------------------------
    # Entry point
    # -----------------------------
    def build(self) -> DeltaSyncRequest:
        request = DeltaSyncRequest(
            base_version=self.bill.version,
            members=self._member_changes(),
            expenses=self._expense_changes(),
            expense_items=self._item_changes(),
            settlements=self._settlement_changes(),
            bill_meta=self._bill_meta(),
        )
        if is_empty_delta(request):
            log.debug(f"[DELTA] {self.bill.id}: empty delta at v{self.bill.version}")
        return request


def create_delta_request(bill: Bill, snapshot: Optional[BillSnapshot]) -> DeltaSyncRequest:
    return DeltaFactory(bill, snapshot).build()
