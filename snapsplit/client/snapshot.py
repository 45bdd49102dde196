"""
Snapshot Store
==============

Holds, per bill, the state last known to match the server. It is only a diff
baseline for the delta factory.

A snapshot is a deep, independent copy: mutating the working bill after
taking it never changes the snapshot. Snapshots are replaced wholesale after
a successful sync or a full refresh and are never edited in place.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from snapsplit.common.bill_models import Bill, Expense, Member, SettledTransfer

from .storage import DurableStorage

log = logging.getLogger("snapsplit.client")


@dataclass(frozen=True)
class BillSnapshot:
    bill_id: str
    name: str
    version: int
    members: Tuple[Member, ...]
    expenses: Tuple[Expense, ...]
    settled_transfers: Tuple[SettledTransfer, ...]

    def find_member(self, member_id: str) -> Optional[Member]:
        for m in self.members:
            if m.id == member_id:
                return m
        return None

    def find_expense(self, expense_id: str) -> Optional[Expense]:
        for e in self.expenses:
            if e.id == expense_id:
                return e
        return None

    def find_item(self, item_id: str):
        for e in self.expenses:
            item = e.find_item(item_id)
            if item is not None:
                return item
        return None

    def to_dict(self) -> Dict:
        return {
            "bill_id": self.bill_id,
            "name": self.name,
            "version": self.version,
            "members": [m.to_dict() for m in self.members],
            "expenses": [e.to_dict() for e in self.expenses],
            "settled_transfers": [s.to_dict() for s in self.settled_transfers],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "BillSnapshot":
        return cls(
            bill_id=str(data["bill_id"]),
            name=str(data.get("name") or ""),
            version=int(data.get("version") or 0),
            members=tuple(Member.from_dict(m) for m in data.get("members") or []),
            expenses=tuple(Expense.from_dict(e) for e in data.get("expenses") or []),
            settled_transfers=tuple(SettledTransfer.from_dict(s) for s in data.get("settled_transfers") or []),
        )


def take_snapshot(bill: Bill) -> BillSnapshot:
    return BillSnapshot(
        bill_id=bill.id,
        name=bill.name,
        version=bill.version,
        members=tuple(copy.deepcopy(bill.members)),
        expenses=tuple(copy.deepcopy(bill.expenses)),
        settled_transfers=tuple(bill.settled_transfers),
    )


class SnapshotStore:
    """Snapshots by bill id, optionally persisted through durable storage."""

    KEY_PREFIX = "snapsplit-snapshot:"

    def __init__(self, storage: Optional[DurableStorage] = None) -> None:
        self.storage = storage
        self._snapshots: Dict[str, BillSnapshot] = {}

    def get(self, bill_id: str) -> Optional[BillSnapshot]:
        snap = self._snapshots.get(bill_id)
        if snap is not None or self.storage is None:
            return snap

        raw = self.storage.get(self.KEY_PREFIX + bill_id)
        if not raw:
            return None
        try:
            snap = BillSnapshot.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, KeyError) as e:
            log.warning(f"[SNAPSHOT] unreadable snapshot for {bill_id}, ignoring: {e}")
            return None
        self._snapshots[bill_id] = snap
        return snap

    def put(self, bill: Bill) -> BillSnapshot:
        snap = take_snapshot(bill)
        self._snapshots[bill.id] = snap
        if self.storage is not None:
            self.storage.set(self.KEY_PREFIX + bill.id, json.dumps(snap.to_dict()).encode("utf-8"))
        log.debug(f"[SNAPSHOT] stored {bill.id} at v{bill.version}")
        return snap

    def clear(self, bill_id: str) -> None:
        self._snapshots.pop(bill_id, None)
        if self.storage is not None:
            self.storage.set(self.KEY_PREFIX + bill_id, b"")
