"""
Strict Identifier Resolver
==========================

Maps a local id to the id the server knows it by.

- known entity with a server id        -> server id
- unknown entity                       -> StructuralIntegrityError
- no server id, but in the snapshot    -> StructuralIntegrityError
  (it was synced, so the snapshot should have carried the server id)
- no server id, not in the snapshot    -> local id (new in this change-set;
  the server maps it through its same-request mapping table)
"""

from __future__ import annotations

from typing import Literal, Optional

from snapsplit.common.bill_models import Bill
from snapsplit.common.errors import StructuralIntegrityError

from .snapshot import BillSnapshot

EntityKind = Literal["member", "expense", "expenseItem"]


class StrictIdResolver:
    def __init__(self, bill: Bill, snapshot: Optional[BillSnapshot]) -> None:
        self.bill = bill
        self.snapshot = snapshot

    def _current(self, kind: str, local_id: str):
        if kind == "member":
            return self.bill.find_member(local_id)
        if kind == "expense":
            return self.bill.find_expense(local_id)
        if kind == "expenseItem":
            found = self.bill.find_item(local_id)
            return found[1] if found else None
        raise ValueError(f"unknown entity kind: {kind}")

    def _in_snapshot(self, kind: str, local_id: str) -> bool:
        if self.snapshot is None:
            return False
        if kind == "member":
            return self.snapshot.find_member(local_id) is not None
        if kind == "expense":
            return self.snapshot.find_expense(local_id) is not None
        return self.snapshot.find_item(local_id) is not None

    def is_new(self, kind: EntityKind, local_id: str) -> bool:
        """True when the entity has no snapshot counterpart."""
        return not self._in_snapshot(kind, local_id)

    def resolve(self, kind: EntityKind, local_id: str) -> str:
        entity = self._current(kind, local_id)
        if entity is None:
            raise StructuralIntegrityError(kind, local_id, "referenced entity does not exist in the working copy")

        if entity.remote_id:
            return entity.remote_id

        if self._in_snapshot(kind, local_id):
            raise StructuralIntegrityError(
                kind, local_id, "entity is present in the last synced snapshot but has no server id"
            )
        return local_id

    def resolve_lenient(self, kind: EntityKind, local_id: str) -> str:
        entity = self._current(kind, local_id)
        if entity is not None and entity.remote_id:
            return entity.remote_id
        return local_id
