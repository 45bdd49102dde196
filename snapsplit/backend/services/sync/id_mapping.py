"""
Per-request identifier mapping table.

Lives for one reconciliation only. Filled in the order members -> expenses ->
expense items, so a later kind can reference an id minted earlier in the same
request (an expense paid by a member added in that same change-set).

`resolve` accepts either a local id registered in this request or a
well-formed server id that exists in the bill right now. Anything else
(unknown, deleted, malformed) resolves to None.
"""

from __future__ import annotations

import uuid
from typing import Dict, List, Literal, Optional

from snapsplit.common.bill_models import Bill
from snapsplit.common.delta_models import IdMappings

Kind = Literal["member", "expense", "expenseItem"]


def is_server_id(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


class IdMappingTable:
    def __init__(self, bill: Bill) -> None:
        self.bill = bill
        self._maps: Dict[str, Dict[str, str]] = {"member": {}, "expense": {}, "expenseItem": {}}

    def register(self, kind: Kind, local_id: str, server_id: str) -> None:
        self._maps[kind][local_id] = server_id

    def lookup(self, kind: Kind, local_id: str) -> Optional[str]:
        return self._maps[kind].get(local_id)

    def _exists(self, kind: Kind, server_id: str) -> bool:
        if kind == "member":
            return self.bill.find_member(server_id) is not None
        if kind == "expense":
            return self.bill.find_expense(server_id) is not None
        return self.bill.find_item(server_id) is not None

    def resolve(self, kind: Kind, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        mapped = self._maps[kind].get(ref)
        if mapped is not None and self._exists(kind, mapped):
            return mapped
        if not is_server_id(ref):
            return None
        return ref if self._exists(kind, ref) else None

    def resolve_all(self, kind: Kind, refs: List[str]) -> Optional[List[str]]:
        """All-or-nothing: None if any reference fails to resolve."""
        out: List[str] = []
        for ref in refs:
            resolved = self.resolve(kind, ref)
            if resolved is None:
                return None
            out.append(resolved)
        return out

    def to_id_mappings(self) -> IdMappings:
        return IdMappings(
            members=dict(self._maps["member"]),
            expenses=dict(self._maps["expense"]),
            expense_items=dict(self._maps["expenseItem"]),
        )
