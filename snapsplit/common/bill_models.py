"""
Bill Models (Canonical)
=======================

Purpose:
- Shared domain records for a bill: members, expenses, expense items and
  settled transfer markers.
- Used by both the client working copy and the server's authoritative copy.

Design:
- The bill owns its members and expenses; an expense owns its items.
- Cross references (payer, participants, transfer endpoints) are plain id
  strings resolved by lookup, never object references.
- On the client, `id` is the locally generated id and `remote_id` the server id.
  On the server, `id` is the server id and `local_client_id` remembers the id
  the creating client used, so repeated adds stay idempotent.

No DB, no HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from .money import D, _to_decimal


SyncStatus = Literal["local", "modified", "syncing", "synced", "error", "conflict"]

SYNC_STATUSES: Tuple[str, ...] = ("local", "modified", "syncing", "synced", "error", "conflict")


def _money(v: Decimal) -> str:
    return str(v)


@dataclass
class Member:
    id: str
    name: str
    remote_id: Optional[str] = None
    original_name: Optional[str] = None
    linked_user_id: Optional[str] = None
    claimed_at: Optional[str] = None
    local_client_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "remote_id": self.remote_id,
            "original_name": self.original_name,
            "linked_user_id": self.linked_user_id,
            "claimed_at": self.claimed_at,
            "local_client_id": self.local_client_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            remote_id=data.get("remote_id"),
            original_name=data.get("original_name"),
            linked_user_id=data.get("linked_user_id"),
            claimed_at=data.get("claimed_at"),
            local_client_id=data.get("local_client_id"),
        )


@dataclass
class ExpenseItem:
    id: str
    name: str
    amount: Decimal
    paid_by: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    remote_id: Optional[str] = None
    local_client_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "amount": _money(self.amount),
            "paid_by": self.paid_by,
            "participants": list(self.participants),
            "remote_id": self.remote_id,
            "local_client_id": self.local_client_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpenseItem":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            amount=_to_decimal(data.get("amount")),
            paid_by=data.get("paid_by") or None,
            participants=[str(p) for p in (data.get("participants") or [])],
            remote_id=data.get("remote_id"),
            local_client_id=data.get("local_client_id"),
        )


@dataclass
class Expense:
    """
    A single spend on the bill.

    When `is_itemized` is true, `paid_by` and `participants` stay empty and the
    whole breakdown lives in `items`.
    """
    id: str
    name: str
    amount: Decimal
    service_fee_percent: Decimal = D("0")
    is_itemized: bool = False
    paid_by: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    items: List[ExpenseItem] = field(default_factory=list)
    remote_id: Optional[str] = None
    local_client_id: Optional[str] = None

    def find_item(self, item_id: str) -> Optional[ExpenseItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "amount": _money(self.amount),
            "service_fee_percent": _money(self.service_fee_percent),
            "is_itemized": bool(self.is_itemized),
            "paid_by": self.paid_by,
            "participants": list(self.participants),
            "items": [i.to_dict() for i in self.items],
            "remote_id": self.remote_id,
            "local_client_id": self.local_client_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expense":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            amount=_to_decimal(data.get("amount")),
            service_fee_percent=_to_decimal(data.get("service_fee_percent")),
            is_itemized=bool(data.get("is_itemized", False)),
            paid_by=data.get("paid_by") or None,
            participants=[str(p) for p in (data.get("participants") or [])],
            items=[ExpenseItem.from_dict(i) for i in (data.get("items") or [])],
            remote_id=data.get("remote_id"),
            local_client_id=data.get("local_client_id"),
        )


@dataclass(frozen=True)
class SettledTransfer:
    """Manual 'paid' marker for a computed transfer. Amount independent."""
    from_member_id: str
    to_member_id: str
    settled_at: Optional[str] = field(default=None, compare=False)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.from_member_id, self.to_member_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_member_id": self.from_member_id,
            "to_member_id": self.to_member_id,
            "settled_at": self.settled_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettledTransfer":
        return cls(
            from_member_id=str(data["from_member_id"]),
            to_member_id=str(data["to_member_id"]),
            settled_at=data.get("settled_at"),
        )


@dataclass
class Bill:
    id: str
    name: str
    version: int = 0
    members: List[Member] = field(default_factory=list)
    expenses: List[Expense] = field(default_factory=list)
    settled_transfers: List[SettledTransfer] = field(default_factory=list)
    sync_status: SyncStatus = "local"

    # client-side bookkeeping
    remote_id: Optional[str] = None
    deleted_member_ids: List[str] = field(default_factory=list)
    deleted_expense_ids: List[str] = field(default_factory=list)
    deleted_item_ids: List[str] = field(default_factory=list)
    last_error: Optional[str] = None

    # -----------------------------
    # Lookups
    # -----------------------------
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

    def find_item(self, item_id: str) -> Optional[Tuple[Expense, ExpenseItem]]:
        for e in self.expenses:
            item = e.find_item(item_id)
            if item is not None:
                return e, item
        return None

    def iter_items(self) -> Iterator[Tuple[Expense, ExpenseItem]]:
        for e in self.expenses:
            for item in e.items:
                yield e, item

    def is_transfer_settled(self, from_member_id: str, to_member_id: str) -> bool:
        return any(st.key == (from_member_id, to_member_id) for st in self.settled_transfers)

    # -----------------------------
    # Serialization
    # -----------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": int(self.version),
            "members": [m.to_dict() for m in self.members],
            "expenses": [e.to_dict() for e in self.expenses],
            "settled_transfers": [st.to_dict() for st in self.settled_transfers],
            "sync_status": self.sync_status,
            "remote_id": self.remote_id,
            "deleted_member_ids": list(self.deleted_member_ids),
            "deleted_expense_ids": list(self.deleted_expense_ids),
            "deleted_item_ids": list(self.deleted_item_ids),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bill":
        status = data.get("sync_status") or "local"
        if status not in SYNC_STATUSES:
            status = "local"
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            version=int(data.get("version") or 0),
            members=[Member.from_dict(m) for m in (data.get("members") or [])],
            expenses=[Expense.from_dict(e) for e in (data.get("expenses") or [])],
            settled_transfers=[SettledTransfer.from_dict(s) for s in (data.get("settled_transfers") or [])],
            sync_status=status,
            remote_id=data.get("remote_id"),
            deleted_member_ids=list(data.get("deleted_member_ids") or []),
            deleted_expense_ids=list(data.get("deleted_expense_ids") or []),
            deleted_item_ids=list(data.get("deleted_item_ids") or []),
            last_error=data.get("last_error"),
        )
