"""
Delta Sync wire contracts.

Request: per-kind add / update / delete lists against a base version.
Response: success flag, new version, id mappings, conflicts, merged bill.

Field names travel in camelCase (`baseVersion`, `idMappings`, `mergedBill`).
An optional field left as None is omitted on the wire and means
"leave unchanged". It never means "clear".
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Resolution = Literal["server_wins", "manual_required"]
EntityType = Literal["bill", "member", "expense", "expenseItem", "settlement"]


class WireModel(BaseModel):
    # camelCase on the wire, snake_case attributes in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ===== Members =====
class MemberAdd(WireModel):
    local_id: str
    name: str
    display_order: Optional[int] = None
    original_name: Optional[str] = None
    linked_user_id: Optional[str] = None
    claimed_at: Optional[str] = None


class MemberUpdate(WireModel):
    remote_id: str
    name: Optional[str] = None
    display_order: Optional[int] = None
    original_name: Optional[str] = None
    linked_user_id: Optional[str] = None
    claimed_at: Optional[str] = None
    clear_claim: Optional[bool] = None


class MemberChanges(WireModel):
    add: List[MemberAdd] = Field(default_factory=list)
    update: List[MemberUpdate] = Field(default_factory=list)
    delete: List[str] = Field(default_factory=list)


# ===== Expenses =====
class ExpenseAdd(WireModel):
    local_id: str
    name: str
    amount: Decimal
    service_fee_percent: Optional[Decimal] = None
    is_itemized: Optional[bool] = None
    paid_by_member_id: Optional[str] = None
    participant_ids: Optional[List[str]] = None


class ExpenseUpdate(WireModel):
    remote_id: str
    name: Optional[str] = None
    amount: Optional[Decimal] = None
    service_fee_percent: Optional[Decimal] = None
    is_itemized: Optional[bool] = None
    paid_by_member_id: Optional[str] = None
    participant_ids: Optional[List[str]] = None


class ExpenseChanges(WireModel):
    add: List[ExpenseAdd] = Field(default_factory=list)
    update: List[ExpenseUpdate] = Field(default_factory=list)
    delete: List[str] = Field(default_factory=list)


# ===== Expense items =====
class ExpenseItemAdd(WireModel):
    local_id: str
    expense_id: str
    name: str
    amount: Decimal
    paid_by_member_id: Optional[str] = None
    participant_ids: Optional[List[str]] = None


class ExpenseItemUpdate(WireModel):
    remote_id: str
    name: Optional[str] = None
    amount: Optional[Decimal] = None
    paid_by_member_id: Optional[str] = None
    participant_ids: Optional[List[str]] = None


class ExpenseItemChanges(WireModel):
    add: List[ExpenseItemAdd] = Field(default_factory=list)
    update: List[ExpenseItemUpdate] = Field(default_factory=list)
    delete: List[str] = Field(default_factory=list)


# ===== Settlements / bill meta =====
class SettlementRef(WireModel):
    from_member_id: str
    to_member_id: str
    amount: Optional[Decimal] = None


class SettlementChanges(WireModel):
    mark: List[SettlementRef] = Field(default_factory=list)
    unmark: List[SettlementRef] = Field(default_factory=list)


class BillMeta(WireModel):
    name: Optional[str] = None


# ===== Request / response =====
class DeltaSyncRequest(WireModel):
    base_version: int
    members: Optional[MemberChanges] = None
    expenses: Optional[ExpenseChanges] = None
    expense_items: Optional[ExpenseItemChanges] = None
    settlements: Optional[SettlementChanges] = None
    bill_meta: Optional[BillMeta] = None


class Conflict(WireModel):
    entity_type: EntityType
    entity_id: str
    field: Optional[str] = None
    local_value: Optional[Any] = None
    server_value: Optional[Any] = None
    resolution: Resolution


class IdMappings(WireModel):
    members: Dict[str, str] = Field(default_factory=dict)
    expenses: Dict[str, str] = Field(default_factory=dict)
    expense_items: Dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.members or self.expenses or self.expense_items)

    def combined(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        out.update(self.members)
        out.update(self.expenses)
        out.update(self.expense_items)
        return out


class DeltaSyncResponse(WireModel):
    success: bool
    new_version: int
    id_mappings: Optional[IdMappings] = None
    conflicts: Optional[List[Conflict]] = None
    merged_bill: Optional[Dict[str, Any]] = None


def _section_populated(section: Optional[WireModel]) -> bool:
    if section is None:
        return False
    if isinstance(section, BillMeta):
        return section.name is not None
    if isinstance(section, SettlementChanges):
        return bool(section.mark or section.unmark)
    return bool(section.add or section.update or section.delete)  # type: ignore[attr-defined]


def is_empty_delta(request: DeltaSyncRequest) -> bool:
    """True when no section carries a change. Such a request is never sent."""
    return not any(
        _section_populated(s)
        for s in (
            request.members,
            request.expenses,
            request.expense_items,
            request.settlements,
            request.bill_meta,
        )
    )
