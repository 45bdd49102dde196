"""
Reconciliation Engine
=====================

Purpose:
- Server side of delta sync: merge one client change-set into the
  authoritative bill, or reject it with conflicts.

Design:
- Stale request = base_version differs from the current version. Staleness
  never blocks adds; it turns field updates that disagree with the server
  into server_wins conflicts, and deletes into manual_required conflicts.
- Kinds are processed in dependency order (members, expenses, expense items,
  settlement markers, bill meta); within a kind: add, update, delete.
- Adds are idempotent on the client's local id. A reference that does not
  resolve drops only the entity that carries it.
- All mutation happens on a copy. With any conflict nothing is persisted, the
  version stays where it was and the response carries the server's bill.
- Exactly one version increment per accepted request, guarded by a per-bill
  lock in-process and by the repository's optimistic check across processes.
  Locks are dropped once no request holds or waits on them, and listeners
  are notified after the lock is released.

No HTTP here; routes call `reconcile`.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from snapsplit.common.bill_models import Bill, Expense, ExpenseItem, Member, SettledTransfer
from snapsplit.common.delta_models import (
    Conflict,
    DeltaSyncRequest,
    DeltaSyncResponse,
    ExpenseAdd,
    ExpenseItemAdd,
    ExpenseItemUpdate,
    ExpenseUpdate,
    MemberAdd,
    MemberUpdate,
)
from snapsplit.common.errors import BillNotFound, ConcurrencyFault
from snapsplit.common.money import D

from .id_mapping import IdMappingTable

log = logging.getLogger("snapsplit.sync")

INVALID_REFERENCE = "invalid_reference"
DELETED_ON_SERVER = "deleted"
MODIFIED_BY_OTHERS = "modified_by_others"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def server_view(bill: Bill) -> Dict[str, Any]:
    """The bill as the server publishes it (no client bookkeeping)."""
    data = bill.to_dict()
    for key in ("sync_status", "remote_id", "deleted_member_ids", "deleted_expense_ids", "deleted_item_ids", "last_error"):
        data.pop(key, None)
    return data


def _wire(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, list):
        return [_wire(v) for v in value]
    return value


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, Decimal) or isinstance(b, Decimal):
        try:
            return D(str(a)) == D(str(b))
        except (ArithmeticError, ValueError):
            return False
    return a == b


# -----------------------------
# Per-request context
# -----------------------------
@dataclass
class SyncContext:
    bill: Bill
    stale: bool
    ids: IdMappingTable
    conflicts: List[Conflict] = field(default_factory=list)
    now: str = field(default_factory=_now_iso)
    reordered: Dict[str, int] = field(default_factory=dict)

    def conflict(
        self,
        entity_type: str,
        entity_id: str,
        *,
        field_name: Optional[str] = None,
        local_value: Any = None,
        server_value: Any = None,
        resolution: str = "server_wins",
    ) -> None:
        self.conflicts.append(
            Conflict(
                entity_type=entity_type,  # type: ignore[arg-type]
                entity_id=entity_id,
                field=field_name,
                local_value=_wire(local_value),
                server_value=_wire(server_value),
                resolution=resolution,  # type: ignore[arg-type]
            )
        )


T = TypeVar("T")
AddT = TypeVar("AddT")
UpdT = TypeVar("UpdT")

Difference = Tuple[str, Any, Any]


@dataclass
class EntityHandler(Generic[T, AddT, UpdT]):
    """
    What the generic add / update / delete routine needs to know about a kind.

    - lookup(server_id) -> target or None
    - add(ctx, dto) -> None (registers its own id mapping, may skip)
    - differences(ctx, dto, target) -> [(field, local, server), ...]
    - update(ctx, dto, target) -> applies the dto, or records a conflict
    - delete(ctx, target) -> removes the target and cascades
    """
    entity_type: str
    lookup: Callable[[str], Optional[T]]
    add: Callable[[SyncContext, AddT], None]
    differences: Callable[[SyncContext, UpdT, T], List[Difference]]
    update: Callable[[SyncContext, UpdT, T], None]
    delete: Callable[[SyncContext, T], None]


def apply_changes(
    ctx: SyncContext,
    handler: EntityHandler,
    adds: Sequence[Any],
    updates: Sequence[Any],
    deletes: Sequence[str],
) -> None:
    for dto in adds:
        handler.add(ctx, dto)

    for dto in updates:
        target = handler.lookup(dto.remote_id)
        if target is None:
            ctx.conflict(
                handler.entity_type,
                dto.remote_id,
                local_value="update",
                server_value=DELETED_ON_SERVER,
                resolution="manual_required",
            )
            continue
        if ctx.stale:
            diffs = handler.differences(ctx, dto, target)
            if diffs:
                name, local, server = diffs[0]
                ctx.conflict(handler.entity_type, dto.remote_id, field_name=name, local_value=local, server_value=server)
            continue
        handler.update(ctx, dto, target)

    for server_id in deletes:
        target = handler.lookup(server_id)
        if target is None:
            # already gone: deletes are idempotent
            continue
        if ctx.stale:
            ctx.conflict(
                handler.entity_type,
                server_id,
                local_value="delete",
                server_value=MODIFIED_BY_OTHERS,
                resolution="manual_required",
            )
            continue
        handler.delete(ctx, target)


# -----------------------------
# Members
# -----------------------------
def _member_handler(ctx: SyncContext) -> EntityHandler:
    bill = ctx.bill

    def add(ctx: SyncContext, dto: MemberAdd) -> None:
        if ctx.ids.lookup("member", dto.local_id):
            return
        existing = next((m for m in bill.members if m.local_client_id == dto.local_id), None)
        if existing is not None:
            ctx.ids.register("member", dto.local_id, existing.id)
            return

        member = Member(id=_new_id(), name=dto.name, local_client_id=dto.local_id)
        if dto.linked_user_id:
            holder = next((m for m in bill.members if m.linked_user_id == dto.linked_user_id), None)
            if holder is None:
                member.linked_user_id = dto.linked_user_id
                member.original_name = dto.original_name
                member.claimed_at = dto.claimed_at or ctx.now
            else:
                log.info(f"[SYNC] {bill.id}: account already linked to {holder.id}; new member added unclaimed")
        bill.members.append(member)
        ctx.ids.register("member", dto.local_id, member.id)
        if dto.display_order is not None:
            ctx.reordered[member.id] = dto.display_order

    def differences(ctx: SyncContext, dto: MemberUpdate, m: Member) -> List[Difference]:
        out: List[Difference] = []
        if dto.name is not None and dto.name != m.name:
            out.append(("name", dto.name, m.name))
        if dto.display_order is not None and dto.display_order != bill.members.index(m):
            out.append(("display_order", dto.display_order, bill.members.index(m)))
        if dto.original_name is not None and dto.original_name != m.original_name:
            out.append(("original_name", dto.original_name, m.original_name))
        if dto.linked_user_id is not None and dto.linked_user_id != m.linked_user_id:
            out.append(("linked_user_id", dto.linked_user_id, m.linked_user_id))
        if dto.claimed_at is not None and dto.claimed_at != m.claimed_at:
            out.append(("claimed_at", dto.claimed_at, m.claimed_at))
        if dto.clear_claim and m.linked_user_id is not None:
            out.append(("linked_user_id", None, m.linked_user_id))
        return out

    def update(ctx: SyncContext, dto: MemberUpdate, m: Member) -> None:
        if dto.linked_user_id is not None and dto.linked_user_id != m.linked_user_id:
            holder = next((o for o in bill.members if o.id != m.id and o.linked_user_id == dto.linked_user_id), None)
            if holder is not None:
                ctx.conflict(
                    "member",
                    m.id,
                    field_name="linked_user_id",
                    local_value=dto.linked_user_id,
                    server_value=holder.id,
                    resolution="manual_required",
                )
                return

        if dto.clear_claim:
            m.linked_user_id = None
            m.claimed_at = None
            m.original_name = None
        if dto.name is not None:
            m.name = dto.name
        if dto.original_name is not None:
            m.original_name = dto.original_name
        if dto.linked_user_id is not None:
            m.linked_user_id = dto.linked_user_id
            m.claimed_at = dto.claimed_at or m.claimed_at or ctx.now
        elif dto.claimed_at is not None:
            m.claimed_at = dto.claimed_at
        if dto.display_order is not None:
            ctx.reordered[m.id] = dto.display_order

    def delete(ctx: SyncContext, m: Member) -> None:
        bill.members.remove(m)
        bill.settled_transfers = [st for st in bill.settled_transfers if m.id not in st.key]
        for e in bill.expenses:
            _strip_member(e, m.id)
            for item in e.items:
                _strip_member(item, m.id)

    return EntityHandler("member", bill.find_member, add, differences, update, delete)


def _strip_member(target: Any, member_id: str) -> None:
    if target.paid_by == member_id:
        target.paid_by = None
    target.participants = [p for p in target.participants if p != member_id]


def _apply_display_order(ctx: SyncContext) -> None:
    """Members with an explicit position are pinned there; the rest keep their relative order."""
    if not ctx.reordered:
        return
    pinned = sorted(
        (m for m in ctx.bill.members if m.id in ctx.reordered),
        key=lambda m: ctx.reordered[m.id],
    )
    members = [m for m in ctx.bill.members if m.id not in ctx.reordered]
    for m in pinned:
        members.insert(max(0, min(ctx.reordered[m.id], len(members))), m)
    ctx.bill.members = members


# -----------------------------
# Payer / participant references
# -----------------------------
def _resolve_refs(
    ctx: SyncContext,
    paid_by: Optional[str],
    participant_ids: Optional[List[str]],
) -> Tuple[bool, Optional[str], Optional[List[str]], Optional[Difference]]:
    """(ok, payer, participants, bad_reference)."""
    payer: Optional[str] = None
    if paid_by is not None:
        payer = ctx.ids.resolve("member", paid_by)
        if payer is None:
            return False, None, None, ("paid_by_member_id", paid_by, INVALID_REFERENCE)
    participants: Optional[List[str]] = None
    if participant_ids is not None:
        participants = ctx.ids.resolve_all("member", participant_ids)
        if participants is None:
            return False, None, None, ("participant_ids", participant_ids, INVALID_REFERENCE)
    return True, payer, participants, None


def _ref_differences(
    ctx: SyncContext,
    dto: Any,
    paid_by: Optional[str],
    participants: List[str],
) -> List[Difference]:
    out: List[Difference] = []
    if dto.paid_by_member_id is not None:
        resolved = ctx.ids.resolve("member", dto.paid_by_member_id)
        if resolved != paid_by:
            out.append(("paid_by_member_id", dto.paid_by_member_id, paid_by))
    if dto.participant_ids is not None:
        resolved_all = ctx.ids.resolve_all("member", dto.participant_ids)
        if resolved_all is None or sorted(resolved_all) != sorted(participants):
            out.append(("participant_ids", dto.participant_ids, list(participants)))
    return out


# -----------------------------
# Expenses
# -----------------------------
def _expense_handler(ctx: SyncContext) -> EntityHandler:
    bill = ctx.bill

    def add(ctx: SyncContext, dto: ExpenseAdd) -> None:
        if ctx.ids.lookup("expense", dto.local_id):
            return
        existing = next((e for e in bill.expenses if e.local_client_id == dto.local_id), None)
        if existing is not None:
            ctx.ids.register("expense", dto.local_id, existing.id)
            return

        itemized = bool(dto.is_itemized)
        payer: Optional[str] = None
        participants: List[str] = []
        if not itemized:
            ok, payer, resolved, bad = _resolve_refs(ctx, dto.paid_by_member_id, dto.participant_ids)
            if not ok:
                log.debug(f"[SYNC] {bill.id}: skipped expense add {dto.local_id} ({bad[0]} does not resolve)")
                return
            participants = resolved or []

        expense = Expense(
            id=_new_id(),
            name=dto.name,
            amount=D(str(dto.amount)),
            service_fee_percent=D(str(dto.service_fee_percent)) if dto.service_fee_percent is not None else D("0"),
            is_itemized=itemized,
            paid_by=payer,
            participants=participants,
            local_client_id=dto.local_id,
        )
        bill.expenses.append(expense)
        ctx.ids.register("expense", dto.local_id, expense.id)

    def differences(ctx: SyncContext, dto: ExpenseUpdate, e: Expense) -> List[Difference]:
        out: List[Difference] = []
        if dto.name is not None and dto.name != e.name:
            out.append(("name", dto.name, e.name))
        if dto.amount is not None and not _same(dto.amount, e.amount):
            out.append(("amount", dto.amount, e.amount))
        if dto.service_fee_percent is not None and not _same(dto.service_fee_percent, e.service_fee_percent):
            out.append(("service_fee_percent", dto.service_fee_percent, e.service_fee_percent))
        if dto.is_itemized is not None and dto.is_itemized != e.is_itemized:
            out.append(("is_itemized", dto.is_itemized, e.is_itemized))
        out.extend(_ref_differences(ctx, dto, e.paid_by, e.participants))
        return out

    def update(ctx: SyncContext, dto: ExpenseUpdate, e: Expense) -> None:
        itemized = e.is_itemized if dto.is_itemized is None else bool(dto.is_itemized)
        payer: Optional[str] = None
        participants: Optional[List[str]] = None
        if not itemized:
            ok, payer, participants, bad = _resolve_refs(ctx, dto.paid_by_member_id, dto.participant_ids)
            if not ok:
                ctx.conflict("expense", e.id, field_name=bad[0], local_value=bad[1], server_value=bad[2], resolution="manual_required")
                return

        if dto.name is not None:
            e.name = dto.name
        if dto.amount is not None:
            e.amount = D(str(dto.amount))
        if dto.service_fee_percent is not None:
            e.service_fee_percent = D(str(dto.service_fee_percent))
        e.is_itemized = itemized
        if itemized:
            e.paid_by = None
            e.participants = []
            return
        if dto.paid_by_member_id is not None:
            e.paid_by = payer
        if participants is not None:
            e.participants = participants

    def delete(ctx: SyncContext, e: Expense) -> None:
        bill.expenses.remove(e)

    return EntityHandler("expense", bill.find_expense, add, differences, update, delete)


# -----------------------------
# Expense items
# -----------------------------
def _item_handler(ctx: SyncContext) -> EntityHandler:
    bill = ctx.bill

    def add(ctx: SyncContext, dto: ExpenseItemAdd) -> None:
        if ctx.ids.lookup("expenseItem", dto.local_id):
            return
        existing = next((i for _, i in bill.iter_items() if i.local_client_id == dto.local_id), None)
        if existing is not None:
            ctx.ids.register("expenseItem", dto.local_id, existing.id)
            return

        parent_id = ctx.ids.resolve("expense", dto.expense_id)
        parent = bill.find_expense(parent_id) if parent_id else None
        if parent is None:
            log.debug(f"[SYNC] {bill.id}: skipped item add {dto.local_id} (parent expense does not resolve)")
            return
        ok, payer, participants, bad = _resolve_refs(ctx, dto.paid_by_member_id, dto.participant_ids)
        if not ok:
            log.debug(f"[SYNC] {bill.id}: skipped item add {dto.local_id} ({bad[0]} does not resolve)")
            return

        item = ExpenseItem(
            id=_new_id(),
            name=dto.name,
            amount=D(str(dto.amount)),
            paid_by=payer,
            participants=participants or [],
            local_client_id=dto.local_id,
        )
        parent.items.append(item)
        ctx.ids.register("expenseItem", dto.local_id, item.id)

    def differences(ctx: SyncContext, dto: ExpenseItemUpdate, found: Tuple[Expense, ExpenseItem]) -> List[Difference]:
        _, item = found
        out: List[Difference] = []
        if dto.name is not None and dto.name != item.name:
            out.append(("name", dto.name, item.name))
        if dto.amount is not None and not _same(dto.amount, item.amount):
            out.append(("amount", dto.amount, item.amount))
        out.extend(_ref_differences(ctx, dto, item.paid_by, item.participants))
        return out

    def update(ctx: SyncContext, dto: ExpenseItemUpdate, found: Tuple[Expense, ExpenseItem]) -> None:
        _, item = found
        ok, payer, participants, bad = _resolve_refs(ctx, dto.paid_by_member_id, dto.participant_ids)
        if not ok:
            ctx.conflict("expenseItem", item.id, field_name=bad[0], local_value=bad[1], server_value=bad[2], resolution="manual_required")
            return
        if dto.name is not None:
            item.name = dto.name
        if dto.amount is not None:
            item.amount = D(str(dto.amount))
        if dto.paid_by_member_id is not None:
            item.paid_by = payer
        if participants is not None:
            item.participants = participants

    def delete(ctx: SyncContext, found: Tuple[Expense, ExpenseItem]) -> None:
        parent, item = found
        parent.items.remove(item)

    return EntityHandler("expenseItem", bill.find_item, add, differences, update, delete)


# -----------------------------
# Settlement markers / bill meta
# -----------------------------
def _apply_settlements(ctx: SyncContext, request: DeltaSyncRequest) -> None:
    changes = request.settlements
    if changes is None:
        return
    bill = ctx.bill

    for ref in changes.mark:
        src = ctx.ids.resolve("member", ref.from_member_id)
        dst = ctx.ids.resolve("member", ref.to_member_id)
        if src is None or dst is None:
            log.debug(f"[SYNC] {bill.id}: skipped settlement mark {ref.from_member_id}->{ref.to_member_id}")
            continue
        if not bill.is_transfer_settled(src, dst):
            bill.settled_transfers.append(SettledTransfer(src, dst, settled_at=ctx.now))

    for ref in changes.unmark:
        src = ctx.ids.resolve("member", ref.from_member_id) or ref.from_member_id
        dst = ctx.ids.resolve("member", ref.to_member_id) or ref.to_member_id
        bill.settled_transfers = [st for st in bill.settled_transfers if st.key != (src, dst)]


def _apply_bill_meta(ctx: SyncContext, request: DeltaSyncRequest) -> None:
    meta = request.bill_meta
    if meta is None or meta.name is None or meta.name == ctx.bill.name:
        return
    if ctx.stale:
        ctx.conflict("bill", ctx.bill.id, field_name="name", local_value=meta.name, server_value=ctx.bill.name)
        return
    ctx.bill.name = meta.name


# -----------------------------
# Engine
# -----------------------------
class ReconciliationEngine:
    def __init__(self, repository: Any, notifier: Any = None) -> None:
        self.repo = repository
        self.notifier = notifier
        # bill id -> (lock, requests holding or waiting on it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def _acquire_slot(self, bill_id: str) -> asyncio.Lock:
        lock, users = self._locks.get(bill_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[bill_id] = (lock, users + 1)
        return lock

    def _release_slot(self, bill_id: str) -> None:
        lock, users = self._locks[bill_id]
        if users <= 1:
            del self._locks[bill_id]
        else:
            self._locks[bill_id] = (lock, users - 1)

    async def reconcile(
        self,
        bill_id: str,
        request: DeltaSyncRequest,
        acting_user_id: Optional[str] = None,
    ) -> DeltaSyncResponse:
        lock = self._acquire_slot(bill_id)
        try:
            async with lock:
                response = await self._reconcile(bill_id, request, acting_user_id)
        finally:
            self._release_slot(bill_id)

        if response.success:
            await self._notify(bill_id, response.new_version, acting_user_id)
        return response

    async def _reconcile(
        self,
        bill_id: str,
        request: DeltaSyncRequest,
        acting_user_id: Optional[str],
    ) -> DeltaSyncResponse:
        current = await self.repo.load_bill_with_details(bill_id)
        if current is None:
            raise BillNotFound(bill_id)

        working = copy.deepcopy(current)
        ctx = SyncContext(
            bill=working,
            stale=request.base_version != current.version,
            ids=IdMappingTable(working),
        )
        if ctx.stale:
            log.info(f"[SYNC] {bill_id}: stale request (base v{request.base_version}, server v{current.version})")

        if request.members is not None:
            apply_changes(ctx, _member_handler(ctx), request.members.add, request.members.update, request.members.delete)
            _apply_display_order(ctx)
        if request.expenses is not None:
            apply_changes(ctx, _expense_handler(ctx), request.expenses.add, request.expenses.update, request.expenses.delete)
        if request.expense_items is not None:
            items = request.expense_items
            apply_changes(ctx, _item_handler(ctx), items.add, items.update, items.delete)
        _apply_settlements(ctx, request)
        _apply_bill_meta(ctx, request)

        if ctx.conflicts:
            log.warning(f"[SYNC] {bill_id}: rejected with {len(ctx.conflicts)} conflict(s) at v{current.version}")
            return DeltaSyncResponse(
                success=False,
                new_version=current.version,
                conflicts=ctx.conflicts,
                merged_bill=server_view(current),
            )

        working.version = current.version + 1
        try:
            await self.repo.save(working)
        except ConcurrencyFault as e:
            log.warning(f"[SYNC] {bill_id}: lost the write race ({e.message}); returning latest")
            self.repo.clear_tracked_changes()
            latest = await self.repo.load_bill_with_details(bill_id)
            if latest is None:
                raise BillNotFound(bill_id)
            return DeltaSyncResponse(
                success=False,
                new_version=latest.version,
                conflicts=[],
                merged_bill=server_view(latest),
            )

        log.info(f"[SYNC] {bill_id}: accepted at v{working.version}")
        return DeltaSyncResponse(
            success=True,
            new_version=working.version,
            id_mappings=ctx.ids.to_id_mappings(),
            conflicts=[],
        )

    async def _notify(self, bill_id: str, version: int, acting_user_id: Optional[str]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_bill_updated(bill_id, version, acting_user_id)
        except Exception as e:
            log.warning(f"[NOTIFY] bill {bill_id} v{version}: notifier failed: {e}")
