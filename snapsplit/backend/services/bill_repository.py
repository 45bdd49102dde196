"""
Bill Repository (Persistence Adapters)
======================================

Purpose:
- Load a bill with all of its children and persist it back with an
  optimistic version check.
- Two adapters with the same surface: an in-process store (tests, local dev)
  and a Supabase/Postgres adapter.

Contract:
- load_bill_with_details(bill_id) -> Bill | None
  Remembers the version it loaded ("tracked") for that bill.
- save(bill)
  Writes only if the stored version still equals the tracked one; otherwise
  raises ConcurrencyFault. `bill.version` is the new version being written.
- clear_tracked_changes()
  Forgets every tracked load, so the next load starts clean.

Expected tables (Supabase adapter):
1) public.bills
   - id uuid primary key
   - name text not null
   - version int not null default 1
   - updated_at timestamptz default now()

2) public.bill_members
   - id uuid primary key
   - bill_id uuid references bills(id) on delete cascade
   - position int not null
   - name text not null
   - original_name text null
   - linked_user_id text null
   - claimed_at timestamptz null
   - local_client_id text null

3) public.bill_expenses
   - id uuid primary key
   - bill_id uuid references bills(id) on delete cascade
   - position int not null
   - name text, amount numeric, service_fee_percent numeric
   - is_itemized bool, paid_by uuid null, participants jsonb
   - local_client_id text null

4) public.bill_expense_items
   - id uuid primary key
   - bill_id uuid, expense_id uuid references bill_expenses(id) on delete cascade
   - position int not null
   - name text, amount numeric, paid_by uuid null, participants jsonb
   - local_client_id text null

5) public.bill_settled_transfers
   - bill_id uuid, from_member_id uuid, to_member_id uuid, settled_at timestamptz
   PRIMARY KEY (bill_id, from_member_id, to_member_id)

Expected function (Supabase adapter saves through it, one transaction):

   create or replace function public.snapsplit_save_bill(
     p_bill_id uuid, p_expected_version int, p_version int, p_name text,
     p_members jsonb, p_expenses jsonb, p_items jsonb, p_settled jsonb
   ) returns table(status text, version int) language plpgsql as $$
   declare v_current int;
   begin
     select b.version into v_current from bills b where b.id = p_bill_id for update;
     if not found then return query select 'missing', null::int; return; end if;
     if v_current <> p_expected_version then
       return query select 'conflict', v_current; return;
     end if;
     update bills set name = p_name, version = p_version, updated_at = now() where id = p_bill_id;
     delete from bill_settled_transfers where bill_id = p_bill_id;
     delete from bill_expense_items where bill_id = p_bill_id;
     delete from bill_expenses where bill_id = p_bill_id;
     delete from bill_members where bill_id = p_bill_id;
     insert into bill_members select p_bill_id as bill_id, r.*
       from jsonb_to_recordset(p_members) as r(id uuid, position int, name text, original_name text,
            linked_user_id text, claimed_at timestamptz, local_client_id text);
     insert into bill_expenses select p_bill_id as bill_id, r.*
       from jsonb_to_recordset(p_expenses) as r(id uuid, position int, name text, amount numeric,
            service_fee_percent numeric, is_itemized bool, paid_by uuid, participants jsonb, local_client_id text);
     insert into bill_expense_items select p_bill_id as bill_id, r.*
       from jsonb_to_recordset(p_items) as r(id uuid, expense_id uuid, position int, name text, amount numeric,
            paid_by uuid, participants jsonb, local_client_id text);
     insert into bill_settled_transfers select p_bill_id as bill_id, r.*
       from jsonb_to_recordset(p_settled) as r(from_member_id uuid, to_member_id uuid, settled_at timestamptz);
     return query select 'ok', p_version;
   end $$;

   (column order in the inserts follows the table listing above, with bill_id first)
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

from snapsplit.common.bill_models import Bill, Expense, ExpenseItem, Member, SettledTransfer
from snapsplit.common.errors import BillNotFound, ConcurrencyFault
from snapsplit.common.money import _to_decimal

log = logging.getLogger("snapsplit.repo")


class BillRepository(Protocol):
    async def create_bill(self, name: str, local_id: Optional[str] = None) -> Bill: ...

    async def load_bill_with_details(self, bill_id: str) -> Optional[Bill]: ...

    async def save(self, bill: Bill) -> None: ...

    def clear_tracked_changes(self) -> None: ...

    async def delete_bill(self, bill_id: str) -> bool: ...


def _rows(r: Any) -> List[Dict[str, Any]]:
    data = getattr(r, "data", None) or []
    if isinstance(data, dict):
        return [data]
    return [x for x in data if isinstance(x, dict)]


# -----------------------------
# In-memory
# -----------------------------
class InMemoryBillRepository:
    """Stores deep copies, so callers never share state with the store."""

    def __init__(self) -> None:
        self._bills: Dict[str, Bill] = {}
        self._tracked: Dict[str, int] = {}

    def put(self, bill: Bill) -> Bill:
        self._bills[bill.id] = copy.deepcopy(bill)
        return bill

    async def create_bill(self, name: str, local_id: Optional[str] = None) -> Bill:
        bill = Bill(id=str(uuid.uuid4()), name=name, version=1)
        self._bills[bill.id] = copy.deepcopy(bill)
        log.info(f"[REPO] created bill {bill.id} (client {local_id or '-'})")
        return bill

    async def load_bill_with_details(self, bill_id: str) -> Optional[Bill]:
        stored = self._bills.get(bill_id)
        if stored is None:
            self._tracked.pop(bill_id, None)
            return None
        self._tracked[bill_id] = stored.version
        return copy.deepcopy(stored)

    async def save(self, bill: Bill) -> None:
        stored = self._bills.get(bill.id)
        if stored is None:
            raise BillNotFound(bill.id)
        expected = self._tracked.get(bill.id, bill.version - 1)
        if stored.version != expected:
            raise ConcurrencyFault(bill.id, expected_version=expected, actual_version=stored.version)
        self._bills[bill.id] = copy.deepcopy(bill)
        self._tracked[bill.id] = bill.version

    def clear_tracked_changes(self) -> None:
        self._tracked.clear()

    async def delete_bill(self, bill_id: str) -> bool:
        self._tracked.pop(bill_id, None)
        return self._bills.pop(bill_id, None) is not None

    async def ping(self) -> bool:
        return True


# -----------------------------
# Supabase
# -----------------------------
class SupabaseBillRepository:
    def __init__(
        self,
        supabase_client: Any,
        *,
        table_bills: str = "bills",
        table_members: str = "bill_members",
        table_expenses: str = "bill_expenses",
        table_items: str = "bill_expense_items",
        table_settled: str = "bill_settled_transfers",
    ) -> None:
        self.sb = supabase_client
        self.table_bills = table_bills
        self.table_members = table_members
        self.table_expenses = table_expenses
        self.table_items = table_items
        self.table_settled = table_settled
        self._tracked: Dict[str, int] = {}

    # -----------------------------
    # Bills
    # -----------------------------
    async def create_bill(self, name: str, local_id: Optional[str] = None) -> Bill:
        bill = Bill(id=str(uuid.uuid4()), name=name, version=1)
        self.sb.table(self.table_bills).insert({"id": bill.id, "name": bill.name, "version": bill.version}).execute()
        log.info(f"[REPO] created bill {bill.id} (client {local_id or '-'})")
        return bill

    async def delete_bill(self, bill_id: str) -> bool:
        self._tracked.pop(bill_id, None)
        r = self.sb.table(self.table_bills).delete().eq("id", bill_id).execute()
        return bool(_rows(r))

    async def ping(self) -> bool:
        self.sb.table(self.table_bills).select("id").limit(1).execute()
        return True

    async def load_bill_with_details(self, bill_id: str) -> Optional[Bill]:
        head = _rows(self.sb.table(self.table_bills).select("*").eq("id", bill_id).limit(1).execute())
        if not head:
            self._tracked.pop(bill_id, None)
            return None
        row = head[0]

        members = [
            Member(
                id=str(m["id"]),
                name=str(m.get("name") or ""),
                original_name=m.get("original_name"),
                linked_user_id=m.get("linked_user_id"),
                claimed_at=m.get("claimed_at"),
                local_client_id=m.get("local_client_id"),
            )
            for m in _rows(self.sb.table(self.table_members).select("*").eq("bill_id", bill_id).order("position").execute())
        ]

        items_by_expense: Dict[str, List[ExpenseItem]] = {}
        for i in _rows(self.sb.table(self.table_items).select("*").eq("bill_id", bill_id).order("position").execute()):
            items_by_expense.setdefault(str(i["expense_id"]), []).append(
                ExpenseItem(
                    id=str(i["id"]),
                    name=str(i.get("name") or ""),
                    amount=_to_decimal(i.get("amount")),
                    paid_by=i.get("paid_by") or None,
                    participants=[str(p) for p in i.get("participants") or []],
                    local_client_id=i.get("local_client_id"),
                )
            )

        expenses = [
            Expense(
                id=str(e["id"]),
                name=str(e.get("name") or ""),
                amount=_to_decimal(e.get("amount")),
                service_fee_percent=_to_decimal(e.get("service_fee_percent")),
                is_itemized=bool(e.get("is_itemized", False)),
                paid_by=e.get("paid_by") or None,
                participants=[str(p) for p in e.get("participants") or []],
                items=items_by_expense.get(str(e["id"]), []),
                local_client_id=e.get("local_client_id"),
            )
            for e in _rows(self.sb.table(self.table_expenses).select("*").eq("bill_id", bill_id).order("position").execute())
        ]

        settled = [
            SettledTransfer.from_dict(s)
            for s in _rows(self.sb.table(self.table_settled).select("*").eq("bill_id", bill_id).execute())
        ]

        bill = Bill(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            version=int(row.get("version") or 1),
            members=members,
            expenses=expenses,
            settled_transfers=settled,
        )
        self._tracked[bill_id] = bill.version
        return bill

    async def save(self, bill: Bill) -> None:
        """
        One round trip to `snapsplit_save_bill`, which runs in a single
        transaction: either the version moves and every child table is
        replaced, or nothing changes.
        """
        expected = self._tracked.get(bill.id, bill.version - 1)
        r = self.sb.rpc("snapsplit_save_bill", self._save_params(bill, expected)).execute()
        rows = _rows(r)
        outcome = rows[0] if rows else {}
        status = outcome.get("status")

        if status == "missing":
            raise BillNotFound(bill.id)
        if status == "conflict":
            raise ConcurrencyFault(bill.id, expected_version=expected, actual_version=int(outcome.get("version") or 0))
        if status != "ok":
            raise RuntimeError(f"snapsplit_save_bill returned an unexpected result for bill {bill.id}: {outcome!r}")

        self._tracked[bill.id] = bill.version
        log.info(f"[REPO] saved bill {bill.id} at v{bill.version}")

    @staticmethod
    def _save_params(bill: Bill, expected: int) -> Dict[str, Any]:
        return {
            "p_bill_id": bill.id,
            "p_expected_version": int(expected),
            "p_version": int(bill.version),
            "p_name": bill.name,
            "p_members": [
                {
                    "id": m.id,
                    "position": pos,
                    "name": m.name,
                    "original_name": m.original_name,
                    "linked_user_id": m.linked_user_id,
                    "claimed_at": m.claimed_at,
                    "local_client_id": m.local_client_id,
                }
                for pos, m in enumerate(bill.members)
            ],
            "p_expenses": [
                {
                    "id": e.id,
                    "position": pos,
                    "name": e.name,
                    "amount": str(e.amount),
                    "service_fee_percent": str(e.service_fee_percent),
                    "is_itemized": bool(e.is_itemized),
                    "paid_by": e.paid_by,
                    "participants": list(e.participants),
                    "local_client_id": e.local_client_id,
                }
                for pos, e in enumerate(bill.expenses)
            ],
            "p_items": [
                {
                    "id": item.id,
                    "expense_id": e.id,
                    "position": pos,
                    "name": item.name,
                    "amount": str(item.amount),
                    "paid_by": item.paid_by,
                    "participants": list(item.participants),
                    "local_client_id": item.local_client_id,
                }
                for e in bill.expenses
                for pos, item in enumerate(e.items)
            ],
            "p_settled": [st.to_dict() for st in bill.settled_transfers],
        }

    def clear_tracked_changes(self) -> None:
        self._tracked.clear()
