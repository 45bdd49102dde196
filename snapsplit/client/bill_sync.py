"""
Bill Sync Client
================

Client-side orchestration of one sync round:

1. diff the working bill against its snapshot (delta factory)
2. queue the change-set durably (sync queue)
3. send it; on success apply id mappings, bump the version and replace the
   snapshot with exactly what was sent
4. on conflict keep the server's merged bill for "refresh to latest"

The snapshot is taken from a copy of the bill made when the delta is built,
so edits made while the request is in flight stay visible to the next diff.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from snapsplit.backend.utils.settings import settings
from snapsplit.common.bill_models import Bill, Expense, ExpenseItem, Member, SettledTransfer
from snapsplit.common.delta_models import DeltaSyncRequest, DeltaSyncResponse, IdMappings, is_empty_delta
from snapsplit.common.errors import SyncTransportError
from snapsplit.common.money import _to_decimal

from .delta_factory import create_delta_request
from .snapshot import SnapshotStore
from .storage import DurableStorage, MemoryStorage
from .sync_queue import SyncAction, SyncQueue
from .transport import SyncTransport

log = logging.getLogger("snapsplit.client")


def apply_id_mappings(bill: Bill, mappings: Optional[IdMappings]) -> None:
    """Attach server ids to the entities the server just created."""
    if mappings is None:
        return
    for m in bill.members:
        if not m.remote_id and m.id in mappings.members:
            m.remote_id = mappings.members[m.id]
    for e in bill.expenses:
        if not e.remote_id and e.id in mappings.expenses:
            e.remote_id = mappings.expenses[e.id]
        for item in e.items:
            if not item.remote_id and item.id in mappings.expense_items:
                item.remote_id = mappings.expense_items[item.id]


def bill_from_server(server_bill: Dict[str, Any], *, local_id: Optional[str] = None) -> Bill:
    """
    Build a fresh working copy from the server's bill.

    Local ids become the server ids, so every entity already carries its
    `remote_id` and settled markers keep pointing at the right members.
    """
    members = [
        Member(
            id=str(m["id"]),
            name=str(m.get("name") or ""),
            remote_id=str(m["id"]),
            original_name=m.get("original_name"),
            linked_user_id=m.get("linked_user_id"),
            claimed_at=m.get("claimed_at"),
        )
        for m in server_bill.get("members") or []
    ]
    expenses = []
    for e in server_bill.get("expenses") or []:
        expenses.append(
            Expense(
                id=str(e["id"]),
                name=str(e.get("name") or ""),
                amount=_to_decimal(e.get("amount")),
                service_fee_percent=_to_decimal(e.get("service_fee_percent")),
                is_itemized=bool(e.get("is_itemized", False)),
                paid_by=e.get("paid_by") or None,
                participants=[str(p) for p in e.get("participants") or []],
                items=[
                    ExpenseItem(
                        id=str(i["id"]),
                        name=str(i.get("name") or ""),
                        amount=_to_decimal(i.get("amount")),
                        paid_by=i.get("paid_by") or None,
                        participants=[str(p) for p in i.get("participants") or []],
                        remote_id=str(i["id"]),
                    )
                    for i in e.get("items") or []
                ],
                remote_id=str(e["id"]),
            )
        )
    return Bill(
        id=local_id or str(server_bill["id"]),
        name=str(server_bill.get("name") or ""),
        version=int(server_bill.get("version") or 0),
        members=members,
        expenses=expenses,
        settled_transfers=[SettledTransfer.from_dict(s) for s in server_bill.get("settled_transfers") or []],
        sync_status="synced",
        remote_id=str(server_bill["id"]),
    )


class BillSyncClient:
    def __init__(
        self,
        transport: SyncTransport,
        *,
        storage: Optional[DurableStorage] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.transport = transport
        self.storage = storage or MemoryStorage()
        self.snapshots = SnapshotStore(self.storage)
        self.bills: Dict[str, Bill] = {}
        self.pending_refresh: Dict[str, Dict[str, Any]] = {}
        self.last_conflicts: Dict[str, List[Any]] = {}
        self.queue = SyncQueue(
            self.storage,
            self._execute,
            base_delay=settings.SYNC_BASE_DELAY_SECONDS if base_delay is None else base_delay,
            max_delay=settings.SYNC_MAX_DELAY_SECONDS if max_delay is None else max_delay,
            max_retries=settings.SYNC_MAX_RETRIES if max_retries is None else max_retries,
            scheduler=scheduler,
            on_failed=self._on_action_failed,
        )

    # -----------------------------
    # Working copies
    # -----------------------------
    def add_bill(self, bill: Bill) -> Bill:
        self.bills[bill.id] = bill
        return bill

    def get_bill(self, bill_id: str) -> Bill:
        bill = self.bills.get(bill_id)
        if bill is None:
            raise KeyError(f"bill not found on this client: {bill_id}")
        return bill

    def build_delta(self, bill_id: str) -> DeltaSyncRequest:
        bill = self.get_bill(bill_id)
        return create_delta_request(bill, self.snapshots.get(bill_id))

    # -----------------------------
    # Sync
    # -----------------------------
    async def sync(self, bill_id: str) -> Optional[SyncAction]:
        """Queue a sync for the bill. Returns None when there is nothing to send."""
        bill = self.get_bill(bill_id)
        request = self.build_delta(bill_id)

        if bill.remote_id and is_empty_delta(request):
            bill.sync_status = "synced"
            log.info(f"[SYNC] {bill_id}: nothing to send")
            return None

        if bill.sync_status in ("local", "synced"):
            bill.sync_status = "modified"
        payload = request.to_wire()
        if bill.remote_id:
            payload["remote_id"] = bill.remote_id
        return await self.queue.enqueue("delta_sync", bill_id, payload)

    async def delete_remote(self, bill_id: str) -> Optional[SyncAction]:
        bill = self.bills.pop(bill_id, None)
        self.snapshots.clear(bill_id)
        if bill is None or not bill.remote_id:
            return None
        return await self.queue.enqueue("delete_bill", bill_id, {"remote_id": bill.remote_id})

    async def retry_all(self) -> int:
        return await self.queue.retry()

    def discard_failed(self) -> int:
        return self.queue.discard()

    async def refresh_from_server(self, bill_id: str) -> Bill:
        """Replace the working copy and snapshot with the server's current bill."""
        bill = self.get_bill(bill_id)
        server_bill = self.pending_refresh.pop(bill_id, None)
        if server_bill is None:
            if not bill.remote_id:
                raise KeyError(f"bill {bill_id} was never synced")
            server_bill = await self.transport.fetch_bill(bill.remote_id)

        fresh = bill_from_server(server_bill, local_id=bill.id)
        self.bills[bill.id] = fresh
        self.snapshots.put(fresh)
        self.last_conflicts.pop(bill_id, None)
        log.info(f"[SYNC] {bill_id}: refreshed to server v{fresh.version}")
        return fresh

    # -----------------------------
    # Queue executor
    # -----------------------------
    async def _execute(self, action: SyncAction) -> Optional[DeltaSyncResponse]:
        if action.kind == "delete_bill":
            await self.transport.delete_bill(action.payload["remote_id"])
            return None

        bill = self.bills.get(action.bill_id)
        if bill is None:
            return await self._send_detached(action)

        bill.sync_status = "syncing"
        try:
            return await self._send(bill, action)
        except Exception:
            if bill.sync_status == "syncing":
                bill.sync_status = "modified"
            raise

    async def _send(self, bill: Bill, action: SyncAction) -> Optional[DeltaSyncResponse]:
        if not bill.remote_id:
            created = await self.transport.create_bill(name=bill.name, local_id=bill.id)
            bill.remote_id = str(created["id"])
            bill.version = int(created.get("version") or 0)
            self.snapshots.put(
                Bill(id=bill.id, name=bill.name, version=bill.version, remote_id=bill.remote_id)
            )
            log.info(f"[SYNC] {bill.id}: created remote bill {bill.remote_id} at v{bill.version}")

        sent = copy.deepcopy(bill)
        request = create_delta_request(sent, self.snapshots.get(bill.id))
        if is_empty_delta(request):
            bill.sync_status = "synced"
            return None
        action.payload = {**request.to_wire(), "remote_id": bill.remote_id}

        response = await self.transport.sync_bill(bill.remote_id, request)
        if response.success:
            self._apply_success(bill, sent, request, response)
        else:
            self._apply_conflict(bill, response)
        return response

    async def _send_detached(self, action: SyncAction) -> DeltaSyncResponse:
        """The working copy is gone (e.g. after a restart); send what was queued."""
        remote_id = action.payload.get("remote_id")
        if not remote_id:
            raise SyncTransportError(
                f"bill {action.bill_id} has no working copy and was never created remotely",
                retryable=False,
            )
        payload = {k: v for k, v in action.payload.items() if k != "remote_id"}
        response = await self.transport.sync_bill(remote_id, DeltaSyncRequest.model_validate(payload))
        if response.success:
            self.queue.apply_id_mappings(
                response.id_mappings or IdMappings(),
                bill_id=action.bill_id,
                new_version=response.new_version,
            )
            log.info(f"[SYNC] {action.bill_id}: queued change-set applied at v{response.new_version} without a working copy")
        return response

    def _apply_success(
        self,
        bill: Bill,
        sent: Bill,
        request: DeltaSyncRequest,
        response: DeltaSyncResponse,
    ) -> None:
        apply_id_mappings(bill, response.id_mappings)
        apply_id_mappings(sent, response.id_mappings)
        bill.version = sent.version = int(response.new_version)

        if request.members is not None:
            bill.deleted_member_ids = [i for i in bill.deleted_member_ids if i not in request.members.delete]
        if request.expenses is not None:
            bill.deleted_expense_ids = [i for i in bill.deleted_expense_ids if i not in request.expenses.delete]
        if request.expense_items is not None:
            bill.deleted_item_ids = [i for i in bill.deleted_item_ids if i not in request.expense_items.delete]

        self.snapshots.put(sent)
        self.pending_refresh.pop(bill.id, None)
        self.last_conflicts.pop(bill.id, None)
        bill.last_error = None

        still_dirty = not is_empty_delta(create_delta_request(bill, self.snapshots.get(bill.id)))
        bill.sync_status = "modified" if still_dirty else "synced"

        self.queue.apply_id_mappings(
            response.id_mappings or IdMappings(),
            bill_id=bill.id,
            new_version=bill.version,
        )
        log.info(f"[SYNC] {bill.id}: synced at v{bill.version}")

    def _apply_conflict(self, bill: Bill, response: DeltaSyncResponse) -> None:
        bill.sync_status = "conflict"
        if response.merged_bill is not None:
            self.pending_refresh[bill.id] = response.merged_bill
        self.last_conflicts[bill.id] = list(response.conflicts or [])
        log.warning(
            f"[SYNC] {bill.id}: rejected at server v{response.new_version} "
            f"with {len(response.conflicts or [])} conflict(s); refresh required"
        )

    def _on_action_failed(self, action: SyncAction) -> None:
        bill = self.bills.get(action.bill_id)
        if bill is None:
            return
        bill.sync_status = "error"
        bill.last_error = action.error
