"""
Sync Queue
==========

Purpose:
- Durable, ordered queue of sync work created while the client may be offline.
- Exactly one action in flight per queue instance; actions run in enqueue order.

Lifecycle of an action:
    pending -> processing -> completed (dropped from storage)
                          -> pending, retry_count + 1 (retryable failure)
                          -> failed (terminal failure, or retries exhausted)

- Retryable: network errors, 5xx responses, storage concurrency faults.
- Terminal: 4xx responses and anything unclassified.
- Retry delay: min(base_delay * 2 ** retry_count, max_delay).
- The full queue (minus completed entries) is persisted after every transition.
- Entries found in `processing` on load were interrupted, and go back to pending.
- Failed actions stay visible until the user retries or discards them.

The queue owns its state; `enqueue`, `process`, `retry`, `discard` and
`apply_id_mappings` are the only mutators.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from snapsplit.common.delta_models import IdMappings
from snapsplit.common.errors import ConcurrencyFault, SyncTransportError

from .storage import DurableStorage

log = logging.getLogger("snapsplit.queue")

ActionKind = Literal["delta_sync", "delete_bill"]
ActionStatus = Literal["pending", "processing", "completed", "failed"]

# The identity of an entity being added is never rewritten: the server keys
# idempotent adds on it.
_IDENTITY_KEYS = {"localId"}


@dataclass
class SyncAction:
    id: str
    kind: ActionKind
    bill_id: str
    payload: Dict[str, Any]
    status: ActionStatus = "pending"
    retry_count: int = 0
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    next_attempt_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "bill_id": self.bill_id,
            "payload": self.payload,
            "status": self.status,
            "retry_count": int(self.retry_count),
            "error": self.error,
            "created_at": self.created_at,
            "next_attempt_at": self.next_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncAction":
        return cls(
            id=str(data["id"]),
            kind=data.get("kind") or "delta_sync",
            bill_id=str(data["bill_id"]),
            payload=data.get("payload") or {},
            status=data.get("status") or "pending",
            retry_count=int(data.get("retry_count") or 0),
            error=data.get("error"),
            created_at=float(data.get("created_at") or time.time()),
            next_attempt_at=data.get("next_attempt_at"),
        )


Executor = Callable[[SyncAction], Awaitable[Any]]
FailureListener = Callable[[SyncAction], None]


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, SyncTransportError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    if isinstance(exc, httpx.RequestError):
        return True
    if isinstance(exc, ConcurrencyFault):
        return True
    return False


def substitute_ids(value: Any, mapping: Dict[str, str]) -> Any:
    """Deep-replace every string equal to a mapped local id."""
    if isinstance(value, str):
        return mapping.get(value, value)
    if isinstance(value, list):
        return [substitute_ids(v, mapping) for v in value]
    if isinstance(value, dict):
        return {
            k: (v if k in _IDENTITY_KEYS else substitute_ids(v, mapping))
            for k, v in value.items()
        }
    return value


class SyncQueue:
    STORAGE_KEY = "snapsplit-sync-queue"
    RETRY_JOB_ID = "snapsplit_sync_queue_retry"

    def __init__(
        self,
        storage: DurableStorage,
        executor: Executor,
        *,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_retries: int = 5,
        scheduler: Optional[AsyncIOScheduler] = None,
        on_failed: Optional[FailureListener] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.executor = executor
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.max_retries = int(max_retries)
        self.scheduler = scheduler
        self.on_failed = on_failed
        self.clock = clock

        self._processing = False
        self._actions: List[SyncAction] = self._load()

    # -----------------------------
    # Persistence
    # -----------------------------
    def _load(self) -> List[SyncAction]:
        raw = self.storage.get(self.STORAGE_KEY)
        if not raw:
            return []
        try:
            rows = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            log.error(f"[QUEUE] stored queue is unreadable, starting empty: {e}")
            return []

        actions: List[SyncAction] = []
        interrupted = 0
        for row in rows if isinstance(rows, list) else []:
            action = SyncAction.from_dict(row)
            if action.status == "completed":
                continue
            if action.status == "processing":
                action.status = "pending"
                interrupted += 1
            actions.append(action)

        if interrupted:
            log.warning(f"[QUEUE] reset {interrupted} interrupted action(s) to pending")
        self._actions = actions
        self._persist()
        return actions

    def _persist(self) -> None:
        rows = [a.to_dict() for a in self._actions if a.status != "completed"]
        self.storage.set(self.STORAGE_KEY, json.dumps(rows).encode("utf-8"))

    # -----------------------------
    # Introspection
    # -----------------------------
    @property
    def actions(self) -> List[SyncAction]:
        return list(self._actions)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def get(self, action_id: str) -> Optional[SyncAction]:
        for a in self._actions:
            if a.id == action_id:
                return a
        return None

    def status(self) -> Dict[str, Any]:
        return {
            "pending": sum(1 for a in self._actions if a.status == "pending"),
            "failed": sum(1 for a in self._actions if a.status == "failed"),
            "is_processing": self._processing,
        }

    def retry_delay(self, retry_count: int) -> float:
        return min(self.base_delay * (2 ** retry_count), self.max_delay)

    # -----------------------------
    # Mutators
    # -----------------------------
    async def enqueue(
        self,
        kind: ActionKind,
        bill_id: str,
        payload: Dict[str, Any],
        *,
        process: bool = True,
    ) -> SyncAction:
        """
        Append an action and kick processing.

        A pending action of the same kind for the same bill is replaced in
        place rather than duplicated: the newer payload supersedes it.
        """
        action = next(
            (a for a in self._actions if a.kind == kind and a.bill_id == bill_id and a.status == "pending"),
            None,
        )
        if action is not None:
            action.payload = payload
            action.retry_count = 0
            action.error = None
            action.next_attempt_at = None
            log.info(f"[QUEUE] coalesced {kind} for bill {bill_id} into {action.id}")
        else:
            action = SyncAction(id=str(uuid.uuid4()), kind=kind, bill_id=bill_id, payload=payload, created_at=self.clock())
            self._actions.append(action)
            log.info(f"[QUEUE] enqueued {kind} for bill {bill_id} as {action.id}")

        self._persist()
        if process:
            await self.process()
        return action

    async def process(self) -> int:
        """
        Drain pending actions one at a time. Returns how many completed.

        A call made while another drain is running returns immediately.
        """
        if self._processing:
            return 0

        self._processing = True
        completed = 0
        try:
            while True:
                action = next((a for a in self._actions if a.status == "pending"), None)
                if action is None:
                    break

                now = self.clock()
                if action.next_attempt_at is not None and action.next_attempt_at > now:
                    self._schedule_retry(action.next_attempt_at - now)
                    break

                action.status = "processing"
                action.next_attempt_at = None
                self._persist()

                try:
                    await self.executor(action)
                except Exception as exc:
                    self._handle_failure(action, exc)
                    if action.status == "pending":
                        # the head of the queue is backing off; keep order
                        break
                    continue

                action.status = "completed"
                action.error = None
                self._actions.remove(action)
                self._persist()
                completed += 1
                log.info(f"[QUEUE] completed {action.kind} for bill {action.bill_id}")
        finally:
            self._processing = False

        return completed

    async def retry(self, action_id: Optional[str] = None) -> int:
        """Move failed actions (one, or all) back to pending and drain."""
        revived = 0
        for a in self._actions:
            if a.status != "failed":
                continue
            if action_id is not None and a.id != action_id:
                continue
            a.status = "pending"
            a.retry_count = 0
            a.error = None
            a.next_attempt_at = None
            revived += 1

        if revived:
            self._persist()
            log.info(f"[QUEUE] retrying {revived} failed action(s)")
        return await self.process()

    def discard(self, action_id: Optional[str] = None) -> int:
        """
        Drop an action without side effects. With no id, drops every failed one.

        An action currently in flight cannot be discarded.
        """
        before = len(self._actions)
        if action_id is None:
            self._actions = [a for a in self._actions if a.status != "failed"]
        else:
            self._actions = [a for a in self._actions if a.id != action_id or a.status == "processing"]

        dropped = before - len(self._actions)
        if dropped:
            self._persist()
            log.info(f"[QUEUE] discarded {dropped} action(s)")
        return dropped

    def apply_id_mappings(
        self,
        mappings: IdMappings,
        *,
        bill_id: Optional[str] = None,
        new_version: Optional[int] = None,
    ) -> int:
        """
        Rewrite local ids to server ids in every queued payload not yet sent.

        With `bill_id` and `new_version`, the remaining delta syncs of that bill
        are also rebased onto the new version: they were built by this client
        from the same snapshot, so they only repeat or extend what just landed.
        """
        combined = mappings.combined()
        touched = 0
        for a in self._actions:
            if a.status not in ("pending", "failed"):
                continue
            if combined:
                a.payload = substitute_ids(a.payload, combined)
            if bill_id is not None and new_version is not None and a.bill_id == bill_id and a.kind == "delta_sync":
                a.payload["baseVersion"] = int(new_version)
            touched += 1

        if touched:
            self._persist()
        return touched

    # -----------------------------
    # Failure handling
    # -----------------------------
    def _handle_failure(self, action: SyncAction, exc: BaseException) -> None:
        action.error = str(exc) or exc.__class__.__name__

        if not is_retryable(exc):
            action.status = "failed"
            self._persist()
            log.error(f"[QUEUE] {action.kind} for bill {action.bill_id} failed permanently: {action.error}")
            self._notify_failed(action)
            return

        if action.retry_count >= self.max_retries:
            action.status = "failed"
            self._persist()
            log.error(
                f"[QUEUE] {action.kind} for bill {action.bill_id} failed after "
                f"{action.retry_count} retries: {action.error}"
            )
            self._notify_failed(action)
            return

        delay = self.retry_delay(action.retry_count)
        action.retry_count += 1
        action.status = "pending"
        action.next_attempt_at = self.clock() + delay
        self._persist()
        log.warning(
            f"[QUEUE] {action.kind} for bill {action.bill_id} failed "
            f"(attempt {action.retry_count}), retrying in {delay:.1f}s: {action.error}"
        )
        self._schedule_retry(delay)

    def _notify_failed(self, action: SyncAction) -> None:
        if self.on_failed is None:
            return
        try:
            self.on_failed(action)
        except Exception as e:
            log.warning(f"[QUEUE] failure listener raised: {e}")

    def _schedule_retry(self, delay: float) -> None:
        if self.scheduler is None:
            log.debug(f"[QUEUE] no scheduler attached; next drain happens on demand (due in {delay:.1f}s)")
            return
        self.scheduler.add_job(
            self.process,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=delay),
            id=self.RETRY_JOB_ID,
            replace_existing=True,
        )
