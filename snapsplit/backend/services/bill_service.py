"""
Bill Service
============

Thin operations around the repository that are not delta sync: create,
fetch, delete, settlement and claim / unclaim.

Claim and unclaim are single-field edits applied directly to the current
version; they bump the version like any accepted sync so clients holding an
older base see them as a concurrent change.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from snapsplit.backend import flags
from snapsplit.common import claims
from snapsplit.common.bill_models import Bill, Member
from snapsplit.common.errors import BillNotFound, SnapSplitError
from snapsplit.common.settlement_calculator import calculate_settlement, participant_shares

from .sync.reconciliation import server_view

log = logging.getLogger("snapsplit.sync")


class MemberNotFound(SnapSplitError):
    def __init__(self, bill_id: str, member_id: str):
        super().__init__(f"Member {member_id} not found in bill {bill_id}", code="MEMBER_NOT_FOUND", status_code=404)


class BillService:
    def __init__(self, repository: Any, notifier: Any = None) -> None:
        self.repo = repository
        self.notifier = notifier

    async def _require(self, bill_id: str) -> Bill:
        bill = await self.repo.load_bill_with_details(bill_id)
        if bill is None:
            raise BillNotFound(bill_id)
        return bill

    async def create_bill(self, name: str, local_id: Optional[str] = None) -> Dict[str, Any]:
        bill = await self.repo.create_bill(name, local_id)
        return {"id": bill.id, "version": bill.version, "name": bill.name}

    async def get_bill(self, bill_id: str) -> Dict[str, Any]:
        return server_view(await self._require(bill_id))

    async def delete_bill(self, bill_id: str) -> bool:
        deleted = await self.repo.delete_bill(bill_id)
        log.info(f"[SYNC] delete bill {bill_id}: {'removed' if deleted else 'already gone'}")
        return deleted

    async def settlement(self, bill_id: str) -> Dict[str, Any]:
        bill = await self._require(bill_id)
        result = calculate_settlement(bill, report_stale_marks=flags.enabled("SETTLEMENT_STALE_MARKS", "true"))
        shares = {
            e.id: {pid: str(amount) for pid, amount in participant_shares(e).items()}
            for e in bill.expenses
        }
        return {"bill_id": bill.id, "version": bill.version, **result.to_dict(), "expense_shares": shares}

    # -----------------------------
    # Claim / unclaim
    # -----------------------------
    async def claim_member(
        self,
        bill_id: str,
        member_id: str,
        user_id: str,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        bill = await self._require(bill_id)
        member = self._member(bill, member_id)
        if claims.claim(bill, member, user_id, display_name):
            await self._commit(bill, user_id)
        return {"version": bill.version, "member": member.to_dict()}

    async def unclaim_member(self, bill_id: str, member_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        bill = await self._require(bill_id)
        member = self._member(bill, member_id)
        if claims.unclaim(member):
            await self._commit(bill, user_id)
        return {"version": bill.version, "member": member.to_dict()}

    @staticmethod
    def _member(bill: Bill, member_id: str) -> Member:
        member = bill.find_member(member_id)
        if member is None:
            raise MemberNotFound(bill.id, member_id)
        return member

    async def _commit(self, bill: Bill, user_id: Optional[str]) -> None:
        bill.version += 1
        await self.repo.save(bill)
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_bill_updated(bill.id, bill.version, user_id)
        except Exception as e:
            log.warning(f"[NOTIFY] bill {bill.id} v{bill.version}: notifier failed: {e}")
