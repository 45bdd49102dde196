"""
Settlement Calculator (Canonical)
=================================

Purpose:
- Net balances per member from a reconciled bill.
- Minimal list of point-to-point transfers that zeroes every balance.

Rules:
- share = amount * (1 + service_fee_percent / 100) / participant_count
- the payer is credited the full fee-inclusive amount
- itemized expenses are settled per item with the parent's fee applied
- balance = total_paid - total_owed, rounded to cents

Matching:
- Greedy: largest remaining creditor against largest remaining debtor,
  transfer the smaller magnitude, repeat until everything is within EPSILON.
- Ties break on member order in the bill, so output is deterministic.
- At most N-1 transfers for N members with a nonzero balance.

The `settled` flag on a transfer is display only. It comes from matching the
(from, to) key against the bill's settled markers and never changes amounts.

Pure function. No DB, no HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .bill_models import Bill, Expense
from .money import D, _q2, allocate, apply_service_fee


EPSILON = D("0.01")


@dataclass
class MemberSummary:
    member_id: str
    total_paid: Decimal = D("0")
    total_owed: Decimal = D("0")
    balance: Decimal = D("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "total_paid": str(self.total_paid),
            "total_owed": str(self.total_owed),
            "balance": str(self.balance),
        }


@dataclass(frozen=True)
class Transfer:
    from_member_id: str
    to_member_id: str
    amount: Decimal
    settled: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.from_member_id, self.to_member_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_member_id": self.from_member_id,
            "to_member_id": self.to_member_id,
            "amount": str(self.amount),
            "settled": self.settled,
        }


@dataclass(frozen=True)
class SettlementResult:
    total_amount: Decimal
    total_with_service_fee: Decimal
    member_summaries: List[MemberSummary]
    transfers: List[Transfer]
    stale_settled_transfers: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_amount": str(self.total_amount),
            "total_with_service_fee": str(self.total_with_service_fee),
            "member_summaries": [s.to_dict() for s in self.member_summaries],
            "transfers": [t.to_dict() for t in self.transfers],
            "stale_settled_transfers": [
                {"from_member_id": f, "to_member_id": t} for f, t in self.stale_settled_transfers
            ],
        }


# -----------------------------
# Totals
# -----------------------------
def expense_amount(expense: Expense) -> Decimal:
    if expense.is_itemized:
        return sum((i.amount for i in expense.items), D("0"))
    return expense.amount


def expense_total(expense: Expense) -> Decimal:
    return apply_service_fee(expense_amount(expense), expense.service_fee_percent)


def participant_shares(expense: Expense) -> Dict[str, Decimal]:
    """
    Cent-exact share per participant of a simple expense (penny allocation).

    Itemized expenses report the sum of their items' allocations.
    """
    shares: Dict[str, Decimal] = {}
    if expense.is_itemized:
        for item in expense.items:
            if not item.participants:
                continue
            item_total = apply_service_fee(item.amount, expense.service_fee_percent)
            for pid, amt in zip(item.participants, allocate(item_total, len(item.participants))):
                shares[pid] = shares.get(pid, D("0")) + amt
        return shares

    if not expense.participants:
        return shares
    for pid, amt in zip(expense.participants, allocate(expense_total(expense), len(expense.participants))):
        shares[pid] = shares.get(pid, D("0")) + amt
    return shares


# -----------------------------
# Balances
# -----------------------------
def _charge(
    summaries: Dict[str, MemberSummary],
    payer: Optional[str],
    participants: List[str],
    amount_with_fee: Decimal,
) -> None:
    if not participants:
        return
    share = amount_with_fee / len(participants)

    if payer and payer in summaries:
        summaries[payer].total_paid += amount_with_fee

    for pid in participants:
        if pid in summaries:
            summaries[pid].total_owed += share


def member_summaries(bill: Bill) -> List[MemberSummary]:
    summaries: Dict[str, MemberSummary] = {m.id: MemberSummary(member_id=m.id) for m in bill.members}

    for expense in bill.expenses:
        if expense.is_itemized:
            for item in expense.items:
                _charge(
                    summaries,
                    item.paid_by,
                    item.participants,
                    apply_service_fee(item.amount, expense.service_fee_percent),
                )
        else:
            _charge(summaries, expense.paid_by, expense.participants, expense_total(expense))

    out: List[MemberSummary] = []
    for m in bill.members:
        s = summaries[m.id]
        balance = s.total_paid - s.total_owed
        out.append(
            MemberSummary(
                member_id=s.member_id,
                total_paid=_q2(s.total_paid),
                total_owed=_q2(s.total_owed),
                balance=_q2(balance),
            )
        )
    return out


# -----------------------------
# Transfers
# -----------------------------
def minimize_transfers(
    summaries: Iterable[MemberSummary],
    settled_keys: Optional[Set[Tuple[str, str]]] = None,
) -> List[Transfer]:
    settled_keys = settled_keys or set()

    # [order, member_id, remaining]; order keeps selection stable across ties
    creditors: List[List[Any]] = []
    debtors: List[List[Any]] = []
    for order, s in enumerate(summaries):
        if s.balance > EPSILON:
            creditors.append([order, s.member_id, s.balance])
        elif s.balance < -EPSILON:
            debtors.append([order, s.member_id, -s.balance])

    def _largest(entries: List[List[Any]]) -> List[Any]:
        return min(entries, key=lambda e: (-e[2], e[0]))

    transfers: List[Transfer] = []
    while creditors and debtors:
        creditor = _largest(creditors)
        debtor = _largest(debtors)
        amount = min(creditor[2], debtor[2])

        if amount >= EPSILON:
            key = (debtor[1], creditor[1])
            transfers.append(
                Transfer(
                    from_member_id=debtor[1],
                    to_member_id=creditor[1],
                    amount=_q2(amount),
                    settled=key in settled_keys,
                )
            )

        creditor[2] -= amount
        debtor[2] -= amount

        if creditor[2] < EPSILON:
            creditors.remove(creditor)
        if debtor[2] < EPSILON:
            debtors.remove(debtor)

    return transfers


def calculate_settlement(bill: Bill, *, report_stale_marks: bool = True) -> SettlementResult:
    settled_keys = {st.key for st in bill.settled_transfers}

    summaries = member_summaries(bill)
    transfers = minimize_transfers(summaries, settled_keys)

    stale: List[Tuple[str, str]] = []
    if report_stale_marks:
        live = {t.key for t in transfers}
        stale = [st.key for st in bill.settled_transfers if st.key not in live]

    return SettlementResult(
        total_amount=_q2(sum((expense_amount(e) for e in bill.expenses), D("0"))),
        total_with_service_fee=_q2(sum((expense_total(e) for e in bill.expenses), D("0"))),
        member_summaries=summaries,
        transfers=transfers,
        stale_settled_transfers=stale,
    )
