"""Tests for balances and transfer minimization."""
from __future__ import annotations

from snapsplit.common.bill_models import Bill, Expense, ExpenseItem, Member, SettledTransfer
from snapsplit.common.money import D
from snapsplit.common.settlement_calculator import (
    EPSILON,
    calculate_settlement,
    member_summaries,
    participant_shares,
)


def _bill(*names, expenses=None, settled=None):
    members = [Member(id=n, name=n.title()) for n in names]
    return Bill(id="b1", name="Bill", members=members, expenses=expenses or [], settled_transfers=settled or [])


def _balances(bill):
    return {s.member_id: s.balance for s in member_summaries(bill)}


class TestEqualSplit:
    def test_three_way_split_emits_two_transfers(self):
        bill = _bill("a", "b", "c", expenses=[
            Expense(id="e1", name="Hotel", amount=D("300"), paid_by="a", participants=["a", "b", "c"]),
        ])
        result = calculate_settlement(bill)

        summaries = {s.member_id: s for s in result.member_summaries}
        assert summaries["a"].total_owed == D("100.00")
        assert summaries["a"].balance == D("200.00")
        assert summaries["b"].balance == D("-100.00")

        assert len(result.transfers) == 2
        assert sum(t.amount for t in result.transfers) == D("200.00")
        assert all(t.to_member_id == "a" for t in result.transfers)
        # equal debtors keep member order
        assert [t.from_member_id for t in result.transfers] == ["b", "c"]

    def test_service_fee_is_credited_to_payer(self):
        bill = _bill("a", "b", expenses=[
            Expense(id="e1", name="Dinner", amount=D("100"), service_fee_percent=D("10"), paid_by="a", participants=["a", "b"]),
        ])
        result = calculate_settlement(bill)

        assert result.total_amount == D("100.00")
        assert result.total_with_service_fee == D("110.00")
        assert _balances(bill) == {"a": D("55.00"), "b": D("-55.00")}
        assert [(t.from_member_id, t.to_member_id, t.amount) for t in result.transfers] == [("b", "a", D("55.00"))]

    def test_no_expenses_means_no_transfers(self):
        result = calculate_settlement(_bill("a", "b"))
        assert result.transfers == []
        assert all(s.balance == 0 for s in result.member_summaries)


class TestItemized:
    def test_items_are_settled_individually(self):
        bill = _bill("a", "b", expenses=[
            Expense(
                id="e1",
                name="Groceries",
                amount=D("0"),
                is_itemized=True,
                items=[
                    ExpenseItem(id="i1", name="Wine", amount=D("40"), paid_by="a", participants=["b"]),
                    ExpenseItem(id="i2", name="Bread", amount=D("20"), paid_by="b", participants=["a", "b"]),
                ],
            ),
        ])
        result = calculate_settlement(bill)

        assert result.total_amount == D("60.00")
        assert _balances(bill) == {"a": D("30.00"), "b": D("-30.00")}
        assert [(t.from_member_id, t.to_member_id, t.amount) for t in result.transfers] == [("b", "a", D("30.00"))]

    def test_participant_shares_are_cent_exact(self):
        expense = Expense(id="e1", name="Taxi", amount=D("100"), paid_by="a", participants=["a", "b", "c"])
        shares = participant_shares(expense)
        assert shares == {"a": D("33.34"), "b": D("33.33"), "c": D("33.33")}


class TestMinimization:
    def _busy_bill(self):
        return _bill("a", "b", "c", "d", expenses=[
            Expense(id="e1", name="Cabin", amount=D("100"), paid_by="a", participants=["a", "b", "c", "d"]),
            Expense(id="e2", name="Fuel", amount=D("60"), paid_by="b", participants=["b", "c"]),
            Expense(id="e3", name="Food", amount=D("45"), paid_by="c", participants=["a", "c", "d"]),
            Expense(id="e4", name="Tickets", amount=D("33.33"), paid_by="d", participants=["a", "b", "c"]),
        ])

    def test_at_most_n_minus_one_transfers(self):
        bill = self._busy_bill()
        nonzero = [b for b in _balances(bill).values() if abs(b) >= EPSILON]
        result = calculate_settlement(bill)
        assert len(result.transfers) <= len(nonzero) - 1

    def test_transfers_net_to_each_balance(self):
        bill = self._busy_bill()
        result = calculate_settlement(bill)

        for member_id, balance in _balances(bill).items():
            received = sum((t.amount for t in result.transfers if t.to_member_id == member_id), D("0"))
            paid = sum((t.amount for t in result.transfers if t.from_member_id == member_id), D("0"))
            assert abs((received - paid) - balance) <= EPSILON * len(bill.members)

    def test_deterministic(self):
        first = calculate_settlement(self._busy_bill()).transfers
        second = calculate_settlement(self._busy_bill()).transfers
        assert first == second


class TestSettledMarkers:
    def test_settled_flag_is_display_only(self):
        expenses = [Expense(id="e1", name="Hotel", amount=D("300"), paid_by="a", participants=["a", "b", "c"])]
        plain = calculate_settlement(_bill("a", "b", "c", expenses=expenses))
        marked = calculate_settlement(
            _bill("a", "b", "c", expenses=expenses, settled=[SettledTransfer("b", "a")])
        )

        assert [t.amount for t in marked.transfers] == [t.amount for t in plain.transfers]
        assert [t.settled for t in marked.transfers] == [True, False]

    def test_marker_without_live_transfer_is_reported_stale(self):
        bill = _bill("a", "b", "c", expenses=[
            Expense(id="e1", name="Hotel", amount=D("300"), paid_by="a", participants=["a", "b", "c"]),
        ], settled=[SettledTransfer("c", "b")])

        assert calculate_settlement(bill).stale_settled_transfers == [("c", "b")]
        assert calculate_settlement(bill, report_stale_marks=False).stale_settled_transfers == []
