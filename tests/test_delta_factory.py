"""Tests for building change-sets from a working copy and its snapshot."""
from __future__ import annotations

import pytest

from snapsplit.client.bill_editor import (
    add_expense,
    add_item,
    add_member,
    mark_settled,
    remove_expense,
    remove_member,
    rename_member,
    unmark_settled,
)
from snapsplit.client.delta_factory import create_delta_request
from snapsplit.client.snapshot import take_snapshot
from snapsplit.common.bill_models import ExpenseItem, SettledTransfer
from snapsplit.common.delta_models import is_empty_delta
from snapsplit.common.errors import StructuralIntegrityError
from snapsplit.common.money import D


class TestEmptyDelta:
    def test_unchanged_bill_gives_empty_delta(self, synced_bill):
        bill, snap = synced_bill
        request = create_delta_request(bill, snap)
        assert is_empty_delta(request)
        assert request.base_version == 3

    def test_resending_against_fresh_snapshot_is_empty(self, synced_bill):
        bill, _ = synced_bill
        rename_member(bill, "local-bob", "Robert")
        assert create_delta_request(bill, take_snapshot(bill)).to_wire() == {"baseVersion": 3}


class TestMembers:
    def test_new_member_is_an_add_with_local_id(self, synced_bill):
        bill, snap = synced_bill
        carol = add_member(bill, "Carol")
        request = create_delta_request(bill, snap)

        assert [(a.local_id, a.name, a.display_order) for a in request.members.add] == [(carol.id, "Carol", 2)]
        assert request.members.update == []
        assert request.expenses is None

    def test_rename_is_an_update_by_server_id(self, synced_bill):
        bill, snap = synced_bill
        rename_member(bill, "local-bob", "Robert")
        update = create_delta_request(bill, snap).members.update

        assert len(update) == 1
        assert update[0].remote_id == "srv-bob"
        assert update[0].name == "Robert"
        assert update[0].display_order is None

    def test_reorder_sends_display_order(self, synced_bill):
        bill, snap = synced_bill
        bill.members.reverse()
        update = create_delta_request(bill, snap).members.update

        assert {(u.remote_id, u.display_order) for u in update} == {("srv-bob", 0), ("srv-alice", 1)}

    def test_removed_member_is_deleted_once(self, synced_bill):
        bill, snap = synced_bill
        remove_member(bill, "local-bob")
        request = create_delta_request(bill, snap)

        assert request.members.delete == ["srv-bob"]
        # the dinner lost a participant
        assert request.expenses.update[0].participant_ids == ["srv-alice"]

    def test_synced_member_without_snapshot_is_always_updated(self, synced_bill):
        bill, _ = synced_bill
        request = create_delta_request(bill, None)

        assert {u.remote_id for u in request.members.update} == {"srv-alice", "srv-bob"}
        assert request.bill_meta.name == "Trip"


class TestExpenses:
    def test_add_references_new_and_synced_members(self, synced_bill):
        bill, snap = synced_bill
        carol = add_member(bill, "Carol")
        taxi = add_expense(bill, "Taxi", D("30"), paid_by=carol.id, participants=[carol.id, "local-alice"])
        add = create_delta_request(bill, snap).expenses.add

        assert len(add) == 1
        assert add[0].local_id == taxi.id
        assert add[0].paid_by_member_id == carol.id
        assert add[0].participant_ids == [carol.id, "srv-alice"]

    def test_itemized_update_omits_payer_and_participants(self, synced_bill):
        bill, snap = synced_bill
        dinner = bill.find_expense("local-dinner")
        dinner.is_itemized = True
        dinner.paid_by = None
        dinner.participants = []
        wire = create_delta_request(bill, snap).to_wire()

        update = wire["expenses"]["update"][0]
        assert update["remoteId"] == "srv-dinner"
        assert update["isItemized"] is True
        assert "paidByMemberId" not in update
        assert "participantIds" not in update

    def test_update_with_unsynced_reference_is_structural_fault(self, synced_bill):
        bill, _ = synced_bill
        bill.members[0].remote_id = None
        snap = take_snapshot(bill)
        bill.find_expense("local-dinner").amount = D("75")

        with pytest.raises(StructuralIntegrityError):
            create_delta_request(bill, snap)

    def test_removed_expense_skips_its_item_deletes(self, synced_bill):
        bill, _ = synced_bill
        dinner = bill.find_expense("local-dinner")
        dinner.is_itemized = True
        dinner.items.append(ExpenseItem(id="local-soup", name="Soup", amount=D("8"), remote_id="srv-soup"))
        snap = take_snapshot(bill)

        remove_expense(bill, "local-dinner")
        request = create_delta_request(bill, snap)

        assert request.expenses.delete == ["srv-dinner"]
        assert request.expense_items is None


class TestItems:
    def test_item_add_points_at_parent_server_id(self, synced_bill):
        bill, _ = synced_bill
        bill.find_expense("local-dinner").is_itemized = True
        snap = take_snapshot(bill)
        item = add_item(bill, "local-dinner", "Wine", D("20"), paid_by="local-bob", participants=["local-alice"])

        add = create_delta_request(bill, snap).expense_items.add
        assert [(a.local_id, a.expense_id, a.paid_by_member_id, a.participant_ids) for a in add] == [
            (item.id, "srv-dinner", "srv-bob", ["srv-alice"])
        ]

    def test_items_of_new_expense_point_at_its_local_id(self, synced_bill):
        bill, snap = synced_bill
        groceries = add_expense(bill, "Groceries", D("0"), is_itemized=True)
        add_item(bill, groceries.id, "Milk", D("2"), paid_by="local-alice", participants=["local-bob"])

        request = create_delta_request(bill, snap)
        assert request.expense_items.add[0].expense_id == groceries.id
        assert "paidByMemberId" not in request.to_wire()["expenses"]["add"][0]


class TestSettlementsAndMeta:
    def test_mark_and_unmark_by_set_difference(self, synced_bill):
        bill, _ = synced_bill
        bill.settled_transfers = [SettledTransfer("local-alice", "local-bob")]
        snap = take_snapshot(bill)

        unmark_settled(bill, "local-alice", "local-bob")
        mark_settled(bill, "local-bob", "local-alice")
        settlements = create_delta_request(bill, snap).settlements

        assert [(r.from_member_id, r.to_member_id) for r in settlements.mark] == [("srv-bob", "srv-alice")]
        assert [(r.from_member_id, r.to_member_id) for r in settlements.unmark] == [("srv-alice", "srv-bob")]

    def test_bill_name_only_when_changed(self, synced_bill):
        bill, snap = synced_bill
        assert create_delta_request(bill, snap).bill_meta is None

        bill.name = "Lisbon"
        assert create_delta_request(bill, snap).bill_meta.name == "Lisbon"
