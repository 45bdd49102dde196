"""Tests for strict local-to-server id resolution."""
from __future__ import annotations

import pytest

from snapsplit.client.bill_editor import add_member
from snapsplit.client.id_resolver import StrictIdResolver
from snapsplit.client.snapshot import take_snapshot
from snapsplit.common.errors import StructuralIntegrityError


class TestStrictIdResolver:
    def test_synced_entity_resolves_to_server_id(self, synced_bill):
        bill, snap = synced_bill
        resolver = StrictIdResolver(bill, snap)
        assert resolver.resolve("member", "local-alice") == "srv-alice"
        assert resolver.resolve("expense", "local-dinner") == "srv-dinner"

    def test_new_entity_falls_back_to_local_id(self, synced_bill):
        bill, snap = synced_bill
        carol = add_member(bill, "Carol")
        resolver = StrictIdResolver(bill, snap)

        assert resolver.is_new("member", carol.id)
        assert resolver.resolve("member", carol.id) == carol.id

    def test_unknown_entity_is_structural_fault(self, synced_bill):
        bill, snap = synced_bill
        with pytest.raises(StructuralIntegrityError) as exc:
            StrictIdResolver(bill, snap).resolve("member", "ghost")
        assert exc.value.kind == "member"
        assert exc.value.local_id == "ghost"

    def test_snapshot_entity_without_server_id_is_structural_fault(self, synced_bill):
        bill, _ = synced_bill
        bill.members[1].remote_id = None
        snap = take_snapshot(bill)

        with pytest.raises(StructuralIntegrityError):
            StrictIdResolver(bill, snap).resolve("member", "local-bob")

    def test_fault_is_not_a_validation_error(self):
        assert not issubclass(StructuralIntegrityError, ValueError)

    def test_lenient_never_raises(self, synced_bill):
        bill, snap = synced_bill
        resolver = StrictIdResolver(bill, snap)
        assert resolver.resolve_lenient("member", "ghost") == "ghost"
        assert resolver.resolve_lenient("member", "local-bob") == "srv-bob"
