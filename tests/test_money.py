"""Tests for the decimal money helpers."""
from __future__ import annotations

import pytest

from snapsplit.common.money import D, allocate, amount_with_service_fee, service_fee


class TestAllocate:
    def test_uneven_split_gives_extra_cent_to_first_shares(self):
        assert allocate(D("100"), 3) == [D("33.34"), D("33.33"), D("33.33")]

    def test_even_split(self):
        assert allocate(D("10"), 4) == [D("2.50")] * 4

    def test_shares_always_sum_to_total(self):
        for total, count in [(D("0.05"), 3), (D("99.99"), 7), (D("1"), 6)]:
            shares = allocate(total, count)
            assert len(shares) == count
            assert sum(shares) == total

    def test_single_share_is_total(self):
        assert allocate(D("12.345"), 1) == [D("12.35")]

    def test_zero_count_rejected(self):
        with pytest.raises(ValueError):
            allocate(D("10"), 0)


class TestServiceFee:
    def test_amount_with_fee(self):
        assert amount_with_service_fee(D("100"), D("10")) == D("110.00")

    def test_fee_rounds_half_up(self):
        assert service_fee(D("33.35"), D("10")) == D("3.34")

    def test_zero_fee(self):
        assert amount_with_service_fee(D("42.10"), D("0")) == D("42.10")
