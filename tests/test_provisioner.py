"""Unit tests for the resource provisioners."""

import numpy as np
import pytest

from provisioner import BwProvisioner, PeProvisioner, RamProvisioner, ResourceProvisioner


class TestResourceProvisioner:
    def test_rejects_request_larger_than_capacity(self):
        """120 MIPS on a 100 MIPS PE fails and leaves the ledger alone."""
        pe = PeProvisioner(100)
        assert pe.allocate("vm-0", 120) is False
        assert pe.available == 100
        assert pe.allocated_for("vm-0") == 0

    def test_reallocation_charges_only_the_delta(self):
        ram = RamProvisioner(1024)
        assert ram.allocate(1, 300)
        assert ram.allocate(1, 500)
        assert ram.available == 524
        assert ram.allocate(1, 200)
        assert ram.available == 824
        assert ram.allocated_for(1) == 200

    def test_reallocation_may_reuse_what_the_guest_holds(self):
        bw = BwProvisioner(100)
        assert bw.allocate("a", 60)
        assert bw.allocate("b", 40)
        assert bw.available == 0
        assert bw.allocate("a", 60)
        assert bw.allocate("a", 50)
        assert bw.allocate("a", 70) is False
        assert bw.allocated_for("a") == 50
        assert bw.available == 10

    def test_deallocate_is_idempotent(self):
        ram = RamProvisioner(100)
        ram.allocate(7, 40)
        ram.deallocate(7)
        ram.deallocate(7)
        ram.deallocate("never-allocated")
        assert ram.available == 100
        assert ram.allocations == {}

    def test_deallocate_all_resets_the_ledger(self):
        ram = RamProvisioner(100)
        ram.allocate(1, 40)
        ram.allocate(2, 30)
        ram.deallocate_all()
        assert ram.available == 100
        assert ram.total_allocated == 0

    def test_negative_amount_raises(self):
        with pytest.raises(ValueError):
            ResourceProvisioner(10).allocate(1, -1)

    def test_utilization_is_a_fraction(self):
        ram = RamProvisioner(200)
        assert ram.utilization() == 0.0
        ram.allocate(1, 50)
        assert ram.utilization() == pytest.approx(0.25)
        ram.allocate(2, 150)
        assert ram.utilization() == pytest.approx(1.0)
        assert ResourceProvisioner(0).utilization() == 0.0

    def test_conservation_over_random_traffic(self):
        """No sequence of requests drives available below zero or above capacity."""
        rng = np.random.default_rng(42)
        ram = RamProvisioner(1000)
        for _ in range(500):
            guest = int(rng.integers(0, 8))
            if rng.random() < 0.7:
                ram.allocate(guest, int(rng.integers(0, 400)))
            else:
                ram.deallocate(guest)
            assert 0 <= ram.available <= ram.capacity
            assert sum(ram.allocations.values()) <= ram.capacity
            assert ram.capacity - ram.available == sum(ram.allocations.values())


class TestPeProvisioner:
    def test_list_allocation_is_recorded_per_virtual_pe(self):
        pe = PeProvisioner(100)
        assert pe.allocate("vm", [40, 30])
        assert pe.available == 30
        assert pe.allocated_mips_for("vm") == [40.0, 30.0]
        assert pe.allocated_mips_by_virtual_pe("vm", 1) == 30.0
        assert pe.allocated_mips_by_virtual_pe("vm", 5) == 0.0

    def test_list_allocation_is_all_or_nothing(self):
        pe = PeProvisioner(100)
        pe.allocate("a", [40, 40])
        assert pe.allocate("b", [15, 15]) is False
        assert pe.available == 20
        assert pe.allocated_mips_for("b") == []
        assert "b" not in pe.allocations

    def test_deallocate_clears_the_mips_table(self):
        pe = PeProvisioner(50)
        pe.allocate("a", 20)
        pe.deallocate("a")
        assert pe.allocated_mips_for("a") == []
        assert pe.available == 50
