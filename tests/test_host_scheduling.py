"""Unit tests for host placement, the VM schedulers and consolidation."""

import pytest

from cloudlet import Cloudlet
from exceptions import AllocationRejected
from schedule import MadMigrationPolicy, SchedulerVM, VmSchedulerSpaceShared


def busy(vm, length=1000):
    """Give the guest one cloudlet that keeps its CPU fully used."""
    vm.cloudlet_scheduler.cloudlet_submit(Cloudlet(vm.guest_id * 100, length), 0.0)
    return vm


class TestHost:
    def test_guest_create_reserves_nominal_resources(self, make_host, make_vm):
        host = make_host()
        vm = make_vm(guest_id=1, ram=512, bw=1000, size=10000)
        assert host.guest_create(vm)

        assert vm.host_id == host.host_id
        assert host.vm_scheduler.allocated_mips_for(vm) == [10]
        assert host.remaining_cpu() == pytest.approx(10)
        assert host.ram_provisioner.available == 2048 - 512
        assert host.bw_provisioner.available == 100000 - 1000
        assert host.available_storage == 1000000 - 10000

    def test_rejected_guest_leaves_the_host_unchanged(self, make_host, make_vm):
        host = make_host()
        assert host.guest_create(make_vm(guest_id=0))
        assert host.guest_create(make_vm(guest_id=1))

        late = make_vm(guest_id=2)
        assert host.guest_create(late) is False
        assert late.host_id is None
        assert host.ram_provisioner.available == 2048 - 1024
        assert host.bw_provisioner.available == 100000 - 2000
        assert len(host.guests) == 2

    def test_guest_destroy_releases_everything(self, make_host, make_vm):
        host = make_host()
        vm = make_vm()
        host.guest_create(vm)
        assert host.guest_destroy(vm)
        assert host.guest_destroy(vm) is False

        assert vm.host_id is None
        assert host.remaining_cpu() == pytest.approx(host.cpu_capacity)
        assert host.ram_provisioner.available == host.ram_provisioner.capacity
        assert host.available_storage == host.storage_capacity
        assert host.free_pes() == 2

    def test_cpu_utilization_counts_busy_guests(self, make_host, make_vm):
        host = make_host()
        idle, working = make_vm(guest_id=0), busy(make_vm(guest_id=1))
        host.guest_create(idle)
        host.guest_create(working)
        assert host.cpu_utilization(0.0) == pytest.approx(0.5)
        assert host.allocated_mips_fraction() == pytest.approx(1.0)

    def test_record_utilization_fills_both_histories(self, make_host, make_vm):
        host = make_host()
        vm = busy(make_vm())
        host.guest_create(vm)
        host.record_utilization(0.0)
        assert vm.utilization_history_values() == [1.0]
        assert host.utilization_history_values() == [0.5]


class TestVmSchedulers:
    def test_time_shared_spreads_a_guest_over_pes(self, make_host, make_vm):
        host = make_host()
        small, large = make_vm(guest_id=0, mips=5), make_vm(guest_id=1, mips=10)
        assert host.guest_create(small)
        assert host.guest_create(large)
        assert host.vm_scheduler.allocated_mips_for(large) == [10]
        assert host.vm_scheduler.pe_map[1] == [0, 1]
        assert host.remaining_cpu() == pytest.approx(5)

    def test_time_shared_caps_a_virtual_pe_at_one_physical_pe(self, make_host, make_vm):
        host = make_host()
        vm = make_vm(mips=15)
        assert host.guest_create(vm)
        assert host.vm_scheduler.allocated_mips_for(vm) == [10]

    def test_space_shared_gives_each_virtual_pe_its_own_pe(self, make_host, make_vm):
        host = make_host(vm_scheduler_cls=VmSchedulerSpaceShared)
        first = make_vm(guest_id=0, mips=4)
        assert host.guest_create(first)
        assert host.free_pes() == 1
        assert host.guest_create(make_vm(guest_id=1, mips=4))
        assert host.guest_create(make_vm(guest_id=2, mips=1)) is False

    def test_space_shared_rejects_too_many_virtual_pes(self, make_host, make_vm):
        host = make_host(vm_scheduler_cls=VmSchedulerSpaceShared)
        with pytest.raises(AllocationRejected):
            host.vm_scheduler.allocate_pes_for_guest(make_vm(num_pes=3), [10, 10, 10])
        assert host.remaining_cpu() == pytest.approx(20)


class TestSchedulerVM:
    def test_first_fit_fills_the_first_host(self, make_host, make_vm):
        hosts = [make_host(0), make_host(1)]
        scheduler = SchedulerVM(hosts)
        assert scheduler.schedule_vm(make_vm(guest_id=0)) is hosts[0]
        assert scheduler.schedule_vm(make_vm(guest_id=1)) is hosts[0]
        assert scheduler.schedule_vm(make_vm(guest_id=2)) is hosts[1]

    def test_most_free_pes_spreads_guests(self, make_host, make_vm):
        hosts = [make_host(0), make_host(1)]
        scheduler = SchedulerVM(hosts, policy="most_free_pes")
        placed = [scheduler.schedule_vm(make_vm(guest_id=i)).host_id for i in range(4)]
        assert placed == [0, 1, 0, 1]

    def test_least_utilized(self, make_host, make_vm):
        hosts = [make_host(0), make_host(1)]
        hosts[0].guest_create(make_vm(guest_id=9))
        scheduler = SchedulerVM(hosts, policy="least_utilized")
        assert scheduler.schedule_vm(make_vm(guest_id=0)) is hosts[1]

    def test_no_room_returns_none(self, make_host, make_vm):
        scheduler = SchedulerVM([make_host(0, num_cores=1)])
        assert scheduler.schedule_vm(make_vm(guest_id=0))
        assert scheduler.schedule_vm(make_vm(guest_id=1)) is None

    def test_unknown_policy_raises(self, make_host, make_vm):
        scheduler = SchedulerVM([make_host()], policy="bogus")
        with pytest.raises(ValueError):
            scheduler.schedule_vm(make_vm())


class TestMadMigrationPolicy:
    def test_short_history_uses_fallback_threshold(self, make_host):
        policy = MadMigrationPolicy(SchedulerVM([make_host()]))
        assert policy.upper_threshold(policy.hosts[0]) == pytest.approx(0.8)

    def test_steady_history_tightens_nothing(self, make_host):
        host = make_host()
        for _ in range(12):
            host.add_utilization_history_value(0.5)
        policy = MadMigrationPolicy(SchedulerVM([host]))
        assert policy.upper_threshold(host) == pytest.approx(1.0)

    def test_underloaded_host_is_drained(self, make_host, make_vm):
        hosts = [make_host(0), make_host(1), make_host(2)]
        worker, idle = busy(make_vm(guest_id=0)), make_vm(guest_id=1)
        hosts[0].guest_create(worker)
        hosts[1].guest_create(idle)
        for host in hosts:
            host.update_cloudlets_processing(0.0)

        migrations = MadMigrationPolicy(SchedulerVM(hosts)).optimize_allocation()
        assert migrations == [(idle, hosts[0])]

    def test_overloaded_host_sheds_its_smallest_guest(self, make_host, make_vm):
        hosts = [make_host(0), make_host(1)]
        small, large = busy(make_vm(guest_id=0, ram=256)), busy(make_vm(guest_id=1, ram=512))
        hosts[0].guest_create(large)
        hosts[0].guest_create(small)
        for host in hosts:
            host.update_cloudlets_processing(0.0)

        policy = MadMigrationPolicy(SchedulerVM(hosts))
        assert policy.is_overloaded(hosts[0])
        assert policy.optimize_allocation() == [(small, hosts[1])]
