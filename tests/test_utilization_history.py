"""Unit tests for the utilization window and the guest's requested resources."""

import pytest

from cloudlet import Cloudlet, UtilizationModelConstant
from datacenter import HISTORY_LENGTH


class TestUtilizationHistory:
    def test_statistics_of_three_samples(self, make_vm):
        vm = make_vm(mips=100)
        for u in (0.5, 0.3, 0.7):
            vm.add_utilization_history_value(u)

        assert vm.utilization_history_values() == [0.7, 0.3, 0.5]
        assert vm.utilization_mean() == pytest.approx(50.0)
        # scaled samples 50, 30, 70 around a mean of 50
        assert vm.utilization_variance() == pytest.approx(800 / 3)
        assert vm.utilization_mad() == pytest.approx(0.2)

    def test_history_keeps_the_most_recent_samples(self, make_vm):
        vm = make_vm()
        for i in range(45):
            vm.add_utilization_history_value(i / 100)

        values = vm.utilization_history_values()
        assert len(values) == HISTORY_LENGTH == 30
        assert values == [i / 100 for i in range(44, 14, -1)]

    def test_empty_history_reports_zero(self, make_vm):
        vm = make_vm()
        assert vm.utilization_mean() == 0.0
        assert vm.utilization_variance() == 0.0
        assert vm.utilization_mad() == 0.0

    def test_statistics_do_not_touch_the_window(self, make_vm):
        vm = make_vm()
        vm.add_utilization_history_value(0.4)
        vm.add_utilization_history_value(0.6)
        before = vm.utilization_history_values()
        vm.utilization_mean()
        vm.utilization_variance()
        vm.utilization_mad()
        assert vm.utilization_history_values() == before

    def test_host_scales_by_its_total_capacity(self, make_host):
        host = make_host(num_cores=2, mips=10)
        host.add_utilization_history_value(0.5)
        assert host.utilization_mean() == pytest.approx(10.0)


class TestRequestedResources:
    def test_nominal_request_while_being_instantiated(self, make_vm):
        vm = make_vm(mips=10, num_pes=2, ram=512, bw=1000)
        assert vm.being_instantiated
        assert vm.current_requested_mips() == [10, 10]
        assert vm.current_requested_total_mips() == 20
        assert vm.current_requested_ram() == 512
        assert vm.current_requested_bw() == 1000

    def test_idle_guest_requests_nothing_once_running(self, make_vm):
        vm = make_vm(mips=10)
        vm.being_instantiated = False
        assert vm.current_requested_mips() == [0.0]
        assert vm.current_requested_ram() == 0

    def test_running_guest_requests_what_its_cloudlets_use(self, make_vm):
        vm = make_vm(mips=10, ram=512, bw=1000)
        cloudlet = Cloudlet(0, 1000, utilization_model_ram=UtilizationModelConstant(0.25),
                            utilization_model_bw=UtilizationModelConstant(0.5))
        vm.cloudlet_scheduler.cloudlet_submit(cloudlet, 0.0)
        vm.being_instantiated = False

        assert vm.current_requested_mips() == [10.0]
        assert vm.current_requested_ram() == 128
        assert vm.current_requested_bw() == 500

    def test_host_update_ends_instantiation(self, make_host, make_vm):
        host = make_host()
        vm = make_vm()
        assert host.guest_create(vm)
        assert vm.being_instantiated
        host.update_cloudlets_processing(0.0)
        assert not vm.being_instantiated
