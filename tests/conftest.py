"""Shared fixtures for the simulator tests."""
from types import SimpleNamespace

import pytest

from broker import DatacenterBroker
from cloudlet_scheduler import CloudletSchedulerTimeShared, NetworkCloudletTimeSharedScheduler
from datacenter import Host, Vm
from network import Switch, SwitchLevel
from network_datacenter import NetworkDatacenter
from schedule import MadMigrationPolicy, SchedulerVM
from simulation import Simulation


@pytest.fixture
def sim():
    """A fresh simulation clock and event queue."""
    return Simulation()


@pytest.fixture
def make_host():
    """Factory for hosts shaped like the tandem example's (2 PEs of 10 MIPS)."""
    def _make(host_id=0, num_cores=2, mips=10, ram=2048, bw=100000, storage=1000000, **kwargs):
        return Host(host_id, num_cores, mips, ram, bw, storage, **kwargs)
    return _make


@pytest.fixture
def make_vm():
    """Factory for single-PE guests."""
    def _make(guest_id=0, mips=10, num_pes=1, ram=512, bw=1000, size=10000, scheduler=None, user_id=None):
        scheduler = scheduler if scheduler is not None else CloudletSchedulerTimeShared()
        return Vm(guest_id, user_id, mips, num_pes, ram, bw, size, scheduler)
    return _make


@pytest.fixture
def build_datacenter():
    """
    Factory for a complete run: hosts under one edge switch, a network
    datacenter and a broker owning `num_vms` network-aware guests.

    `host_mips` is the PE speed of every host, or a list with one entry per host.
    `consolidate` adds a MadMigrationPolicy sampling every `scheduling_interval`.
    """
    def _build(num_hosts=2, num_vms=2, policy="most_free_pes", edge_bandwidth=100, bus_bandwidth=None,
               scheduler_cls=NetworkCloudletTimeSharedScheduler, host_mips=10, vm_mips=10,
               scheduling_interval=0.0, consolidate=False):
        sim = Simulation()
        if not isinstance(host_mips, (list, tuple)):
            host_mips = [host_mips] * num_hosts
        hosts = [Host(i, 2, host_mips[i], 2048, 100000, 1000000, bus_bandwidth=bus_bandwidth)
                 for i in range(num_hosts)]
        allocation = SchedulerVM(hosts, policy=policy)
        datacenter = NetworkDatacenter(sim, "Datacenter_0", hosts, vm_allocation_policy=allocation,
                                       scheduling_interval=scheduling_interval,
                                       migration_policy=MadMigrationPolicy(allocation) if consolidate else None)
        edge = datacenter.register_switch(
            Switch("Edge0", num_hosts, SwitchLevel.EDGE, downlink_bandwidth=edge_bandwidth))
        for host in hosts:
            datacenter.attach_switch_to_host(edge, host)

        broker = DatacenterBroker(sim, "Broker", datacenter.id)
        vms = [Vm(i, broker.id, vm_mips, 1, 512, 1000, 10000, scheduler_cls()) for i in range(num_vms)]
        broker.submit_guest_list(vms)
        return SimpleNamespace(sim=sim, hosts=hosts, datacenter=datacenter, broker=broker, vms=vms, edge=edge)
    return _build
