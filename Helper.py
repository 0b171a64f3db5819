# Helper.py

from cloudlet_scheduler import NetworkCloudletTimeSharedScheduler
from datacenter import Host, Vm
from network import Switch, SwitchLevel

# ====================
# Host Configuration
# ====================
HOST_MIPS = 10
HOST_PES = 2
HOST_RAM = 2048       # MB
HOST_BW = 100000
HOST_STORAGE = 1000000

# ====================
# VM Configuration
# ====================
VM_MIPS = 10
VM_PES = 1
VM_RAM = 512          # MB
VM_BW = 1000
VM_SIZE = 10000       # image size (MB)

# ====================
# Network Configuration
# ====================
EDGE_SWITCH_PORT = 4
AGG_SWITCH_PORT = 1
ROOT_SWITCH_PORT = 1
BANDWIDTH_EDGE_HOST = 100 * 1024 * 1024
BANDWIDTH_EDGE_AGG = 100 * 1024 * 1024
BANDWIDTH_AGG_ROOT = 100 * 1024 * 1024 * 2

# ====================
# Cloudlet Configuration
# ====================
FILE_SIZE = 300
OUTPUT_SIZE = 300


def create_host_list(num_hosts, start_id=0):
    hosts = []
    for i in range(num_hosts):
        host = Host(
            host_id=start_id + i,
            num_cores=HOST_PES,
            core_capacity=HOST_MIPS,
            ram_capacity=HOST_RAM,
            bw_capacity=HOST_BW,
            storage_capacity=HOST_STORAGE,
        )
        hosts.append(host)
    return hosts


def create_vm_list(num_vms, user_id=None, start_id=0, scheduler_cls=NetworkCloudletTimeSharedScheduler):
    vm_list = []
    for i in range(num_vms):
        vm = Vm(start_id + i, user_id, mips=VM_MIPS, num_pes=VM_PES, ram=VM_RAM, bw=VM_BW,
                size=VM_SIZE, cloudlet_scheduler=scheduler_cls())
        vm_list.append(vm)
    return vm_list


def create_network(datacenter, hosts):
    """
    Build a tree over the hosts: one edge switch per EDGE_SWITCH_PORT hosts,
    and when more than one edge switch is needed, aggregation switches under a
    single root.
    """
    edges = []
    for i in range(0, len(hosts), EDGE_SWITCH_PORT):
        edge = datacenter.register_switch(
            Switch(f"Edge{len(edges)}", EDGE_SWITCH_PORT, SwitchLevel.EDGE,
                   downlink_bandwidth=BANDWIDTH_EDGE_HOST, uplink_bandwidth=BANDWIDTH_EDGE_AGG))
        for host in hosts[i:i + EDGE_SWITCH_PORT]:
            datacenter.attach_switch_to_host(edge, host)
        edges.append(edge)
    if len(edges) < 2:
        return edges

    root = datacenter.register_switch(
        Switch("Root", len(edges), SwitchLevel.ROOT, downlink_bandwidth=BANDWIDTH_AGG_ROOT))
    for i, edge in enumerate(edges):
        agg = datacenter.register_switch(
            Switch(f"Agg{i}", AGG_SWITCH_PORT, SwitchLevel.AGGREGATION,
                   downlink_bandwidth=BANDWIDTH_EDGE_AGG, uplink_bandwidth=BANDWIDTH_AGG_ROOT))
        datacenter.connect_switches(edge, agg)
        datacenter.connect_switches(agg, root)
    return edges
