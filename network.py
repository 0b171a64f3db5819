# network.py
"""
Switch hierarchy and data transfers between NetworkCloudlet stages.

Hosts hang off EDGE switches, EDGE switches off AGGREGATION switches and those
off a ROOT switch. A transfer climbs from the source host's edge switch to the
lowest common ancestor and comes back down to the destination. Every switch
port on that path splits its bandwidth evenly among the transfers crossing it,
and a transfer moves at the speed of its slowest port.
"""
import itertools
import logging
from enum import IntEnum

import networkx as nx

from cloudlet import StageKind
from exceptions import RoutingFailure, SimulationError, UnknownEntity

logger = logging.getLogger(__name__)


class SwitchLevel(IntEnum):
    EDGE = 0
    AGGREGATION = 1
    ROOT = 2


class Switch:
    def __init__(self, name, num_ports, level, downlink_bandwidth, uplink_bandwidth=0.0):
        """
        :param name: Unique switch name
        :param num_ports: Number of downward ports (hosts for EDGE, child switches otherwise)
        :param level: SwitchLevel
        :param downlink_bandwidth: Bandwidth of each port toward hosts / child switches
        :param uplink_bandwidth: Bandwidth of the port toward the parent switch
        """
        self.name = name
        self.num_ports = num_ports
        self.level = SwitchLevel(level)
        self.downlink_bandwidth = downlink_bandwidth
        self.uplink_bandwidth = uplink_bandwidth
        self.hosts = {}      # {host_id: host}, EDGE only
        self.children = []   # child switches
        self.parent = None

    @property
    def used_ports(self):
        return len(self.hosts) + len(self.children)

    def __str__(self):
        return (f"Switch {self.name} | {self.level.name} | ports {self.used_ports}/{self.num_ports} | "
                f"down {self.downlink_bandwidth} up {self.uplink_bandwidth}")


def _switch_node(name):
    return ("switch", name)


def _host_node(host_id):
    return ("host", host_id)


def _host_uplink(host_id):
    # traffic entering the edge switch from a host; ("host", id) is the other direction
    return ("from_host", host_id)


class NetworkTopology:
    def __init__(self):
        self.switches = {}
        self.host_switch = {}  # {host_id: edge switch}
        self.graph = nx.Graph()
        self.frozen = False
        self._routes = {}

    def _check_mutable(self):
        if self.frozen:
            raise SimulationError("The network topology cannot change once the simulation has started")

    def register_switch(self, switch):
        self._check_mutable()
        if switch.name in self.switches:
            raise ValueError(f"Switch {switch.name} is already registered")
        self.switches[switch.name] = switch
        self.graph.add_node(_switch_node(switch.name), switch=switch)
        return switch

    def attach_switch_to_host(self, switch, host):
        self._check_mutable()
        if switch.name not in self.switches:
            raise ValueError(f"Switch {switch.name} is not registered")
        if switch.level != SwitchLevel.EDGE:
            raise ValueError(f"Hosts can only be attached to EDGE switches, {switch.name} is {switch.level.name}")
        if host.host_id in self.host_switch:
            raise ValueError(f"Host {host.host_id} is already attached to {self.host_switch[host.host_id].name}")
        if switch.used_ports >= switch.num_ports:
            raise ValueError(f"Switch {switch.name} has no free port for host {host.host_id}")
        switch.hosts[host.host_id] = host
        self.host_switch[host.host_id] = switch
        self.graph.add_edge(_switch_node(switch.name), _host_node(host.host_id))
        self._routes.clear()

    def connect_switches(self, child, parent):
        self._check_mutable()
        for switch in (child, parent):
            if switch.name not in self.switches:
                raise ValueError(f"Switch {switch.name} is not registered")
        if parent.level != child.level + 1:
            raise ValueError(f"Cannot connect {child.level.name} switch {child.name} "
                             f"under {parent.level.name} switch {parent.name}")
        if child.parent is not None:
            raise ValueError(f"Switch {child.name} already has parent {child.parent.name}")
        if parent.used_ports >= parent.num_ports:
            raise ValueError(f"Switch {parent.name} has no free port for {child.name}")
        child.parent = parent
        parent.children.append(child)
        self.graph.add_edge(_switch_node(child.name), _switch_node(parent.name))
        self._routes.clear()

    def validate(self, host_ids=None):
        """Raise RoutingFailure unless every host can reach every other host over a tree."""
        host_ids = sorted(self.host_switch) if host_ids is None else sorted(host_ids)
        for host_id in host_ids:
            if host_id not in self.host_switch:
                raise RoutingFailure(host_id, "network", "host is not attached to an edge switch")
        if len(host_ids) < 2:
            return True
        if not nx.is_forest(self.graph):
            raise RoutingFailure(host_ids[0], host_ids[-1], "the switch graph is not a tree")
        first = _host_node(host_ids[0])
        for host_id in host_ids[1:]:
            if not nx.has_path(self.graph, first, _host_node(host_id)):
                raise RoutingFailure(host_ids[0], host_id)
            self.route(host_ids[0], host_id)
        return True

    def freeze(self):
        self.frozen = True

    def port_bandwidth(self, port):
        switch_name, neighbour = port
        switch = self.switches[switch_name]
        if neighbour[0] == "switch" and self.switches[neighbour[1]].level > switch.level:
            return switch.uplink_bandwidth
        return switch.downlink_bandwidth

    def route(self, src_host_id, dst_host_id):
        """
        Ports crossed going from one host to another, in order.
        The first is the source host's port on its edge switch; every other
        port is (switch name, next node). Same-host routes are empty.
        """
        if src_host_id == dst_host_id:
            return []
        key = (src_host_id, dst_host_id)
        if key in self._routes:
            return self._routes[key]
        for host_id in key:
            if host_id not in self.host_switch:
                raise RoutingFailure(src_host_id, dst_host_id, f"host {host_id} is not attached to a switch")
        try:
            nodes = nx.shortest_path(self.graph, _host_node(src_host_id), _host_node(dst_host_id))
        except nx.NetworkXNoPath:
            raise RoutingFailure(src_host_id, dst_host_id)
        ports = [(self.host_switch[src_host_id].name, _host_uplink(src_host_id))]
        ports += [(a[1], b) for a, b in zip(nodes, nodes[1:]) if a[0] == "switch"]
        for port in ports:
            if self.port_bandwidth(port) <= 0:
                raise RoutingFailure(src_host_id, dst_host_id, f"port {port[0]} -> {port[1][1]} has no bandwidth")
        self._routes[key] = ports
        return ports


class TransferCounter:
    """Total bytes moved across switches. Reset when a simulation starts."""

    def __init__(self):
        self._total_bytes = 0
        self.transfers = 0

    @property
    def total_bytes(self):
        return self._total_bytes

    def add(self, size):
        self._total_bytes += size
        self.transfers += 1

    def reset(self):
        self._total_bytes = 0
        self.transfers = 0


class Transfer:
    def __init__(self, transfer_id, sender, receiver, size, src_host_id, dst_host_id, ports, start_time):
        self.transfer_id = transfer_id
        self.sender = sender
        self.receiver = receiver
        self.size = size
        self.src_host_id = src_host_id
        self.dst_host_id = dst_host_id
        self.ports = ports
        self.start_time = start_time
        self.remaining = float(size)
        self.rate = 0.0
        self.last_update = start_time
        self.expected_finish = None
        self.version = 0

    def __repr__(self):
        return (f"Transfer({self.transfer_id}: {self.sender.cloudlet_id}->{self.receiver.cloudlet_id}, "
                f"{self.size}, hosts {self.src_host_id}->{self.dst_host_id})")


class TransferManager:
    def __init__(self, topology, counter, locate_host, schedule_completion):
        """
        :param topology: NetworkTopology used for routing
        :param counter: TransferCounter incremented on every completed switch transfer
        :param locate_host: callable(cloudlet) -> Host the cloudlet runs on
        :param schedule_completion: callable(delay, transfer_id, version) posting a completion event
        """
        self.topology = topology
        self.counter = counter
        self.locate_host = locate_host
        self.schedule_completion = schedule_completion
        self.waiting_sends = {}   # {(sender_id, receiver_id, ordinal): (cloudlet, stage)}
        self.waiting_recvs = {}
        self.matched = []
        self.in_flight = {}       # {transfer_id: Transfer}
        self.port_load = {}       # {port: number of transfers}
        self._ids = itertools.count()

    @staticmethod
    def _key(cloudlet, stage):
        if stage.kind == StageKind.SEND:
            return (cloudlet.cloudlet_id, stage.peer_id, stage.ordinal)
        return (stage.peer_id, cloudlet.cloudlet_id, stage.ordinal)

    def stage_ready(self, cloudlet, stage, current_time):
        """Record that a cloudlet reached a SEND or RECV stage; pair it if its peer is waiting."""
        key = self._key(cloudlet, stage)
        if stage.kind == StageKind.SEND:
            mine, theirs = self.waiting_sends, self.waiting_recvs
        else:
            mine, theirs = self.waiting_recvs, self.waiting_sends
        if key in theirs:
            other = theirs.pop(key)
            pair = ((cloudlet, stage), other) if stage.kind == StageKind.SEND else (other, (cloudlet, stage))
            self.matched.append((key, pair))
        else:
            mine[key] = (cloudlet, stage)

    def flush(self, current_time):
        """
        Start every transfer paired since the last flush, in (sender, receiver) id order.
        Returns the cloudlets whose peer has already finished and so can never
        pair with them; the caller fails them.
        """
        orphans = []
        for waiting in (self.waiting_sends, self.waiting_recvs):
            for key, (cloudlet, stage) in list(waiting.items()):
                if stage.peer.finished:
                    del waiting[key]
                    orphans.append(cloudlet)

        matched, self.matched = sorted(self.matched, key=lambda m: m[0]), []
        for _, ((sender, send_stage), (receiver, _)) in matched:
            try:
                self._start(sender, receiver, send_stage.amount, current_time)
            except (RoutingFailure, UnknownEntity) as e:
                logger.error(f"Transfer {sender.cloudlet_id}->{receiver.cloudlet_id} cannot start: {e.message}")
                orphans.extend((sender, receiver))
        return orphans

    def _rate(self, transfer):
        return min(self.topology.port_bandwidth(p) / self.port_load[p] for p in transfer.ports)

    def _sharing(self, ports):
        ports = set(ports)
        return [t for t in self.in_flight.values() if ports.intersection(t.ports)]

    def _settle(self, transfers, current_time):
        for t in transfers:
            t.remaining = max(t.remaining - t.rate * (current_time - t.last_update), 0.0)
            t.last_update = current_time

    def _reproject(self, transfers, current_time):
        for t in sorted(transfers, key=lambda t: t.transfer_id):
            t.rate = self._rate(t)
            t.version += 1
            t.expected_finish = current_time + t.remaining / t.rate
            self.schedule_completion(t.expected_finish - current_time, t.transfer_id, t.version)

    def _start(self, sender, receiver, size, current_time):
        src = self.locate_host(sender)
        dst = self.locate_host(receiver)
        ports = self.topology.route(src.host_id, dst.host_id)
        transfer = Transfer(next(self._ids), sender, receiver, size, src.host_id, dst.host_id, ports, current_time)

        if not ports:
            self.in_flight[transfer.transfer_id] = transfer
            duration = size / src.bus_bandwidth if src.bus_bandwidth else 0.0
            transfer.rate = size / duration if duration else float("inf")
            transfer.expected_finish = current_time + duration
            self.schedule_completion(duration, transfer.transfer_id, transfer.version)
            logger.debug(f"Started local {transfer}")
            return transfer

        affected = self._sharing(ports)
        self._settle(affected, current_time)
        self.in_flight[transfer.transfer_id] = transfer
        for port in ports:
            self.port_load[port] = self.port_load.get(port, 0) + 1
        self._reproject(affected + [transfer], current_time)
        logger.debug(f"Started {transfer}, expected to finish at {transfer.expected_finish:.4f}")
        return transfer

    def _remove(self, transfer, current_time):
        del self.in_flight[transfer.transfer_id]
        if not transfer.ports:
            return
        affected = self._sharing(transfer.ports)
        self._settle(affected, current_time)
        for port in transfer.ports:
            self.port_load[port] -= 1
            if self.port_load[port] == 0:
                del self.port_load[port]
        self._reproject(affected, current_time)

    def complete(self, transfer_id, version, current_time):
        """
        Handle a completion event. Returns the finished Transfer, or None when
        the event was superseded by a later projection.
        """
        transfer = self.in_flight.get(transfer_id)
        if transfer is None or transfer.version != version:
            return None
        transfer.remaining = 0.0
        self._remove(transfer, current_time)
        if transfer.ports:
            self.counter.add(transfer.size)
        logger.debug(f"Finished {transfer} at {current_time:.4f}")
        return transfer

    def cancel_for_cloudlets(self, cloudlet_ids, current_time):
        """
        Forget everything involving the given cloudlets. Returns the surviving
        partners of cancelled in-flight transfers.
        """
        cloudlet_ids = set(cloudlet_ids)
        for waiting in (self.waiting_sends, self.waiting_recvs):
            for key in [k for k, (cl, _) in waiting.items() if cl.cloudlet_id in cloudlet_ids]:
                del waiting[key]

        partners = []
        kept = []
        for key, ((sender, send_stage), (receiver, recv_stage)) in self.matched:
            if sender.cloudlet_id in cloudlet_ids or receiver.cloudlet_id in cloudlet_ids:
                partners.extend(cl for cl in (sender, receiver) if cl.cloudlet_id not in cloudlet_ids)
            else:
                kept.append((key, ((sender, send_stage), (receiver, recv_stage))))
        self.matched = kept

        for transfer in sorted(self.in_flight.values(), key=lambda t: t.transfer_id):
            ends = (transfer.sender, transfer.receiver)
            if any(cl.cloudlet_id in cloudlet_ids for cl in ends):
                self._remove(transfer, current_time)
                partners.extend(cl for cl in ends if cl.cloudlet_id not in cloudlet_ids)
        return partners
