# schedule.py
import logging
import random

from exceptions import AllocationRejected
from provisioner import EPSILON

logger = logging.getLogger(__name__)


class VmScheduler:
    """Divides a host's PEs among its resident guests."""

    def __init__(self, pe_list):
        self.pe_list = pe_list
        self.mips_map = {}  # {guest_id: [MIPS per virtual PE]}
        self.pe_map = {}    # {guest_id: [pe_id, ...]}

    @property
    def pe_capacity(self):
        return max((pe.mips for pe in self.pe_list), default=0.0)

    @property
    def available_mips(self):
        return sum(pe.provisioner.available for pe in self.pe_list)

    @property
    def max_available_mips(self):
        return max((pe.provisioner.available for pe in self.pe_list), default=0.0)

    def can_allocate(self, mips_share):
        raise NotImplementedError

    def allocate_pes_for_guest(self, guest, mips_share):
        raise NotImplementedError

    def allocated_mips_for(self, guest):
        return list(self.mips_map.get(guest.guest_id, []))

    def total_allocated_mips_for(self, guest):
        return sum(self.mips_map.get(guest.guest_id, []))

    def deallocate_pes_for_guest(self, guest):
        for pe in self.pe_list:
            pe.provisioner.deallocate(guest.guest_id)
        self.mips_map.pop(guest.guest_id, None)
        self.pe_map.pop(guest.guest_id, None)

    def deallocate_pes_for_all(self):
        for pe in self.pe_list:
            pe.provisioner.deallocate_all()
        self.mips_map.clear()
        self.pe_map.clear()

    def _snapshot(self, guest_id):
        return {pe.pe_id: pe.provisioner.allocated_mips_for(guest_id) for pe in self.pe_list}

    def _restore(self, guest_id, snapshot):
        for pe in self.pe_list:
            pe.provisioner.deallocate(guest_id)
        for pe in self.pe_list:
            if snapshot.get(pe.pe_id):
                pe.provisioner.allocate(guest_id, snapshot[pe.pe_id])

    def _commit(self, guest, placement, mips_share):
        """
        Write a {pe_id: [MIPS, ...]} placement to the PE provisioners, all or nothing.
        """
        guest_id = guest.guest_id
        snapshot = self._snapshot(guest_id)
        for pe in self.pe_list:
            pe.provisioner.deallocate(guest_id)
        for pe in self.pe_list:
            pieces = placement.get(pe.pe_id)
            if pieces and not pe.provisioner.allocate(guest_id, pieces):
                self._restore(guest_id, snapshot)
                raise AllocationRejected("MIPS", guest_id, sum(pieces), pe.provisioner.available)
        self.mips_map[guest_id] = list(mips_share)
        self.pe_map[guest_id] = sorted(placement)


class VmSchedulerTimeShared(VmScheduler):
    """
    Guests share PEs. A virtual PE asking for more than a physical PE can give
    is granted one PE's worth; the request may be spread over several PEs.
    """

    def _granted(self, mips_share):
        return [min(m, self.pe_capacity) for m in mips_share]

    def can_allocate(self, mips_share):
        return sum(self._granted(mips_share)) <= self.available_mips + EPSILON

    def allocate_pes_for_guest(self, guest, mips_share):
        granted = self._granted(mips_share)
        held = self.total_allocated_mips_for(guest)
        if sum(granted) > self.available_mips + held + EPSILON:
            raise AllocationRejected("MIPS", guest.guest_id, sum(granted), self.available_mips + held)

        free = {pe.pe_id: pe.provisioner.available + sum(pe.provisioner.allocated_mips_for(guest.guest_id))
                for pe in self.pe_list}
        placement = {}
        for mips in granted:
            left = mips
            for pe in self.pe_list:
                if left <= EPSILON:
                    break
                take = min(left, free[pe.pe_id])
                if take <= EPSILON:
                    continue
                placement.setdefault(pe.pe_id, []).append(take)
                free[pe.pe_id] -= take
                left -= take
            if left > EPSILON:
                raise AllocationRejected("MIPS", guest.guest_id, mips, mips - left)

        self._commit(guest, placement, granted)
        return True


class VmSchedulerSpaceShared(VmScheduler):
    """Every virtual PE gets a physical PE of its own."""

    def _free_pes(self, guest_id=None):
        return [pe for pe in self.pe_list
                if not pe.provisioner.allocations or guest_id in pe.provisioner.allocations]

    def can_allocate(self, mips_share):
        return (len(mips_share) <= len(self._free_pes())
                and all(m <= self.pe_capacity + EPSILON for m in mips_share))

    def allocate_pes_for_guest(self, guest, mips_share):
        free = self._free_pes(guest.guest_id)
        if len(mips_share) > len(free):
            raise AllocationRejected("PEs", guest.guest_id, len(mips_share), len(free))
        granted = []
        placement = {}
        for pe, mips in zip(free, mips_share):
            take = min(mips, pe.mips)
            placement[pe.pe_id] = [take]
            granted.append(take)
        self._commit(guest, placement, granted)
        return True


class SchedulerVM:
    def __init__(self, hosts, policy="first_fit"):
        """
        Scheduler to assign VMs to Hosts based on a given policy.

        :param hosts: list of Host objects
        :param policy: scheduling strategy ("first_fit", "least_utilized", etc.)
        """
        self.hosts = hosts
        self.policy = policy

    def schedule_vm(self, vm):
        """
        Assigns a VM to a suitable host based on selected policy.
        Returns the host on success, None otherwise.
        """
        candidate_host = self._select_host(vm)

        if candidate_host and candidate_host.guest_create(vm):
            logger.info(f"Scheduler: VM {vm.guest_id} assigned to Host {candidate_host.host_id} using '{self.policy}'")
            return candidate_host
        logger.warning(f"Scheduler: No suitable host found for VM {vm.guest_id} with policy '{self.policy}'")
        return None

    def find_host(self, vm, exclude=()):
        return self._select_host(vm, exclude)

    def _select_host(self, vm, exclude=()):
        """
        Internal method to select host based on policy.
        """
        if self.policy == "first_fit":
            return self._first_fit(vm, exclude)
        elif self.policy == "random":
            return self._random(vm, exclude)
        elif self.policy == "least_utilized":
            return self._least_utilized(vm, exclude)
        elif self.policy == "most_utilized":
            return self._most_utilized(vm, exclude)
        elif self.policy == "best_fit":
            return self._best_fit(vm, exclude)
        elif self.policy == "worst_fit":
            return self._worst_fit(vm, exclude)
        elif self.policy == "most_free_ram":
            return self._most_free_ram(vm, exclude)
        elif self.policy == "most_free_pes":
            return self._most_free_pes(vm, exclude)
        else:
            raise ValueError(f"Unknown scheduling policy: {self.policy}")

    def _candidates(self, vm, exclude):
        return [h for h in self.hosts if h not in exclude and h.is_suitable_for_guest(vm)]

    def _first_fit(self, vm, exclude):
        for host in self.hosts:
            if host not in exclude and host.is_suitable_for_guest(vm):
                return host
        return None

    def _random(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        return random.choice(candidates)

    def _least_utilized(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        return min(candidates, key=lambda h: h.allocated_mips_fraction())

    def _most_utilized(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        return max(candidates, key=lambda h: h.allocated_mips_fraction())

    def _best_fit(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        return min(candidates, key=lambda h: (h.remaining_cpu() - vm.total_mips))

    def _worst_fit(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        return max(candidates, key=lambda h: (h.remaining_cpu() - vm.total_mips))

    def _most_free_ram(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        return max(candidates, key=lambda h: h.free_ram())

    def _most_free_pes(self, vm, exclude):
        candidates = self._candidates(vm, exclude)
        if not candidates:
            return None
        # max() keeps the first host on ties
        return max(candidates, key=lambda h: h.free_pes())

    def set_policy(self, policy):
        self.policy = policy


class MadMigrationPolicy:
    def __init__(self, scheduler, safety_parameter=2.5, underload_threshold=0.2,
                 fallback_threshold=0.8, min_history=12):
        """
        Consolidation driven by the median absolute deviation of host utilization.

        :param scheduler: SchedulerVM used to pick migration targets
        :param safety_parameter: How many MADs below full load a host may run
        :param underload_threshold: Hosts below this utilization are drained
        :param fallback_threshold: Overload threshold while the history is short
        :param min_history: Samples needed before the MAD is trusted
        """
        self.scheduler = scheduler
        self.safety_parameter = safety_parameter
        self.underload_threshold = underload_threshold
        self.fallback_threshold = fallback_threshold
        self.min_history = min_history

    @property
    def hosts(self):
        return self.scheduler.hosts

    def upper_threshold(self, host):
        if len(host.utilization_history) < self.min_history:
            return self.fallback_threshold
        return 1.0 - self.safety_parameter * host.utilization_mad()

    def is_overloaded(self, host):
        return host.cpu_utilization() > self.upper_threshold(host)

    @staticmethod
    def _load(guest):
        return guest.current_requested_total_mips()

    def _fits(self, guest, target, projected_load, projected_free):
        if not target.is_suitable_for_guest(guest):
            return False
        if projected_free[target.host_id] < guest.total_mips:
            return False
        limit = self.upper_threshold(target) * target.cpu_capacity
        return projected_load[target.host_id] + self._load(guest) <= limit

    def _place(self, guest, source, projected_load, projected_free, skip):
        for target in self.hosts:
            if target is source or target in skip:
                continue
            if self._fits(guest, target, projected_load, projected_free):
                projected_load[target.host_id] += self._load(guest)
                projected_load[source.host_id] -= self._load(guest)
                projected_free[target.host_id] -= guest.total_mips
                return target
        return None

    def optimize_allocation(self):
        """Return a list of (guest, target_host) migrations."""
        projected_load = {h.host_id: h.cpu_utilization() * h.cpu_capacity for h in self.hosts}
        projected_free = {h.host_id: h.remaining_cpu() for h in self.hosts}
        migrations = []
        overloaded = [h for h in self.hosts if self.is_overloaded(h)]

        for host in overloaded:
            limit = self.upper_threshold(host) * host.cpu_capacity
            for guest in sorted(host.guests, key=lambda g: g.ram):
                if projected_load[host.host_id] <= limit:
                    break
                target = self._place(guest, host, projected_load, projected_free, overloaded)
                if target is not None:
                    migrations.append((guest, target))

        moved = {guest.guest_id for guest, _ in migrations}
        underloaded = sorted(
            [h for h in self.hosts
             if h not in overloaded and h.guests and h.cpu_utilization() < self.underload_threshold],
            key=lambda h: h.cpu_utilization())
        drained = set()
        for src_host in underloaded:
            receivers = {target.host_id for _, target in migrations}
            if src_host.host_id in drained or src_host.host_id in receivers:
                continue
            plan = []
            load_before = dict(projected_load)
            free_before = dict(projected_free)
            skip = set(overloaded) | {h for h in self.hosts if h.host_id in drained}
            for guest in src_host.guests:
                if guest.guest_id in moved:
                    continue
                target = self._place(guest, src_host, projected_load, projected_free, skip)
                if target is None:
                    plan = None
                    break
                plan.append((guest, target))
            if plan is None:
                projected_load, projected_free = load_before, free_before
                logger.info(f"Host {src_host.host_id} cannot migrate all VMs, skipping.")
                continue
            migrations.extend(plan)
            drained.add(src_host.host_id)
            logger.info(f"Host {src_host.host_id} underutilized. All VMs scheduled for migration.")
        return migrations
