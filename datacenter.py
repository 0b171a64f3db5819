# datacenter.py
import logging
from collections import deque

import numpy as np
from scipy.stats import median_abs_deviation

from exceptions import AllocationRejected
from provisioner import BwProvisioner, PeProvisioner, RamProvisioner
from schedule import VmSchedulerTimeShared

logger = logging.getLogger(__name__)

# Number of utilization samples kept for the dispersion statistics
HISTORY_LENGTH = 30


class UtilizationHistory:
    """
    Bounded record of CPU utilization samples (fractions in [0, 1]),
    most recent first, with the statistics consolidation policies look at.
    """

    def __init__(self):
        self.utilization_history = deque(maxlen=HISTORY_LENGTH)

    def add_utilization_history_value(self, utilization):
        # appendleft on a full deque discards the oldest sample
        self.utilization_history.appendleft(utilization)

    def utilization_history_values(self):
        return list(self.utilization_history)

    def _history_scale(self):
        raise NotImplementedError

    def _history_array(self):
        return np.fromiter(self.utilization_history, dtype=float)

    def utilization_mean(self):
        """Mean utilization over the window, in MIPS."""
        if not self.utilization_history:
            return 0.0
        return float(self._history_array().mean() * self._history_scale())

    def utilization_variance(self):
        """Population variance of the utilization window, in MIPS squared."""
        if not self.utilization_history:
            return 0.0
        scaled = self._history_array() * self._history_scale()
        return float(np.mean((scaled - self.utilization_mean()) ** 2))

    def utilization_mad(self):
        """Median absolute deviation of the raw utilization fractions."""
        if not self.utilization_history:
            return 0.0
        return float(median_abs_deviation(self._history_array(), scale=1.0))


class Pe:
    def __init__(self, pe_id, mips):
        self.pe_id = pe_id
        self.provisioner = PeProvisioner(mips)

    @property
    def mips(self):
        return self.provisioner.mips

    def __str__(self):
        return f"PE {self.pe_id} | {self.provisioner.available:.1f}/{self.mips} MIPS free"


class GuestEntity(UtilizationHistory):
    def __init__(self, guest_id, user_id, mips, num_pes, ram, bw, size, cloudlet_scheduler,
                 scheduling_interval=0.0):
        """
        A schedulable unit placed on a host: a virtual machine or a container.

        :param guest_id: Unique identifier
        :param user_id: Id of the owning broker
        :param mips: MIPS requested per virtual PE
        :param num_pes: Number of virtual PEs
        :param ram: RAM in MB
        :param bw: Bandwidth
        :param size: Image size
        :param cloudlet_scheduler: Policy sharing the guest's MIPS among its cloudlets
        """
        super().__init__()
        self.guest_id = guest_id
        self.user_id = user_id
        self.mips = mips
        self.num_pes = num_pes
        self.ram = ram
        self.bw = bw
        self.size = size
        self.cloudlet_scheduler = cloudlet_scheduler
        self.cloudlet_scheduler.guest_pes = num_pes
        self.scheduling_interval = scheduling_interval

        self.host_id = None
        self.in_migration = False
        self.being_instantiated = True
        self.current_allocated_ram = 0
        self.current_allocated_bw = 0
        self.current_allocated_size = 0
        self.current_allocated_mips = None

    @property
    def uid(self):
        return f"{self.user_id}-{self.guest_id}"

    @property
    def total_mips(self):
        return self.mips * self.num_pes

    def change_mips(self, mips):
        self.mips = mips

    def _history_scale(self):
        return self.mips

    def update_cloudlets_processing(self, current_time, mips_share):
        if mips_share is None:
            return 0.0
        return self.cloudlet_scheduler.update_cloudlets_processing(current_time, mips_share)

    def total_utilization_of_cpu(self, time):
        return self.cloudlet_scheduler.total_utilization_of_cpu(time)

    def total_utilization_of_cpu_mips(self, time):
        return self.total_utilization_of_cpu(time) * self.mips

    def current_requested_mips(self):
        """Per-virtual-PE MIPS the guest is asking for right now."""
        if self.being_instantiated:
            return [self.mips] * self.num_pes
        fraction = self.cloudlet_scheduler.current_requested_utilization_of_cpu()
        return [fraction * self.mips] * self.num_pes

    def current_requested_total_mips(self):
        return sum(self.current_requested_mips())

    def current_requested_ram(self):
        if self.being_instantiated:
            return self.ram
        return int(self.cloudlet_scheduler.current_requested_utilization_of_ram() * self.ram)

    def current_requested_bw(self):
        if self.being_instantiated:
            return self.bw
        return int(self.cloudlet_scheduler.current_requested_utilization_of_bw() * self.bw)

    def __str__(self):
        return (f"{type(self).__name__} {self.guest_id} | {self.num_pes} x {self.mips} MIPS, "
                f"RAM: {self.ram} MB, BW: {self.bw}, Host: {self.host_id}")


class Vm(GuestEntity):
    def __init__(self, guest_id, user_id, mips, num_pes, ram, bw, size, cloudlet_scheduler,
                 vmm="Xen", scheduling_interval=0.0):
        super().__init__(guest_id, user_id, mips, num_pes, ram, bw, size, cloudlet_scheduler,
                         scheduling_interval)
        self.vmm = vmm


class Container(GuestEntity):
    def __init__(self, guest_id, user_id, mips, num_pes, ram, bw, size, cloudlet_scheduler,
                 container_manager="Docker", scheduling_interval=0.0):
        super().__init__(guest_id, user_id, mips, num_pes, ram, bw, size, cloudlet_scheduler,
                         scheduling_interval)
        self.container_manager = container_manager


class Host(UtilizationHistory):
    def __init__(self, host_id, num_cores, core_capacity, ram_capacity, bw_capacity, storage_capacity,
                 vm_scheduler_cls=VmSchedulerTimeShared, bus_bandwidth=None):
        """
        :param host_id: Unique identifier
        :param num_cores: Number of PEs
        :param core_capacity: MIPS of each PE
        :param ram_capacity: RAM in MB
        :param bw_capacity: Bandwidth available to guests
        :param storage_capacity: Storage in MB
        :param vm_scheduler_cls: Policy dividing the PEs among guests
        :param bus_bandwidth: Rate of transfers between guests on this host (None means instantaneous)
        """
        super().__init__()
        self.host_id = host_id
        self.pe_list = [Pe(i, core_capacity) for i in range(num_cores)]
        self.ram_provisioner = RamProvisioner(ram_capacity)
        self.bw_provisioner = BwProvisioner(bw_capacity)
        self.storage_capacity = storage_capacity
        self.available_storage = storage_capacity
        self.vm_scheduler = vm_scheduler_cls(self.pe_list)
        self.bus_bandwidth = bus_bandwidth
        self.residents = {}  # {guest_id: guest}

    @property
    def num_cores(self):
        return len(self.pe_list)

    @property
    def cpu_capacity(self):
        return sum(pe.mips for pe in self.pe_list)

    @property
    def guests(self):
        return list(self.residents.values())

    def _history_scale(self):
        return self.cpu_capacity

    def cpu_utilization(self, time=None):
        """Fraction of the host's MIPS the resident cloudlets are actually using."""
        used = 0.0
        for guest in self.residents.values():
            guest_time = guest.cloudlet_scheduler.previous_time if time is None else time
            allocated = sum(self.vm_scheduler.allocated_mips_for(guest))
            used += guest.total_utilization_of_cpu(guest_time) * allocated
        return min(used / self.cpu_capacity, 1.0) if self.cpu_capacity else 0.0

    def allocated_mips_fraction(self):
        allocated = self.cpu_capacity - self.vm_scheduler.available_mips
        return allocated / self.cpu_capacity if self.cpu_capacity else 0.0

    def remaining_cpu(self):
        return self.vm_scheduler.available_mips

    def free_ram(self):
        return self.ram_provisioner.available

    def free_pes(self):
        return sum(1 for pe in self.pe_list if not pe.provisioner.allocations)

    def is_suitable_for_guest(self, guest):
        return (self.vm_scheduler.can_allocate([guest.mips] * guest.num_pes)
                and self.ram_provisioner.is_suitable(guest.guest_id, guest.ram)
                and self.bw_provisioner.is_suitable(guest.guest_id, guest.bw)
                and guest.size <= self.available_storage)

    def guest_create(self, guest):
        """
        Reserve storage, RAM, BW and PEs for the guest's nominal size. Either
        everything is reserved and the guest becomes resident, or nothing changes.
        """
        if guest.guest_id in self.residents:
            return True
        if guest.size > self.available_storage:
            logger.warning(f"Host {self.host_id} cannot allocate VM {guest.guest_id}: not enough storage.")
            return False
        ram = guest.ram
        bw = guest.bw
        if not self.ram_provisioner.allocate(guest.guest_id, ram):
            logger.warning(f"Host {self.host_id} cannot allocate VM {guest.guest_id}: not enough RAM.")
            return False
        if not self.bw_provisioner.allocate(guest.guest_id, bw):
            self.ram_provisioner.deallocate(guest.guest_id)
            logger.warning(f"Host {self.host_id} cannot allocate VM {guest.guest_id}: not enough BW.")
            return False
        try:
            self.vm_scheduler.allocate_pes_for_guest(guest, [guest.mips] * guest.num_pes)
        except AllocationRejected as e:
            self.ram_provisioner.deallocate(guest.guest_id)
            self.bw_provisioner.deallocate(guest.guest_id)
            logger.warning(f"Host {self.host_id} cannot allocate VM {guest.guest_id}: {e.message}")
            return False

        self.available_storage -= guest.size
        guest.host_id = self.host_id
        guest.current_allocated_ram = ram
        guest.current_allocated_bw = bw
        guest.current_allocated_size = guest.size
        guest.current_allocated_mips = self.vm_scheduler.allocated_mips_for(guest)
        self.residents[guest.guest_id] = guest
        logger.info(f"VM {guest.guest_id} allocated to Host {self.host_id}.")
        return True

    def guest_destroy(self, guest):
        if guest.guest_id not in self.residents:
            logger.warning(f"VM {guest.guest_id} not found on Host {self.host_id}.")
            return False
        self.vm_scheduler.deallocate_pes_for_guest(guest)
        self.ram_provisioner.deallocate(guest.guest_id)
        self.bw_provisioner.deallocate(guest.guest_id)
        self.available_storage += guest.current_allocated_size
        del self.residents[guest.guest_id]
        guest.host_id = None
        guest.current_allocated_ram = 0
        guest.current_allocated_bw = 0
        guest.current_allocated_size = 0
        guest.current_allocated_mips = None
        logger.info(f"VM {guest.guest_id} deallocated from Host {self.host_id}.")
        return True

    def guest_destroy_all(self):
        self.vm_scheduler.deallocate_pes_for_all()
        self.ram_provisioner.deallocate_all()
        self.bw_provisioner.deallocate_all()
        self.available_storage = self.storage_capacity
        for guest in self.residents.values():
            guest.host_id = None
            guest.current_allocated_mips = None
        self.residents.clear()

    def update_cloudlets_processing(self, current_time):
        """Advance every resident guest; return the earliest next completion (0 if none)."""
        next_event = float("inf")
        for guest_id in sorted(self.residents):
            guest = self.residents[guest_id]
            t = guest.update_cloudlets_processing(current_time, self.vm_scheduler.allocated_mips_for(guest))
            guest.being_instantiated = False
            if 0.0 < t < next_event:
                next_event = t
        return 0.0 if next_event == float("inf") else next_event

    def record_utilization(self, current_time):
        for guest in self.residents.values():
            guest.add_utilization_history_value(guest.total_utilization_of_cpu(current_time))
        self.add_utilization_history_value(self.cpu_utilization(current_time))

    def __str__(self):
        return (f"Host {self.host_id} | Cores: {self.num_cores} x {self.pe_list[0].mips if self.pe_list else 0} MIPS "
                f"= {self.cpu_capacity} MIPS, RAM: {self.ram_provisioner.capacity} MB, "
                f"Storage: {self.storage_capacity} MB")
