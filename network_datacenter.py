# network_datacenter.py
import logging

from cloudlet import CloudletStatus
from exceptions import RoutingFailure, UnknownEntity
from network import NetworkTopology, TransferCounter, TransferManager
from schedule import SchedulerVM
from simulation import SimEntity, Tag

logger = logging.getLogger(__name__)


class NetworkDatacenter(SimEntity):
    def __init__(self, sim, name, hosts, vm_allocation_policy=None, topology=None, counter=None,
                 scheduling_interval=0.0, migration_policy=None):
        """
        :param sim: Simulation the datacenter is registered with
        :param name: Entity name
        :param hosts: list of Host objects
        :param vm_allocation_policy: SchedulerVM placing guests on hosts
        :param topology: NetworkTopology connecting the hosts
        :param counter: TransferCounter shared with whoever reports on the run
        :param scheduling_interval: Time between utilization samples (0 samples on every tick)
        :param migration_policy: Optional MadMigrationPolicy run after every sample
        """
        super().__init__(sim, name)
        self.hosts = {host.host_id: host for host in hosts}
        self.vm_allocation_policy = vm_allocation_policy or SchedulerVM(list(hosts))
        self.topology = topology or NetworkTopology()
        self.counter = counter or TransferCounter()
        self.scheduling_interval = scheduling_interval
        self.migration_policy = migration_policy
        self.transfers = TransferManager(self.topology, self.counter, self._host_of_cloudlet,
                                         self._schedule_transfer_completion)
        self.guests = {}          # {guest_id: guest}
        self.cloudlet_guest = {}  # {cloudlet_id: guest_id}
        self.last_sample_time = None
        self._pending_ticks = set()
        sim.on_start(self._build_network)

    # ---- topology ----

    def register_switch(self, switch):
        return self.topology.register_switch(switch)

    def attach_switch_to_host(self, switch, host):
        if host.host_id not in self.hosts:
            raise ValueError(f"Host {host.host_id} does not belong to {self.name}")
        self.topology.attach_switch_to_host(switch, host)

    def connect_switches(self, child, parent):
        self.topology.connect_switches(child, parent)

    def _build_network(self):
        try:
            if self.topology.switches or len(self.hosts) > 1:
                self.topology.validate(self.hosts)
        except RoutingFailure:
            logger.error(f"{self.name}: network topology is broken, aborting.")
            raise
        self.topology.freeze()
        self.counter.reset()

    # ---- lookups ----

    def _guest_of_cloudlet(self, cloudlet):
        return self.guests.get(cloudlet.guest_id)

    def _host_of_cloudlet(self, cloudlet):
        guest = self._guest_of_cloudlet(cloudlet)
        if guest is None:
            raise UnknownEntity("guest", cloudlet.guest_id)
        return self.hosts[guest.host_id]

    def _schedule_transfer_completion(self, delay, transfer_id, version):
        self.schedule(self.id, delay, Tag.TRANSFER_COMPLETE, (transfer_id, version))

    # ---- event dispatch ----

    def process_event(self, event):
        if event.tag == Tag.GUEST_CREATE:
            self._process_guest_create(event)
        elif event.tag == Tag.GUEST_DESTROY:
            self.destroy_guest(event.data)
        elif event.tag == Tag.GUEST_MIGRATE:
            guest_id, host_id = event.data
            self.migrate_guest(guest_id, host_id)
            self._process_and_reschedule()
        elif event.tag == Tag.CLOUDLET_SUBMIT:
            self._process_cloudlet_submit(event.data)
        elif event.tag == Tag.CLOUDLET_CANCEL:
            self._process_cloudlet_cancel(event.data)
        elif event.tag == Tag.DATACENTER_EVENT:
            self._pending_ticks.discard(self.sim.clock)
            self._process_and_reschedule()
        elif event.tag == Tag.TRANSFER_COMPLETE:
            self._process_transfer_complete(*event.data)
        else:
            logger.warning(f"{self.name}: ignoring unknown event {event}")

    def _process_guest_create(self, event):
        guest = event.data
        self.update_cloudlet_processing()
        host = self.vm_allocation_policy.schedule_vm(guest)
        if host is not None:
            self.guests[guest.guest_id] = guest
            scheduler = guest.cloudlet_scheduler
            scheduler.previous_time = self.sim.clock
            scheduler.current_mips_share = host.vm_scheduler.allocated_mips_for(guest)
            if hasattr(scheduler, "stage_completed"):
                scheduler.stage_listener = self._on_stage_ready
        self.schedule_now(event.src, Tag.GUEST_CREATE_ACK, (guest.guest_id, host is not None))

    def _process_cloudlet_submit(self, cloudlet):
        guest = self.guests.get(cloudlet.guest_id)
        cloudlet.resource_id = self.id
        if guest is None:
            logger.warning(f"{self.name}: cloudlet {cloudlet.cloudlet_id} names unknown guest "
                           f"{cloudlet.guest_id}, failing it.")
            cloudlet.finish(self.sim.clock, CloudletStatus.FAILED)
            self.schedule_now(cloudlet.user_id, Tag.CLOUDLET_RETURN, cloudlet)
            return
        self.update_cloudlet_processing()
        self.cloudlet_guest[cloudlet.cloudlet_id] = guest.guest_id
        guest.cloudlet_scheduler.cloudlet_submit(cloudlet, self.sim.clock)
        self._process_and_reschedule()

    def _process_cloudlet_cancel(self, cloudlet_id):
        guest_id = self.cloudlet_guest.get(cloudlet_id)
        guest = self.guests.get(guest_id)
        if guest is None:
            logger.warning(f"{self.name}: cannot cancel unknown cloudlet {cloudlet_id}.")
            return
        self.update_cloudlet_processing()
        cloudlet = guest.cloudlet_scheduler.cloudlet_cancel(cloudlet_id, self.sim.clock)
        if cloudlet is not None:
            self._fail_partners(self.transfers.cancel_for_cloudlets([cloudlet_id], self.sim.clock))
            self.cloudlet_guest.pop(cloudlet_id, None)
            self.schedule_now(cloudlet.user_id, Tag.CLOUDLET_RETURN, cloudlet)
        self._process_and_reschedule()

    def _process_transfer_complete(self, transfer_id, version):
        self.update_cloudlet_processing()
        transfer = self.transfers.complete(transfer_id, version, self.sim.clock)
        if transfer is None:
            return
        for cloudlet in (transfer.sender, transfer.receiver):
            guest = self._guest_of_cloudlet(cloudlet)
            if guest is None or cloudlet.finished:
                continue
            guest.cloudlet_scheduler.stage_completed(cloudlet, self.sim.clock)
        self._process_and_reschedule()

    def _on_stage_ready(self, cloudlet, stage, current_time):
        self.transfers.stage_ready(cloudlet, stage, current_time)

    # ---- processing ----

    def update_cloudlet_processing(self):
        """Bring every host up to the current clock; return the earliest predicted completion."""
        next_event = float("inf")
        for host_id in sorted(self.hosts):
            t = self.hosts[host_id].update_cloudlets_processing(self.sim.clock)
            if 0.0 < t < next_event:
                next_event = t
        return 0.0 if next_event == float("inf") else next_event

    def _process_and_reschedule(self):
        now = self.sim.clock
        self.update_cloudlet_processing()
        self._flush_transfers()
        self._sample_utilization()
        # failures and migrations may have changed the shares; recompute at zero elapsed time
        next_event = self.update_cloudlet_processing()
        self._flush_transfers()
        self._check_finished_cloudlets()

        if self.scheduling_interval > 0 and self._has_pending_work():
            sample_at = self.last_sample_time + self.scheduling_interval
            next_event = sample_at if next_event <= now else min(next_event, sample_at)
        if next_event > now and next_event not in self._pending_ticks:
            self._pending_ticks.add(next_event)
            self.schedule(self.id, next_event - now, Tag.DATACENTER_EVENT)

    def _has_pending_work(self):
        return any(g.cloudlet_scheduler.has_pending() for g in self.guests.values())

    def _sample_utilization(self):
        now = self.sim.clock
        if self.last_sample_time is not None:
            if now <= self.last_sample_time:
                return
            if now - self.last_sample_time < self.scheduling_interval:
                return
        self.last_sample_time = now
        for host_id in sorted(self.hosts):
            self.hosts[host_id].record_utilization(now)
        if self.migration_policy is not None:
            for guest, target in self.migration_policy.optimize_allocation():
                self.migrate_guest(guest.guest_id, target.host_id)

    def _check_finished_cloudlets(self):
        for guest_id in sorted(self.guests):
            scheduler = self.guests[guest_id].cloudlet_scheduler
            while scheduler.is_finished_cloudlets():
                cloudlet = scheduler.next_finished_cloudlet()
                self.cloudlet_guest.pop(cloudlet.cloudlet_id, None)
                self.schedule_now(cloudlet.user_id, Tag.CLOUDLET_RETURN, cloudlet)

    def _fail_cloudlet(self, cloudlet):
        guest = self._guest_of_cloudlet(cloudlet)
        if guest is None or cloudlet.finished:
            return
        guest.cloudlet_scheduler.fail_cloudlet(cloudlet, self.sim.clock)
        logger.warning(f"{self.name}: cloudlet {cloudlet.cloudlet_id} failed, its peer is gone.")
        # peers still waiting on this cloudlet are failed on the next flush
        self._fail_partners(self.transfers.cancel_for_cloudlets([cloudlet.cloudlet_id], self.sim.clock))

    def _flush_transfers(self):
        orphans = self.transfers.flush(self.sim.clock)
        while orphans:
            self._fail_partners(orphans)
            orphans = self.transfers.flush(self.sim.clock)

    def _fail_partners(self, partners):
        for cloudlet in partners:
            self._fail_cloudlet(cloudlet)

    # ---- guest lifecycle ----

    def destroy_guest(self, guest_id):
        guest = self.guests.get(guest_id)
        if guest is None:
            logger.warning(f"{self.name}: dropping destroy request for unknown VM {guest_id}.")
            return False
        self.update_cloudlet_processing()
        failed = guest.cloudlet_scheduler.fail_all(self.sim.clock)
        self._check_finished_cloudlets()
        partners = self.transfers.cancel_for_cloudlets([cl.cloudlet_id for cl in failed], self.sim.clock)
        self.hosts[guest.host_id].guest_destroy(guest)
        del self.guests[guest_id]
        self._fail_partners(partners)
        self._process_and_reschedule()
        return True

    def migrate_guest(self, guest_id, host_id):
        guest = self.guests.get(guest_id)
        target = self.hosts.get(host_id)
        if guest is None or target is None:
            logger.warning(f"{self.name}: dropping migration of VM {guest_id} to Host {host_id}.")
            return False
        source = self.hosts[guest.host_id]
        if source is target:
            return True
        self.update_cloudlet_processing()
        guest.in_migration = True
        source.guest_destroy(guest)
        moved = target.guest_create(guest)
        if not moved:
            source.guest_create(guest)
            logger.warning(f"Migration of VM {guest_id} to Host {host_id} rejected, VM stays on Host {source.host_id}.")
        else:
            logger.info(f"VM {guest_id} migrated from Host {source.host_id} to Host {host_id}.")
        guest.in_migration = False
        guest.cloudlet_scheduler.current_mips_share = self.hosts[guest.host_id].vm_scheduler.allocated_mips_for(guest)
        return moved
