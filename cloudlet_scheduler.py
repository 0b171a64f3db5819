# cloudlet_scheduler.py
"""
Policies that divide a guest's MIPS share among its resident cloudlets.

The host's VM scheduler hands each guest a list of MIPS, one entry per virtual
PE. `update_cloudlets_processing` charges the elapsed time against the
cloudlets that were running, retires the ones that are done and returns the
time at which the next one is expected to finish.
"""
import logging

from cloudlet import CloudletStatus, StageKind

logger = logging.getLogger(__name__)

# Remaining work below this many MI counts as done
FINISH_TOLERANCE = 1e-6
# Smallest gap between now and a predicted completion
MIN_TIME_BETWEEN_EVENTS = 0.01


class CloudletScheduler:
    def __init__(self):
        self.previous_time = 0.0
        self.current_mips_share = []
        self.exec_list = []
        self.waiting_list = []
        self.finished_list = []
        self.guest_pes = 1

    # ---- policy hooks ----

    def _rates(self, mips_share):
        """Return {cloudlet_id: MIPS} for every cloudlet currently consuming CPU."""
        raise NotImplementedError

    def _can_start(self, cloudlet):
        return True

    # ---- submission ----

    def cloudlet_submit(self, cloudlet, current_time, file_transfer_time=0.0):
        """
        Add a cloudlet to the guest.

        :param file_transfer_time: Time spent staging input files, charged as extra length
        :return: Estimated finish time, or 0 if the cloudlet was queued
        """
        cloudlet.submission_time = current_time
        if file_transfer_time > 0 and self.current_mips_share:
            extra = file_transfer_time * self._per_pe_mips(self.current_mips_share)
            cloudlet.remaining += extra
            cloudlet.length += extra

        if self._can_start(cloudlet):
            self._start(cloudlet, current_time)
            rate = self._rates(self.current_mips_share).get(cloudlet.cloudlet_id, 0.0)
            return current_time + self._work_left(cloudlet) / rate if rate > 0 else 0.0

        cloudlet.status = CloudletStatus.QUEUED
        self.waiting_list.append(cloudlet)
        return 0.0

    def _start(self, cloudlet, current_time):
        cloudlet.start(current_time)
        self.exec_list.append(cloudlet)

    def cloudlet_cancel(self, cloudlet_id, current_time=None):
        for bucket in (self.exec_list, self.waiting_list, self.finished_list):
            for cloudlet in bucket:
                if cloudlet.cloudlet_id == cloudlet_id:
                    bucket.remove(cloudlet)
                    if not cloudlet.finished:
                        cloudlet.finish(current_time, CloudletStatus.CANCELED)
                    return cloudlet
        return None

    def fail_cloudlet(self, cloudlet, current_time):
        for bucket in (self.exec_list, self.waiting_list):
            if cloudlet in bucket:
                bucket.remove(cloudlet)
        cloudlet.finish(current_time, CloudletStatus.FAILED)
        self.finished_list.append(cloudlet)
        self._admit_waiting(current_time)

    def fail_all(self, current_time):
        """Fail every unfinished cloudlet (used when the guest goes away)."""
        failed = []
        for cloudlet in self.exec_list + self.waiting_list:
            cloudlet.finish(current_time, CloudletStatus.FAILED)
            failed.append(cloudlet)
        self.exec_list.clear()
        self.waiting_list.clear()
        self.finished_list.extend(failed)
        return failed

    # ---- processing ----

    @staticmethod
    def _per_pe_mips(mips_share):
        if not mips_share:
            return 0.0
        return sum(mips_share) / len(mips_share)

    def update_cloudlets_processing(self, current_time, mips_share):
        self.current_mips_share = list(mips_share)
        time_span = current_time - self.previous_time

        if time_span > 0:
            for cloudlet_id, rate in self._rates(self.current_mips_share).items():
                cloudlet = self._find_running(cloudlet_id)
                self._charge(cloudlet, rate * time_span)

        for cloudlet in list(self.exec_list):
            if cloudlet.consumes_cpu() and self._work_left(cloudlet) <= FINISH_TOLERANCE:
                self._work_done(cloudlet, current_time)

        self._admit_waiting(current_time)
        self.previous_time = current_time
        return self._next_event_time(current_time)

    def _find_running(self, cloudlet_id):
        for cloudlet in self.exec_list:
            if cloudlet.cloudlet_id == cloudlet_id:
                return cloudlet
        return None

    def _charge(self, cloudlet, mi):
        cloudlet.remaining = max(cloudlet.remaining - mi, 0.0)

    def _work_left(self, cloudlet):
        return cloudlet.remaining

    def _work_done(self, cloudlet, current_time):
        self._retire(cloudlet, current_time)

    def _retire(self, cloudlet, current_time):
        self.exec_list.remove(cloudlet)
        cloudlet.finish(current_time)
        self.finished_list.append(cloudlet)
        logger.debug(f"Cloudlet {cloudlet.cloudlet_id} finished at {current_time:.2f}")

    def _admit_waiting(self, current_time):
        while self.waiting_list and self._can_start(self.waiting_list[0]):
            self._start(self.waiting_list.pop(0), current_time)

    def _next_event_time(self, current_time):
        next_event = float("inf")
        for cloudlet_id, rate in self._rates(self.current_mips_share).items():
            if rate <= 0:
                continue
            cloudlet = self._find_running(cloudlet_id)
            estimated = current_time + self._work_left(cloudlet) / rate
            if estimated - current_time < MIN_TIME_BETWEEN_EVENTS:
                estimated = current_time + MIN_TIME_BETWEEN_EVENTS
            next_event = min(next_event, estimated)
        return 0.0 if next_event == float("inf") else next_event

    # ---- queries ----

    def is_finished_cloudlets(self):
        return len(self.finished_list) > 0

    def next_finished_cloudlet(self):
        if self.finished_list:
            return self.finished_list.pop(0)
        return None

    def running_count(self):
        return len(self.exec_list)

    def has_pending(self):
        return bool(self.exec_list or self.waiting_list)

    def _running_cpu_users(self):
        return [cl for cl in self.exec_list if cl.consumes_cpu()]

    def total_utilization_of_cpu(self, time):
        pes = max(self.guest_pes, 1)
        used = sum(cl.utilization_of_cpu(time) * cl.num_pes for cl in self._running_cpu_users())
        return min(used / pes, 1.0)

    def current_requested_utilization_of_cpu(self, time=None):
        return self.total_utilization_of_cpu(self.previous_time if time is None else time)

    def current_requested_utilization_of_ram(self, time=None):
        time = self.previous_time if time is None else time
        return min(sum(cl.utilization_of_ram(time) for cl in self.exec_list), 1.0)

    def current_requested_utilization_of_bw(self, time=None):
        time = self.previous_time if time is None else time
        return min(sum(cl.utilization_of_bw(time) for cl in self.exec_list), 1.0)


class CloudletSchedulerTimeShared(CloudletScheduler):
    """All resident cloudlets run at once and split the share evenly."""

    def _slot_holders(self):
        return self._running_cpu_users()

    def _rates(self, mips_share):
        users = self._running_cpu_users()
        if not users or not mips_share:
            return {}
        total = sum(mips_share)
        pes_in_use = sum(cl.num_pes for cl in self._slot_holders())
        per_pe = total / max(pes_in_use, len(mips_share))
        return {cl.cloudlet_id: per_pe * cl.num_pes for cl in users}


class CloudletSchedulerSpaceShared(CloudletScheduler):
    """At most one cloudlet per PE; the rest wait in FIFO order."""

    def _can_start(self, cloudlet):
        pes = len(self.current_mips_share) or self.guest_pes
        busy = sum(cl.num_pes for cl in self.exec_list)
        return busy + cloudlet.num_pes <= pes

    def _rates(self, mips_share):
        if not mips_share:
            return {}
        per_pe = self._per_pe_mips(mips_share)
        return {cl.cloudlet_id: per_pe * cl.num_pes for cl in self._running_cpu_users()}


class NetworkSchedulerMixin:
    """
    Stage-aware processing for NetworkCloudlets.

    Only EXECUTION stages take CPU. A cloudlet sitting on a SEND or RECV stage
    stays in the exec list, keeping its PE or its time slice, until the
    network layer calls `stage_completed`.
    `stage_listener(cloudlet, stage, time)` is told whenever a cloudlet reaches
    a SEND or RECV stage.
    """
    stage_listener = None

    def _start(self, cloudlet, current_time):
        cloudlet.prepare()
        super()._start(cloudlet, current_time)
        self._enter_next_stage(cloudlet, current_time)

    def _charge(self, cloudlet, mi):
        stage = cloudlet.current_stage
        stage.remaining = max(stage.remaining - mi, 0.0)
        cloudlet.remaining = max(cloudlet.remaining - mi, 0.0)

    def _work_left(self, cloudlet):
        return cloudlet.current_stage.remaining

    def _work_done(self, cloudlet, current_time):
        self._enter_next_stage(cloudlet, current_time)

    def _enter_next_stage(self, cloudlet, current_time):
        stage = cloudlet.advance_stage(current_time)
        if stage is None:
            self._retire(cloudlet, current_time)
        elif stage.kind in (StageKind.SEND, StageKind.RECV) and self.stage_listener is not None:
            self.stage_listener(cloudlet, stage, current_time)

    def stage_completed(self, cloudlet, current_time):
        """Called by the network layer when the cloudlet's SEND or RECV stage is done."""
        stage = cloudlet.current_stage
        if stage is None or stage.kind == StageKind.EXECUTION:
            raise ValueError(f"Cloudlet {cloudlet.cloudlet_id} is not waiting on the network")
        self._enter_next_stage(cloudlet, current_time)
        self._admit_waiting(current_time)


class NetworkCloudletTimeSharedScheduler(NetworkSchedulerMixin, CloudletSchedulerTimeShared):
    def _slot_holders(self):
        return self.exec_list


class NetworkCloudletSpaceSharedScheduler(NetworkSchedulerMixin, CloudletSchedulerSpaceShared):
    pass
