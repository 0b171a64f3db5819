# broker.py
import logging

from cloudlet import CloudletStatus
from simulation import SimEntity, Tag

logger = logging.getLogger(__name__)


class DatacenterBroker(SimEntity):
    def __init__(self, sim, name, datacenter_id):
        """
        Acts for a user: creates the user's guests in a datacenter, submits the
        cloudlets once the guests exist and collects the results.

        :param datacenter_id: Entity id of the datacenter guests are created in
        """
        super().__init__(sim, name)
        self.datacenter_id = datacenter_id
        self.guest_list = []
        self.guests_created = []
        self.guest_acks = 0
        self.cloudlet_submitted_list = []
        self.cloudlet_received_list = []
        self._batches = []     # [(delay, [cloudlets])] waiting for the guests
        self._in_flight = 0    # batches scheduled but not yet submitted
        self._next_guest = 0
        self._destroyed = False

    @property
    def guests_ready(self):
        return self.sim.running and self.guest_acks == len(self.guest_list)

    def submit_guest_list(self, guests):
        for guest in guests:
            guest.user_id = self.id
        self.guest_list.extend(guests)

    def submit_cloudlet_list(self, cloudlets, delay=0.0):
        """Submit cloudlets `delay` time units after the guests are up (or after now, if they already are)."""
        cloudlets = list(cloudlets)
        for cloudlet in cloudlets:
            cloudlet.user_id = self.id
        if self.guests_ready:
            self._schedule_batch(delay, cloudlets)
        else:
            self._batches.append((delay, cloudlets))

    def submit_app_cloudlet(self, app, distribution):
        """Validate an AppCloudlet and submit its members after a sampled inter-arrival delay."""
        app.validate()
        delay = distribution.sample()
        logger.info(f"{self.name}: AppCloudlet {app.app_id} arrives in {delay:.2f}")
        self.submit_cloudlet_list(app.cloudlets, delay)
        return delay

    def bind_cloudlet_to_guest(self, cloudlet, guest_id):
        cloudlet.guest_id = guest_id

    def get_cloudlet_received_list(self):
        return list(self.cloudlet_received_list)

    def start(self):
        if not self.guest_list:
            logger.warning(f"{self.name}: no guests to create.")
        for guest in self.guest_list:
            self.schedule_now(self.datacenter_id, Tag.GUEST_CREATE, guest)

    def process_event(self, event):
        if event.tag == Tag.GUEST_CREATE_ACK:
            self._process_guest_create_ack(*event.data)
        elif event.tag == Tag.SUBMIT_CLOUDLET_LIST:
            self._in_flight -= 1
            self._submit_cloudlets(event.data)
        elif event.tag == Tag.CLOUDLET_RETURN:
            self._process_cloudlet_return(event.data)
        else:
            logger.warning(f"{self.name}: ignoring unknown event {event}")

    def _process_guest_create_ack(self, guest_id, success):
        self.guest_acks += 1
        guest = next(g for g in self.guest_list if g.guest_id == guest_id)
        if success:
            self.guests_created.append(guest)
            logger.info(f"{self.name}: VM {guest_id} created at {self.sim.clock:.2f}")
        else:
            logger.warning(f"{self.name}: creation of VM {guest_id} failed.")

        if self.guest_acks == len(self.guest_list):
            batches, self._batches = self._batches, []
            for delay, cloudlets in batches:
                self._schedule_batch(delay, cloudlets)

    def _schedule_batch(self, delay, cloudlets):
        self._in_flight += 1
        self.schedule(self.id, delay, Tag.SUBMIT_CLOUDLET_LIST, cloudlets)

    def _submit_cloudlets(self, cloudlets):
        for cloudlet in cloudlets:
            if cloudlet.guest_id is None:
                if not self.guests_created:
                    cloudlet.finish(self.sim.clock, CloudletStatus.FAILED)
                    self.cloudlet_received_list.append(cloudlet)
                    logger.warning(f"{self.name}: no VM to run cloudlet {cloudlet.cloudlet_id}.")
                    continue
                guest = self.guests_created[self._next_guest % len(self.guests_created)]
                self._next_guest += 1
                cloudlet.guest_id = guest.guest_id
            cloudlet.status = CloudletStatus.READY
            self.cloudlet_submitted_list.append(cloudlet)
            self.schedule_now(self.datacenter_id, Tag.CLOUDLET_SUBMIT, cloudlet)
        self._maybe_finish()

    def _process_cloudlet_return(self, cloudlet):
        self.cloudlet_received_list.append(cloudlet)
        logger.info(f"{self.name}: cloudlet {cloudlet.cloudlet_id} returned {cloudlet.status.name} "
                    f"at {self.sim.clock:.2f}")
        self._maybe_finish()

    def _maybe_finish(self):
        if self._destroyed or self._in_flight or self._batches:
            return
        returned = {cl.cloudlet_id for cl in self.cloudlet_received_list}
        if all(cl.cloudlet_id in returned for cl in self.cloudlet_submitted_list):
            self._destroyed = True
            for guest in self.guests_created:
                self.schedule_now(self.datacenter_id, Tag.GUEST_DESTROY, guest.guest_id)
