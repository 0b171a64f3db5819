# simulation.py
"""
Minimal discrete-event substrate.

Entities register with a Simulation, post timestamped events to each other and
receive them in time order. Events with equal timestamps are delivered in the
order they were scheduled.
"""
import heapq
import itertools
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class Tag(Enum):
    GUEST_CREATE = "guest_create"
    GUEST_CREATE_ACK = "guest_create_ack"
    GUEST_DESTROY = "guest_destroy"
    GUEST_MIGRATE = "guest_migrate"
    CLOUDLET_SUBMIT = "cloudlet_submit"
    CLOUDLET_CANCEL = "cloudlet_cancel"
    CLOUDLET_RETURN = "cloudlet_return"
    SUBMIT_CLOUDLET_LIST = "submit_cloudlet_list"
    DATACENTER_EVENT = "datacenter_event"
    TRANSFER_COMPLETE = "transfer_complete"
    END_OF_SIMULATION = "end_of_simulation"


class SimEvent:
    def __init__(self, time, seq, src, dst, tag, data=None):
        self.time = time
        self.seq = seq
        self.src = src
        self.dst = dst
        self.tag = tag
        self.data = data

    def __lt__(self, other):
        return (self.time, self.seq) < (other.time, other.seq)

    def __repr__(self):
        return f"SimEvent(t={self.time:.4f}, {self.src}->{self.dst}, {self.tag.name})"


class SimEntity:
    """Base class for anything that sends or receives events."""
    def __init__(self, sim, name):
        self.sim = sim
        self.name = name
        self.id = sim.register(self)

    def start(self):
        """Called once when the simulation starts."""

    def shutdown(self):
        """Called once when the event queue runs dry."""

    def process_event(self, event):
        raise NotImplementedError

    def schedule(self, dst, delay, tag, data=None):
        return self.sim.schedule(self.id, dst, delay, tag, data)

    def schedule_now(self, dst, tag, data=None):
        return self.sim.schedule(self.id, dst, 0.0, tag, data)


class Simulation:
    def __init__(self):
        self.clock = 0.0
        self.entities = {}
        self.running = False
        self._queue = []
        self._seq = itertools.count()
        self._ids = itertools.count()
        self._start_hooks = []
        self.events_processed = 0

    def now(self):
        return self.clock

    def register(self, entity):
        entity_id = next(self._ids)
        self.entities[entity_id] = entity
        return entity_id

    def deregister(self, entity_id):
        self.entities.pop(entity_id, None)

    def get_entity(self, entity_id):
        return self.entities.get(entity_id)

    def get_entity_by_name(self, name):
        for entity in self.entities.values():
            if entity.name == name:
                return entity
        return None

    def on_start(self, hook):
        """Register a callable run before the first event is processed."""
        self._start_hooks.append(hook)

    def schedule(self, src, dst, delay, tag, data=None):
        if delay < 0:
            raise ValueError(f"Cannot schedule an event in the past (delay={delay})")
        event = SimEvent(self.clock + delay, next(self._seq), src, dst, tag, data)
        heapq.heappush(self._queue, event)
        return event

    def pending(self):
        return len(self._queue)

    def run(self, until=None):
        """
        Process events until the queue is empty (or the clock would pass `until`).
        Returns the final clock value.
        """
        for hook in self._start_hooks:
            hook()
        self.running = True
        for entity in list(self.entities.values()):
            entity.start()

        while self._queue:
            if until is not None and self._queue[0].time > until:
                break
            event = heapq.heappop(self._queue)
            self.clock = event.time
            target = self.entities.get(event.dst)
            if target is None:
                logger.warning(f"Dropping {event}: entity {event.dst} does not exist.")
                continue
            target.process_event(event)
            self.events_processed += 1

        self.running = False
        for entity in list(self.entities.values()):
            entity.shutdown()
        logger.info(f"Simulation finished at time {self.clock:.2f} after {self.events_processed} events.")
        return self.clock
