# exceptions.py
"""Error types raised by the simulator."""


class SimulationError(Exception):
    """Base class for simulator errors."""
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class AllocationRejected(SimulationError):
    """A provisioner could not satisfy a request."""
    def __init__(self, resource, guest_id, requested, available):
        super().__init__(
            f"Cannot allocate {requested} {resource} for guest {guest_id}: only {available} available")
        self.resource = resource
        self.guest_id = guest_id
        self.requested = requested
        self.available = available


class RoutingFailure(SimulationError):
    """No path exists between two hosts."""
    def __init__(self, src, dst, reason="no path"):
        super().__init__(f"Cannot route from {src} to {dst}: {reason}")
        self.src = src
        self.dst = dst


class StageMismatch(SimulationError):
    """A SEND/RECV stage has no counterpart, or the stages wait on each other in a cycle."""


class UnknownEntity(SimulationError):
    """An event names an entity that does not exist (or no longer exists)."""
    def __init__(self, kind, entity_id):
        super().__init__(f"Unknown {kind} {entity_id}")
        self.kind = kind
        self.entity_id = entity_id
