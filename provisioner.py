# provisioner.py
"""
Capacity ledgers for a single resource (MIPS of one PE, host RAM, host BW).

A provisioner keeps the total capacity, the capacity still available and a
record of what each guest holds. Allocation replaces a guest's previous
allocation rather than adding to it, and a request that does not fit is
rejected without touching the ledger.
"""

# Float slack used when comparing MIPS sums
EPSILON = 1e-9


class ResourceProvisioner:
    def __init__(self, capacity, resource="resource"):
        """
        :param capacity: Total amount of the resource
        :param resource: Name used in log and error messages
        """
        if capacity < 0:
            raise ValueError(f"{resource} capacity must be non-negative, got {capacity}")
        self.resource = resource
        self.capacity = capacity
        self.available = capacity
        self.allocations = {}  # {guest_id: amount}

    def allocated_for(self, guest_id):
        return self.allocations.get(guest_id, 0)

    @property
    def total_allocated(self):
        return self.capacity - self.available

    def is_suitable(self, guest_id, amount):
        """True if `amount` could replace the guest's current allocation."""
        return amount <= self.available + self.allocated_for(guest_id) + EPSILON

    def allocate(self, guest_id, amount):
        """
        Record `amount` as the guest's allocation.

        Returns False and leaves the ledger untouched when the request does not
        fit in what is available (counting what the guest already holds).
        """
        if amount < 0:
            raise ValueError(f"Cannot allocate a negative amount of {self.resource}")
        if not self.is_suitable(guest_id, amount):
            return False
        delta = amount - self.allocated_for(guest_id)
        self.available = max(self.available - delta, 0)
        if amount > 0:
            self.allocations[guest_id] = amount
        else:
            self.allocations.pop(guest_id, None)
        return True

    def deallocate(self, guest_id):
        amount = self.allocations.pop(guest_id, 0)
        self.available = min(self.available + amount, self.capacity)

    def deallocate_all(self):
        self.available = self.capacity
        self.allocations.clear()

    def utilization(self):
        if self.capacity == 0:
            return 0.0
        return min(max(self.total_allocated / self.capacity, 0.0), 1.0)

    def __str__(self):
        return (f"{self.resource}: {self.total_allocated}/{self.capacity} allocated "
                f"across {len(self.allocations)} guests")


class RamProvisioner(ResourceProvisioner):
    def __init__(self, capacity):
        super().__init__(capacity, resource="RAM")


class BwProvisioner(ResourceProvisioner):
    def __init__(self, capacity):
        super().__init__(capacity, resource="BW")


class PeProvisioner(ResourceProvisioner):
    """
    MIPS ledger of one physical PE.

    A guest may map several of its virtual PEs onto the same physical PE, so
    the allocation for a guest is kept as a list of MIPS, one entry per
    virtual PE.
    """
    def __init__(self, mips):
        super().__init__(mips, resource="MIPS")
        self.mips_table = {}  # {guest_id: [mips per virtual PE]}

    @property
    def mips(self):
        return self.capacity

    def allocate(self, guest_id, amount):
        """
        Allocate either a single MIPS value or a list of per-virtual-PE values.

        The list form is all-or-nothing: the whole list is recorded or nothing is.
        """
        if isinstance(amount, (list, tuple)):
            mips_list = [float(m) for m in amount]
        else:
            mips_list = [float(amount)]
        if any(m < 0 for m in mips_list):
            raise ValueError("Cannot allocate negative MIPS")

        if not super().allocate(guest_id, sum(mips_list)):
            return False
        if sum(mips_list) > 0:
            self.mips_table[guest_id] = mips_list
        else:
            self.mips_table.pop(guest_id, None)
        return True

    def allocated_mips_for(self, guest_id):
        return list(self.mips_table.get(guest_id, []))

    def allocated_mips_by_virtual_pe(self, guest_id, vpe_id):
        mips_list = self.mips_table.get(guest_id, [])
        if 0 <= vpe_id < len(mips_list):
            return mips_list[vpe_id]
        return 0.0

    def deallocate(self, guest_id):
        super().deallocate(guest_id)
        self.mips_table.pop(guest_id, None)

    def deallocate_all(self):
        super().deallocate_all()
        self.mips_table.clear()
