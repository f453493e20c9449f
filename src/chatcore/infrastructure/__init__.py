"""Infrastructure layer."""

from chatcore.infrastructure.keyed_lock import KeyedLock
from chatcore.infrastructure.persistence import Database
from chatcore.infrastructure.repair_queue import RepairQueue

__all__ = ["Database", "KeyedLock", "RepairQueue"]
