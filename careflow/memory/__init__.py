from careflow.memory.cache import WorkingMemoryCache
from careflow.memory.manager import MemoryManager
from careflow.memory.store import DurableStore

__all__ = ["DurableStore", "MemoryManager", "WorkingMemoryCache"]
