from notify_scheduler.stores.memory import InMemoryQueueStore
from notify_scheduler.stores.sqlite import SQLiteQueueStore

__all__ = ["InMemoryQueueStore", "SQLiteQueueStore"]
