from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from pymongo.errors import DuplicateKeyError
from app.db.mongo import get_database
import logging
import threading

logger = logging.getLogger(__name__)


class EventLedger(ABC):
    """
    Remembers recently processed webhook event ids.

    An id is claimed before its handler runs and marked complete once the
    handler returns. A claim that is never completed belongs to an attempt
    that is still running (or crashed without releasing it).
    """

    @abstractmethod
    async def claim(self, event_id: str) -> bool:
        """Return True if the id was not seen before and is now reserved."""
        ...

    @abstractmethod
    async def complete(self, event_id: str):
        """Mark a claimed id as fully processed."""
        ...

    @abstractmethod
    async def is_complete(self, event_id: str) -> bool:
        ...

    @abstractmethod
    async def release(self, event_id: str):
        """Forget a claimed id so a redelivery can be processed again."""
        ...


class InMemoryEventLedger(EventLedger):
    """Bounded LRU of event ids and their completion flag."""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._seen: "OrderedDict[str, bool]" = OrderedDict()
        self._lock = threading.Lock()

    async def claim(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._seen:
                self._seen.move_to_end(event_id)
                return False
            self._seen[event_id] = False
            while len(self._seen) > self.max_size:
                self._seen.popitem(last=False)
            return True

    async def complete(self, event_id: str):
        with self._lock:
            if event_id in self._seen:
                self._seen[event_id] = True

    async def is_complete(self, event_id: str) -> bool:
        with self._lock:
            return self._seen.get(event_id, False)

    async def release(self, event_id: str):
        with self._lock:
            self._seen.pop(event_id, None)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)


class MongoEventLedger(EventLedger):
    """Event ids as unique documents, expired by a TTL index."""

    def __init__(self, ttl_seconds: int = 7 * 24 * 3600, collection_name: str = "processed_webhook_events"):
        self.ttl_seconds = ttl_seconds
        self.collection_name = collection_name

    async def get_collection(self):
        db = await get_database()
        return db[self.collection_name]

    async def ensure_indexes(self):
        collection = await self.get_collection()
        await collection.create_index("processed_at", expireAfterSeconds=self.ttl_seconds)
        logger.info(f"TTL index ensured on {self.collection_name} ({self.ttl_seconds}s)")

    async def claim(self, event_id: str) -> bool:
        collection = await self.get_collection()
        try:
            await collection.insert_one({
                "_id": event_id,
                "processed_at": datetime.utcnow(),
                "completed": False
            })
        except DuplicateKeyError:
            return False
        return True

    async def complete(self, event_id: str):
        collection = await self.get_collection()
        await collection.update_one({"_id": event_id}, {"$set": {"completed": True}})

    async def is_complete(self, event_id: str) -> bool:
        collection = await self.get_collection()
        return await collection.find_one({"_id": event_id, "completed": True}) is not None

    async def release(self, event_id: str):
        collection = await self.get_collection()
        await collection.delete_one({"_id": event_id})
