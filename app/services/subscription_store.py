from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional
from datetime import datetime
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from app.db.mongo import get_database
from app.schemas.user import UserSubscription
import logging
import threading

logger = logging.getLogger(__name__)

# Fields the reconciliation engine is allowed to write.
MUTABLE_FIELDS = frozenset({
    "processor_customer_id",
    "processor_subscription_id",
    "subscription_status",
    "active_plan_id",
})


def _check_fields(changes: Dict[str, Any]):
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Not subscription fields: {sorted(unknown)}")


class SubscriptionStore(ABC):
    """Per-user subscription records. Writes are atomic per user."""

    def __init__(self, enforce_ordering: bool = True):
        self.enforce_ordering = enforce_ordering

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserSubscription]:
        ...

    @abstractmethod
    async def find_by_subscription_id(self, subscription_id: str) -> Optional[UserSubscription]:
        ...

    @abstractmethod
    async def create(self, record: UserSubscription) -> UserSubscription:
        ...

    @abstractmethod
    async def get_or_create(self, record: UserSubscription) -> UserSubscription:
        """Return the stored record for ``record.user_id``, inserting ``record`` if there is none."""
        ...

    @abstractmethod
    async def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> Optional[UserSubscription]:
        """Store the customer id unless one is already set; return the resulting record."""
        ...

    @abstractmethod
    async def apply(
        self,
        user_id: str,
        changes: Dict[str, Any],
        source_ts: Optional[int] = None
    ) -> Optional[UserSubscription]:
        """
        Write subscription fields for a user.

        When ordering is enforced and ``source_ts`` is given, the write only
        lands if the record has not already absorbed a newer source. Returns
        the updated record, or None when the write was stale or the user
        does not exist.
        """
        ...


class InMemorySubscriptionStore(SubscriptionStore):
    """Dict-backed store for development and tests."""

    def __init__(self, enforce_ordering: bool = True, records: Optional[Iterable[UserSubscription]] = None):
        super().__init__(enforce_ordering)
        self._records: Dict[str, UserSubscription] = {
            record.user_id: record.model_copy() for record in (records or [])
        }
        self._lock = threading.Lock()

    async def get(self, user_id: str) -> Optional[UserSubscription]:
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    async def find_by_subscription_id(self, subscription_id: str) -> Optional[UserSubscription]:
        if not subscription_id:
            return None
        with self._lock:
            for record in self._records.values():
                if record.processor_subscription_id == subscription_id:
                    return record.model_copy()
        return None

    async def create(self, record: UserSubscription) -> UserSubscription:
        with self._lock:
            if record.user_id in self._records:
                raise ValueError(f"User {record.user_id} already exists")
            self._records[record.user_id] = record.model_copy()
            return record.model_copy()

    async def get_or_create(self, record: UserSubscription) -> UserSubscription:
        with self._lock:
            stored = self._records.setdefault(record.user_id, record.model_copy())
            return stored.model_copy()

    async def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> Optional[UserSubscription]:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return None
            if not record.processor_customer_id:
                record = record.model_copy(update={
                    "processor_customer_id": customer_id,
                    "updated_at": datetime.utcnow(),
                })
                self._records[user_id] = record
            return record.model_copy()

    async def apply(
        self,
        user_id: str,
        changes: Dict[str, Any],
        source_ts: Optional[int] = None
    ) -> Optional[UserSubscription]:
        _check_fields(changes)
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return None
            update = dict(changes)
            if source_ts is not None and self.enforce_ordering:
                if record.last_reconciled_at is not None and record.last_reconciled_at > source_ts:
                    return None
                update["last_reconciled_at"] = source_ts
            update["updated_at"] = datetime.utcnow()
            record = record.model_copy(update=update)
            self._records[user_id] = record
            return record.model_copy()


class MongoSubscriptionStore(SubscriptionStore):
    """Store backed by the users collection."""

    def __init__(self, enforce_ordering: bool = True, collection_name: str = "users"):
        super().__init__(enforce_ordering)
        self.collection_name = collection_name

    async def get_collection(self):
        db = await get_database()
        return db[self.collection_name]

    @staticmethod
    def _to_record(doc: Optional[Dict[str, Any]]) -> Optional[UserSubscription]:
        if not doc:
            return None
        doc.pop("_id", None)
        return UserSubscription(**doc)

    async def ensure_indexes(self):
        collection = await self.get_collection()
        await collection.create_index("user_id", unique=True)
        await collection.create_index("processor_subscription_id", sparse=True)
        logger.info(f"Indexes ensured on {self.collection_name}")

    async def get(self, user_id: str) -> Optional[UserSubscription]:
        collection = await self.get_collection()
        return self._to_record(await collection.find_one({"user_id": user_id}))

    async def find_by_subscription_id(self, subscription_id: str) -> Optional[UserSubscription]:
        if not subscription_id:
            return None
        collection = await self.get_collection()
        return self._to_record(await collection.find_one({"processor_subscription_id": subscription_id}))

    async def create(self, record: UserSubscription) -> UserSubscription:
        collection = await self.get_collection()
        try:
            await collection.insert_one(record.model_dump())
        except DuplicateKeyError:
            raise ValueError(f"User {record.user_id} already exists")
        return record

    async def get_or_create(self, record: UserSubscription) -> UserSubscription:
        collection = await self.get_collection()
        defaults = record.model_dump(exclude={"user_id"})
        try:
            doc = await collection.find_one_and_update(
                {"user_id": record.user_id},
                {"$setOnInsert": defaults},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Lost an upsert race on the unique index; the winner's document exists now.
            return await self.get(record.user_id)
        return self._to_record(doc)

    async def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> Optional[UserSubscription]:
        collection = await self.get_collection()
        doc = await collection.find_one_and_update(
            {"user_id": user_id, "processor_customer_id": None},
            {"$set": {"processor_customer_id": customer_id, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            # Either the user is missing or another request stored an id first.
            return await self.get(user_id)
        return self._to_record(doc)

    async def apply(
        self,
        user_id: str,
        changes: Dict[str, Any],
        source_ts: Optional[int] = None
    ) -> Optional[UserSubscription]:
        _check_fields(changes)
        collection = await self.get_collection()
        query: Dict[str, Any] = {"user_id": user_id}
        update = dict(changes)
        if source_ts is not None and self.enforce_ordering:
            query["$or"] = [
                {"last_reconciled_at": None},
                {"last_reconciled_at": {"$lte": source_ts}},
            ]
            update["last_reconciled_at"] = source_ts
        update["updated_at"] = datetime.utcnow()
        doc = await collection.find_one_and_update(
            query,
            {"$set": update},
            return_document=ReturnDocument.AFTER
        )
        return self._to_record(doc)
