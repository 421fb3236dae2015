import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple

from pymongo import MongoClient, ReadPreference, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)

from relationship_errors import (
    BackendError,
    BackendUnavailable,
    CapacityExceeded,
    NotFound,
    Throttled,
)
from relationship_model import (
    AddParams,
    MemberSet,
    MutationResult,
    ReadParams,
    RelationshipItem,
    RemoveParams,
    validate_add_params,
    validate_identifier,
    validate_identifiers,
    validate_max_size,
)

logger = logging.getLogger(__name__)


class RelationshipSetStore(ABC):
    """
    Maps an owner identifier to the set of identifiers it references.

    Every mutation is a single-item atomic step against the backend, with
    its guard (max_size, require_existing) evaluated in that same step.
    An owner whose set becomes empty is deleted, never kept with an empty
    set. There is no cross-owner atomicity: bidirectional bookkeeping is two
    independent calls and the caller reconciles any divergence.

    A call that times out or is cancelled on the caller's side may still
    have been committed by the backend.
    """

    def __init__(self, default_max_size: Optional[int] = None, consistent_reads: bool = True):
        if default_max_size is not None:
            validate_max_size(default_max_size, "default_max_size")
        self.default_max_size = default_max_size
        self.consistent_reads = consistent_reads

    def _check_ids(self, owner_id: str, member_id: str) -> Tuple[str, str]:
        return validate_identifier(owner_id, "owner_id"), validate_identifier(member_id, "member_id")

    def _max_size_for(self, params: Optional[AddParams]) -> Optional[int]:
        # Validates the whole AddParams, so every add rejects bad input up front.
        validate_add_params(params)
        return params.max_size if params and params.max_size is not None else self.default_max_size

    def _consistent_for(self, params: Optional[ReadParams]) -> bool:
        if params and params.consistent_read is not None:
            return params.consistent_read
        return self.consistent_reads

    @abstractmethod
    def add(self, owner_id: str, member_id: str, params: Optional[AddParams] = None) -> MutationResult:
        pass

    @abstractmethod
    def remove(self, owner_id: str, member_id: str, params: Optional[RemoveParams] = None) -> MutationResult:
        pass

    @abstractmethod
    def list(self, owner_id: str, params: Optional[ReadParams] = None) -> MemberSet:
        pass

    @abstractmethod
    def contains(self, owner_id: str, member_id: str, params: Optional[ReadParams] = None) -> bool:
        pass

    @abstractmethod
    def count(self, owner_id: str, params: Optional[ReadParams] = None) -> int:
        pass

    @abstractmethod
    def batch_list(self, owner_ids: Iterable[str], params: Optional[ReadParams] = None) -> Dict[str, MemberSet]:
        pass

    @abstractmethod
    def get_item(self, owner_id: str, params: Optional[ReadParams] = None) -> Optional[RelationshipItem]:
        pass

    @abstractmethod
    def create_table(self):
        pass

    @abstractmethod
    def drop_table(self):
        pass

    @abstractmethod
    def close(self):
        pass


class InMemoryRelationshipStore(RelationshipSetStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Storage: owner_id -> item (members never empty)
        self._storage: Dict[str, RelationshipItem] = {}
        self._lock = threading.Lock()

    def add(self, owner_id: str, member_id: str, params: Optional[AddParams] = None) -> MutationResult:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        max_size = self._max_size_for(params)
        ttl = params.ttl if params else None

        with self._lock:
            item = self._storage.get(owner_id)
            changed = item is None or member_id not in item.members
            if changed:
                size = len(item.members) if item else 0
                if max_size is not None and size >= max_size:
                    logger.warning("Capacity guard rejected add of %s to %s (max_size=%d)", member_id, owner_id, max_size)
                    raise CapacityExceeded(owner_id, member_id, max_size)
                if item is None:
                    item = RelationshipItem(owner_id=owner_id)
                    self._storage[owner_id] = item
                item.members.add(member_id)
            if ttl is not None:
                item.ttl = ttl

        logger.debug("add %s -> %s (changed=%s)", owner_id, member_id, changed)
        return MutationResult(owner_id, member_id, changed)

    def remove(self, owner_id: str, member_id: str, params: Optional[RemoveParams] = None) -> MutationResult:
        owner_id, member_id = self._check_ids(owner_id, member_id)

        with self._lock:
            item = self._storage.get(owner_id)
            if item is None or member_id not in item.members:
                if params and params.require_existing:
                    logger.warning("Existence guard rejected remove of %s from %s", member_id, owner_id)
                    raise NotFound(owner_id, member_id)
                return MutationResult(owner_id, member_id, False)
            item.members.discard(member_id)
            if not item.members:
                del self._storage[owner_id]

        logger.debug("remove %s -> %s", owner_id, member_id)
        return MutationResult(owner_id, member_id, True)

    def list(self, owner_id: str, params: Optional[ReadParams] = None) -> MemberSet:
        owner_id = validate_identifier(owner_id, "owner_id")
        with self._lock:
            item = self._storage.get(owner_id)
            return MemberSet(item.members if item else (), consistent=True)

    def contains(self, owner_id: str, member_id: str, params: Optional[ReadParams] = None) -> bool:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        with self._lock:
            item = self._storage.get(owner_id)
            return item is not None and member_id in item.members

    def count(self, owner_id: str, params: Optional[ReadParams] = None) -> int:
        owner_id = validate_identifier(owner_id, "owner_id")
        with self._lock:
            item = self._storage.get(owner_id)
            return len(item.members) if item else 0

    def batch_list(self, owner_ids: Iterable[str], params: Optional[ReadParams] = None) -> Dict[str, MemberSet]:
        ids = validate_identifiers(owner_ids, "owner_id")
        results = {}
        with self._lock:
            for owner_id in ids:
                item = self._storage.get(owner_id)
                if item is not None:
                    results[owner_id] = MemberSet(item.members, consistent=True)
        return results

    def get_item(self, owner_id: str, params: Optional[ReadParams] = None) -> Optional[RelationshipItem]:
        owner_id = validate_identifier(owner_id, "owner_id")
        with self._lock:
            item = self._storage.get(owner_id)
            if item is None:
                return None
            return RelationshipItem(owner_id=item.owner_id, members=set(item.members), ttl=item.ttl)

    def create_table(self):
        pass

    def drop_table(self):
        with self._lock:
            self._storage.clear()

    def close(self):
        pass


# Server error codes reported when a MongoDB deployment sheds load.
MONGO_THROTTLED_CODES = {462, 16500}
# Transient topology errors (step-downs, shutdowns, elections).
MONGO_UNAVAILABLE_CODES = {91, 189, 6, 7, 89, 9001, 10107, 11600, 11602, 13435, 13436}


@contextmanager
def _translate_mongo_errors(operation: str):
    try:
        yield
    except (ConnectionFailure, ExecutionTimeout, WTimeoutError) as e:
        raise BackendUnavailable(f"MongoDB {operation} failed: {e}", e) from e
    except OperationFailure as e:
        if e.code in MONGO_THROTTLED_CODES:
            raise Throttled(f"MongoDB {operation} throttled: {e}", e) from e
        if e.code in MONGO_UNAVAILABLE_CODES or e.has_error_label("RetryableWriteError"):
            raise BackendUnavailable(f"MongoDB {operation} failed: {e}", e) from e
        raise BackendError(f"MongoDB {operation} failed: {e}", e) from e
    except PyMongoError as e:
        raise BackendError(f"MongoDB {operation} failed: {e}", e) from e


class MongoRelationshipStore(RelationshipSetStore):
    """
    One document per owner: {"_id": owner_id, "members": [...], "ttl": datetime}.
    """

    def __init__(
        self,
        client: MongoClient,
        database_name: str,
        collection_name: str,
        *args,
        max_contention_retries: int = 8,
        **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.client = client
        self.db = self.client[database_name]
        self.collection_name = collection_name
        self.collection = self.db[collection_name]
        self.max_contention_retries = max_contention_retries

    def _collection_for(self, params: Optional[ReadParams]):
        if self._consistent_for(params):
            return self.collection
        return self.collection.with_options(read_preference=ReadPreference.SECONDARY_PREFERRED)

    def add(self, owner_id: str, member_id: str, params: Optional[AddParams] = None) -> MutationResult:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        max_size = self._max_size_for(params)

        query = {"_id": owner_id}
        if max_size is not None:
            # Either the member is already there (no growth) or there is room for one more.
            query["$or"] = [
                {"members": member_id},
                {f"members.{max_size - 1}": {"$exists": False}},
            ]
        update = {"$addToSet": {"members": member_id}}
        if params and params.ttl is not None:
            update["$set"] = {"ttl": datetime.fromtimestamp(params.ttl, tz=timezone.utc)}
        # Only the matching member survives the projection, so an empty result means "was new".
        projection = {"_id": 1, "members": {"$elemMatch": {"$eq": member_id}}}

        with _translate_mongo_errors("add"):
            for _ in range(self.max_contention_retries):
                try:
                    before = self.collection.find_one_and_update(
                        query, update, projection=projection, upsert=True,
                        return_document=ReturnDocument.BEFORE,
                    )
                    break
                except DuplicateKeyError:
                    # The owner exists but the filter did not match it: either the
                    # guard rejected the add or a concurrent upsert created it first.
                    before = self.collection.find_one_and_update(
                        query, update, projection=projection,
                        return_document=ReturnDocument.BEFORE,
                    )
                    if before is not None:
                        break
                    if max_size is not None and self.collection.find_one({"_id": owner_id}, {"_id": 1}) is not None:
                        logger.warning("Capacity guard rejected add of %s to %s (max_size=%d)", member_id, owner_id, max_size)
                        raise CapacityExceeded(owner_id, member_id, max_size)
            else:
                raise BackendUnavailable(f"MongoDB add on {owner_id!r} kept losing to concurrent writers")

        changed = before is None or not before.get("members")
        logger.debug("add %s -> %s (changed=%s)", owner_id, member_id, changed)
        return MutationResult(owner_id, member_id, changed)

    def remove(self, owner_id: str, member_id: str, params: Optional[RemoveParams] = None) -> MutationResult:
        owner_id, member_id = self._check_ids(owner_id, member_id)

        with _translate_mongo_errors("remove"):
            for _ in range(self.max_contention_retries):
                # Last member: drop the whole document so no empty set is left behind.
                deleted = self.collection.delete_one({"_id": owner_id, "members": [member_id]})
                if deleted.deleted_count:
                    logger.debug("remove %s -> %s (item deleted)", owner_id, member_id)
                    return MutationResult(owner_id, member_id, True)

                pulled = self.collection.update_one(
                    {"_id": owner_id, "members": member_id, "members.1": {"$exists": True}},
                    {"$pull": {"members": member_id}},
                )
                if pulled.modified_count:
                    logger.debug("remove %s -> %s", owner_id, member_id)
                    return MutationResult(owner_id, member_id, True)

                if self.collection.find_one({"_id": owner_id, "members": member_id}, {"_id": 1}) is None:
                    if params and params.require_existing:
                        logger.warning("Existence guard rejected remove of %s from %s", member_id, owner_id)
                        raise NotFound(owner_id, member_id)
                    return MutationResult(owner_id, member_id, False)
                # The set changed size between the steps; go again.

        raise BackendUnavailable(f"MongoDB remove on {owner_id!r} kept losing to concurrent writers")

    def list(self, owner_id: str, params: Optional[ReadParams] = None) -> MemberSet:
        owner_id = validate_identifier(owner_id, "owner_id")
        with _translate_mongo_errors("list"):
            doc = self._collection_for(params).find_one({"_id": owner_id}, {"members": 1})
        return MemberSet(doc.get("members") or () if doc else (), consistent=self._consistent_for(params))

    def contains(self, owner_id: str, member_id: str, params: Optional[ReadParams] = None) -> bool:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        with _translate_mongo_errors("contains"):
            doc = self._collection_for(params).find_one({"_id": owner_id, "members": member_id}, {"_id": 1})
        return doc is not None

    def count(self, owner_id: str, params: Optional[ReadParams] = None) -> int:
        owner_id = validate_identifier(owner_id, "owner_id")
        pipeline = [
            {"$match": {"_id": owner_id}},
            {"$project": {"n": {"$size": {"$ifNull": ["$members", []]}}}},
        ]
        with _translate_mongo_errors("count"):
            docs = list(self._collection_for(params).aggregate(pipeline))
        return docs[0]["n"] if docs else 0

    def batch_list(self, owner_ids: Iterable[str], params: Optional[ReadParams] = None) -> Dict[str, MemberSet]:
        ids = validate_identifiers(owner_ids, "owner_id")
        if not ids:
            return {}
        consistent = self._consistent_for(params)
        results = {}
        with _translate_mongo_errors("batch_list"):
            cursor = self._collection_for(params).find({"_id": {"$in": sorted(ids)}}, {"members": 1})
            for doc in cursor:
                if doc.get("members"):
                    results[doc["_id"]] = MemberSet(doc["members"], consistent=consistent)
        return results

    def get_item(self, owner_id: str, params: Optional[ReadParams] = None) -> Optional[RelationshipItem]:
        owner_id = validate_identifier(owner_id, "owner_id")
        with _translate_mongo_errors("get_item"):
            doc = self._collection_for(params).find_one({"_id": owner_id})
        if not doc or not doc.get("members"):
            return None
        ttl = doc.get("ttl")
        if isinstance(ttl, datetime):
            # pymongo hands back naive datetimes in UTC unless tz_aware is set
            if ttl.tzinfo is None:
                ttl = ttl.replace(tzinfo=timezone.utc)
            ttl = ttl.timestamp()
        return RelationshipItem(owner_id=doc["_id"], members=set(doc["members"]), ttl=ttl)

    def create_table(self):
        with _translate_mongo_errors("create_table"):
            if self.collection_name not in self.db.list_collection_names():
                self.db.create_collection(self.collection_name)
            # Documents past their ttl are reaped by the server's TTL monitor.
            self.collection.create_index("ttl", expireAfterSeconds=0)

    def drop_table(self):
        with _translate_mongo_errors("drop_table"):
            self.collection.drop()

    def close(self):
        if hasattr(self, 'client'):
            self.client.close()


# KEYS[1] = set key; ARGV = member, max_size ("" = unbounded), expire-at epoch ("" = none).
# TIME is allowed in scripts since Redis 5 (effects replication).
# Returns 1 when added, 0 when already present, -1 when the capacity guard refused.
REDIS_ADD_SCRIPT = """
local max_size = tonumber(ARGV[2])
local expire_at = tonumber(ARGV[3])
local result = 1
if redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 1 then
  result = 0
elseif max_size and redis.call('SCARD', KEYS[1]) >= max_size then
  return -1
else
  redis.call('SADD', KEYS[1], ARGV[1])
end
-- A ttl already in the past is kept as advisory, never applied as an instant expiry.
if expire_at and expire_at > tonumber(redis.call('TIME')[1]) then
  redis.call('EXPIREAT', KEYS[1], expire_at)
end
return result
"""

# KEYS[1] = set key; ARGV[1] = member. Returns 1 when removed, 0 when absent.
REDIS_REMOVE_SCRIPT = """
local removed = redis.call('SREM', KEYS[1], ARGV[1])
if removed == 1 and redis.call('SCARD', KEYS[1]) == 0 then
  redis.call('DEL', KEYS[1])
end
return removed
"""


@contextmanager
def _translate_redis_errors(operation: str):
    from redis.exceptions import BusyLoadingError, ConnectionError, RedisError, ResponseError, TimeoutError

    try:
        yield
    except BusyLoadingError as e:
        raise Throttled(f"Redis {operation} refused while loading: {e}", e) from e
    except (ConnectionError, TimeoutError) as e:
        raise BackendUnavailable(f"Redis {operation} failed: {e}", e) from e
    except ResponseError as e:
        if str(e).startswith("BUSY"):
            raise Throttled(f"Redis {operation} throttled: {e}", e) from e
        raise BackendError(f"Redis {operation} failed: {e}", e) from e
    except RedisError as e:
        raise BackendError(f"Redis {operation} failed: {e}", e) from e


class RedisRelationshipStore(RelationshipSetStore):
    """
    One native Redis set per owner under `key_prefix + owner_id`.
    Reads always go to the primary, so they are always consistent.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        client=None,
        key_prefix: str = "relationships:",
        default_max_size: Optional[int] = None,
        consistent_reads: bool = True,
        **kwargs
    ):
        super().__init__(default_max_size=default_max_size, consistent_reads=consistent_reads)
        if client is None:
            import redis
            client = redis.Redis(host=host, port=port, db=db, decode_responses=True, **kwargs)
        self.client = client
        self.key_prefix = key_prefix
        self._add_script = self.client.register_script(REDIS_ADD_SCRIPT)
        self._remove_script = self.client.register_script(REDIS_REMOVE_SCRIPT)

    def _key(self, owner_id: str) -> str:
        return f"{self.key_prefix}{owner_id}"

    @staticmethod
    def _decode(value) -> str:
        return value.decode() if isinstance(value, bytes) else value

    def add(self, owner_id: str, member_id: str, params: Optional[AddParams] = None) -> MutationResult:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        max_size = self._max_size_for(params)
        expire_at = int(params.ttl) if params and params.ttl is not None else ""

        with _translate_redis_errors("add"):
            result = self._add_script(
                keys=[self._key(owner_id)],
                args=[member_id, max_size if max_size is not None else "", expire_at],
            )
        if result == -1:
            logger.warning("Capacity guard rejected add of %s to %s (max_size=%d)", member_id, owner_id, max_size)
            raise CapacityExceeded(owner_id, member_id, max_size)

        logger.debug("add %s -> %s (changed=%s)", owner_id, member_id, result == 1)
        return MutationResult(owner_id, member_id, result == 1)

    def remove(self, owner_id: str, member_id: str, params: Optional[RemoveParams] = None) -> MutationResult:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        with _translate_redis_errors("remove"):
            removed = self._remove_script(keys=[self._key(owner_id)], args=[member_id])
        if not removed and params and params.require_existing:
            logger.warning("Existence guard rejected remove of %s from %s", member_id, owner_id)
            raise NotFound(owner_id, member_id)

        logger.debug("remove %s -> %s (changed=%s)", owner_id, member_id, bool(removed))
        return MutationResult(owner_id, member_id, bool(removed))

    def list(self, owner_id: str, params: Optional[ReadParams] = None) -> MemberSet:
        owner_id = validate_identifier(owner_id, "owner_id")
        with _translate_redis_errors("list"):
            members = self.client.smembers(self._key(owner_id))
        return MemberSet((self._decode(m) for m in members), consistent=True)

    def contains(self, owner_id: str, member_id: str, params: Optional[ReadParams] = None) -> bool:
        owner_id, member_id = self._check_ids(owner_id, member_id)
        with _translate_redis_errors("contains"):
            return bool(self.client.sismember(self._key(owner_id), member_id))

    def count(self, owner_id: str, params: Optional[ReadParams] = None) -> int:
        owner_id = validate_identifier(owner_id, "owner_id")
        with _translate_redis_errors("count"):
            return int(self.client.scard(self._key(owner_id)))

    def batch_list(self, owner_ids: Iterable[str], params: Optional[ReadParams] = None) -> Dict[str, MemberSet]:
        ids = sorted(validate_identifiers(owner_ids, "owner_id"))
        if not ids:
            return {}
        with _translate_redis_errors("batch_list"):
            pipe = self.client.pipeline(transaction=False)
            for owner_id in ids:
                pipe.smembers(self._key(owner_id))
            replies = pipe.execute()
        return {
            owner_id: MemberSet((self._decode(m) for m in members), consistent=True)
            for owner_id, members in zip(ids, replies)
            if members
        }

    def get_item(self, owner_id: str, params: Optional[ReadParams] = None) -> Optional[RelationshipItem]:
        owner_id = validate_identifier(owner_id, "owner_id")
        key = self._key(owner_id)
        with _translate_redis_errors("get_item"):
            pipe = self.client.pipeline(transaction=True)
            pipe.smembers(key)
            pipe.ttl(key)
            members, remaining = pipe.execute()
        if not members:
            return None
        # Redis only reports the remaining lifetime, so the epoch is rebuilt from now.
        ttl = float(int(time.time()) + remaining) if remaining and remaining > 0 else None
        return RelationshipItem(owner_id=owner_id, members={self._decode(m) for m in members}, ttl=ttl)

    def create_table(self):
        pass

    def drop_table(self):
        with _translate_redis_errors("drop_table"):
            keys = list(self.client.scan_iter(match=f"{self.key_prefix}*"))
            if keys:
                self.client.delete(*keys)

    def close(self):
        self.client.close()


def get_relationship_store(store_type: str = "memory", **kwargs) -> RelationshipSetStore:
    """
    Builds a store around a single backend client. Construct once and reuse
    it across calls; call close() when done.
    """
    logger.info("Relationship store type: %s", store_type)
    if store_type == "memory":
        return InMemoryRelationshipStore(**kwargs)
    elif store_type == "mongo":
        client = kwargs.pop("client", None)
        mongo_uri = kwargs.pop("mongo_uri", None)
        if client is None:
            mongo_uri = mongo_uri or os.environ.get("RELATIONSHIP_STORE_MONGO_URI") or "mongodb://localhost:27017/"
            client = MongoClient(mongo_uri)
        database_name = kwargs.pop("database_name", "social_lib")
        collection_name = kwargs.pop("collection_name", "relationships")
        return MongoRelationshipStore(client, database_name, collection_name, **kwargs)
    elif store_type == "redis":
        return RedisRelationshipStore(**kwargs)
    else:
        raise ValueError(f"Unknown store type: {store_type}")
