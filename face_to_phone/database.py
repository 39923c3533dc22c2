"""
Encrypted local persistence for the Face-to-Phone security core.
Handles the Redis connection, key custody and the repositories built on top
of the encrypted document store.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Iterable, NamedTuple
from uuid import NAMESPACE_URL, uuid5

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import config
from .encryption import EncryptionCodec, generate_key, KEY_SIZE_BYTES
from .exceptions import StorageError, DecryptionError, NotFoundError, ValidationError
from .models import (
    UserRiskProfile, TransactionRecord, TransactionStats, BiometricTemplate, UserAccount,
)
from .data_processor import summarize_transactions

logger = logging.getLogger(__name__)


class CollectionSpec(NamedTuple):
    indexes: tuple
    timestamp_field: Optional[str]


COLLECTIONS: Dict[str, CollectionSpec] = {
    "users": CollectionSpec(("email", "phone_number"), "created_at"),
    "profiles": CollectionSpec((), None),
    "biometrics": CollectionSpec(("user_id", "type"), "created_at"),
    "transactions": CollectionSpec(("user_id", "status"), "timestamp"),
    "events": CollectionSpec(("user_id", "type", "severity"), "timestamp"),
    "alerts": CollectionSpec(("type", "severity"), "timestamp"),
    "reports": CollectionSpec((), "generated_at"),
}


def _timestamp_score(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(str(value)).timestamp()


class EncryptedStore:
    """
    Document store where every value is encrypted before it reaches Redis.

    Layout per collection (``<prefix>:<collection>:...``):
        data        hash  key -> encrypted envelope
        meta        hash  key -> index tokens the record is filed under
        idx:<token> set   keys carrying an indexed value
        ts          zset  key -> record timestamp (range queries)
        order       zset  key -> insertion sequence (FIFO retention)
    """

    def __init__(self, redis_client: redis.Redis, codec: EncryptionCodec,
                 key_prefix: str = "f2p", timeout: Optional[float] = None):
        self.redis = redis_client
        self.codec = codec
        self.key_prefix = key_prefix
        self.timeout = timeout

    def _spec(self, collection: str) -> CollectionSpec:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise StorageError(f"Unknown collection: {collection}")

    def _key(self, collection: str, suffix: str) -> str:
        return f"{self.key_prefix}:{collection}:{suffix}"

    async def _run(self, coro):
        """Await a storage coroutine under the configured deadline."""
        try:
            if self.timeout:
                return await asyncio.wait_for(coro, self.timeout)
            return await coro
        except asyncio.TimeoutError as e:
            raise StorageError(f"Storage operation timed out after {self.timeout}s") from e
        except RedisError as e:
            raise StorageError(f"Storage backend error: {str(e)}") from e

    def _open(self, collection: str, key: str, raw: str) -> Any:
        try:
            envelope = json.loads(raw)
        except ValueError as e:
            raise DecryptionError(f"Corrupted envelope for {collection}:{key}") from e
        return self.codec.decrypt(envelope, f"{collection}:{key}")

    def _index_tokens(self, collection: str, value: Dict[str, Any]) -> List[str]:
        spec = self._spec(collection)
        return [
            self.codec.index_token(collection, index, value[index])
            for index in spec.indexes
            if value.get(index) is not None
        ]

    async def put(self, collection: str, key: str, value: Dict[str, Any]):
        """
        Encrypt and store a record, replacing any previous version.

        Encryption happens before anything is written and all writes go out
        in a single MULTI/EXEC, so a record is either fully stored or absent.
        """
        spec = self._spec(collection)
        envelope = self.codec.encrypt(value, f"{collection}:{key}")
        tokens = self._index_tokens(collection, value)
        score = _timestamp_score(value.get(spec.timestamp_field)) if spec.timestamp_field else None
        await self._run(self._write(collection, key, envelope, tokens, score))

    async def _write(self, collection: str, key: str, envelope: Dict[str, Any],
                     tokens: List[str], score: Optional[float]):
        meta_key = self._key(collection, "meta")
        old_tokens_raw = await self.redis.hget(meta_key, key)
        old_tokens = json.loads(old_tokens_raw) if old_tokens_raw else []
        seq = await self.redis.incr(self._key(collection, "seq"))

        async with self.redis.pipeline(transaction=True) as pipe:
            for token in old_tokens:
                pipe.srem(self._key(collection, f"idx:{token}"), key)
            pipe.hset(self._key(collection, "data"), key, json.dumps(envelope))
            pipe.hset(meta_key, key, json.dumps(tokens))
            for token in tokens:
                pipe.sadd(self._key(collection, f"idx:{token}"), key)
            if score is not None:
                pipe.zadd(self._key(collection, "ts"), {key: score})
            pipe.zadd(self._key(collection, "order"), {key: seq}, nx=True)
            await pipe.execute()

    async def get(self, collection: str, key: str) -> Optional[Any]:
        """Fetch and decrypt one record, or None if it does not exist."""
        self._spec(collection)
        raw = await self._run(self.redis.hget(self._key(collection, "data"), key))
        if raw is None:
            return None
        return self._open(collection, key, raw)

    async def exists(self, collection: str, key: str) -> bool:
        self._spec(collection)
        return bool(await self._run(self.redis.hexists(self._key(collection, "data"), key)))

    async def get_all_by_index(self, collection: str, index: str, value: Any) -> List[Any]:
        """Decrypt every record whose ``index`` field equals ``value``."""
        return await self.find(collection, {index: value})

    async def find(self, collection: str, filters: Optional[Dict[str, Any]] = None,
                   start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Any]:
        """
        Look up records by indexed equality filters and a timestamp range.

        Args:
            collection: Collection name
            filters: Mapping of index name to required value (None values are ignored)
            start: Inclusive lower bound on the record timestamp
            end: Inclusive upper bound on the record timestamp

        Returns:
            Decrypted records ordered by key
        """
        spec = self._spec(collection)
        active = {k: v for k, v in (filters or {}).items() if v is not None}
        for index in active:
            if index not in spec.indexes:
                raise StorageError(f"Collection {collection} has no index {index}")
        return await self._run(self._find(collection, active, start, end))

    async def _find(self, collection: str, filters: Dict[str, Any],
                    start: Optional[datetime], end: Optional[datetime]) -> List[Any]:
        if filters:
            index_keys = [
                self._key(collection, f"idx:{self.codec.index_token(collection, index, value)}")
                for index, value in filters.items()
            ]
            keys = set(await self.redis.sinter(index_keys))
        else:
            keys = set(await self.redis.hkeys(self._key(collection, "data")))

        if start is not None or end is not None:
            low = _timestamp_score(start) if start is not None else "-inf"
            high = _timestamp_score(end) if end is not None else "+inf"
            keys &= set(await self.redis.zrangebyscore(self._key(collection, "ts"), low, high))

        return await self._load_many(collection, sorted(keys))

    async def _load_many(self, collection: str, keys: List[str]) -> List[Any]:
        if not keys:
            return []
        raws = await self.redis.hmget(self._key(collection, "data"), keys)
        return [
            self._open(collection, key, raw)
            for key, raw in zip(keys, raws)
            if raw is not None
        ]

    async def recent(self, collection: str, limit: Optional[int] = None) -> List[Any]:
        """Records newest-first by insertion order; ``limit=None`` means all of them."""
        self._spec(collection)
        if limit is None:
            stop = -1
        elif limit <= 0:
            return []
        else:
            stop = limit - 1
        return await self._run(self._recent(collection, stop))

    async def _recent(self, collection: str, stop: int) -> List[Any]:
        keys = await self.redis.zrevrange(self._key(collection, "order"), 0, stop)
        return await self._load_many(collection, list(keys))

    async def count(self, collection: str) -> int:
        self._spec(collection)
        return await self._run(self.redis.hlen(self._key(collection, "data")))

    async def delete(self, collection: str, key: str) -> bool:
        self._spec(collection)
        return await self._run(self._delete(collection, [key])) > 0

    async def _delete(self, collection: str, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        meta_key = self._key(collection, "meta")
        metas = await self.redis.hmget(meta_key, keys)
        data_key = self._key(collection, "data")
        existing = await self.redis.hmget(data_key, keys)

        async with self.redis.pipeline(transaction=True) as pipe:
            for key, meta in zip(keys, metas):
                for token in json.loads(meta) if meta else []:
                    pipe.srem(self._key(collection, f"idx:{token}"), key)
            pipe.hdel(data_key, *keys)
            pipe.hdel(meta_key, *keys)
            pipe.zrem(self._key(collection, "ts"), *keys)
            pipe.zrem(self._key(collection, "order"), *keys)
            await pipe.execute()
        return sum(1 for raw in existing if raw is not None)

    async def trim(self, collection: str, max_items: int) -> List[str]:
        """Drop the oldest records (by insertion) beyond ``max_items``."""
        self._spec(collection)
        return await self._run(self._trim(collection, max_items))

    async def _trim(self, collection: str, max_items: int) -> List[str]:
        order_key = self._key(collection, "order")
        size = await self.redis.zcard(order_key)
        if size <= max_items:
            return []
        oldest = list(await self.redis.zrange(order_key, 0, size - max_items - 1))
        await self._delete(collection, oldest)
        return oldest

    async def clear(self, collection: str):
        """Remove every record of a collection."""
        self._spec(collection)
        await self._run(self._clear(collection))

    async def _clear(self, collection: str):
        keys = [k async for k in self.redis.scan_iter(match=self._key(collection, "*"))]
        if keys:
            await self.redis.delete(*keys)

    async def clear_all(self):
        """Remove every record of every collection; key material is kept."""
        for collection in COLLECTIONS:
            await self.clear(collection)


class StorageConnection:
    """Redis connection and key custody for the encrypted store."""

    def __init__(self, redis_client: Optional[redis.Redis] = None,
                 key_prefix: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize; an already constructed client may be injected."""
        self.redis_client = redis_client
        self.key_prefix = key_prefix or config.get("storage.key_prefix", "f2p")
        self.timeout = timeout if timeout is not None else config.get("storage.operation_timeout_seconds")
        self.codec: Optional[EncryptionCodec] = None
        self.store: Optional[EncryptedStore] = None
        self.initialized = False

    async def initialize(self):
        """Connect, load or create the key and build the store."""
        if self.initialized:
            return

        try:
            if self.redis_client is None:
                redis_host = config.get("storage.redis.host")
                redis_port = config.get("storage.redis.port")
                redis_db = config.get("storage.redis.db")
                self.redis_client = redis.Redis(
                    host=redis_host,
                    port=redis_port,
                    db=redis_db,
                    decode_responses=True
                )
            await self.redis_client.ping()
            logger.info(f"Storage connection established (prefix={self.key_prefix})")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {str(e)}")
            raise StorageError(f"Failed to connect to storage: {str(e)}") from e

        self.codec = EncryptionCodec(await self._load_or_create_key())
        self.store = EncryptedStore(self.redis_client, self.codec, self.key_prefix, self.timeout)
        self.initialized = True

    async def _load_or_create_key(self) -> bytes:
        # Key material lives next to the data it protects; see DESIGN.md.
        key_name = f"{self.key_prefix}:crypto:key"
        created = await self.redis_client.set(key_name, generate_key().hex(), nx=True)
        raw = await self.redis_client.get(key_name)
        try:
            key = bytes.fromhex(raw)
        except (TypeError, ValueError) as e:
            raise DecryptionError("Stored key material is corrupted") from e
        if len(key) != KEY_SIZE_BYTES:
            raise DecryptionError("Stored key material has the wrong length")
        if created:
            logger.info("Generated new storage encryption key")
        return key

    async def close(self):
        """Close the Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
        self.initialized = False
        logger.info("Storage connection closed")


class ProfileRepository:
    """Repository for per-user risk profiles."""

    collection = "profiles"

    def __init__(self, store: EncryptedStore):
        self.store = store

    async def get_profile(self, user_id: str) -> UserRiskProfile:
        """Load the profile, or an empty one if the user has no history yet."""
        data = await self.store.get(self.collection, user_id)
        if data is None:
            return UserRiskProfile(user_id=user_id)
        return UserRiskProfile.model_validate(data)

    async def save_profile(self, profile: UserRiskProfile):
        await self.store.put(self.collection, profile.user_id, profile.model_dump(mode="json"))

    async def delete_profile(self, user_id: str) -> bool:
        return await self.store.delete(self.collection, user_id)


class TransactionRepository:
    """Repository for append-only transaction records."""

    collection = "transactions"

    def __init__(self, store: EncryptedStore):
        self.store = store

    async def insert_transaction(self, record: TransactionRecord) -> str:
        """
        Persist a new transaction record.

        Returns:
            Transaction ID

        Raises:
            StorageError: a record with the same id already exists
        """
        if await self.store.exists(self.collection, record.id):
            raise StorageError(f"Transaction {record.id} already recorded")
        await self.store.put(self.collection, record.id, record.model_dump(mode="json"))
        return record.id

    async def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        data = await self.store.get(self.collection, transaction_id)
        return TransactionRecord.model_validate(data) if data else None

    async def get_user_transactions(
        self,
        user_id: str,
        status: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[TransactionRecord]:
        """
        Get transactions for a user, newest first.

        Args:
            user_id: User ID
            status: Optional status filter
            start_time: Start of time range
            end_time: End of time range
            limit: Max number of transactions

        Returns:
            List of transaction records
        """
        rows = await self.store.find(
            self.collection, {"user_id": user_id, "status": status}, start_time, end_time
        )
        records = sorted(
            (TransactionRecord.model_validate(row) for row in rows),
            key=lambda r: r.timestamp,
            reverse=True,
        )
        return records if limit is None else records[:max(limit, 0)]

    async def get_recent_transactions(self, user_id: str, days: int = 7) -> List[TransactionRecord]:
        return await self.get_user_transactions(user_id, start_time=datetime.now() - timedelta(days=days))

    async def get_transaction_stats(self, user_id: str) -> TransactionStats:
        return summarize_transactions(await self.get_user_transactions(user_id))


class BiometricRepository:
    """Repository for encrypted biometric templates, one per (user, modality)."""

    collection = "biometrics"

    def __init__(self, store: EncryptedStore):
        self.store = store

    @staticmethod
    def template_id(user_id: str, modality: str) -> str:
        return str(uuid5(NAMESPACE_URL, f"face-to-phone:biometric:{user_id}:{modality}"))

    async def store_template(self, user_id: str, modality: str, vector: List[float],
                             confidence: float = 1.0) -> BiometricTemplate:
        """Store a template, replacing any earlier enrollment of the same modality."""
        template = BiometricTemplate(
            id=self.template_id(user_id, modality),
            user_id=user_id,
            type=modality,
            template=[float(v) for v in vector],
            confidence=confidence,
        )
        await self.store.put(self.collection, template.id, template.model_dump(mode="json"))
        return template

    async def get_template(self, user_id: str, modality: str) -> Optional[BiometricTemplate]:
        data = await self.store.get(self.collection, self.template_id(user_id, modality))
        return BiometricTemplate.model_validate(data) if data else None

    async def get_templates(self, user_id: str) -> List[BiometricTemplate]:
        rows = await self.store.get_all_by_index(self.collection, "user_id", user_id)
        return [BiometricTemplate.model_validate(row) for row in rows]

    async def delete_templates(self, user_id: str) -> int:
        deleted = 0
        for template in await self.get_templates(user_id):
            deleted += await self.store.delete(self.collection, template.id)
        return deleted


class UserRepository:
    """Repository for account holders."""

    collection = "users"

    def __init__(self, store: EncryptedStore):
        self.store = store

    async def create_user(self, full_name: str, phone_number: str, email: str,
                          account_type: str = "individual",
                          business_name: Optional[str] = None) -> UserAccount:
        if await self.get_user_by_email(email):
            raise ValidationError(f"Email {email} is already registered",
                                  "This email is already registered - sign in instead")
        user = UserAccount(
            full_name=full_name,
            phone_number=phone_number,
            email=email,
            account_type=account_type,
            business_name=business_name,
        )
        await self.store.put(self.collection, user.id, user.model_dump(mode="json"))
        logger.info(f"Created user {user.id}")
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        data = await self.store.get(self.collection, user_id)
        return UserAccount.model_validate(data) if data else None

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        rows = await self.store.get_all_by_index(self.collection, "email", email)
        return UserAccount.model_validate(rows[0]) if rows else None

    async def update_user(self, user_id: str, updates: Dict[str, Any]) -> UserAccount:
        user = await self.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", "Account not found - please register")
        protected = {"id", "created_at"}
        merged = {**user.model_dump(), **{k: v for k, v in updates.items() if k not in protected}}
        updated = UserAccount.model_validate(merged)
        await self.store.put(self.collection, user_id, updated.model_dump(mode="json"))
        return updated

    async def export_user_data(self, user_id: str) -> str:
        """
        Bundle everything stored about a user into a JSON backup.

        Biometric templates are listed without their feature vectors.
        """
        user = await self.get_user(user_id)
        biometrics = await self.store.get_all_by_index("biometrics", "user_id", user_id)
        transactions = await self.store.get_all_by_index("transactions", "user_id", user_id)
        events = await self.store.get_all_by_index("events", "user_id", user_id)

        export_data = {
            "user": user.model_dump(mode="json") if user else None,
            "biometrics": [{k: v for k, v in b.items() if k != "template"} for b in biometrics],
            "transactions": sorted(transactions, key=lambda t: t["timestamp"], reverse=True),
            "security_events": sorted(events, key=lambda e: e["timestamp"], reverse=True),
            "exported_at": datetime.now().isoformat(),
        }
        return json.dumps(export_data)
