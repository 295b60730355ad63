"""Record stores and typed repositories.

Every entity is persisted as one JSON document under a prefixed key
(``experiment-``, ``assignment-``, ``event-``, ``rollout-``, ``flag-``) so a
prefix scan enumerates one entity type.
"""
import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

import redis
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from cohortlab.models.record import StoredRecord
from cohortlab.services.errors import CollaboratorFailure

Record = Dict[str, Any]
ModelT = TypeVar("ModelT", bound=BaseModel)

EXPERIMENT_PREFIX = "experiment-"
ASSIGNMENT_PREFIX = "assignment-"
EVENT_PREFIX = "event-"
ROLLOUT_PREFIX = "rollout-"
FLAG_PREFIX = "flag-"


class RecordStore(ABC):
    """Generic key-value JSON store."""

    @abstractmethod
    def get(self, key: str) -> Optional[Record]:
        ...

    @abstractmethod
    def put(self, key: str, record: Record) -> None:
        ...

    @abstractmethod
    def scan_prefix(self, prefix: str) -> List[Record]:
        """Return every record whose key starts with ``prefix``."""
        ...

    def ping(self) -> bool:
        return True


class MemoryRecordStore(RecordStore):
    """Process-local store; records are copied through JSON like a real backend."""

    def __init__(self):
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Record]:
        with self._lock:
            raw = self._records.get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, record: Record) -> None:
        raw = json.dumps(record)
        with self._lock:
            self._records[key] = raw

    def scan_prefix(self, prefix: str) -> List[Record]:
        with self._lock:
            raws = [raw for key, raw in sorted(self._records.items()) if key.startswith(prefix)]
        return [json.loads(raw) for raw in raws]


class RedisRecordStore(RecordStore):
    """Redis-backed store; keys are namespaced as ``{namespace}:{key}``."""

    def __init__(self, redis_client: redis.Redis, namespace: str = "cohortlab"):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[Record]:
        try:
            raw = self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise CollaboratorFailure(f"Redis get failed for {key}: {e}") from e
        return json.loads(raw) if raw else None

    def put(self, key: str, record: Record) -> None:
        try:
            self.redis.set(self._key(key), json.dumps(record))
        except redis.RedisError as e:
            raise CollaboratorFailure(f"Redis put failed for {key}: {e}") from e

    def scan_prefix(self, prefix: str) -> List[Record]:
        pattern = f"{self._key(prefix)}*"
        try:
            keys = sorted(self.redis.scan_iter(match=pattern))
            raws = self.redis.mget(keys) if keys else []
        except redis.RedisError as e:
            raise CollaboratorFailure(f"Redis scan failed for {prefix}: {e}") from e
        return [json.loads(raw) for raw in raws if raw]

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError:
            return False


class SqlRecordStore(RecordStore):
    """SQLAlchemy-backed store using the ``records`` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[Record]:
        try:
            with self.session_factory() as db:
                row = db.get(StoredRecord, key)
                return dict(row.value) if row else None
        except SQLAlchemyError as e:
            raise CollaboratorFailure(f"Database get failed for {key}: {e}") from e

    def put(self, key: str, record: Record) -> None:
        try:
            with self.session_factory() as db:
                row = db.get(StoredRecord, key)
                if row is None:
                    db.add(StoredRecord(key=key, value=record))
                else:
                    row.value = record
                db.commit()
        except SQLAlchemyError as e:
            raise CollaboratorFailure(f"Database put failed for {key}: {e}") from e

    def scan_prefix(self, prefix: str) -> List[Record]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            with self.session_factory() as db:
                rows = db.query(StoredRecord).filter(
                    StoredRecord.key.like(f"{escaped}%", escape="\\")
                ).order_by(StoredRecord.key).all()
                return [dict(row.value) for row in rows]
        except SQLAlchemyError as e:
            raise CollaboratorFailure(f"Database scan failed for {prefix}: {e}") from e

    def ping(self) -> bool:
        try:
            with self.session_factory() as db:
                db.query(StoredRecord.key).limit(1).all()
            return True
        except SQLAlchemyError:
            return False


class Repository(Generic[ModelT]):
    """Typed get/put/scan over one key prefix of a record store."""

    def __init__(self, store: RecordStore, prefix: str, model: Type[ModelT]):
        self.store = store
        self.prefix = prefix
        self.model = model

    def key(self, entity_id: str) -> str:
        return f"{self.prefix}{entity_id}"

    def get(self, entity_id: str) -> Optional[ModelT]:
        record = self.store.get(self.key(entity_id))
        return self.model.model_validate(record) if record is not None else None

    def put(self, entity_id: str, entity: ModelT) -> None:
        self.store.put(self.key(entity_id), entity.model_dump(mode="json"))

    def scan(self) -> List[ModelT]:
        return [self.model.model_validate(record) for record in self.store.scan_prefix(self.prefix)]


def build_record_store(settings) -> RecordStore:
    """Create the record store selected by ``settings.store_backend``."""
    backend = settings.store_backend.lower()

    if backend == "memory":
        return MemoryRecordStore()
    if backend == "redis":
        return RedisRecordStore(redis.from_url(settings.redis_url), namespace=settings.record_key_namespace)
    if backend == "sql":
        from cohortlab.database import init_database

        return SqlRecordStore(init_database(settings.database_url))

    raise ValueError(f"Unknown store backend: {settings.store_backend}")
