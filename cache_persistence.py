"""
Durable snapshots for the intelligent cache
===========================================

Only entries worth keeping across restarts are written: live, non-placeholder
entries with priority NORMAL or above. Each is stored as a flat record::

    {
        "key": "Peter: What is faith?",
        "value_json": "\"Faith is ...\"",
        "value_type_tag": "json:v1",
        "created": 1700000000.0,
        "priority": "HIGH",
        "tags": ["peter"],
    }

Values are encoded by an explicit, versioned codec chosen by the value's type
rather than by recording a runtime class name, so renaming a class does not
silently break old snapshots: an unknown tag is reported and that record is
skipped. Built-in codecs:

- ``json:v1`` for JSON-native values (str, int, float, bool, None, list, dict)
- ``ndarray:v1`` for NumPy arrays (dtype, shape and base64 raw bytes)

Custom types either register a ``ValueCodec`` or implement the
``to_cache_dict()`` / ``from_cache_dict()`` contract and are registered with
``ValueCodecRegistry.register_serializable``.

Snapshot stores are interchangeable: ``JsonFileSnapshotStore`` (a single JSON
file replaced atomically), ``DiskCacheSnapshotStore`` (``diskcache``) and
``MemorySnapshotStore``.
"""

import base64
import copy
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

import numpy as np
from diskcache import Cache

from cache_framework_types import CacheEntry, CacheKey, CachePriority
from keyword_extractor import KeywordExtractor
from lock_utils import (
    DEFAULT_LOCK_TIMEOUT,
    coordinated_lock,
    create_component_lock,
    unregister_lock,
)

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "intelligent_cache:snapshot:v1"

RECORD_FIELDS = ("key", "value_json", "value_type_tag", "created", "priority", "tags")


class CodecError(ValueError):
    """Raised when a value cannot be encoded or a record cannot be decoded."""


# -----------------------------------------------------------------------------
# Value codecs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ValueCodec:
    """Encodes one kind of value to a JSON string and back."""

    tag: str
    types: Tuple[type, ...]
    encode: Callable[[Any], str]
    decode: Callable[[str], Any]

    def handles(self, value: Any) -> bool:
        return isinstance(value, self.types)


_JSON_NATIVE = (str, int, float, bool, type(None), list, dict)


def _encode_json(value: Any) -> str:
    text = json.dumps(value, allow_nan=False)
    # json.dumps stringifies non-str dict keys and turns tuples into lists
    if json.loads(text) != value:
        raise ValueError("value does not survive a JSON round trip unchanged")
    return text


def _encode_ndarray(array: np.ndarray) -> str:
    array = np.ascontiguousarray(array)
    return json.dumps(
        {
            "dtype": array.dtype.str,
            "shape": list(array.shape),
            "data": base64.b64encode(array.tobytes()).decode("ascii"),
        }
    )


def _decode_ndarray(data: str) -> np.ndarray:
    payload = json.loads(data)
    dtype = np.dtype(payload["dtype"])
    shape = tuple(int(dim) for dim in payload["shape"])
    raw = base64.b64decode(payload["data"])
    # Copy so the restored array is writable and owns its memory
    return np.frombuffer(raw, dtype=dtype).reshape(shape).copy()


JSON_CODEC = ValueCodec("json:v1", _JSON_NATIVE, _encode_json, json.loads)
NDARRAY_CODEC = ValueCodec("ndarray:v1", (np.ndarray,), _encode_ndarray, _decode_ndarray)


class ValueCodecRegistry:
    """
    Resolves codecs by value (for snapshots) and by tag (for restores).

    Custom codecs are consulted before the built-ins, in registration order.
    """

    def __init__(self, include_builtins: bool = True):
        self._by_tag: Dict[str, ValueCodec] = {}
        self._custom: List[ValueCodec] = []
        self._builtins: List[ValueCodec] = []
        if include_builtins:
            for codec in (NDARRAY_CODEC, JSON_CODEC):
                self._by_tag[codec.tag] = codec
                self._builtins.append(codec)

    def register(self, codec: ValueCodec) -> None:
        """Register a codec; a codec with the same tag is replaced."""
        if codec.tag in self._by_tag:
            logger.debug(f"Replacing value codec {codec.tag}")
            self._custom = [c for c in self._custom if c.tag != codec.tag]
            self._builtins = [c for c in self._builtins if c.tag != codec.tag]
        self._by_tag[codec.tag] = codec
        self._custom.append(codec)

    def register_serializable(
        self, cls: Type, name: Optional[str] = None, version: int = 1
    ) -> ValueCodec:
        """
        Register a class implementing ``to_cache_dict()`` and ``from_cache_dict()``.

        Args:
            cls: The class to register
            name: Stable name used in the tag (defaults to the class name)
            version: Format version; bump it when the dict layout changes

        Returns:
            ValueCodec: The registered codec
        """
        if not callable(getattr(cls, "to_cache_dict", None)) or not callable(
            getattr(cls, "from_cache_dict", None)
        ):
            raise TypeError(
                f"{cls.__name__} must implement to_cache_dict() and from_cache_dict()"
            )

        codec = ValueCodec(
            tag=f"{name or cls.__name__}:v{version}",
            types=(cls,),
            encode=lambda value: json.dumps(value.to_cache_dict(), allow_nan=False),
            decode=lambda data: cls.from_cache_dict(json.loads(data)),
        )
        self.register(codec)
        return codec

    def codec_for_value(self, value: Any) -> Optional[ValueCodec]:
        for codec in self._custom:
            if codec.handles(value):
                return codec
        for codec in self._builtins:
            if codec.handles(value):
                return codec
        return None

    def codec_for_tag(self, tag: str) -> Optional[ValueCodec]:
        return self._by_tag.get(tag)

    def encode(self, value: Any) -> Tuple[str, str]:
        """
        Encode a value.

        Returns:
            Tuple[str, str]: JSON text and codec tag

        Raises:
            CodecError: If no codec handles the value or encoding fails
        """
        codec = self.codec_for_value(value)
        if codec is None:
            raise CodecError(f"No codec registered for {type(value).__name__}")
        try:
            return codec.encode(value), codec.tag
        except (TypeError, ValueError) as e:
            raise CodecError(f"Codec {codec.tag} failed to encode value: {e}") from e

    def decode(self, data: str, tag: str) -> Any:
        """
        Decode JSON text produced by the codec named by ``tag``.

        Raises:
            CodecError: If the tag is unknown or decoding fails
        """
        codec = self.codec_for_tag(tag)
        if codec is None:
            raise CodecError(f"Unknown value type tag: {tag}")
        try:
            return codec.decode(data)
        except Exception as e:
            raise CodecError(f"Codec {tag} failed to decode value: {e}") from e


# -----------------------------------------------------------------------------
# Snapshot stores
# -----------------------------------------------------------------------------


class SnapshotStore:
    """Abstract base class for durable snapshot storage."""

    def read(self) -> List[Dict[str, Any]]:
        """Return the stored records, or an empty list if nothing is stored."""
        raise NotImplementedError

    def write(self, records: List[Dict[str, Any]]) -> None:
        """Replace the stored records."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any resources held by the store."""


class MemorySnapshotStore(SnapshotStore):
    """Keeps the snapshot in process memory."""

    def __init__(self):
        self._records: List[Dict[str, Any]] = []

    def read(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._records)

    def write(self, records: List[Dict[str, Any]]) -> None:
        self._records = copy.deepcopy(records)


class JsonFileSnapshotStore(SnapshotStore):
    """Stores the snapshot as a single JSON array, replaced atomically."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def read(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(
                f"Snapshot file {self.path} does not contain a list of records"
            )
        return records

    def write(self, records: List[Dict[str, Any]]) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".cache-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, separators=(",", ":"))
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class DiskCacheSnapshotStore(SnapshotStore):
    """Stores the snapshot in a ``diskcache`` directory."""

    def __init__(self, directory: str):
        self.directory = os.path.expanduser(directory)
        os.makedirs(self.directory, exist_ok=True)
        self._cache = Cache(
            self.directory,
            disk_pickle_protocol=4,
            disk_min_file_size=1,
        )
        logger.debug(f"Disk snapshot store initialized at {self.directory}")

    def read(self) -> List[Dict[str, Any]]:
        records = self._cache.get(SNAPSHOT_KEY, default=[])
        if not isinstance(records, list):
            raise ValueError(f"Snapshot in {self.directory} is not a list of records")
        return records

    def write(self, records: List[Dict[str, Any]]) -> None:
        self._cache.set(SNAPSHOT_KEY, records)

    def close(self) -> None:
        self._cache.close()


def create_snapshot_store(caching_config: Dict[str, Any]) -> Optional[SnapshotStore]:
    """Build the snapshot store described by a caching config, if any."""
    path = caching_config.get("snapshot_path")
    if not path:
        return None
    if caching_config.get("snapshot_backend") == "diskcache":
        return DiskCacheSnapshotStore(path)
    return JsonFileSnapshotStore(path)


# -----------------------------------------------------------------------------
# Persistence manager
# -----------------------------------------------------------------------------


class PersistenceManager:
    """
    Converts entries to durable records and back, and serializes store access.

    Store and codec failures never propagate out of ``persist`` and ``load``:
    the cache keeps working in memory only.
    """

    def __init__(
        self,
        store: SnapshotStore,
        codecs: Optional[ValueCodecRegistry] = None,
        keyword_extractor: Optional[KeywordExtractor] = None,
        restore_ttl: Optional[float] = 24 * 3600,
        clock: Callable[[], float] = time.time,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.store = store
        self.codecs = codecs or ValueCodecRegistry()
        self.keyword_extractor = keyword_extractor or KeywordExtractor()
        self.restore_ttl = restore_ttl
        self.clock = clock
        self.lock_timeout = lock_timeout
        self._lock = create_component_lock(f"cache_persistence_{id(self)}")

    def snapshot(self, entries: Iterable[CacheEntry]) -> List[Dict[str, Any]]:
        """Build durable records for the eligible entries."""
        now = self.clock()
        records = []
        for entry in entries:
            if entry.is_placeholder or entry.is_expired(now):
                continue
            if entry.priority < CachePriority.NORMAL:
                continue
            try:
                value_json, tag = self.codecs.encode(entry.value)
            except CodecError as e:
                logger.warning(f"Skipping cache entry '{entry.key}' in snapshot: {e}")
                continue
            records.append(
                {
                    "key": entry.key,
                    "value_json": value_json,
                    "value_type_tag": tag,
                    "created": entry.created,
                    "priority": entry.priority.name,
                    "tags": sorted(entry.tags),
                }
            )
        return records

    def restore(self, records: Iterable[Dict[str, Any]]) -> List[CacheEntry]:
        """Rebuild entries from records, skipping any that cannot be decoded."""
        now = self.clock()
        expiration = now + self.restore_ttl if self.restore_ttl is not None else None
        entries = []
        skipped = 0

        for record in records:
            try:
                entries.append(self._restore_record(record, now, expiration))
            except (CodecError, KeyError, TypeError, ValueError) as e:
                skipped += 1
                key = record.get("key") if isinstance(record, dict) else None
                logger.warning(f"Skipping unreadable snapshot record {key!r}: {e}")

        if skipped:
            logger.info(f"Restored {len(entries)} cache entries, skipped {skipped}")
        return entries

    def _restore_record(
        self, record: Dict[str, Any], now: float, expiration: Optional[float]
    ) -> CacheEntry:
        missing = [name for name in RECORD_FIELDS if name not in record]
        if missing:
            raise KeyError(f"missing fields {missing}")

        key = record["key"]
        if not isinstance(key, str):
            raise TypeError("key must be a string")

        value = self.codecs.decode(record["value_json"], record["value_type_tag"])
        created = min(float(record["created"]), now)
        return CacheEntry(
            key=key,
            digest=CacheKey.digest(key),
            value=value,
            created=created,
            last_access=now,
            absolute_expiration=expiration,
            priority=CachePriority.parse(record["priority"]),
            tags=frozenset(record["tags"] or ()),
            keywords=self.keyword_extractor.extract(key),
            access_count=0,
        )

    def persist(self, entries: Iterable[CacheEntry]) -> bool:
        """
        Write a snapshot of ``entries`` to the store.

        Returns:
            bool: True if the snapshot was written
        """
        with coordinated_lock(self._lock, timeout=self.lock_timeout):
            try:
                records = self.snapshot(entries)
                self.store.write(records)
            except Exception as e:
                logger.error(f"Cache snapshot failed, continuing in memory only: {e}")
                return False
        logger.debug(f"Persisted {len(records)} cache entries")
        return True

    def load(self) -> List[CacheEntry]:
        """Read and restore the stored snapshot; an unreadable store yields []."""
        with coordinated_lock(self._lock, timeout=self.lock_timeout):
            try:
                records = self.store.read()
            except Exception as e:
                logger.error(f"Cache snapshot load failed: {e}")
                return []
            return self.restore(records)

    def close(self) -> None:
        try:
            self.store.close()
        except Exception as e:
            logger.warning(f"Error closing snapshot store: {e}")
        finally:
            unregister_lock(self._lock)
