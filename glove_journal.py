import datetime as dt
import json
import logging
import os
import uuid
from dataclasses import dataclass
logger = logging.getLogger(__name__)

from glove_errors import PersistenceFailed

IN = "in"
OUT = "out"
KEY_PREFIX = "ng_logs_"


def _utcnow():
    return dt.datetime.now(dt.timezone.utc)


def _as_date(value):
    if isinstance(value, dt.datetime):
        return value.astimezone(dt.timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        return dt.date.fromisoformat(value.strip())
    raise TypeError(f"expected a date, datetime or YYYY-MM-DD string, got {type(value).__name__}")


def partition_key(day):
    return f"{KEY_PREFIX}{_as_date(day).isoformat()}"


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: dt.datetime
    direction: str
    text: str

    @classmethod
    def create(cls, text, direction, timestamp=None):
        if direction not in (IN, OUT):
            raise ValueError(f"direction must be '{IN}' or '{OUT}', got {direction!r}")
        ts = timestamp or _utcnow()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=dt.timezone.utc)
        return cls(uuid.uuid4().hex, ts, direction, text)

    @property
    def day(self):
        """UTC calendar day; decides the partition this entry lives in."""
        return self.timestamp.astimezone(dt.timezone.utc).date()

    def to_dict(self):
        return {
            "id": self.id,
            "timestamp": self.timestamp.astimezone(dt.timezone.utc).isoformat(),
            "direction": self.direction,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, data):
        ts = dt.datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=dt.timezone.utc)
        direction = data["direction"]
        if direction not in (IN, OUT):
            raise ValueError(f"bad direction {direction!r}")
        # Older records carried no id
        entry_id = data.get("id") or uuid.uuid4().hex
        return cls(str(entry_id), ts, direction, str(data.get("text", "")))


class MemoryStore:
    def __init__(self):
        self._data = {}

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = value

    def keys(self):
        return list(self._data)


class FileStore:
    """One file per key under data_dir; writes replace the file atomically."""

    def __init__(self, data_dir):
        self.data_dir = data_dir
        os.makedirs(self.data_dir, exist_ok=True)

    def _path(self, key):
        return os.path.join(self.data_dir, f"{key}.json")

    def get(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def set(self, key, value):
        path = self._path(key)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp_path, path)

    def keys(self):
        try:
            names = os.listdir(self.data_dir)
        except FileNotFoundError:
            return []
        return [n[: -len(".json")] for n in names if n.endswith(".json")]


class LogJournal:
    """
    Append-only, day-partitioned message journal.

    Partitions are cached in memory after first use. append() always lands in
    memory; the follow-up write of the whole partition to the store is best
    effort and a failure surfaces as PersistenceFailed after the in-memory
    append has already happened.
    """

    def __init__(self, store, today=None):
        self.store = store
        self._today = today or dt.date.today
        self._partitions = {}
        # Keys whose stored value could not be parsed; never overwritten
        self._damaged = set()

    def append(self, entry):
        key = partition_key(entry.day)
        entries = self._partition(key)
        entries.append(entry)
        if key in self._damaged:
            raise PersistenceFailed(f"stored partition {key} could not be read; not overwriting it")
        payload = json.dumps([e.to_dict() for e in entries], ensure_ascii=False, separators=(",", ":"))
        try:
            self.store.set(key, payload)
        except Exception as e:
            logger.error("journal write failed for %s: %s", key, e)
            raise PersistenceFailed(f"could not persist {key}: {e}") from e

    def load_for_date(self, day):
        return list(self._partition(partition_key(day)))

    def load_for_today(self):
        return self.load_for_date(self._today())

    def available_dates(self):
        keys = getattr(self.store, "keys", None)
        found = set()
        if keys is not None:
            try:
                found.update(keys())
            except Exception as e:
                logger.warning("journal: listing stored partitions failed: %s", e)
        found.update(k for k, v in self._partitions.items() if v)
        out = []
        for key in found:
            if not key.startswith(KEY_PREFIX):
                continue
            try:
                out.append(dt.date.fromisoformat(key[len(KEY_PREFIX):]))
            except ValueError:
                continue
        return sorted(out)

    def _partition(self, key):
        entries = self._partitions.get(key)
        if entries is None:
            entries = self._load(key)
            self._partitions[key] = entries
        return entries

    def _load(self, key):
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.error("journal read failed for %s: %s", key, e)
            self._damaged.add(key)
            return []
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except ValueError as e:
            logger.error("journal partition %s is not valid JSON: %s", key, e)
            self._damaged.add(key)
            return []
        if not isinstance(items, list):
            logger.error("journal partition %s is not a list", key)
            self._damaged.add(key)
            return []
        out = []
        for item in items:
            try:
                out.append(LogEntry.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("journal: skipping bad entry in %s: %s", key, e)
        return out
