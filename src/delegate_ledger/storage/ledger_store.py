# storage/ledger_store.py
"""
Ledger persistence on top of a key-value byte store.

Key layout (values are JSON documents):
    metadata                   -> Metadata
    current-state              -> CurrentState
    timeline-index             -> TimelineIndex
    timeline-entries-{id}      -> {partitionId, entries}
    sync-lock                  -> SyncLock (absent = unlocked)
    sync-progress              -> SyncProgress (absent = idle)

There are no transactions. Partition writes always precede the index write
so the index never references a partition that does not exist.
"""
import json
import logging
import os
import threading
import time
import uuid
from typing import Callable, List, Optional

from delegate_ledger.models import (
    CurrentState,
    Metadata,
    PartitionInfo,
    SyncLock,
    SyncProgress,
    TimelineEntry,
    TimelineIndex,
    balances_from_strings,
)
from delegate_ledger.storage.cache import TtlCache
from delegate_ledger.utils.calculations import total_voting_power

METADATA_KEY = "metadata"
CURRENT_STATE_KEY = "current-state"
TIMELINE_INDEX_KEY = "timeline-index"
LOCK_KEY = "sync-lock"
PROGRESS_KEY = "sync-progress"
PARTITION_KEY_PREFIX = "timeline-entries-"

DEFAULT_PARTITION_SIZE = 1000
DEFAULT_LOCK_TIMEOUT_SECONDS = 10 * 60

METADATA_CACHE_TTL = 30
CURRENT_STATE_CACHE_TTL = 60
TIMELINE_INDEX_CACHE_TTL = 60
TIMELINE_PARTITION_CACHE_TTL = 300

# Serialises check-then-write on the lock record within one process.
_LOCK_GUARD = threading.Lock()


def partition_key(partition_id: int) -> str:
    return f"{PARTITION_KEY_PREFIX}{partition_id}"


class LedgerStore:
    def __init__(
        self,
        kv,
        cache: Optional[TtlCache] = None,
        partition_size: int = DEFAULT_PARTITION_SIZE,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.kv = kv
        self.cache = cache if cache is not None else TtlCache()
        self.partition_size = partition_size
        self.lock_timeout_seconds = lock_timeout_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._lock_owner: Optional[str] = None

    # ------------------------------------------------------------------
    # Raw document access
    # ------------------------------------------------------------------

    def _read_json(self, key: str, ttl: Optional[float] = None) -> Optional[dict]:
        if ttl is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        raw = self.kv.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            self.logger.error(f"Error parsing {key}: {exc}")
            return None

        if ttl is not None:
            self.cache.set(key, data, ttl)
        return data

    def _write_json(self, key: str, data: dict, ttl: Optional[float] = None, indent=2):
        self.kv.put(key, json.dumps(data, indent=indent).encode("utf-8"))
        if ttl is not None:
            self.cache.set(key, data, ttl)
        else:
            self.cache.invalidate(key)

    def _delete(self, key: str) -> None:
        self.kv.delete(key)
        self.cache.invalidate(key)

    def clear_cache(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Metadata and current state
    # ------------------------------------------------------------------

    def get_metadata(self) -> Optional[Metadata]:
        data = self._read_json(METADATA_KEY, METADATA_CACHE_TTL)
        return Metadata.from_dict(data) if data else None

    def store_metadata(self, metadata: Metadata) -> None:
        self._write_json(METADATA_KEY, metadata.to_dict(), METADATA_CACHE_TTL)

    def get_current_state(self) -> Optional[CurrentState]:
        data = self._read_json(CURRENT_STATE_KEY, CURRENT_STATE_CACHE_TTL)
        return CurrentState.from_dict(data) if data else None

    def store_current_state(self, state: CurrentState) -> None:
        self._write_json(CURRENT_STATE_KEY, state.to_dict(), CURRENT_STATE_CACHE_TTL)

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def get_timeline_index(self) -> Optional[TimelineIndex]:
        data = self._read_json(TIMELINE_INDEX_KEY, TIMELINE_INDEX_CACHE_TTL)
        return TimelineIndex.from_dict(data) if data else None

    def _store_timeline_index(self, index: TimelineIndex) -> None:
        self._write_json(TIMELINE_INDEX_KEY, index.to_dict(), TIMELINE_INDEX_CACHE_TTL)

    def get_timeline_partition(self, partition_id: int) -> List[TimelineEntry]:
        data = self._read_json(partition_key(partition_id), TIMELINE_PARTITION_CACHE_TTL)
        if not data:
            return []
        return [TimelineEntry.from_dict(entry) for entry in data["entries"]]

    def _store_timeline_partition(
        self, partition_id: int, entries: List[TimelineEntry]
    ) -> None:
        self._write_json(
            partition_key(partition_id),
            {"partitionId": partition_id, "entries": [e.to_dict() for e in entries]},
            TIMELINE_PARTITION_CACHE_TTL,
            indent=None,
        )

    def append_timeline_entries(self, new_entries: List[TimelineEntry]) -> None:
        """
        Append entries to the tail partition, opening new partitions as needed.

        Entries must be block-ordered and must not precede the current tail.
        """
        if not new_entries:
            return

        index = self.get_timeline_index() or TimelineIndex(
            total_entries=0, partition_size=self.partition_size, partitions=[]
        )
        partition_size = index.partition_size

        if index.partitions:
            tail_block = index.partitions[-1].end_block
            if new_entries[0].block_number < tail_block:
                raise ValueError(
                    f"Timeline entry at block {new_entries[0].block_number} "
                    f"precedes persisted tail at block {tail_block}"
                )

        pending = list(new_entries)
        if not index.partitions:
            index.partitions.append(
                PartitionInfo(
                    id=0,
                    start_block=pending[0].block_number,
                    end_block=pending[0].block_number,
                    entry_count=0,
                )
            )

        while pending:
            info = index.partitions[-1]
            entries = self.get_timeline_partition(info.id)

            space = partition_size - len(entries)
            if space <= 0:
                info = PartitionInfo(
                    id=info.id + 1,
                    start_block=pending[0].block_number,
                    end_block=pending[0].block_number,
                    entry_count=0,
                )
                index.partitions.append(info)
                entries = []
                space = partition_size

            batch, pending = pending[:space], pending[space:]
            entries.extend(batch)
            self._store_timeline_partition(info.id, entries)

            info.entry_count = len(entries)
            info.start_block = entries[0].block_number
            info.end_block = entries[-1].block_number

        index.total_entries = sum(p.entry_count for p in index.partitions)
        # Index is written only after every partition write succeeded
        self._store_timeline_index(index)

    def get_full_timeline(self) -> List[TimelineEntry]:
        index = self.get_timeline_index()
        if not index:
            return []
        timeline: List[TimelineEntry] = []
        for info in index.partitions:
            timeline.extend(self.get_timeline_partition(info.id))
        return timeline

    def get_timeline_range(self, from_block: int, to_block: int) -> List[TimelineEntry]:
        """Entries within [from_block, to_block]; only intersecting partitions are read."""
        index = self.get_timeline_index()
        if not index:
            return []
        entries: List[TimelineEntry] = []
        for info in index.partitions:
            if info.end_block < from_block or info.start_block > to_block:
                continue
            entries.extend(
                entry
                for entry in self.get_timeline_partition(info.id)
                if from_block <= entry.block_number <= to_block
            )
        return entries

    def get_timeline(
        self, from_block: Optional[int] = None, to_block: Optional[int] = None
    ) -> List[TimelineEntry]:
        if from_block is None and to_block is None:
            return self.get_full_timeline()
        return self.get_timeline_range(
            from_block if from_block is not None else 0,
            to_block if to_block is not None else 2**63 - 1,
        )

    def get_last_timeline_entry(self) -> Optional[TimelineEntry]:
        index = self.get_timeline_index()
        if not index or not index.partitions:
            return None
        entries = self.get_timeline_partition(index.partitions[-1].id)
        return entries[-1] if entries else None

    def get_delegators_at_block(self, block_number: int) -> Optional[TimelineEntry]:
        """Latest timeline entry at or before ``block_number`` (None before the first entry)."""
        index = self.get_timeline_index()
        if not index:
            return None
        for info in reversed(index.partitions):
            if info.start_block > block_number:
                continue
            candidates = [
                entry
                for entry in self.get_timeline_partition(info.id)
                if entry.block_number <= block_number
            ]
            if candidates:
                return candidates[-1]
        return None

    def truncate_timeline_after(self, max_block: int) -> dict:
        """
        Drop timeline entries with block_number > max_block.

        Partitions lying entirely after ``max_block`` are removed from the
        index first and deleted afterwards; the straddling partition is
        rewritten before the index is updated.
        """
        index = self.get_timeline_index()
        if not index or not index.partitions:
            return {"entries_removed": 0, "partitions_removed": 0, "last_block_number": None}

        kept: List[PartitionInfo] = []
        dropped: List[PartitionInfo] = []
        entries_removed = 0

        for info in index.partitions:
            if info.start_block > max_block:
                dropped.append(info)
                entries_removed += info.entry_count
                continue
            if info.end_block > max_block:
                entries = self.get_timeline_partition(info.id)
                remaining = [e for e in entries if e.block_number <= max_block]
                entries_removed += len(entries) - len(remaining)
                self._store_timeline_partition(info.id, remaining)
                info.entry_count = len(remaining)
                info.end_block = remaining[-1].block_number
            kept.append(info)

        index.partitions = kept
        index.total_entries = sum(p.entry_count for p in kept)
        self._store_timeline_index(index)

        for info in dropped:
            self._delete(partition_key(info.id))

        last_block = kept[-1].end_block if kept else None
        self.logger.info(
            f"Truncated timeline after block {max_block}: "
            f"{entries_removed} entries, {len(dropped)} partitions removed"
        )
        return {
            "entries_removed": entries_removed,
            "partitions_removed": len(dropped),
            "last_block_number": last_block,
        }

    def truncate_after(self, max_block: int) -> dict:
        """
        Truncate the timeline and rewind metadata/current state to ``max_block``.

        The current state is rebuilt from the last remaining timeline entry so
        it stays equal to a replay of the persisted timeline. A ``max_block``
        past the last synced block is clamped to it: truncation only rewinds.
        """
        metadata = self.get_metadata()
        if metadata is not None and max_block > metadata.last_synced_block:
            self.logger.warning(
                f"Truncation block {max_block} is past last synced block "
                f"{metadata.last_synced_block}, truncating at {metadata.last_synced_block}"
            )
            max_block = metadata.last_synced_block

        result = self.truncate_timeline_after(max_block)

        last_entry = self.get_last_timeline_entry()
        delegators = dict(last_entry.delegators) if last_entry else {}
        timestamp = last_entry.timestamp if last_entry else int(self.clock())

        state = self.get_current_state()
        if state is not None or last_entry is not None:
            self.store_current_state(
                CurrentState(
                    as_of_block=max_block, as_of_timestamp=timestamp, delegators=delegators
                )
            )

        if metadata is not None:
            index = self.get_timeline_index()
            metadata.last_synced_block = max_block
            metadata.total_voting_power = str(
                total_voting_power(balances_from_strings(delegators))
            )
            metadata.total_delegators = len(delegators)
            metadata.total_timeline_entries = index.total_entries if index else 0
            metadata.timeline_partitions = len(index.partitions) if index else 0
            self.store_metadata(metadata)

        result["last_block_number"] = max_block
        return result

    # ------------------------------------------------------------------
    # Sync lock
    # ------------------------------------------------------------------

    def check_sync_lock(self) -> Optional[SyncLock]:
        """Return the live lock, reaping it first if it is stale."""
        data = self._read_json(LOCK_KEY)
        if not data:
            return None
        try:
            lock = SyncLock.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.error(f"Error parsing lock record: {exc}")
            return None

        if self.clock() - lock.started_at > self.lock_timeout_seconds:
            self.logger.warning(f"Stale lock held by {lock.pid} detected, releasing...")
            self._delete(LOCK_KEY)
            return None
        return lock

    def acquire_sync_lock(self) -> bool:
        with _LOCK_GUARD:
            if self.check_sync_lock():
                self.logger.info("Sync already in progress")
                return False

            owner = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
            lock = SyncLock(sync_in_progress=True, started_at=self.clock(), pid=owner)
            self._write_json(LOCK_KEY, lock.to_dict(), indent=None)

            # Another process may have written between our check and put
            current = self._read_json(LOCK_KEY)
            if not current or current.get("pid") != owner:
                self.logger.info("Lock taken by another process during acquire")
                return False

            self._lock_owner = owner
            return True

    def renew_sync_lock(self) -> None:
        """Refresh the lease so the lock reflects liveness rather than run length."""
        if self._lock_owner is None:
            return
        lock = SyncLock(sync_in_progress=True, started_at=self.clock(), pid=self._lock_owner)
        self._write_json(LOCK_KEY, lock.to_dict(), indent=None)

    def release_sync_lock(self) -> None:
        self._lock_owner = None
        self._delete(LOCK_KEY)

    # ------------------------------------------------------------------
    # Sync progress
    # ------------------------------------------------------------------

    def update_sync_progress(self, progress: SyncProgress) -> None:
        self._write_json(PROGRESS_KEY, progress.to_dict(), indent=None)

    def get_sync_progress(self) -> Optional[SyncProgress]:
        data = self._read_json(PROGRESS_KEY)
        return SyncProgress.from_dict(data) if data else None

    def clear_sync_progress(self) -> None:
        self._delete(PROGRESS_KEY)
