# services/processors/sync_driver.py
"""
Checkpointed, resumable sync of the delegate ledger.

One run walks [last synced block + 1, target] in fixed-size chunks and feeds
resolved events into the LedgerBuilder. Results are persisted every
``checkpoint_interval`` blocks and at the final chunk, in the order
timeline partitions -> timeline index -> current state -> metadata, so that
metadata (the resume point) is only advanced once everything it describes
is on disk.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from delegate_ledger.errors import ConfigurationError, PersistenceError
from delegate_ledger.models import (
    CurrentState,
    DelegationEvent,
    Metadata,
    SyncProgress,
    TimelineEntry,
    balances_from_strings,
    balances_to_strings,
)
from delegate_ledger.services.reconstructors.event_resolver import EventResolver
from delegate_ledger.services.reconstructors.ledger_builder import LedgerBuilder
from delegate_ledger.storage.ledger_store import LedgerStore

COMPLETED = "completed"
UP_TO_DATE = "up_to_date"
CONFLICT = "conflict"
FAILED = "failed"

DEFAULT_CHUNK_SIZE = 10_000
DEFAULT_CHECKPOINT_INTERVAL = 1_000_000
DEFAULT_CHUNK_DELAY = 0.01


@dataclass
class SyncResult:
    status: str
    events_processed: int = 0
    timeline_entries_added: int = 0
    last_synced_block: Optional[int] = None
    delegators: int = 0
    failures: Dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status != CONFLICT

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "events_processed": self.events_processed,
            "timeline_entries_added": self.timeline_entries_added,
            "last_synced_block": self.last_synced_block,
            "delegators": self.delegators,
            "failures": self.failures,
            "error": self.error,
        }


class CheckpointedSyncDriver:
    def __init__(
        self,
        store: LedgerStore,
        resolver: EventResolver,
        start_block: int,
        end_block: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
        chunk_delay: float = DEFAULT_CHUNK_DELAY,
        clock=time.time,
        sleep=time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.delegate = resolver.delegate
        self.start_block = start_block
        self.end_block = end_block
        self.chunk_size = chunk_size
        self.checkpoint_interval = checkpoint_interval
        self.chunk_delay = chunk_delay
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    @property
    def tally(self):
        return self.resolver.tally

    def run(self, to_block: Optional[int] = None) -> SyncResult:
        """
        Execute one sync run.

        ``to_block`` caps the target below the configured end block / chain
        head. A held lock returns a ``conflict`` result; any other failure
        returns ``failed`` after lock and progress have been cleaned up.
        """
        if not self.store.acquire_sync_lock():
            self.logger.info("Sync already in progress, not starting another run")
            return SyncResult(status=CONFLICT)

        self.tally.clear()
        try:
            return self._run(to_block)
        except Exception as exc:
            self.logger.error(f"Sync failed: {exc}")
            return SyncResult(status=FAILED, failures=self.tally.to_dict(), error=str(exc))
        finally:
            try:
                self.store.clear_sync_progress()
            finally:
                self.store.release_sync_lock()

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    def _load_base(self) -> Tuple[int, Dict[str, int]]:
        """Resume point and delegator map, after discarding any half-written checkpoint."""
        metadata = self.store.get_metadata()
        last_synced = metadata.last_synced_block if metadata else self.start_block - 1

        last_entry = self.store.get_last_timeline_entry()
        if last_entry is not None and last_entry.block_number > last_synced:
            self.logger.warning(
                f"Timeline extends to block {last_entry.block_number} beyond last synced "
                f"block {last_synced}, truncating leftover entries"
            )
            self.store.truncate_timeline_after(last_synced)

        if metadata is None:
            return self.start_block, {}

        state = self.store.get_current_state()
        if state is not None and state.as_of_block == last_synced:
            return last_synced + 1, balances_from_strings(state.delegators)

        # Current state missing or ahead of metadata: fall back to the timeline
        entry = self.store.get_delegators_at_block(last_synced)
        delegators = balances_from_strings(entry.delegators) if entry else {}
        self.logger.warning(
            f"Current state does not match last synced block {last_synced}, "
            f"rebuilt {len(delegators)} delegators from timeline"
        )
        return last_synced + 1, delegators

    def _target_block(self, to_block: Optional[int]) -> int:
        head = int(
            self.resolver.retry.call(
                self.resolver.source.get_latest_block_number,
                "latest block number",
                logger=self.logger,
            )
        )
        target = head if self.end_block is None else min(self.end_block, head)
        if to_block is not None:
            target = min(target, to_block)
        return target

    def _run(self, to_block: Optional[int]) -> SyncResult:
        from_block, base = self._load_base()
        target = self._target_block(to_block)

        if from_block > target:
            self.logger.info(f"Ledger already synced to block {from_block - 1}")
            return SyncResult(
                status=UP_TO_DATE,
                last_synced_block=from_block - 1,
                delegators=len(base),
                failures=self.tally.to_dict(),
            )

        self.logger.info(
            f"Syncing blocks {from_block}-{target} ({len(base)} delegators tracked)"
        )
        builder = LedgerBuilder(self.delegate, base, logger=self.logger)
        started_at = self.clock()

        interval_base = builder.snapshot()
        interval_events: List[DelegationEvent] = []
        pending_entries: List[TimelineEntry] = []
        last_checkpoint = from_block - 1
        events_processed = 0
        entries_added = 0
        failed_chunks = 0

        self._update_progress(from_block - 1, from_block, target, 0, started_at)

        chunk_start = from_block
        while chunk_start <= target:
            chunk_end = min(chunk_start + self.chunk_size - 1, target)

            try:
                events = self.resolver.resolve_chunk(chunk_start, chunk_end, builder.snapshot())
                entries = builder.apply_events(events)
            except (ConfigurationError, PersistenceError):
                raise
            except Exception as exc:
                failed_chunks += 1
                self.logger.error(f"Chunk {chunk_start}-{chunk_end} failed, rolling back: {exc}")
                self.tally.record_event_query(chunk_start, chunk_end, exc)
                builder.restore(interval_base)
                builder.apply_events(interval_events)
            else:
                interval_events.extend(events)
                pending_entries.extend(entries)
                events_processed += len(events)

            if chunk_end - last_checkpoint >= self.checkpoint_interval or chunk_end == target:
                self._checkpoint(builder, pending_entries, chunk_end)
                entries_added += len(pending_entries)
                pending_entries = []
                interval_events = []
                interval_base = builder.snapshot()
                last_checkpoint = chunk_end

            self._update_progress(chunk_end, from_block, target, events_processed, started_at)

            chunk_start = chunk_end + 1
            if chunk_start <= target and self.chunk_delay:
                self.sleep(self.chunk_delay)

        duration = self.clock() - started_at
        self.logger.info(
            f"Sync complete: blocks {from_block}-{target}, events: {events_processed}, "
            f"timeline entries: {entries_added}, delegators: {len(builder.delegators)}, "
            f"failed chunks: {failed_chunks}, failed queries: {self.tally.total}, "
            f"duration: {duration:.2f}s"
        )
        return SyncResult(
            status=COMPLETED,
            events_processed=events_processed,
            timeline_entries_added=entries_added,
            last_synced_block=target,
            delegators=len(builder.delegators),
            failures=self.tally.to_dict(),
        )

    def _checkpoint(self, builder: LedgerBuilder, entries: List[TimelineEntry], block: int) -> None:
        now = int(self.clock())

        self.store.append_timeline_entries(entries)
        self.store.store_current_state(
            CurrentState(
                as_of_block=block,
                as_of_timestamp=now,
                delegators=balances_to_strings(builder.delegators),
            )
        )

        index = self.store.get_timeline_index()
        self.store.store_metadata(
            Metadata(
                last_synced_block=block,
                last_sync_timestamp=now,
                total_voting_power=str(builder.total_voting_power),
                total_delegators=len(builder.delegators),
                total_timeline_entries=index.total_entries if index else 0,
                timeline_partitions=len(index.partitions) if index else 0,
                delegate_address=self.delegate,
            )
        )
        self.logger.info(
            f"Checkpoint at block {block}: {len(entries)} new timeline entries, "
            f"{len(builder.delegators)} delegators"
        )

    def _update_progress(
        self, current_block: int, from_block: int, target: int, events: int, started_at: float
    ) -> None:
        span = target - from_block + 1
        done = max(0, current_block - from_block + 1)
        percent = min(100.0, done / span * 100) if span > 0 else 100.0
        elapsed = self.clock() - started_at
        remaining = elapsed / percent * (100 - percent) if percent > 0 else None

        self.store.update_sync_progress(
            SyncProgress(
                is_active=True,
                current_block=current_block,
                target_block=target,
                start_block=from_block,
                events_processed=events,
                percent_complete=round(percent, 2),
                started_at=started_at,
                estimated_time_remaining=remaining,
            )
        )
        self.store.renew_sync_lock()
