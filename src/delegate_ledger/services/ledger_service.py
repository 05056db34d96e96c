# services/ledger_service.py
"""
Operations exposed to the outer layers (dagster assets, HTTP handlers).

Mutating operations (sync, truncate, verify) are gated by the sync secret.
"""
import hmac
import logging
import time
from typing import Dict, List, Optional

from delegate_ledger.errors import LedgerStateMissingError, UnauthorizedError
from delegate_ledger.models import CurrentState, Metadata, SyncProgress, TimelineEntry
from delegate_ledger.services.failures import FailureTally
from delegate_ledger.services.log_source import LogSource
from delegate_ledger.services.processors.balance_verifier import (
    CHECK,
    BalanceVerifier,
    VerificationOutcome,
)
from delegate_ledger.services.processors.sync_driver import (
    CheckpointedSyncDriver,
    SyncResult,
)
from delegate_ledger.services.reconstructors.event_resolver import EventResolver
from delegate_ledger.services.retry import RetryPolicy
from delegate_ledger.storage.ledger_store import LedgerStore
from delegate_ledger.utils.calculations import compute_concentration_metrics, to_token_units

STALE_BLOCKS_BEHIND = 100_000


class LedgerService:
    def __init__(
        self,
        store: LedgerStore,
        log_source: LogSource,
        driver: CheckpointedSyncDriver,
        verifier: BalanceVerifier,
        sync_secret: str,
        retry: Optional[RetryPolicy] = None,
        clock=time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.source = log_source
        self.driver = driver
        self.verifier = verifier
        self.sync_secret = sync_secret
        self.retry = retry or RetryPolicy()
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def _authorize(self, token: Optional[str]) -> None:
        if token is None or not hmac.compare_digest(str(token), str(self.sync_secret)):
            raise UnauthorizedError("Unauthorized")

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def start_sync(self, token: Optional[str], to_block: Optional[int] = None) -> SyncResult:
        self._authorize(token)
        return self.driver.run(to_block=to_block)

    def truncate_after(self, max_block: int, token: Optional[str]) -> Dict:
        """
        Drop timeline entries after ``max_block`` and rewind the ledger to it.

        A block past the last synced block is clamped to it; the block actually
        used is returned as ``last_block_number``.

        Holds the sync lock for the duration so it cannot interleave with a
        sync or verification run.
        """
        self._authorize(token)
        if max_block < 0:
            raise ValueError("max_block must be non-negative")

        if not self.store.acquire_sync_lock():
            return {"status": "conflict"}
        try:
            result = self.store.truncate_after(max_block)
        finally:
            self.store.release_sync_lock()

        self.logger.info(
            f"Truncated after block {result['last_block_number']}: {result['entries_removed']} entries, "
            f"{result['partitions_removed']} partitions removed"
        )
        return {"status": "completed", **result}

    def verify(
        self, mode: str = CHECK, threshold: int = 0, token: Optional[str] = None
    ) -> VerificationOutcome:
        self._authorize(token)
        if self.store.get_current_state() is None or self.store.get_metadata() is None:
            raise LedgerStateMissingError("No current state found. Run sync first.")
        return self.verifier.verify(mode=mode, threshold=threshold)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_progress(self) -> SyncProgress:
        return self.store.get_sync_progress() or SyncProgress.idle()

    def get_current_state(self) -> Optional[CurrentState]:
        return self.store.get_current_state()

    def get_metadata(self) -> Optional[Metadata]:
        return self.store.get_metadata()

    def get_timeline(
        self, from_block: Optional[int] = None, to_block: Optional[int] = None
    ) -> List[TimelineEntry]:
        return self.store.get_timeline(from_block, to_block)

    def get_delegators_at_block(self, block_number: int) -> Dict[str, str]:
        entry = self.store.get_delegators_at_block(block_number)
        return dict(entry.delegators) if entry else {}

    def diagnostics(self) -> Dict:
        metadata = self.store.get_metadata()
        state = self.store.get_current_state()
        progress = self.store.get_sync_progress()

        head = int(
            self.retry.call(self.source.get_latest_block_number, "latest block number", logger=self.logger)
        )
        blocks_behind = head - metadata.last_synced_block if metadata else None
        hours_since = (
            round((self.clock() - metadata.last_sync_timestamp) / 3600, 2) if metadata else None
        )

        if progress is not None and progress.is_active:
            health = "syncing"
        elif metadata is None:
            health = "unknown"
        elif blocks_behind is not None and blocks_behind > STALE_BLOCKS_BEHIND:
            health = "stale"
        else:
            health = "healthy"

        total_power = metadata.total_voting_power if metadata else "0"
        return {
            "sync": {
                "last_synced_block": metadata.last_synced_block if metadata else None,
                "current_blockchain_block": head,
                "blocks_behind": blocks_behind,
                "last_sync_timestamp": metadata.last_sync_timestamp if metadata else None,
                "hours_since_last_sync": hours_since,
            },
            "state": {
                "total_delegators": metadata.total_delegators if metadata else 0,
                "total_voting_power": total_power,
                "total_voting_power_tokens": f"{to_token_units(int(total_power)):,.2f}",
                "total_timeline_entries": metadata.total_timeline_entries if metadata else 0,
                "as_of_block": state.as_of_block if state else None,
                "as_of_timestamp": state.as_of_timestamp if state else None,
            },
            "sync_progress": progress.to_dict() if progress else None,
            "health": health,
            "concentration": compute_concentration_metrics(state.delegators) if state else {},
            "timestamp": int(self.clock()),
        }


def build_ledger_service(
    store: LedgerStore,
    log_source: LogSource,
    settings,
    logger: Optional[logging.Logger] = None,
    sleep=time.sleep,
) -> LedgerService:
    """
    Wire resolver, driver and verifier from validated settings.

    ``settings`` is a LedgerConfigResource (or anything with the same fields).
    """
    logger = logger or logging.getLogger(__name__)
    retry = RetryPolicy(
        max_retries=settings.max_retries,
        initial_delay=settings.retry_initial_delay_seconds,
        get_logs_initial_delay=settings.retry_initial_delay_seconds * 2,
        sleep=sleep,
    )
    resolver = EventResolver(
        log_source,
        token_address=settings.token_address,
        delegate_address=settings.delegate_address,
        retry=retry,
        tally=FailureTally(),
        balance_batch_size=settings.verify_batch_size,
        balance_batch_delay=settings.batch_delay_seconds,
        transfer_batch_size=settings.transfer_batch_size,
        transfer_batch_delay=settings.transfer_batch_delay_seconds,
        sleep=sleep,
        logger=logger,
    )
    driver = CheckpointedSyncDriver(
        store,
        resolver,
        start_block=settings.start_block,
        end_block=settings.resolved_end_block(),
        chunk_size=settings.chunk_size,
        checkpoint_interval=settings.checkpoint_interval,
        chunk_delay=settings.chunk_delay_seconds,
        sleep=sleep,
        logger=logger,
    )
    verifier = BalanceVerifier(
        store,
        log_source,
        token_address=settings.token_address,
        delegate_address=settings.delegate_address,
        retry=retry,
        batch_size=settings.verify_batch_size,
        batch_delay=settings.batch_delay_seconds,
        sleep=sleep,
        logger=logger,
    )
    return LedgerService(
        store,
        log_source,
        driver,
        verifier,
        sync_secret=settings.sync_secret,
        retry=retry,
        logger=logger,
    )
