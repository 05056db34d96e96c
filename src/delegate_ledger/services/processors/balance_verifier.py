# services/processors/balance_verifier.py
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from delegate_ledger.errors import (
    LedgerStateMissingError,
    NonRetryableProviderError,
    TransientProviderError,
)
from delegate_ledger.models import (
    CurrentState,
    Discrepancy,
    TimelineEntry,
    VerificationResult,
    balances_from_strings,
    balances_to_strings,
)
from delegate_ledger.services.batch_reader import read_in_batches
from delegate_ledger.services.log_source import BALANCE_OF, DELEGATES, LogSource
from delegate_ledger.services.retry import RetryPolicy
from delegate_ledger.storage.ledger_store import LedgerStore
from delegate_ledger.utils.calculations import total_voting_power

CHECK = "check"
FIX = "fix"
MODES = (CHECK, FIX)

COMPLETED = "completed"
CONFLICT = "conflict"


@dataclass
class VerificationOutcome:
    status: str
    mode: str
    result: Optional[VerificationResult] = None
    updated: bool = False
    fixes: Optional[Dict] = None
    actions: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        payload = {"status": self.status, "mode": self.mode}
        if self.result is None:
            return payload
        payload.update(self.result.to_dict())
        payload["discrepancies"] = [
            dict(d.to_dict(), action=self.actions.get(d.address, "none"))
            for d in self.result.discrepancies
        ]
        payload["updated"] = self.updated
        payload["fixes"] = self.fixes
        return payload


class BalanceVerifier:
    """
    Compare the stored delegator balances with on-chain truth and optionally repair them.

    Reads happen at the ledger's own frontier (the latest block it has synced
    to, capped at the chain head) so stored and actual values describe the
    same block and a correction entry never precedes persisted timeline data.
    """

    def __init__(
        self,
        store: LedgerStore,
        log_source: LogSource,
        token_address: str,
        delegate_address: str,
        retry: Optional[RetryPolicy] = None,
        batch_size: int = 5,
        batch_delay: float = 0.2,
        clock=time.time,
        sleep=time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.source = log_source
        self.token = token_address.lower()
        self.delegate = delegate_address.lower()
        self.retry = retry or RetryPolicy()
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def verify(self, mode: str = CHECK, threshold: int = 0) -> VerificationOutcome:
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
        threshold = int(threshold)
        if threshold < 0:
            raise ValueError("threshold must be non-negative")

        if not self.store.acquire_sync_lock():
            self.logger.info("Sync or verification already in progress")
            return VerificationOutcome(status=CONFLICT, mode=mode)

        try:
            return self._verify(mode, threshold)
        finally:
            self.store.release_sync_lock()

    def _read_effective_balance(self, address: str, block: int) -> Tuple[int, str]:
        balance = self.retry.call(
            lambda: self.source.read_contract_at(self.token, BALANCE_OF, [address], block),
            f"balanceOf {address}@{block}",
            logger=self.logger,
        )
        delegate_to = self.retry.call(
            lambda: self.source.read_contract_at(self.token, DELEGATES, [address], block),
            f"delegates {address}@{block}",
            logger=self.logger,
        )
        delegate_to = str(delegate_to).lower()
        effective = int(balance) if delegate_to == self.delegate else 0
        return effective, delegate_to

    def _verify(self, mode: str, threshold: int) -> VerificationOutcome:
        state = self.store.get_current_state()
        metadata = self.store.get_metadata()
        if state is None or metadata is None:
            raise LedgerStateMissingError("No current state found. Run sync first.")

        head = int(
            self.retry.call(self.source.get_latest_block_number, "latest block number", logger=self.logger)
        )
        block = min(head, metadata.last_synced_block)
        stored = balances_from_strings(state.delegators)
        addresses = sorted(stored)

        self.logger.info(
            f"Verifying {len(addresses)} delegators at block {block} in {mode} mode "
            f"(threshold {threshold})"
        )

        results = read_in_batches(
            addresses,
            lambda address: self._read_effective_balance(address, block),
            batch_size=self.batch_size,
            batch_delay=self.batch_delay,
            sleep=self.sleep,
        )

        verified = 0
        failed = 0
        discrepancies: List[Discrepancy] = []
        for address in addresses:
            outcome = results[address]
            if isinstance(outcome, Exception):
                if not isinstance(outcome, (TransientProviderError, NonRetryableProviderError)):
                    raise outcome
                failed += 1
                self.logger.warning(f"Failed to verify {address}: {outcome}")
                continue

            effective, delegate_to = outcome
            difference = effective - stored[address]
            if difference != 0 and abs(difference) > threshold:
                discrepancies.append(
                    Discrepancy(
                        address=address,
                        stored=str(stored[address]),
                        actual=str(effective),
                        difference=str(difference),
                    )
                )
                self.logger.info(
                    f"Discrepancy for {address}: stored {stored[address]}, actual {effective}, "
                    f"still delegating: {delegate_to == self.delegate}"
                )
            verified += 1

        result = VerificationResult(
            verified=verified,
            discrepancies=discrepancies,
            failed=failed,
            timestamp=int(self.clock()),
            verified_at_block=block,
        )
        self.logger.info(
            f"Verification complete. Verified: {verified}, failed: {failed}, "
            f"discrepancies: {len(discrepancies)}"
        )

        outcome = VerificationOutcome(status=COMPLETED, mode=mode, result=result)
        if mode == FIX:
            outcome.actions = {
                d.address: "balance_set_to_zero" if int(d.actual) == 0 else "balance_corrected"
                for d in discrepancies
            }
            if discrepancies:
                outcome.fixes = self._apply_fixes(stored, metadata, result)
                outcome.updated = True
        return outcome

    def _apply_fixes(self, stored: Dict[str, int], metadata, result: VerificationResult) -> Dict:
        updated = dict(stored)
        for discrepancy in result.discrepancies:
            # Zero is kept: the address is still listed as a delegator
            updated[discrepancy.address] = int(discrepancy.actual)

        total = total_voting_power(updated)
        delegators = balances_to_strings(updated)
        block = result.verified_at_block
        timestamp = int(
            self.retry.call(
                lambda: self.source.get_block_timestamp(block),
                f"block timestamp {block}",
                logger=self.logger,
            )
        )

        self.store.append_timeline_entries(
            [
                TimelineEntry(
                    block_number=block,
                    timestamp=timestamp,
                    total_voting_power=str(total),
                    delegators=delegators,
                )
            ]
        )
        self.store.store_current_state(
            CurrentState(as_of_block=block, as_of_timestamp=timestamp, delegators=delegators)
        )

        index = self.store.get_timeline_index()
        before_power = metadata.total_voting_power
        before_count = metadata.total_delegators
        metadata.total_voting_power = str(total)
        metadata.total_delegators = len(updated)
        metadata.last_sync_timestamp = result.timestamp
        metadata.total_timeline_entries = index.total_entries if index else 0
        metadata.timeline_partitions = len(index.partitions) if index else 0
        self.store.store_metadata(metadata)

        self.logger.info(
            f"Fixes applied: {len(result.discrepancies)} balances corrected, "
            f"total voting power {before_power} -> {total}"
        )
        return {
            "updated": [d.address for d in result.discrepancies],
            "total_voting_power_before": before_power,
            "total_voting_power_after": str(total),
            "delegator_count_before": before_count,
            "delegator_count_after": len(updated),
        }
