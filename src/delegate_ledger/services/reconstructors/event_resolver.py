# services/reconstructors/event_resolver.py
"""
Turn one chunk of raw logs into ordered DelegationEvents.

The resolver fetches the delegate's DelegateChanged / DelegateVotesChanged
logs plus Transfer logs of watched delegators, classifies them and reads the
point-in-time balances each event needs. A scratch LedgerBuilder follows the
resolved events so that reads depending on "who is tracked right now" see the
same state the real builder will see when the events are applied.
"""
import logging
import time
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

from delegate_ledger.errors import NonRetryableProviderError, TransientProviderError
from delegate_ledger.models import (
    BALANCE_CHANGED,
    DELEGATE_CHANGED,
    TRANSFER,
    DelegationEvent,
)
from delegate_ledger.services.batch_reader import read_in_batches
from delegate_ledger.services.event_classifier import (
    classify_logs,
    group_by_transaction,
    unique_logs,
)
from delegate_ledger.services.failures import FailureTally
from delegate_ledger.services.log_source import (
    BALANCE_OF,
    DELEGATE_CHANGED_TOPIC,
    DELEGATE_VOTES_CHANGED_TOPIC,
    TRANSFER_TOPIC,
    LogSource,
    RawLog,
)
from delegate_ledger.services.reconstructors.ledger_builder import LedgerBuilder
from delegate_ledger.services.retry import RetryPolicy
from delegate_ledger.utils.normalizers import (
    address_to_topic,
    decode_words,
    topic_to_address,
)

PROVIDER_ERRORS = (TransientProviderError, NonRetryableProviderError)

_scratch_logger = logging.getLogger("delegate_ledger.resolver.scratch")
_scratch_logger.addHandler(logging.NullHandler())
_scratch_logger.propagate = False


class EventResolver:
    def __init__(
        self,
        log_source: LogSource,
        token_address: str,
        delegate_address: str,
        retry: Optional[RetryPolicy] = None,
        tally: Optional[FailureTally] = None,
        balance_batch_size: int = 5,
        balance_batch_delay: float = 0.2,
        transfer_batch_size: int = 10,
        transfer_batch_delay: float = 0.5,
        sleep=time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.source = log_source
        self.token = token_address.lower()
        self.delegate = delegate_address.lower()
        self.delegate_topic = address_to_topic(self.delegate)
        self.retry = retry or RetryPolicy()
        self.tally = tally if tally is not None else FailureTally()
        self.balance_batch_size = balance_batch_size
        self.balance_batch_delay = balance_batch_delay
        self.transfer_batch_size = transfer_batch_size
        self.transfer_batch_delay = transfer_batch_delay
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _get_logs(self, topics, from_block: int, to_block: int, label: str) -> List[RawLog]:
        return self.retry.call_get_logs(
            lambda: self.source.get_logs(self.token, topics, from_block, to_block),
            f"getLogs {label} {from_block}-{to_block}",
            logger=self.logger,
        )

    def fetch_delegation_logs(
        self, from_block: int, to_block: int
    ) -> Tuple[List[RawLog], List[RawLog]]:
        """Relationship-change logs (to or from the delegate) and weight-change logs."""
        to_us = self._get_logs(
            [DELEGATE_CHANGED_TOPIC, None, None, self.delegate_topic],
            from_block,
            to_block,
            "DelegateChanged(to)",
        )
        from_us = self._get_logs(
            [DELEGATE_CHANGED_TOPIC, None, self.delegate_topic],
            from_block,
            to_block,
            "DelegateChanged(from)",
        )
        votes = self._get_logs(
            [DELEGATE_VOTES_CHANGED_TOPIC, self.delegate_topic],
            from_block,
            to_block,
            "DelegateVotesChanged",
        )
        return unique_logs(to_us + from_us), votes

    def fetch_transfer_logs(
        self, addresses: Sequence[str], from_block: int, to_block: int
    ) -> List[RawLog]:
        """Transfers into or out of any of ``addresses``; a failed batch is tallied and skipped."""
        logs: List[RawLog] = []
        for start in range(0, len(addresses), self.transfer_batch_size):
            batch = addresses[start : start + self.transfer_batch_size]
            topics = [address_to_topic(addr) for addr in batch]
            try:
                logs.extend(
                    self._get_logs([TRANSFER_TOPIC, topics], from_block, to_block, "Transfer(out)")
                )
                logs.extend(
                    self._get_logs(
                        [TRANSFER_TOPIC, None, topics], from_block, to_block, "Transfer(in)"
                    )
                )
            except PROVIDER_ERRORS as exc:
                self.logger.error(
                    f"Transfer query failed for {len(batch)} delegators "
                    f"in {from_block}-{to_block}: {exc}"
                )
                self.tally.record_event_query(from_block, to_block, exc)

            if start + self.transfer_batch_size < len(addresses) and self.transfer_batch_delay:
                self.sleep(self.transfer_batch_delay)

        return sorted(unique_logs(logs), key=RawLog.sort_key)

    def balance_at(self, address: str, block_number: int) -> int:
        return int(
            self.retry.call(
                lambda: self.source.read_contract_at(
                    self.token, BALANCE_OF, [address], block_number
                ),
                f"balanceOf {address}@{block_number}",
                logger=self.logger,
            )
        )

    def _try_balance(self, address: str, block_number: int) -> Optional[int]:
        try:
            return self.balance_at(address, block_number)
        except PROVIDER_ERRORS as exc:
            self.logger.warning(f"Balance query failed for {address} at block {block_number}: {exc}")
            self.tally.record_balance_query(address, block_number, exc)
            return None

    def _timestamp(self, block_number: int) -> int:
        return int(
            self.retry.call(
                lambda: self.source.get_block_timestamp(block_number),
                f"block timestamp {block_number}",
                logger=self.logger,
            )
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_chunk(
        self, from_block: int, to_block: int, delegators: Dict[str, int]
    ) -> List[DelegationEvent]:
        """
        Resolve all events of [from_block, to_block] starting from ``delegators``.

        A failed range query is tallied and yields no events for the chunk.
        """
        try:
            relationship_logs, weight_logs = self.fetch_delegation_logs(from_block, to_block)
        except PROVIDER_ERRORS as exc:
            self.logger.error(f"Event query failed for blocks {from_block}-{to_block}: {exc}")
            self.tally.record_event_query(from_block, to_block, exc)
            return []

        classified = classify_logs(relationship_logs, weight_logs)

        joining = {
            topic_to_address(item.log.topics[1])
            for item in classified
            if item.kind == DELEGATE_CHANGED
            and topic_to_address(item.log.topics[3]) == self.delegate
        }
        watched = sorted(set(delegators) | joining)
        transfer_logs = self.fetch_transfer_logs(watched, from_block, to_block) if watched else []

        if not classified and not transfer_logs:
            return []

        weight_by_tx = group_by_transaction(weight_logs)
        relationship_count = Counter(
            item.log.transaction_hash for item in classified if item.kind == DELEGATE_CHANGED
        )
        transfer_sides_by_tx: Dict[str, set] = {}
        for log in transfer_logs:
            transfer_sides_by_tx.setdefault(log.transaction_hash, set()).update(
                self._transfer_sides(log)
            )

        items = [(item.kind, item.log) for item in classified]
        items.extend((TRANSFER, log) for log in transfer_logs)
        items.sort(key=lambda item: item[1].sort_key())

        scratch = LedgerBuilder(self.delegate, delegators, logger=_scratch_logger)
        events: List[DelegationEvent] = []

        for kind, log in items:
            if kind == TRANSFER:
                resolved = self._resolve_transfer(log, scratch)
            elif kind == DELEGATE_CHANGED:
                resolved = self._resolve_delegate_changed(log, relationship_count, weight_by_tx)
            else:
                sides = transfer_sides_by_tx.get(log.transaction_hash, set())
                if any(scratch.is_tracked(addr) for addr in sides):
                    # The watched transfer in this tx already carries the change
                    continue
                resolved = self._resolve_votes_changed(log, scratch)

            for event in resolved:
                scratch.apply_event(event)
                events.append(event)

        return events

    def _transfer_sides(self, log: RawLog) -> List[str]:
        if len(log.topics) < 3:
            return []
        sides = [topic_to_address(log.topics[1]), topic_to_address(log.topics[2])]
        return list(dict.fromkeys(sides))

    def _resolve_transfer(self, log: RawLog, scratch: LedgerBuilder) -> List[DelegationEvent]:
        events = []
        for address in self._transfer_sides(log):
            if not scratch.is_tracked(address):
                continue
            balance = self._try_balance(address, log.block_number)
            if balance is None:
                self.logger.warning(
                    f"Skipping transfer at block {log.block_number} for {address}: balance unavailable"
                )
                continue
            events.append(
                DelegationEvent(
                    from_address=address,
                    to_address=self.delegate,
                    previous_balance=scratch.delegators[address],
                    new_balance=balance,
                    block_number=log.block_number,
                    timestamp=self._timestamp(log.block_number),
                    event_type=BALANCE_CHANGED,
                    log_index=log.log_index,
                    delegator=address,
                )
            )
        return events

    def _weight_delta(
        self, log: RawLog, relationship_count: Counter, weight_by_tx: Dict[str, List[RawLog]]
    ) -> Optional[int]:
        """Delegated amount from the same tx's weight log, when it is unambiguous."""
        weights = weight_by_tx.get(log.transaction_hash)
        if relationship_count[log.transaction_hash] != 1 or not weights:
            return None
        try:
            previous, new = decode_words(weights[0].data, 2)
        except ValueError:
            return None
        return abs(new - previous)

    def _resolve_delegate_changed(
        self, log: RawLog, relationship_count: Counter, weight_by_tx: Dict[str, List[RawLog]]
    ) -> List[DelegationEvent]:
        if len(log.topics) < 4:
            self.logger.warning(f"Malformed DelegateChanged log at block {log.block_number}, skipping")
            return []

        delegator = topic_to_address(log.topics[1])
        from_delegate = topic_to_address(log.topics[2])
        to_delegate = topic_to_address(log.topics[3])
        block = log.block_number

        try:
            balance = self.balance_at(delegator, block)
        except PROVIDER_ERRORS as exc:
            balance = self._weight_delta(log, relationship_count, weight_by_tx)
            if balance is not None:
                self.logger.warning(
                    f"Balance query failed for {delegator} at block {block}, "
                    f"using DelegateVotesChanged delta {balance}"
                )
            else:
                self.tally.record_balance_query(delegator, block, exc)

        if to_delegate == self.delegate:
            if balance is None:
                self.logger.warning(
                    f"Skipping DelegateChanged at block {block} - balance query failed for {delegator}"
                )
                return []
            return [
                DelegationEvent(
                    from_address=delegator,
                    to_address=self.delegate,
                    previous_balance=0,
                    new_balance=balance,
                    block_number=block,
                    timestamp=self._timestamp(block),
                    event_type=DELEGATE_CHANGED,
                    log_index=log.log_index,
                    delegator=delegator,
                )
            ]

        if from_delegate == self.delegate:
            # Removal is by address, so an unknown balance does not block it
            return [
                DelegationEvent(
                    from_address=self.delegate,
                    to_address=to_delegate,
                    previous_balance=balance or 0,
                    new_balance=0,
                    block_number=block,
                    timestamp=self._timestamp(block),
                    event_type=DELEGATE_CHANGED,
                    log_index=log.log_index,
                    delegator=delegator,
                )
            ]

        return []

    def _resolve_votes_changed(self, log: RawLog, scratch: LedgerBuilder) -> List[DelegationEvent]:
        tracked = sorted(scratch.delegators)
        if not tracked:
            return []

        block = log.block_number
        results = read_in_batches(
            tracked,
            lambda address: self.balance_at(address, block),
            batch_size=self.balance_batch_size,
            batch_delay=self.balance_batch_delay,
            sleep=self.sleep,
        )

        events = []
        failed = 0
        for address in tracked:
            balance = results[address]
            if isinstance(balance, Exception):
                if not isinstance(balance, PROVIDER_ERRORS):
                    raise balance
                failed += 1
                self.tally.record_balance_query(address, block, balance)
                continue
            previous = scratch.delegators[address]
            if balance == previous:
                continue
            events.append(
                DelegationEvent(
                    from_address=address,
                    to_address=self.delegate,
                    previous_balance=previous,
                    new_balance=balance,
                    block_number=block,
                    timestamp=self._timestamp(block),
                    event_type=BALANCE_CHANGED,
                    log_index=log.log_index,
                    delegator=address,
                )
            )

        if failed:
            self.logger.warning(
                f"{failed} balance queries failed at block {block}, keeping previous balances"
            )
        return events
