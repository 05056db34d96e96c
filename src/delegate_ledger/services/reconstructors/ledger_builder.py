# services/reconstructors/ledger_builder.py
import logging
from itertools import groupby
from typing import Dict, Iterable, List, Optional

from delegate_ledger.models import (
    BALANCE_CHANGED,
    DELEGATE_CHANGED,
    DelegationEvent,
    TimelineEntry,
    balances_to_strings,
)
from delegate_ledger.utils.calculations import total_voting_power


class LedgerBuilder:
    """
    Running ``delegator -> balance`` mapping for one tracked delegate.

    Events are applied in (block, logIndex) order and every block whose
    mapping changed yields exactly one TimelineEntry. Zero balances are kept:
    a delegator with no tokens is still delegating.
    """

    def __init__(
        self,
        delegate_address: str,
        initial_delegators: Optional[Dict[str, int]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.delegate = delegate_address.lower()
        self.delegators: Dict[str, int] = {
            addr.lower(): int(balance) for addr, balance in (initial_delegators or {}).items()
        }
        self.logger = logger or logging.getLogger(__name__)
        self.skipped_events = 0

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, int]:
        return dict(self.delegators)

    def restore(self, delegators: Dict[str, int]) -> None:
        self.delegators = dict(delegators)

    def is_tracked(self, address: str) -> bool:
        return address.lower() in self.delegators

    @property
    def total_voting_power(self) -> int:
        return total_voting_power(self.delegators)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_event(self, event: DelegationEvent) -> None:
        if event.event_type == DELEGATE_CHANGED:
            self._apply_delegate_changed(event)
        elif event.event_type == BALANCE_CHANGED:
            address = (event.delegator or event.from_address).lower()
            if address in self.delegators:
                self.delegators[address] = event.new_balance
        else:
            self.logger.debug(f"Ignoring unresolved {event.event_type} at block {event.block_number}")

    def _apply_delegate_changed(self, event: DelegationEvent) -> None:
        from_address = event.from_address.lower()
        to_address = event.to_address.lower()

        if to_address == self.delegate:
            self.delegators[from_address] = event.new_balance
            return

        if from_address == self.delegate:
            self._remove_undelegated(event)
            return

        # Delegated from someone else to someone else; only matters if tracked
        self.delegators.pop(from_address, None)

    def _remove_undelegated(self, event: DelegationEvent) -> None:
        if event.delegator:
            delegator = event.delegator.lower()
            if self.delegators.pop(delegator, None) is None:
                self.skipped_events += 1
                self.logger.warning(
                    f"Undelegation by untracked address {delegator} at block {event.block_number}, skipping"
                )
            return

        # Without the delegator address the only handle is the balance
        for address, balance in self.delegators.items():
            if balance == event.previous_balance:
                del self.delegators[address]
                return

        self.skipped_events += 1
        self.logger.warning(
            f"Undelegation at block {event.block_number} with previous balance "
            f"{event.previous_balance} matches no tracked delegator, skipping"
        )

    def apply_events(self, events: Iterable[DelegationEvent]) -> List[TimelineEntry]:
        """Apply events block by block and return one entry per changed block."""
        ordered = sorted(events, key=DelegationEvent.sort_key)
        entries: List[TimelineEntry] = []

        for block_number, block_events in groupby(ordered, key=lambda e: e.block_number):
            block_events = list(block_events)
            before = dict(self.delegators)
            for event in block_events:
                self.apply_event(event)
            if self.delegators != before:
                entries.append(self.timeline_entry(block_number, block_events[0].timestamp))

        return entries

    def timeline_entry(self, block_number: int, timestamp: int) -> TimelineEntry:
        return TimelineEntry(
            block_number=block_number,
            timestamp=timestamp,
            total_voting_power=str(self.total_voting_power),
            delegators=balances_to_strings(self.delegators),
        )


def replay_timeline(entries: Iterable[TimelineEntry]) -> Dict[str, str]:
    """Delegator map implied by replaying a persisted timeline from empty."""
    delegators: Dict[str, str] = {}
    for entry in entries:
        delegators = dict(entry.delegators)
    return delegators
