# services/event_classifier.py
"""
Deduplicate relationship-change and weight-change logs of one block range.

A delegation change on an ERC20Votes token always fires DelegateVotesChanged
in the same transaction. Within one transaction the DelegateChanged logs win
and the accompanying weight logs are discarded; transactions with only weight
logs become pure balance (VOTES_CHANGED) candidates.
"""
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List

from delegate_ledger.models import DELEGATE_CHANGED, VOTES_CHANGED
from delegate_ledger.services.log_source import RawLog


@dataclass(frozen=True)
class ClassifiedLog:
    kind: str
    log: RawLog

    def sort_key(self):
        return self.log.sort_key()


def unique_logs(logs: Iterable[RawLog]) -> List[RawLog]:
    """Drop logs returned twice by overlapping queries (same tx hash + log index)."""
    seen = OrderedDict()
    for log in logs:
        seen.setdefault((log.transaction_hash, log.log_index), log)
    return list(seen.values())


def group_by_transaction(logs: Iterable[RawLog]) -> Dict[str, List[RawLog]]:
    grouped: Dict[str, List[RawLog]] = {}
    for log in logs:
        grouped.setdefault(log.transaction_hash, []).append(log)
    return grouped


def classify_logs(
    relationship_logs: Iterable[RawLog], weight_logs: Iterable[RawLog]
) -> List[ClassifiedLog]:
    by_tx: Dict[str, Dict[str, List[RawLog]]] = OrderedDict()

    for log in unique_logs(relationship_logs):
        by_tx.setdefault(log.transaction_hash, {"changed": [], "votes": []})["changed"].append(log)
    for log in unique_logs(weight_logs):
        by_tx.setdefault(log.transaction_hash, {"changed": [], "votes": []})["votes"].append(log)

    classified: List[ClassifiedLog] = []
    for events in by_tx.values():
        if events["changed"]:
            classified.extend(ClassifiedLog(DELEGATE_CHANGED, log) for log in events["changed"])
        else:
            classified.extend(ClassifiedLog(VOTES_CHANGED, log) for log in events["votes"])

    # Replaying out of (block, logIndex) order corrupts the running balances
    classified.sort(key=ClassifiedLog.sort_key)
    return classified
