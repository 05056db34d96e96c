# services/failures.py
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class FailureTally:
    """Reads and range queries that failed after retries during one run."""

    event_queries: List[Dict] = field(default_factory=list)
    balance_queries: List[Dict] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_event_query(self, from_block: int, to_block: int, error) -> None:
        with self._lock:
            self.event_queries.append(
                {
                    "from_block": from_block,
                    "to_block": to_block,
                    "timestamp": int(time.time()),
                    "error": str(error),
                }
            )

    def record_balance_query(self, address: str, block: int, error) -> None:
        with self._lock:
            self.balance_queries.append(
                {
                    "address": address,
                    "block": block,
                    "timestamp": int(time.time()),
                    "error": str(error),
                }
            )

    @property
    def total(self) -> int:
        return len(self.event_queries) + len(self.balance_queries)

    def clear(self) -> None:
        with self._lock:
            self.event_queries.clear()
            self.balance_queries.clear()

    def to_dict(self) -> dict:
        return {
            "event_queries": list(self.event_queries),
            "balance_queries": list(self.balance_queries),
        }
