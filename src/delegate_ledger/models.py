# delegate_ledger/models.py
"""
Record types for the delegate voting-power ledger.

Every persisted record round-trips through ``to_dict`` / ``from_dict`` using
the camelCase keys of the stored JSON documents. Balances are ``int`` in
memory and decimal strings on disk.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

DELEGATE_CHANGED = "DELEGATE_CHANGED"
BALANCE_CHANGED = "BALANCE_CHANGED"
VOTES_CHANGED = "VOTES_CHANGED"
TRANSFER = "TRANSFER"


def balances_to_strings(delegators: Dict[str, int]) -> Dict[str, str]:
    return {addr: str(balance) for addr, balance in delegators.items()}


def balances_from_strings(delegators: Dict[str, str]) -> Dict[str, int]:
    return {addr.lower(): int(balance) for addr, balance in delegators.items()}


@dataclass(frozen=True)
class DelegationEvent:
    """A single state-changing occurrence at one block."""

    from_address: str
    to_address: str
    previous_balance: int
    new_balance: int
    block_number: int
    timestamp: int
    event_type: str
    log_index: int = 0
    delegator: Optional[str] = None

    def sort_key(self):
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class TimelineEntry:
    block_number: int
    timestamp: int
    total_voting_power: str
    delegators: Dict[str, str]

    def to_dict(self) -> dict:
        return {
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "totalVotingPower": self.total_voting_power,
            "delegators": dict(self.delegators),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimelineEntry":
        return cls(
            block_number=int(data["blockNumber"]),
            timestamp=int(data["timestamp"]),
            total_voting_power=str(data["totalVotingPower"]),
            delegators={k.lower(): str(v) for k, v in data["delegators"].items()},
        )


@dataclass
class CurrentState:
    as_of_block: int
    as_of_timestamp: int
    delegators: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "asOfBlock": self.as_of_block,
            "asOfTimestamp": self.as_of_timestamp,
            "delegators": dict(self.delegators),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CurrentState":
        return cls(
            as_of_block=int(data["asOfBlock"]),
            as_of_timestamp=int(data["asOfTimestamp"]),
            delegators={k.lower(): str(v) for k, v in data["delegators"].items()},
        )


@dataclass
class Metadata:
    last_synced_block: int
    last_sync_timestamp: int
    total_voting_power: str
    total_delegators: int
    total_timeline_entries: int
    timeline_partitions: int
    delegate_address: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "lastSyncedBlock": self.last_synced_block,
            "lastSyncTimestamp": self.last_sync_timestamp,
            "totalVotingPower": self.total_voting_power,
            "totalDelegators": self.total_delegators,
            "totalTimelineEntries": self.total_timeline_entries,
            "timelinePartitions": self.timeline_partitions,
            "delegateAddress": self.delegate_address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Metadata":
        return cls(
            last_synced_block=int(data["lastSyncedBlock"]),
            last_sync_timestamp=int(data["lastSyncTimestamp"]),
            total_voting_power=str(data["totalVotingPower"]),
            total_delegators=int(data["totalDelegators"]),
            total_timeline_entries=int(data["totalTimelineEntries"]),
            timeline_partitions=int(data["timelinePartitions"]),
            delegate_address=data.get("delegateAddress"),
        )


@dataclass
class PartitionInfo:
    id: int
    start_block: int
    end_block: int
    entry_count: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "startBlock": self.start_block,
            "endBlock": self.end_block,
            "entryCount": self.entry_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PartitionInfo":
        return cls(
            id=int(data["id"]),
            start_block=int(data["startBlock"]),
            end_block=int(data["endBlock"]),
            entry_count=int(data["entryCount"]),
        )


@dataclass
class TimelineIndex:
    total_entries: int
    partition_size: int
    partitions: List[PartitionInfo] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "totalEntries": self.total_entries,
            "partitionSize": self.partition_size,
            "partitions": [p.to_dict() for p in self.partitions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimelineIndex":
        return cls(
            total_entries=int(data["totalEntries"]),
            partition_size=int(data["partitionSize"]),
            partitions=[PartitionInfo.from_dict(p) for p in data["partitions"]],
        )


@dataclass
class SyncLock:
    sync_in_progress: bool
    started_at: float
    pid: str

    def to_dict(self) -> dict:
        return {
            "syncInProgress": self.sync_in_progress,
            "startedAt": self.started_at,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncLock":
        return cls(
            sync_in_progress=bool(data["syncInProgress"]),
            started_at=float(data["startedAt"]),
            pid=str(data["pid"]),
        )


@dataclass
class SyncProgress:
    is_active: bool
    current_block: int
    target_block: int
    start_block: int
    events_processed: int
    percent_complete: float
    started_at: float
    estimated_time_remaining: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "isActive": self.is_active,
            "currentBlock": self.current_block,
            "targetBlock": self.target_block,
            "startBlock": self.start_block,
            "eventsProcessed": self.events_processed,
            "percentComplete": self.percent_complete,
            "estimatedTimeRemaining": self.estimated_time_remaining,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncProgress":
        return cls(
            is_active=bool(data["isActive"]),
            current_block=int(data["currentBlock"]),
            target_block=int(data["targetBlock"]),
            start_block=int(data["startBlock"]),
            events_processed=int(data["eventsProcessed"]),
            percent_complete=float(data["percentComplete"]),
            started_at=float(data["startedAt"]),
            estimated_time_remaining=data.get("estimatedTimeRemaining"),
        )

    @classmethod
    def idle(cls) -> "SyncProgress":
        """Sentinel returned when no run is in progress."""
        return cls(
            is_active=False,
            current_block=0,
            target_block=0,
            start_block=0,
            events_processed=0,
            percent_complete=0.0,
            started_at=0,
        )


@dataclass(frozen=True)
class Discrepancy:
    address: str
    stored: str
    actual: str
    difference: str

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stored": self.stored,
            "actual": self.actual,
            "difference": self.difference,
        }


@dataclass
class VerificationResult:
    verified: int
    discrepancies: List[Discrepancy]
    failed: int
    timestamp: int
    verified_at_block: int

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "failed": self.failed,
            "timestamp": self.timestamp,
            "verifiedAtBlock": self.verified_at_block,
        }
