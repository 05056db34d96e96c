import threading
from typing import Dict, List, Optional, Tuple

import pytest

from delegate_ledger.defs.resources import LedgerDatabaseResource
from delegate_ledger.services.failures import FailureTally
from delegate_ledger.services.log_source import (
    BALANCE_OF,
    DELEGATE_CHANGED_TOPIC,
    DELEGATE_VOTES_CHANGED_TOPIC,
    DELEGATES,
    TRANSFER_TOPIC,
    RawLog,
)
from delegate_ledger.services.processors.balance_verifier import BalanceVerifier
from delegate_ledger.services.processors.sync_driver import CheckpointedSyncDriver
from delegate_ledger.services.reconstructors.event_resolver import EventResolver
from delegate_ledger.services.retry import RetryPolicy
from delegate_ledger.storage.cache import TtlCache
from delegate_ledger.storage.kv_store import SqlKeyValueStore
from delegate_ledger.storage.ledger_store import LedgerStore
from delegate_ledger.utils.normalizers import ZERO_ADDRESS, address_to_topic

DELEGATE = "0x" + "d" * 40
TOKEN = "0x" + "7" * 40
ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40
OTHER_DELEGATE = "0x" + "e" * 40

BASE_TIMESTAMP = 1_700_000_000


def _word(value: int) -> str:
    return format(value, "064x")


def delegate_changed_log(delegator, from_delegate, to_delegate, block, log_index, tx):
    return RawLog(
        address=TOKEN,
        topics=(
            DELEGATE_CHANGED_TOPIC,
            address_to_topic(delegator),
            address_to_topic(from_delegate),
            address_to_topic(to_delegate),
        ),
        data="0x",
        block_number=block,
        log_index=log_index,
        transaction_hash=tx,
    )


def votes_changed_log(delegate, previous, new, block, log_index, tx):
    return RawLog(
        address=TOKEN,
        topics=(DELEGATE_VOTES_CHANGED_TOPIC, address_to_topic(delegate)),
        data="0x" + _word(previous) + _word(new),
        block_number=block,
        log_index=log_index,
        transaction_hash=tx,
    )


def transfer_log(sender, recipient, value, block, log_index, tx):
    return RawLog(
        address=TOKEN,
        topics=(TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(recipient)),
        data="0x" + _word(value),
        block_number=block,
        log_index=log_index,
        transaction_hash=tx,
    )


class FakeLogSource:
    """In-memory chain: logs, per-block balance/delegate history and injectable failures."""

    def __init__(self, head: int = 300):
        self.head = head
        self.logs: List[RawLog] = []
        self.balances: Dict[str, List[Tuple[int, int]]] = {}
        self.delegations: Dict[str, List[Tuple[int, str]]] = {}
        self.failing_reads = set()
        self.failing_addresses = set()
        self.failing_log_ranges = set()
        self.failing_timestamps = set()
        self.balance_calls = 0

    # -- setup helpers --

    def add_logs(self, *logs: RawLog) -> None:
        self.logs.extend(logs)

    def set_balance(self, address: str, block: int, balance: int) -> None:
        self.balances.setdefault(address, []).append((block, balance))
        self.balances[address].sort()

    def set_delegate(self, address: str, block: int, delegate: str) -> None:
        self.delegations.setdefault(address, []).append((block, delegate))
        self.delegations[address].sort()

    # -- LogSource --

    def get_logs(self, address, topics, from_block, to_block):
        if (from_block, to_block) in self.failing_log_ranges:
            raise ConnectionError("timeout")
        matched = []
        for log in self.logs:
            if log.address != address.lower():
                continue
            if not from_block <= log.block_number <= to_block:
                continue
            if _topics_match(log.topics, topics):
                matched.append(log)
        return sorted(matched, key=RawLog.sort_key)

    def read_contract_at(self, contract_address, function_signature, args, block_number):
        address = args[0].lower()
        if address in self.failing_addresses or (address, block_number) in self.failing_reads:
            raise ConnectionError("429 too many requests")
        if function_signature == BALANCE_OF:
            self.balance_calls += 1
            return _value_at(self.balances.get(address, []), block_number, 0)
        if function_signature == DELEGATES:
            return _value_at(self.delegations.get(address, []), block_number, ZERO_ADDRESS)
        raise ValueError(f"unsupported function {function_signature}")

    def get_latest_block_number(self):
        return self.head

    def get_block_timestamp(self, block_number):
        if block_number in self.failing_timestamps:
            raise ConnectionError("gateway timeout")
        return BASE_TIMESTAMP + block_number


class BlockingLogSource(FakeLogSource):
    """Holds the first caller of get_latest_block_number until released."""

    def __init__(self, head: int = 300):
        super().__init__(head)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_latest_block_number(self):
        self.entered.set()
        self.release.wait(timeout=10)
        return self.head


def _topics_match(log_topics, filters) -> bool:
    for position, wanted in enumerate(filters):
        if wanted is None:
            continue
        if position >= len(log_topics):
            return False
        if isinstance(wanted, str):
            if log_topics[position] != wanted:
                return False
        elif log_topics[position] not in wanted:
            return False
    return True


def _value_at(history, block_number, default):
    value = default
    for block, item in history:
        if block <= block_number:
            value = item
    return value


class MemoryKeyValueStore:
    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.reads: List[str] = []

    def get(self, key):
        self.reads.append(key)
        return self.data.get(key)

    def put(self, key, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)

    def keys(self, prefix=""):
        return sorted(k for k in self.data if k.startswith(prefix))


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def no_sleep(_seconds):
    return None


def fast_retry(max_retries: int = 2) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, initial_delay=0, get_logs_initial_delay=0, sleep=no_sleep)


def scenario_chain(source: FakeLogSource) -> FakeLogSource:
    """
    Alice delegates 1000 at block 100, transfers half away at 150 and
    re-delegates to herself at 200.
    """
    source.set_balance(ALICE, 0, 1000)
    source.set_balance(ALICE, 150, 500)
    source.set_delegate(ALICE, 100, DELEGATE)
    source.set_delegate(ALICE, 200, ALICE)
    source.add_logs(
        delegate_changed_log(ALICE, ZERO_ADDRESS, DELEGATE, 100, 0, "0x01"),
        votes_changed_log(DELEGATE, 0, 1000, 100, 1, "0x01"),
        transfer_log(ALICE, BOB, 500, 150, 0, "0x02"),
        votes_changed_log(DELEGATE, 1000, 500, 150, 1, "0x02"),
        delegate_changed_log(ALICE, DELEGATE, ALICE, 200, 0, "0x03"),
        votes_changed_log(DELEGATE, 500, 0, 200, 1, "0x03"),
    )
    return source


@pytest.fixture
def source():
    return FakeLogSource()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(kv, clock):
    return LedgerStore(kv, cache=TtlCache(), partition_size=1000, clock=clock)


@pytest.fixture
def sqlite_db(tmp_path):
    return LedgerDatabaseResource(database_url=f"sqlite:///{tmp_path / 'ledger.db'}")


@pytest.fixture
def sqlite_store(sqlite_db, clock):
    return LedgerStore(SqlKeyValueStore(sqlite_db), cache=TtlCache(), clock=clock)


def make_resolver(source, tally: Optional[FailureTally] = None) -> EventResolver:
    return EventResolver(
        source,
        token_address=TOKEN,
        delegate_address=DELEGATE,
        retry=fast_retry(),
        tally=tally or FailureTally(),
        balance_batch_delay=0,
        transfer_batch_delay=0,
        sleep=no_sleep,
    )


def make_driver(store, source, chunk_size=50, checkpoint_interval=100, start_block=1, end_block=None):
    return CheckpointedSyncDriver(
        store,
        make_resolver(source),
        start_block=start_block,
        end_block=end_block,
        chunk_size=chunk_size,
        checkpoint_interval=checkpoint_interval,
        chunk_delay=0,
        sleep=no_sleep,
    )


def make_verifier(store, source, clock=None):
    kwargs = {"clock": clock} if clock else {}
    return BalanceVerifier(
        store,
        source,
        token_address=TOKEN,
        delegate_address=DELEGATE,
        retry=fast_retry(),
        batch_delay=0,
        sleep=no_sleep,
        **kwargs,
    )
