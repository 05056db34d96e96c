import pytest

from conftest import ALICE, BOB, MemoryKeyValueStore
from delegate_ledger.models import CurrentState, Metadata, SyncProgress, TimelineEntry
from delegate_ledger.storage.cache import TtlCache
from delegate_ledger.storage.ledger_store import LOCK_KEY, LedgerStore, partition_key


def entry(block, **delegators):
    balances = {addr: str(value) for addr, value in delegators.items()}
    return TimelineEntry(
        block_number=block,
        timestamp=1_000 + block,
        total_voting_power=str(sum(delegators.values())),
        delegators=balances,
    )


def entries(*blocks):
    return [entry(block, **{ALICE: block}) for block in blocks]


@pytest.fixture
def small_store(kv, clock):
    return LedgerStore(kv, cache=TtlCache(), partition_size=3, clock=clock)


def test_append_splits_entries_into_partitions(small_store, kv):
    small_store.append_timeline_entries(entries(10, 20, 30, 40))
    small_store.append_timeline_entries(entries(50, 60, 70))

    index = small_store.get_timeline_index()
    assert index.total_entries == 7
    assert [(p.id, p.start_block, p.end_block, p.entry_count) for p in index.partitions] == [
        (0, 10, 30, 3),
        (1, 40, 60, 3),
        (2, 70, 70, 1),
    ]
    assert [e.block_number for e in small_store.get_full_timeline()] == [10, 20, 30, 40, 50, 60, 70]
    assert partition_key(2) in kv.keys("timeline-entries-")


def test_append_rejects_entries_before_tail(small_store):
    small_store.append_timeline_entries(entries(10, 20))

    with pytest.raises(ValueError):
        small_store.append_timeline_entries(entries(15))


def test_range_query_reads_only_intersecting_partitions(kv, clock):
    store = LedgerStore(kv, cache=TtlCache(), partition_size=3, clock=clock)
    store.append_timeline_entries(entries(10, 20, 30, 40, 50, 60, 70, 80, 90))
    reader = LedgerStore(kv, cache=TtlCache(), partition_size=3, clock=clock)
    kv.reads.clear()

    result = reader.get_timeline_range(45, 65)

    assert [e.block_number for e in result] == [50, 60]
    partition_reads = [key for key in kv.reads if key.startswith("timeline-entries-")]
    assert partition_reads == [partition_key(1)]


def test_get_timeline_without_bounds_returns_everything(small_store):
    small_store.append_timeline_entries(entries(10, 20, 30, 40))

    assert len(small_store.get_timeline()) == 4
    assert [e.block_number for e in small_store.get_timeline(from_block=25)] == [30, 40]
    assert [e.block_number for e in small_store.get_timeline(to_block=25)] == [10, 20]


def test_delegators_at_block_returns_latest_entry_at_or_before(small_store):
    small_store.append_timeline_entries(entries(10, 20, 30, 40, 50))

    assert small_store.get_delegators_at_block(5) is None
    assert small_store.get_delegators_at_block(10).block_number == 10
    assert small_store.get_delegators_at_block(35).block_number == 30
    assert small_store.get_delegators_at_block(1_000).block_number == 50


def test_truncate_timeline_drops_later_entries_and_partitions(small_store, kv):
    small_store.append_timeline_entries(entries(10, 20, 30, 40, 50, 60, 70))

    result = small_store.truncate_timeline_after(45)

    assert result == {"entries_removed": 3, "partitions_removed": 1, "last_block_number": 40}
    assert [e.block_number for e in small_store.get_full_timeline()] == [10, 20, 30, 40]
    assert partition_key(2) not in kv.keys()
    index = small_store.get_timeline_index()
    assert index.total_entries == 4
    assert index.partitions[-1].end_block == 40


def test_truncate_on_empty_timeline_is_a_no_op(small_store):
    assert small_store.truncate_timeline_after(100) == {
        "entries_removed": 0,
        "partitions_removed": 0,
        "last_block_number": None,
    }


def test_truncate_after_rewinds_state_and_metadata(small_store):
    small_store.append_timeline_entries(
        [entry(10, **{ALICE: 5}), entry(20, **{ALICE: 5, BOB: 7}), entry(30, **{BOB: 7})]
    )
    small_store.store_current_state(CurrentState(as_of_block=40, as_of_timestamp=1, delegators={BOB: "7"}))
    small_store.store_metadata(
        Metadata(
            last_synced_block=40,
            last_sync_timestamp=1,
            total_voting_power="7",
            total_delegators=1,
            total_timeline_entries=3,
            timeline_partitions=1,
        )
    )

    result = small_store.truncate_after(25)

    assert result["entries_removed"] == 1
    assert result["last_block_number"] == 25
    state = small_store.get_current_state()
    assert state.as_of_block == 25
    assert state.delegators == {ALICE: "5", BOB: "7"}
    metadata = small_store.get_metadata()
    assert metadata.last_synced_block == 25
    assert metadata.total_voting_power == "12"
    assert metadata.total_delegators == 2
    assert metadata.total_timeline_entries == 2


def test_lock_is_exclusive_until_released(store):
    assert store.acquire_sync_lock()
    assert not store.acquire_sync_lock()

    store.release_sync_lock()

    assert store.acquire_sync_lock()


def test_stale_lock_is_reclaimed(kv, clock):
    holder = LedgerStore(kv, lock_timeout_seconds=600, clock=clock)
    contender = LedgerStore(kv, lock_timeout_seconds=600, clock=clock)
    assert holder.acquire_sync_lock()

    clock.advance(599)
    assert not contender.acquire_sync_lock()

    clock.advance(2)
    assert contender.acquire_sync_lock()


def test_renewed_lock_is_not_stale(kv, clock):
    holder = LedgerStore(kv, lock_timeout_seconds=600, clock=clock)
    contender = LedgerStore(kv, lock_timeout_seconds=600, clock=clock)
    assert holder.acquire_sync_lock()

    clock.advance(500)
    holder.renew_sync_lock()
    clock.advance(500)

    assert not contender.acquire_sync_lock()


def test_corrupt_lock_record_counts_as_unlocked(store, kv):
    kv.put(LOCK_KEY, b"not json")

    assert store.check_sync_lock() is None
    assert store.acquire_sync_lock()


def test_sync_progress_round_trip(store):
    assert store.get_sync_progress() is None
    progress = SyncProgress(
        is_active=True,
        current_block=150,
        target_block=300,
        start_block=1,
        events_processed=4,
        percent_complete=50.0,
        started_at=1.0,
        estimated_time_remaining=12.5,
    )

    store.update_sync_progress(progress)
    assert store.get_sync_progress() == progress

    store.clear_sync_progress()
    assert store.get_sync_progress() is None


def test_writes_refresh_the_cache(store, kv):
    state = CurrentState(as_of_block=1, as_of_timestamp=1, delegators={ALICE: "1"})
    store.store_current_state(state)
    kv.reads.clear()

    assert store.get_current_state() == state
    assert kv.reads == []

    updated = CurrentState(as_of_block=2, as_of_timestamp=2, delegators={})
    store.store_current_state(updated)
    assert store.get_current_state() == updated


def test_external_write_visible_after_clear_cache(store):
    state = CurrentState(as_of_block=1, as_of_timestamp=1, delegators={})
    store.store_current_state(state)
    other = LedgerStore(store.kv)
    other.store_current_state(CurrentState(as_of_block=9, as_of_timestamp=9, delegators={}))

    assert store.get_current_state().as_of_block == 1
    store.clear_cache()
    assert store.get_current_state().as_of_block == 9


def test_store_works_on_sqlite_backend(sqlite_store):
    sqlite_store.append_timeline_entries(entries(10, 20))
    sqlite_store.store_current_state(CurrentState(as_of_block=20, as_of_timestamp=1, delegators={ALICE: "20"}))
    sqlite_store.clear_cache()

    assert [e.block_number for e in sqlite_store.get_full_timeline()] == [10, 20]
    assert sqlite_store.get_current_state().delegators == {ALICE: "20"}


def test_partition_size_is_taken_from_the_persisted_index():
    kv = MemoryKeyValueStore()
    LedgerStore(kv, partition_size=2).append_timeline_entries(entries(1, 2, 3))

    reopened = LedgerStore(kv, partition_size=1000)
    reopened.append_timeline_entries(entries(4))

    index = reopened.get_timeline_index()
    assert [p.entry_count for p in index.partitions] == [2, 2]
    assert [e.block_number for e in reopened.get_full_timeline()] == [1, 2, 3, 4]


def test_truncate_after_past_frontier_clamps_to_last_synced_block(small_store):
    small_store.append_timeline_entries([entry(10, **{ALICE: 5}), entry(20, **{ALICE: 8})])
    small_store.store_current_state(CurrentState(as_of_block=30, as_of_timestamp=1, delegators={ALICE: "8"}))
    small_store.store_metadata(
        Metadata(
            last_synced_block=30,
            last_sync_timestamp=1,
            total_voting_power="8",
            total_delegators=1,
            total_timeline_entries=2,
            timeline_partitions=1,
        )
    )

    result = small_store.truncate_after(250)

    assert result["entries_removed"] == 0
    assert result["last_block_number"] == 30
    assert small_store.get_metadata().last_synced_block == 30
    assert small_store.get_current_state().as_of_block == 30
    assert small_store.get_current_state().delegators == {ALICE: "8"}
