from conftest import (
    ALICE,
    BOB,
    DELEGATE,
    delegate_changed_log,
    votes_changed_log,
)
from delegate_ledger.models import DELEGATE_CHANGED, VOTES_CHANGED
from delegate_ledger.services.event_classifier import classify_logs, unique_logs
from delegate_ledger.utils.normalizers import ZERO_ADDRESS


def test_relationship_and_weight_log_in_one_tx_yield_single_event():
    relationship = [delegate_changed_log(ALICE, ZERO_ADDRESS, DELEGATE, 100, 0, "0x01")]
    weight = [votes_changed_log(DELEGATE, 0, 1000, 100, 1, "0x01")]

    classified = classify_logs(relationship, weight)

    assert len(classified) == 1
    assert classified[0].kind == DELEGATE_CHANGED
    assert classified[0].log.transaction_hash == "0x01"


def test_weight_only_transaction_is_votes_changed():
    weight = [votes_changed_log(DELEGATE, 1000, 700, 120, 3, "0x02")]

    classified = classify_logs([], weight)

    assert [c.kind for c in classified] == [VOTES_CHANGED]


def test_multiple_relationship_logs_in_one_tx_are_all_kept_in_log_order():
    relationship = [
        delegate_changed_log(BOB, ZERO_ADDRESS, DELEGATE, 100, 4, "0x05"),
        delegate_changed_log(ALICE, ZERO_ADDRESS, DELEGATE, 100, 2, "0x05"),
    ]
    weight = [
        votes_changed_log(DELEGATE, 0, 10, 100, 3, "0x05"),
        votes_changed_log(DELEGATE, 10, 30, 100, 5, "0x05"),
    ]

    classified = classify_logs(relationship, weight)

    assert [c.kind for c in classified] == [DELEGATE_CHANGED, DELEGATE_CHANGED]
    assert [c.log.log_index for c in classified] == [2, 4]


def test_output_sorted_by_block_then_log_index():
    relationship = [delegate_changed_log(ALICE, ZERO_ADDRESS, DELEGATE, 200, 0, "0x03")]
    weight = [
        votes_changed_log(DELEGATE, 0, 5, 150, 7, "0x02"),
        votes_changed_log(DELEGATE, 5, 9, 150, 2, "0x04"),
    ]

    classified = classify_logs(relationship, weight)

    assert [c.log.sort_key() for c in classified] == [(150, 2), (150, 7), (200, 0)]


def test_overlapping_queries_do_not_duplicate_logs():
    log = delegate_changed_log(ALICE, DELEGATE, DELEGATE, 100, 0, "0x01")

    assert len(unique_logs([log, log])) == 1
    assert len(classify_logs([log, log], [])) == 1
