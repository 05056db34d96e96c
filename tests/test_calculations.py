import pandas as pd
import pytest

from conftest import ALICE, BOB, CAROL, DELEGATE, delegate_changed_log, transfer_log, votes_changed_log
from delegate_ledger.services.log_source import DELEGATE_CHANGED_TOPIC, TRANSFER_TOPIC, to_raw_log
from delegate_ledger.utils.calculations import (
    compute_concentration_metrics,
    gini_coefficient,
    to_token_units,
    total_voting_power,
)
from delegate_ledger.utils.normalizers import (
    ZERO_ADDRESS,
    address_to_topic,
    decode_words,
    event_topic,
    normalize_address,
    topic_to_address,
)

TOKEN_UNIT = 10**18


def test_total_voting_power_is_exact_for_large_balances():
    balances = {ALICE: 10**30 + 1, BOB: 10**30 + 2, CAROL: 0}

    assert total_voting_power(balances) == 2 * 10**30 + 3


def test_token_units():
    assert str(to_token_units(1_500 * TOKEN_UNIT)) == "1500"
    assert f"{to_token_units(1_234_567 * TOKEN_UNIT // 100):,.2f}" == "12,345.67"


def test_concentration_metrics():
    metrics = compute_concentration_metrics(
        {ALICE: str(75 * TOKEN_UNIT), BOB: str(25 * TOKEN_UNIT), CAROL: "0"}
    )

    assert metrics["hhi_value"] == pytest.approx(0.625)
    assert metrics["top_1_percentage"] == pytest.approx(75.0)
    assert metrics["total_delegators"] == 3
    assert metrics["active_delegators"] == 2
    assert metrics["effective_delegators"] == pytest.approx(1.6)


def test_concentration_of_empty_or_zero_ledger():
    assert compute_concentration_metrics({}) == {}
    assert compute_concentration_metrics({ALICE: "0"}) == {}


def test_gini_coefficient():
    assert gini_coefficient(pd.Series([5.0, 5.0, 5.0])) == pytest.approx(0.0)
    assert gini_coefficient(pd.Series([0.0, 0.0, 10.0])) == pytest.approx(2 / 3)
    assert gini_coefficient(pd.Series([1.0])) == 0.0


def test_topic_and_address_helpers():
    topic = address_to_topic(ALICE.upper().replace("0X", "0x"))

    assert len(topic) == 66
    assert topic_to_address(topic) == ALICE
    assert normalize_address(DELEGATE.replace("d", "D")) == DELEGATE
    with pytest.raises(ValueError):
        normalize_address("0x123")


def test_event_topics_are_keccak_of_signatures():
    assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    assert DELEGATE_CHANGED_TOPIC == event_topic("DelegateChanged(address,address,address)")


def test_decode_words():
    log = votes_changed_log(DELEGATE, 7, 2**200, 1, 0, "0x01")

    assert decode_words(log.data, 2) == [7, 2**200]
    with pytest.raises(ValueError):
        decode_words("0x01", 1)


def test_to_raw_log_normalises_web3_values():
    expected = transfer_log(ALICE, BOB, 5, 42, 3, "0x" + "ab" * 32)
    web3_log = {
        "address": expected.address.upper().replace("0X", "0x"),
        "topics": [bytes.fromhex(topic[2:]) for topic in expected.topics],
        "data": bytes.fromhex(expected.data[2:]),
        "blockNumber": 42,
        "logIndex": 3,
        "transactionHash": bytes.fromhex("ab" * 32),
    }

    assert to_raw_log(web3_log) == expected


def test_relationship_log_topics_decode_to_addresses():
    log = delegate_changed_log(ALICE, ZERO_ADDRESS, DELEGATE, 10, 0, "0x01")

    assert [topic_to_address(t) for t in log.topics[1:]] == [ALICE, ZERO_ADDRESS, DELEGATE]
