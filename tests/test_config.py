import pytest
from dagster import Definitions

from conftest import DELEGATE, TOKEN
from delegate_ledger.defs import (
    defs,
    diagnostics_job,
    sync_job,
    sync_schedule,
    truncation_job,
    verification_job,
    verification_schedule,
)
from delegate_ledger.defs.resources import LedgerConfigResource
from delegate_ledger.errors import ConfigurationError


def settings(**overrides):
    values = {"delegate_address": DELEGATE, "token_address": TOKEN, "end_block": "latest"}
    values.update(overrides)
    return LedgerConfigResource(**values)


def test_valid_settings_pass():
    assert settings().validate_settings().chunk_size == 10_000


@pytest.mark.parametrize(
    "overrides",
    [
        {"delegate_address": "0x1234"},
        {"token_address": ""},
        {"chain_name": "fantom"},
        {"chain_name": "mainnet", "chain_id": 42161},
        {"start_block": -1},
        {"end_block": "soon"},
        {"end_block": "-5"},
        {"chunk_size": 0},
        {"chunk_size": 20_000, "checkpoint_interval": 10_000},
        {"transfer_batch_size": 0},
        {"max_retries": 0},
    ],
)
def test_invalid_settings_raise_configuration_error(overrides):
    with pytest.raises(ConfigurationError):
        settings(**overrides).validate_settings()


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        settings(delegate_address="nope").validate_settings()


def test_end_block_resolution():
    assert settings().resolved_end_block() is None
    assert settings(end_block="123456").resolved_end_block() == 123456


def test_definitions_load():
    Definitions.validate_loadable(defs)


def test_jobs_and_schedules():
    assert {job.name for job in [sync_job, verification_job, diagnostics_job, truncation_job]} == {
        "delegate_ledger_sync",
        "balance_verification",
        "ledger_diagnostics",
        "timeline_truncation",
    }
    assert sync_schedule.cron_schedule == "0 */6 * * *"
    assert verification_schedule.cron_schedule == "30 1 * * *"
