"""
Dagster Definitions for the delegate voting-power ledger
"""

from dagster import Definitions

from delegate_ledger.defs import (
    ledger_assets,
    sync_job,
    verification_job,
    diagnostics_job,
    truncation_job,
    sync_schedule,
    verification_schedule,
    resources,
)

defs = Definitions(
    assets=ledger_assets,
    jobs=[
        sync_job,
        verification_job,
        diagnostics_job,
        truncation_job,
    ],
    schedules=[
        sync_schedule,
        verification_schedule,
    ],
    resources=resources,
)
