from dagster import (
    Definitions,
    ScheduleDefinition,
    define_asset_job,
    AssetSelection,
)

from .assets import (
    delegate_ledger_sync_asset,
    balance_verification_asset,
    timeline_truncation_asset,
    ledger_diagnostics_asset,
)

from .resources import LedgerDatabaseResource, LedgerConfigResource, LogSourceResource


ledger_assets = [
    delegate_ledger_sync_asset,
    balance_verification_asset,
    timeline_truncation_asset,
    ledger_diagnostics_asset,
]


sync_job = define_asset_job(
    name="delegate_ledger_sync",
    selection=AssetSelection.assets(delegate_ledger_sync_asset),
    description="Extend the delegate ledger from the last checkpoint to the chain head",
)

verification_job = define_asset_job(
    name="balance_verification",
    selection=AssetSelection.assets(balance_verification_asset),
    description="Check stored delegator balances against on-chain state",
)

diagnostics_job = define_asset_job(
    name="ledger_diagnostics",
    selection=AssetSelection.assets(ledger_diagnostics_asset),
    description="Report sync health and delegator concentration",
)

truncation_job = define_asset_job(
    name="timeline_truncation",
    selection=AssetSelection.assets(timeline_truncation_asset),
    description="Rewind the ledger to a block (manual runs only, requires max_block)",
)


sync_schedule = ScheduleDefinition(
    job=sync_job,
    cron_schedule="0 */6 * * *",
    description="Run ledger sync every 6 hours",
)

verification_schedule = ScheduleDefinition(
    job=verification_job,
    cron_schedule="30 1 * * *",
    run_config={
        "ops": {
            "balance_verification_asset": {"config": {"mode": "check", "threshold": "0"}}
        }
    },
    description="Daily drift check (report only)",
)


resources = {
    "db": LedgerDatabaseResource(),
    "ledger_config": LedgerConfigResource(),
    "rpc": LogSourceResource(),
}


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
