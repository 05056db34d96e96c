# defs/assets/maintenance.py
"""
Maintenance Assets - manual repair operations on the persisted ledger
"""

from dagster import asset, Config, OpExecutionContext, Output

from ..resources import (
    LedgerDatabaseResource,
    LedgerConfigResource,
    LogSourceResource,
    get_ledger_service,
)


class TruncateConfig(Config):
    # Entries strictly after this block are removed
    max_block: int


@asset(
    description="Remove timeline entries after max_block and rewind the ledger to it",
    compute_kind="python",
)
def timeline_truncation_asset(
    context: OpExecutionContext,
    config: TruncateConfig,
    db: LedgerDatabaseResource,
    ledger_config: LedgerConfigResource,
    rpc: LogSourceResource,
) -> Output[dict]:
    service = get_ledger_service(context, db, ledger_config, rpc)
    result = service.truncate_after(config.max_block, ledger_config.sync_secret)

    if result["status"] == "conflict":
        context.log.warning("Sync or verification in progress, truncation not applied")
        return Output(result, metadata={"status": result["status"]})

    return Output(
        result,
        metadata={
            "status": result["status"],
            "entries_removed": result["entries_removed"],
            "partitions_removed": result["partitions_removed"],
            "last_block_number": result["last_block_number"],
        },
    )
