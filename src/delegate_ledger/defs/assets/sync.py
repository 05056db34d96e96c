# defs/assets/sync.py
"""
Sync Asset - one checkpointed run of the delegate ledger
"""

from dagster import asset, OpExecutionContext, Output, Failure

from delegate_ledger.services.processors.sync_driver import CONFLICT, FAILED
from ..resources import (
    LedgerDatabaseResource,
    LedgerConfigResource,
    LogSourceResource,
    get_ledger_service,
)


@asset(
    description="Scan delegation/transfer logs since the last checkpoint and extend the ledger",
    compute_kind="python",
)
def delegate_ledger_sync_asset(
    context: OpExecutionContext,
    db: LedgerDatabaseResource,
    ledger_config: LedgerConfigResource,
    rpc: LogSourceResource,
) -> Output[dict]:
    service = get_ledger_service(context, db, ledger_config, rpc)
    result = service.start_sync(ledger_config.sync_secret)

    if result.status == FAILED:
        raise Failure(
            description=f"Ledger sync failed: {result.error}",
            metadata={
                "failed_event_queries": len(result.failures.get("event_queries", [])),
                "failed_balance_queries": len(result.failures.get("balance_queries", [])),
            },
        )

    if result.status == CONFLICT:
        context.log.warning("Sync or verification already in progress, skipping this run")
        return Output(result.to_dict(), metadata={"status": result.status})

    context.log.info(
        f"Sync {result.status}: last synced block {result.last_synced_block}, "
        f"{result.events_processed} events, {result.timeline_entries_added} timeline entries, "
        f"{result.delegators} delegators"
    )
    return Output(
        result.to_dict(),
        metadata={
            "status": result.status,
            "last_synced_block": result.last_synced_block,
            "events_processed": result.events_processed,
            "timeline_entries_added": result.timeline_entries_added,
            "delegators": result.delegators,
            "failed_event_queries": len(result.failures.get("event_queries", [])),
            "failed_balance_queries": len(result.failures.get("balance_queries", [])),
        },
    )
