# defs/assets/diagnostics.py
"""
Diagnostics Asset - sync health and delegator concentration
"""

from dagster import asset, OpExecutionContext, Output

from ..resources import (
    LedgerDatabaseResource,
    LedgerConfigResource,
    LogSourceResource,
    get_ledger_service,
)


@asset(
    description="Report sync lag, ledger totals and delegator concentration (HHI, top-N)",
    compute_kind="python",
)
def ledger_diagnostics_asset(
    context: OpExecutionContext,
    db: LedgerDatabaseResource,
    ledger_config: LedgerConfigResource,
    rpc: LogSourceResource,
) -> Output[dict]:
    service = get_ledger_service(context, db, ledger_config, rpc)
    report = service.diagnostics()

    sync = report["sync"]
    concentration = report["concentration"]
    context.log.info(
        f"Ledger health: {report['health']}, blocks behind: {sync['blocks_behind']}, "
        f"delegators: {report['state']['total_delegators']}"
    )

    metadata = {
        "health": report["health"],
        "total_delegators": report["state"]["total_delegators"],
        "total_voting_power_tokens": report["state"]["total_voting_power_tokens"],
    }
    if sync["blocks_behind"] is not None:
        metadata["blocks_behind"] = sync["blocks_behind"]
    if concentration:
        metadata["hhi_value"] = concentration["hhi_value"]
        metadata["top_1_percentage"] = concentration["top_1_percentage"]

    return Output(report, metadata=metadata)
