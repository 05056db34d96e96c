# defs/assets/verification.py
"""
Verification Asset - compare stored balances with on-chain truth
"""

from dagster import asset, Config, OpExecutionContext, Output

from delegate_ledger.services.processors.balance_verifier import CONFLICT
from ..resources import (
    LedgerDatabaseResource,
    LedgerConfigResource,
    LogSourceResource,
    get_ledger_service,
)


class VerifyConfig(Config):
    # "check" reports only, "fix" overwrites drifted balances
    mode: str = "check"
    # Minimum absolute difference (token base units) reported as a discrepancy
    threshold: str = "0"


@asset(
    description="Verify every stored delegator balance against balanceOf/delegates",
    compute_kind="python",
)
def balance_verification_asset(
    context: OpExecutionContext,
    config: VerifyConfig,
    db: LedgerDatabaseResource,
    ledger_config: LedgerConfigResource,
    rpc: LogSourceResource,
) -> Output[dict]:
    service = get_ledger_service(context, db, ledger_config, rpc)
    outcome = service.verify(
        mode=config.mode,
        threshold=int(config.threshold),
        token=ledger_config.sync_secret,
    )

    if outcome.status == CONFLICT:
        context.log.warning("Sync or verification already in progress, skipping verification")
        return Output(outcome.to_dict(), metadata={"status": outcome.status})

    result = outcome.result
    return Output(
        outcome.to_dict(),
        metadata={
            "status": outcome.status,
            "mode": outcome.mode,
            "verified": result.verified,
            "discrepancies": len(result.discrepancies),
            "failed": result.failed,
            "verified_at_block": result.verified_at_block,
            "updated": outcome.updated,
        },
    )
