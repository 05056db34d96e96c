from .sync import delegate_ledger_sync_asset
from .verification import balance_verification_asset, VerifyConfig
from .maintenance import timeline_truncation_asset, TruncateConfig
from .diagnostics import ledger_diagnostics_asset
