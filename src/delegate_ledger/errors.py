class LedgerError(Exception):
    """Base class for all ledger errors."""


class ConfigurationError(LedgerError, ValueError):
    pass


class TransientProviderError(LedgerError):
    """Timeout, rate limit or temporary RPC failure."""


class RetryExhaustedError(TransientProviderError):
    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class NonRetryableProviderError(LedgerError):
    """Malformed request or unsupported call; never retried."""


class PersistenceError(LedgerError):
    """A write to the persistent store failed."""


class LedgerStateMissingError(LedgerError):
    pass


class UnauthorizedError(LedgerError):
    pass
