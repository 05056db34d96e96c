# /delegate_ledger/defs/resources.py
"""
Dagster Resources for the ledger store, chain endpoints and ledger settings
"""
from dagster import ConfigurableResource
from pydantic import PrivateAttr
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
from typing import Optional
import os

from delegate_ledger.errors import ConfigurationError
from delegate_ledger.services.ledger_service import LedgerService, build_ledger_service
from delegate_ledger.services.log_source import DEFAULT_EVENT_RPC_URL, Web3LogSource
from delegate_ledger.storage.cache import TtlCache
from delegate_ledger.storage.kv_store import FileKeyValueStore, SqlKeyValueStore
from delegate_ledger.storage.ledger_store import LedgerStore
from delegate_ledger.utils.normalizers import is_valid_address

CHAIN_REGISTRY = {
    "arbitrum": 42161,
    "mainnet": 1,
    "optimism": 10,
    "polygon": 137,
    "base": 8453,
    "avalanche": 43114,
    "bsc": 56,
    "gnosis": 100,
}


class LedgerDatabaseResource(ConfigurableResource):
    """Key-value store backing the ledger (SQLAlchemy table, or a directory of JSON files)"""

    database_url: str = os.getenv("LEDGER_DB_URL", "sqlite:///delegate_ledger.db")
    # When set, documents are stored as files here instead of in the database
    data_dir: Optional[str] = os.getenv("LEDGER_DATA_DIR")

    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30

    _engine = PrivateAttr(default=None)
    _SessionLocal = PrivateAttr(default=None)

    @property
    def engine(self):
        """Lazy initialization of the ledger database engine"""
        if self._engine is None:
            kwargs = {"echo": False}
            if not self.database_url.startswith("sqlite"):
                kwargs.update(
                    pool_size=self.pool_size,
                    max_overflow=self.max_overflow,
                    pool_timeout=self.pool_timeout,
                )
            self._engine = create_engine(self.database_url, **kwargs)
        return self._engine

    @property
    def SessionLocal(self):
        """Session factory for the ledger database"""
        if self._SessionLocal is None:
            self._SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._SessionLocal

    @contextmanager
    def get_session(self):
        """Context manager for a ledger database session"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_kv_store(self):
        if self.data_dir:
            return FileKeyValueStore(self.data_dir)
        return SqlKeyValueStore(self)


class LogSourceResource(ConfigurableResource):
    """RPC endpoints: wide-range getLogs on one, archive point-in-time reads on the other"""

    event_rpc_url: str = os.getenv("FREE_RPC_URL", DEFAULT_EVENT_RPC_URL)
    archive_rpc_url: Optional[str] = os.getenv("DRPC_RPC_URL") or os.getenv("ARBITRUM_RPC_URL")
    request_timeout: int = 30

    def get_log_source(self, logger=None) -> Web3LogSource:
        return Web3LogSource(
            event_rpc_url=self.event_rpc_url,
            archive_rpc_url=self.archive_rpc_url,
            request_timeout=self.request_timeout,
            logger=logger,
        )


class LedgerConfigResource(ConfigurableResource):
    """Configuration resource for the tracked delegate and sync settings"""

    # Tracked delegate
    delegate_address: str = os.getenv("DELEGATE_ADDRESS", "")
    token_address: str = os.getenv("TOKEN_ADDRESS", "")
    chain_id: int = int(os.getenv("CHAIN_ID", "42161"))
    chain_name: str = os.getenv("CHAIN_NAME", "arbitrum")

    # Block range ("latest" = sync to chain head)
    start_block: int = int(os.getenv("START_BLOCK", "250000000"))
    end_block: str = os.getenv("END_BLOCK", "latest")

    # Guards the mutating operations
    sync_secret: str = os.getenv("SYNC_SECRET", "default-secret")

    # Chunking and checkpoints
    chunk_size: int = 10_000
    checkpoint_interval: int = 1_000_000
    partition_size: int = 1000
    lock_timeout_seconds: int = 600

    # Rate limiting
    verify_batch_size: int = 5
    transfer_batch_size: int = 10
    chunk_delay_seconds: float = 0.01
    batch_delay_seconds: float = 0.2
    transfer_batch_delay_seconds: float = 0.5

    # Retries
    max_retries: int = 5
    retry_initial_delay_seconds: float = 1.0

    def validate_settings(self) -> "LedgerConfigResource":
        """Raise ConfigurationError on the first invalid setting"""
        if not is_valid_address(self.delegate_address):
            raise ConfigurationError(f"delegate_address is invalid: {self.delegate_address!r}")
        if not is_valid_address(self.token_address):
            raise ConfigurationError(f"token_address is invalid: {self.token_address!r}")
        if self.chain_name not in CHAIN_REGISTRY:
            raise ConfigurationError(
                f"Unsupported chain: {self.chain_name}. "
                f"Supported chains: {', '.join(CHAIN_REGISTRY)}"
            )
        if self.chain_id != CHAIN_REGISTRY[self.chain_name]:
            raise ConfigurationError(
                f"chain_id {self.chain_id} does not match chain {self.chain_name}"
            )
        if self.start_block < 0:
            raise ConfigurationError("start_block must be non-negative")
        self.resolved_end_block()

        for name in ("chunk_size", "checkpoint_interval", "partition_size", "lock_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.checkpoint_interval < self.chunk_size:
            raise ConfigurationError("checkpoint_interval must be >= chunk_size")
        if self.verify_batch_size <= 0 or self.transfer_batch_size <= 0:
            raise ConfigurationError("batch sizes must be positive")
        if self.max_retries <= 0:
            raise ConfigurationError("max_retries must be positive")
        return self

    def resolved_end_block(self) -> Optional[int]:
        """None means sync to the chain head"""
        if self.end_block == "latest":
            return None
        try:
            end_block = int(self.end_block)
        except ValueError:
            raise ConfigurationError(
                f"end_block must be an integer or 'latest', got {self.end_block!r}"
            ) from None
        if end_block < 0:
            raise ConfigurationError("end_block must be non-negative")
        return end_block

    def build_store(self, database: LedgerDatabaseResource, logger=None) -> LedgerStore:
        return LedgerStore(
            database.get_kv_store(),
            cache=TtlCache(),
            partition_size=self.partition_size,
            lock_timeout_seconds=self.lock_timeout_seconds,
            logger=logger,
        )


def get_ledger_service(
    context,
    db: LedgerDatabaseResource,
    ledger_config: LedgerConfigResource,
    rpc: LogSourceResource,
) -> LedgerService:
    """Validate settings and wire a LedgerService logging through the dagster context"""
    ledger_config.validate_settings()
    store = ledger_config.build_store(db, logger=context.log)
    return build_ledger_service(
        store,
        rpc.get_log_source(logger=context.log),
        ledger_config,
        logger=context.log,
    )
