# LEDGER KEY-VALUE TABLE
from sqlalchemy import Column, Index, LargeBinary, String

from .base import Base, TimestampMixin


class LedgerRecord(Base, TimestampMixin):
    """One JSON document of the ledger (metadata, current state, partitions, lock, progress)."""

    __tablename__ = "ledger_records"

    key = Column(String(200), primary_key=True)
    value = Column(LargeBinary, nullable=False)

    __table_args__ = (Index("idx_ledger_records_updated", "updated_at"),)
