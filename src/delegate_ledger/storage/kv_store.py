# storage/kv_store.py
"""
Byte stores backing the ledger.

The ledger treats its storage as a flat get/put/delete byte store with no
transactions; consistency is handled one level up in ``LedgerStore``.
"""
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from delegate_ledger.db.models.base import Base
from delegate_ledger.db.models.ledger import LedgerRecord
from delegate_ledger.errors import PersistenceError


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class SqlKeyValueStore:
    """Key-value store on a single SQLAlchemy table (``ledger_records``)."""

    def __init__(self, db):
        # db: LedgerDatabaseResource (or anything exposing engine + get_session)
        self.db = db
        Base.metadata.create_all(db.engine, tables=[LedgerRecord.__table__])

    def get(self, key: str) -> Optional[bytes]:
        with self.db.get_session() as session:
            record = session.get(LedgerRecord, key)
            return bytes(record.value) if record is not None else None

    def put(self, key: str, value: bytes) -> None:
        try:
            with self.db.get_session() as session:
                record = session.get(LedgerRecord, key)
                if record is None:
                    session.add(LedgerRecord(key=key, value=value))
                else:
                    record.value = value
                    record.updated_at = datetime.now(timezone.utc)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to write {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with self.db.get_session() as session:
                session.execute(delete(LedgerRecord).where(LedgerRecord.key == key))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        with self.db.get_session() as session:
            query = select(LedgerRecord.key).where(LedgerRecord.key.startswith(prefix))
            return sorted(row[0] for row in session.execute(query))


class FileKeyValueStore:
    """One file per key under ``data_dir`` (local development storage)."""

    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def put(self, key: str, value: bytes) -> None:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{key}.")
        except OSError as exc:
            raise PersistenceError(f"Failed to write {key}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(value)
            os.replace(tmp_path, self._path(key))
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Failed to delete {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(
            path.stem
            for path in self.data_dir.glob("*.json")
            if path.stem.startswith(prefix)
        )
