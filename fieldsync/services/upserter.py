"""
upserter.py — Idempotent insert-or-update of synced records

Business Rules:
- Natural key is (entity_type, remote_id); repeats overwrite, never duplicate
- Duplicates inside one page collapse to the last occurrence (ON CONFLICT
  cannot touch the same row twice in one statement)
- Each chunk of `upsert_batch_size` rows commits on its own; a failing chunk
  is rolled back, logged and counted, and the walk carries on

Called by: services/sync_orchestrator.py (as the pager's page handler)
Depends on: models.SyncedRecord, database.SessionLocal
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import PersistenceError
from ..models import SyncedRecord
from .record_mapper import NormalizedRecord


@dataclass
class UpsertResult:
    upserted: int = 0
    failed: int = 0
    failed_batches: int = 0
    errors: list[str] = field(default_factory=list)


def _insert_for(session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise PersistenceError(f"Upsert not supported for dialect '{dialect}'")


class RecordUpserter:
    def __init__(self, session_factory=None, batch_size: int | None = None):
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.upsert_batch_size

    def upsert_page(self, account: str, records: list[NormalizedRecord]) -> UpsertResult:
        result = UpsertResult()
        unique = list({(r.entity_type, r.remote_id): r for r in records}.values())
        for start in range(0, len(unique), self.batch_size):
            batch = unique[start:start + self.batch_size]
            try:
                self._write_batch(account, batch)
                result.upserted += len(batch)
            except PersistenceError as e:
                result.failed += len(batch)
                result.failed_batches += 1
                result.errors.append(str(e))
                logger.error("Upsert batch of {} {} records failed: {}",
                             len(batch), batch[0].entity_type, e)
        return result

    def _write_batch(self, account: str, batch: list[NormalizedRecord]) -> None:
        now = datetime.now(timezone.utc)
        rows = [
            {
                "account": account,
                "entity_type": r.entity_type,
                "remote_id": r.remote_id,
                "fields": r.fields,
                "raw_payload": r.raw_payload,
                "remote_updated_at": r.remote_updated_at,
                "synced_at": now,
            }
            for r in batch
        ]
        session = self.session_factory()
        try:
            insert = _insert_for(session)
            stmt = insert(SyncedRecord).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["entity_type", "remote_id"],
                set_={
                    "account": stmt.excluded.account,
                    "fields": stmt.excluded.fields,
                    "raw_payload": stmt.excluded.raw_payload,
                    "remote_updated_at": stmt.excluded.remote_updated_at,
                    "synced_at": stmt.excluded.synced_at,
                },
            )
            session.execute(stmt)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e).splitlines()[0]) from e
        finally:
            session.close()
