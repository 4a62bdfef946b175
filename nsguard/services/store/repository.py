"""
SQL mirror of the PolicyStore.

save() runs inside the store's write lock before the in-memory state is swapped,
so a failed commit leaves both sides unchanged.
"""

from datetime import datetime, timezone
from typing import Iterable

import structlog
from pydantic import TypeAdapter
from sqlalchemy.orm import sessionmaker

from nsguard.services.shared.models import PolicyObject
from nsguard.services.shared.orm import AuditLogRow, PolicyObjectRow, StoreMeta

logger = structlog.get_logger()

_policy_object_adapter = TypeAdapter(PolicyObject)

_META_ID = 1


class PolicyRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, version: int, upserted: Iterable, deleted: Iterable) -> None:
        db = self._session_factory()
        try:
            now = datetime.now(timezone.utc)
            for obj in upserted:
                row = db.query(PolicyObjectRow).filter_by(kind=obj.kind, object_id=obj.id).first()
                if row is None:
                    row = PolicyObjectRow(kind=obj.kind, object_id=obj.id)
                    db.add(row)
                row.namespace  = obj.namespace
                row.body       = obj.model_dump(mode="json")
                row.version    = version
                row.updated_at = now

            for obj in deleted:
                db.query(PolicyObjectRow).filter_by(kind=obj.kind, object_id=obj.id).delete()

            meta = db.query(StoreMeta).filter_by(id=_META_ID).first()
            if meta is None:
                meta = StoreMeta(id=_META_ID, version=version)
                db.add(meta)
            meta.version = version
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def load(self) -> tuple[list, int]:
        """Return (policy objects, committed version)."""
        db = self._session_factory()
        try:
            rows = db.query(PolicyObjectRow).order_by(PolicyObjectRow.id.asc()).all()
            objects = [_policy_object_adapter.validate_python(r.body) for r in rows]
            meta = db.query(StoreMeta).filter_by(id=_META_ID).first()
            version = meta.version if meta else 0
        finally:
            db.close()
        logger.info("policy_repository_loaded", objects=len(objects), version=version)
        return objects, version

    def append_audit(self, actor: str, action: str, resource: str, detail: dict, timestamp: datetime) -> None:
        db = self._session_factory()
        try:
            db.add(AuditLogRow(
                actor=actor,
                action=action,
                resource=resource,
                detail=detail,
                timestamp=timestamp,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def audit_rows(self, limit: int = 100) -> list[AuditLogRow]:
        db = self._session_factory()
        try:
            return db.query(AuditLogRow).order_by(AuditLogRow.timestamp.desc()).limit(limit).all()
        finally:
            db.close()
