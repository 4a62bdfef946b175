"""
AuditTrail query routes.
Provides read-only access to the append-only audit trail.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from nsguard.services.api.deps import as_utc, get_engine

router = APIRouter()


@router.get("/audit")
def list_audit_entries(
    action:   Optional[str] = None,
    resource: Optional[str] = None,
    since:    Optional[datetime] = None,
    until:    Optional[datetime] = None,
    limit:    int = Query(default=50, le=500),
    offset:   int = 0,
    engine=Depends(get_engine),
):
    """
    Query the audit trail.
    Supports filtering by action (e.g. "jit_grant_revoked", or "jit_grant_*") and
    resource prefix (e.g. "grant:").
    """
    entries = engine.audit.query(
        action=action, resource_prefix=resource, since=as_utc(since), until=as_utc(until), limit=limit, offset=offset,
    )
    return [
        {
            "seq":       e.seq,
            "actor":     e.actor,
            "action":    e.action,
            "resource":  e.resource,
            "detail":    e.detail,
            "timestamp": e.timestamp.isoformat(),
        }
        for e in entries
    ]
