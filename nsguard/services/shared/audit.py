"""
Append-only audit trail for mutating actions (policy writes, JIT transitions, baselines).
Mirrored to the audit_logs table when a PolicyRepository is attached.
"""

import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from nsguard.services.shared.models import utcnow

logger = structlog.get_logger()

DEFAULT_MAX_ENTRIES = 50_000


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq:       int
    actor:     str
    action:    str
    resource:  str
    detail:    dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class AuditTrail:
    def __init__(
        self,
        repository=None,
        clock: Callable[[], datetime] = utcnow,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._seq = 0
        self._repository = repository
        self._clock = clock

    def emit(
        self,
        actor: str,
        action: str,
        resource: str,
        detail: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """timestamp defaults to the trail's clock; callers replaying a scheduled action pass their own."""
        with self._lock:
            self._seq += 1
            entry = AuditEntry(
                seq=self._seq,
                actor=actor,
                action=action,
                resource=resource,
                detail=detail or {},
                timestamp=timestamp or self._clock(),
            )
            self._entries.append(entry)

        if self._repository is not None:
            try:
                self._repository.append_audit(
                    actor=entry.actor,
                    action=entry.action,
                    resource=entry.resource,
                    detail=entry.detail,
                    timestamp=entry.timestamp,
                )
            except Exception as exc:
                logger.error("audit_persist_error", action=action, resource=resource, error=str(exc))
        return entry

    def query(
        self,
        action: Optional[str] = None,
        resource_prefix: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """
        Newest first. `action` matches exactly, or as a prefix when it ends with "*"
        (e.g. "jit_grant_*"). since/until bound the timestamp inclusively.
        """
        with self._lock:
            entries = list(self._entries)

        if action and action.endswith("*"):
            stem = action[:-1]
            entries = [e for e in entries if e.action.startswith(stem)]
        elif action:
            entries = [e for e in entries if e.action == action]
        if resource_prefix:
            entries = [e for e in entries if e.resource.startswith(resource_prefix)]
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        if until is not None:
            entries = [e for e in entries if e.timestamp <= until]

        entries.reverse()
        return entries[offset:offset + limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
