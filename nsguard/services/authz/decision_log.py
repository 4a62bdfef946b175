"""
Bounded in-memory log of recent authorization decisions.

Also tracks the last query time per (principal, namespace); the drift detector's
OrphanedGrant check reads it. That index is a TTLCache timed by the engine clock
and kept separate from the deque, so a grant is never reported orphaned just because
its queries scrolled out of the log. Entries older than the staleness window expire;
to the orphan check an expired entry and a missing one are equivalent.
"""

import threading
from collections import deque
from datetime import datetime
from typing import Callable, Optional

from cachetools import TTLCache
from pydantic import BaseModel, ConfigDict

from nsguard.services.shared.models import DecisionOutcome, utcnow

DEFAULT_MAX_RECORDS = 10_000
DEFAULT_LAST_QUERY_TTL_SECONDS = 24 * 3600
LAST_QUERY_MAX_KEYS = 100_000


class DecisionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal:     str
    verb:          str
    resource:      str
    resource_name: Optional[str] = None
    api_group:     str = ""
    namespace:     Optional[str] = None
    outcome:       DecisionOutcome
    reason_code:   str
    binding:       Optional[str] = None
    cached:        bool = False
    timestamp:     datetime


class DecisionLog:
    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        last_query_ttl_seconds: float = DEFAULT_LAST_QUERY_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._records: deque[DecisionRecord] = deque(maxlen=max_records)
        self._last_query: TTLCache = TTLCache(
            maxsize=LAST_QUERY_MAX_KEYS,
            ttl=last_query_ttl_seconds,
            timer=lambda: clock().timestamp(),
        )
        self._lock = threading.Lock()

    def record(self, record: DecisionRecord) -> None:
        key = (record.principal, record.namespace)
        with self._lock:
            self._records.append(record)
            previous = self._last_query.get(key)
            if previous is None or record.timestamp > previous:
                self._last_query[key] = record.timestamp

    def last_query(self, principal: str, namespace: Optional[str]) -> Optional[datetime]:
        with self._lock:
            return self._last_query.get((principal, namespace))

    def recent(
        self,
        limit: int = 100,
        principal: Optional[str] = None,
        outcome: Optional[DecisionOutcome] = None,
    ) -> list[DecisionRecord]:
        """Newest first."""
        with self._lock:
            records = list(self._records)
        records.reverse()
        if principal:
            records = [r for r in records if r.principal == principal]
        if outcome is not None:
            records = [r for r in records if r.outcome == outcome]
        return records[:limit]
