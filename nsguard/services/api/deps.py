"""FastAPI dependencies and small request helpers shared by the route modules."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import Request

from nsguard.services.engine import Engine


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    """Query strings without an offset are taken as UTC."""
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts
