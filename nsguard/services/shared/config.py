"""
Engine settings read from NSGUARD_* environment variables.
Malformed values fall back to defaults rather than failing startup.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

JIT_SWEEP_MAX_INTERVAL_SECONDS = 60


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


@dataclass(frozen=True)
class EngineSettings:
    # JIT
    jit_sweep_interval_seconds: int = 30
    max_jit_ttl_hours:          int = 24
    jit_request_ttl_minutes:    int = 120

    # Drift / compliance
    orphan_staleness_minutes:    int = 60
    drift_scan_interval_seconds: int = 300
    cluster_admin_roles: frozenset = frozenset({"cluster-admin"})

    # Evaluation
    decision_cache_ttl_seconds: float = 2.0
    decision_cache_size:        int   = 10000

    # External identity provider (optional)
    identity_provider_url:      Optional[str] = None
    identity_timeout_seconds:   float = 2.0

    # Persistence
    persist:      bool = False
    database_url: str  = "sqlite:///./nsguard.db"

    @property
    def sweep_interval(self) -> int:
        """Sweeper interval clamped to [1, 60] seconds so expiry granularity stays ≤ 1 minute."""
        return max(1, min(self.jit_sweep_interval_seconds, JIT_SWEEP_MAX_INTERVAL_SECONDS))

    @classmethod
    def from_env(cls) -> "EngineSettings":
        admin_roles = _split_csv(os.getenv("NSGUARD_CLUSTER_ADMIN_ROLES", "cluster-admin"))
        return cls(
            jit_sweep_interval_seconds=_env_int("NSGUARD_JIT_SWEEP_INTERVAL_SECONDS", 30),
            max_jit_ttl_hours=_env_int("NSGUARD_MAX_JIT_TTL_HOURS", 24),
            jit_request_ttl_minutes=_env_int("NSGUARD_JIT_REQUEST_TTL_MINUTES", 120),
            orphan_staleness_minutes=_env_int("NSGUARD_ORPHAN_STALENESS_MINUTES", 60),
            drift_scan_interval_seconds=_env_int("NSGUARD_DRIFT_SCAN_INTERVAL_SECONDS", 300),
            cluster_admin_roles=frozenset(admin_roles or ["cluster-admin"]),
            decision_cache_ttl_seconds=_env_float("NSGUARD_DECISION_CACHE_TTL_SECONDS", 2.0),
            decision_cache_size=_env_int("NSGUARD_DECISION_CACHE_SIZE", 10000),
            identity_provider_url=(os.getenv("NSGUARD_IDENTITY_PROVIDER_URL") or "").strip() or None,
            identity_timeout_seconds=_env_float("NSGUARD_IDENTITY_TIMEOUT_SECONDS", 2.0),
            persist=_env_bool("NSGUARD_PERSIST", False),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./nsguard.db"),
        )
