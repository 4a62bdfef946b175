"""
Engine - explicit wiring of every nsguard component around one PolicyStore.

No module keeps global policy state; the API layer holds one Engine and passes
it to route handlers through a dependency.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from nsguard.services.authz.decision_log import DecisionLog
from nsguard.services.authz.evaluator import AuthorizationEvaluator
from nsguard.services.authz.identity import HttpIdentityProvider, IdentityProvider, StaticIdentityProvider
from nsguard.services.compliance.drift_detector import DriftDetector
from nsguard.services.compliance.reporter import ComplianceReporter
from nsguard.services.jit.controller import JITAccessController
from nsguard.services.network.evaluator import NetworkIsolationEvaluator
from nsguard.services.shared.audit import AuditTrail
from nsguard.services.shared.config import EngineSettings
from nsguard.services.shared.models import utcnow
from nsguard.services.shared.scheduler import PeriodicTask
from nsguard.services.store.policy_store import PolicyStore
from nsguard.services.store.repository import PolicyRepository

logger = structlog.get_logger()


@dataclass
class Engine:
    settings:          EngineSettings
    store:             PolicyStore
    audit:             AuditTrail
    decision_log:      DecisionLog
    authorizer:        AuthorizationEvaluator
    network:           NetworkIsolationEvaluator
    jit:               JITAccessController
    detector:          DriftDetector
    reporter:          ComplianceReporter
    repository:        Optional[PolicyRepository] = None
    identity_provider: Optional[IdentityProvider] = None
    clock:             Callable[[], datetime] = utcnow

    def sweeper_task(self) -> PeriodicTask:
        return PeriodicTask("jit_sweeper", self.settings.sweep_interval, self.jit.sweep)

    def drift_scan_task(self) -> PeriodicTask:
        interval = max(1, self.settings.drift_scan_interval_seconds)
        return PeriodicTask("drift_scan", interval, self.detector.scan, initial_delay=interval)

    def close(self) -> None:
        """Release the identity provider's HTTP client. Call once the periodic tasks have stopped."""
        close = getattr(self.identity_provider, "close", None)
        if close is not None:
            close()
        logger.info("nsguard_engine_closed")


def _open_repository(settings: EngineSettings) -> PolicyRepository:
    from nsguard.services.shared.database import build_engine, build_session_factory, create_all_tables

    db_engine = build_engine(settings.database_url)
    create_all_tables(db_engine)
    return PolicyRepository(build_session_factory(db_engine))


def bootstrap(
    settings: Optional[EngineSettings] = None,
    *,
    clock: Callable[[], datetime] = utcnow,
    identity_provider: Optional[IdentityProvider] = None,
    repository: Optional[PolicyRepository] = None,
) -> Engine:
    settings = settings or EngineSettings.from_env()

    if repository is None and settings.persist:
        repository = _open_repository(settings)
    store = PolicyStore.load(repository, clock=clock) if repository is not None else PolicyStore(clock=clock)

    if identity_provider is None:
        if settings.identity_provider_url:
            identity_provider = HttpIdentityProvider(
                settings.identity_provider_url, timeout_seconds=settings.identity_timeout_seconds,
            )
        else:
            identity_provider = StaticIdentityProvider()

    audit = AuditTrail(repository=repository, clock=clock)
    decision_log = DecisionLog(last_query_ttl_seconds=(settings.orphan_staleness_minutes + 1) * 60, clock=clock)
    jit = JITAccessController(store, audit=audit, settings=settings, clock=clock)
    detector = DriftDetector(store, jit=jit, decision_log=decision_log, settings=settings, audit=audit, clock=clock)

    engine = Engine(
        settings=settings,
        store=store,
        audit=audit,
        decision_log=decision_log,
        authorizer=AuthorizationEvaluator(
            store, settings=settings, identity_provider=identity_provider,
            decision_log=decision_log, clock=clock,
        ),
        network=NetworkIsolationEvaluator(store),
        jit=jit,
        detector=detector,
        reporter=ComplianceReporter(detector, jit=jit, audit=audit, clock=clock),
        repository=repository,
        identity_provider=identity_provider,
        clock=clock,
    )
    logger.info(
        "nsguard_engine_ready",
        store_version=store.version,
        persist=repository is not None,
        identity_provider=type(identity_provider).__name__,
    )
    return engine
