"""
DriftDetector - read-only compliance scan over one consistent PolicyStore view.

Checks (one Violation per offending object):
  WildcardPermission      Role with a '*' verb or resource type
                            critical: full */*/* rule, high: cluster-wide role, medium: namespaced
  ClusterAdminBinding     binding to a cluster-admin-equivalent Role
                            critical: standing, high: time-bounded (JIT)
  UnscopedNetworkIngress  NetworkPolicy with an ingress rule that admits any pod in any namespace
                            high: no port restriction either, medium otherwise
  OrphanedGrant           Active JIT grant with no authorization query from its principal in
                          its namespace within the staleness window (measured from the later
                          of the last query and activation)
  ConfigurationDrift      object added / modified / removed relative to the Baseline,
                          with a structural diff; bindings the JIT controller created are excluded

Violation ids are fingerprints of (kind, object, discriminator), so a condition that
persists across scans keeps the same id and the reporter can deduplicate it.
"""

import hashlib
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from nsguard.services.compliance.diff import diff_objects
from nsguard.services.shared.audit import AuditTrail
from nsguard.services.shared.config import EngineSettings
from nsguard.services.shared.errors import InvalidObjectError
from nsguard.services.shared.matcher import (
    role_is_cluster_admin, rule_has_wildcard, rule_is_full_wildcard, rule_is_unscoped,
)
from nsguard.services.shared.models import (
    SEVERITY_ORDER, Baseline, Direction, NetworkPolicy, ObjectKind, Role,
    RoleBinding, Severity, Violation, ViolationKind, ref_of, utcnow,
)
from nsguard.services.store.policy_store import canonical_json, snapshot_key

logger = structlog.get_logger()

SCAN_HISTORY_SIZE = 500

_DRIFT_SEVERITY = {
    ObjectKind.role.value:           Severity.high,
    ObjectKind.role_binding.value:   Severity.high,
    ObjectKind.network_policy.value: Severity.medium,
    ObjectKind.namespace.value:      Severity.low,
}


class ScanResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    scanned_at:    datetime
    store_version: int
    baseline_hash: Optional[str] = None
    violations:    tuple[Violation, ...] = ()


def fingerprint(kind: ViolationKind, object_ref: str, discriminator: str = "") -> str:
    raw = f"{kind.value}|{object_ref}|{discriminator}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def sort_violations(violations) -> list[Violation]:
    return sorted(
        violations,
        key=lambda v: (SEVERITY_ORDER[v.severity], v.namespace or "", v.kind.value, v.object_ref),
    )


def _body_namespace(body: dict) -> Optional[str]:
    if body.get("kind") == ObjectKind.namespace.value:
        return body.get("name")
    return body.get("namespace")


class DriftDetector:
    def __init__(
        self,
        store,
        jit=None,
        decision_log=None,
        settings: Optional[EngineSettings] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._jit = jit
        self._decision_log = decision_log
        self._settings = settings or EngineSettings()
        self._audit = audit
        self._clock = clock
        self._baseline: Optional[Baseline] = None
        self._history: deque[ScanResult] = deque(maxlen=SCAN_HISTORY_SIZE)
        self._lock = threading.Lock()

    # ── Baseline ─────────────────────────────────────────────────────────────

    @property
    def baseline(self) -> Optional[Baseline]:
        with self._lock:
            return self._baseline

    def set_baseline(self, baseline: Baseline, actor: str = "operator") -> Baseline:
        """Replace the trusted baseline. The hash must match the content."""
        digest = hashlib.sha256(canonical_json(baseline.content).encode()).hexdigest()
        if digest != baseline.hash:
            raise InvalidObjectError("baseline hash does not match its content", object_ref="Baseline", field="hash")
        with self._lock:
            self._baseline = baseline
        if self._audit is not None:
            self._audit.emit(actor, "baseline_set", f"baseline:{baseline.hash[:12]}", {
                "version": baseline.version,
                "objects": len(baseline.content),
            })
        logger.info("baseline_set", hash=baseline.hash[:12], version=baseline.version, actor=actor)
        return baseline

    def capture_baseline(self, actor: str = "operator") -> Baseline:
        return self.set_baseline(self._store.snapshot(), actor=actor)

    # ── Scan ─────────────────────────────────────────────────────────────────

    def scan(self) -> list[Violation]:
        now = self._clock()
        with self._store.view() as view:
            version = view.version
            objects = [o for kind in ObjectKind for o in view.list(kind)]
            roles = {r.id: r for r in view.list(ObjectKind.role)}

        violations: list[Violation] = []
        for obj in objects:
            if isinstance(obj, Role):
                violations.extend(self._check_wildcards(obj, now))
            elif isinstance(obj, RoleBinding):
                violations.extend(self._check_cluster_admin(obj, roles.get(obj.role_id()), now))
            elif isinstance(obj, NetworkPolicy):
                violations.extend(self._check_unscoped_ingress(obj, now))
        violations.extend(self._check_orphaned_grants(now))

        baseline = self.baseline
        if baseline is not None:
            current = {snapshot_key(o): o.model_dump(mode="json") for o in objects}
            violations.extend(self._check_drift(baseline, current, now))

        violations = sort_violations(violations)
        with self._lock:
            self._history.append(ScanResult(
                scanned_at=now,
                store_version=version,
                baseline_hash=baseline.hash if baseline else None,
                violations=tuple(violations),
            ))

        counts: dict[str, int] = {}
        for v in violations:
            counts[v.kind.value] = counts.get(v.kind.value, 0) + 1
        logger.info("drift_scan_complete", store_version=version, violations=len(violations), **counts)
        return violations

    def history(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> list[ScanResult]:
        with self._lock:
            results = list(self._history)
        return [
            r for r in results
            if (since is None or r.scanned_at >= since) and (until is None or r.scanned_at <= until)
        ]

    # ── Checks ───────────────────────────────────────────────────────────────

    @staticmethod
    def _violation(kind: ViolationKind, severity: Severity, object_ref: str, namespace, message: str,
                   now: datetime, detail: dict, discriminator: str = "") -> Violation:
        return Violation(
            id=fingerprint(kind, object_ref, discriminator),
            kind=kind,
            severity=severity,
            object_ref=object_ref,
            namespace=namespace,
            message=message,
            detected_at=now,
            detail=detail,
        )

    def _check_wildcards(self, role: Role, now: datetime) -> list[Violation]:
        flagged = [i for i, rule in enumerate(role.rules) if rule_has_wildcard(rule)]
        if not flagged:
            return []
        if any(rule_is_full_wildcard(role.rules[i]) for i in flagged):
            severity = Severity.critical
        elif role.namespace is None:
            severity = Severity.high
        else:
            severity = Severity.medium
        return [self._violation(
            ViolationKind.wildcard_permission, severity, str(ref_of(role)), role.namespace,
            f"Role {role.id} grants wildcard verbs or resources in {len(flagged)} rule(s)",
            now,
            {
                "rules": flagged,
                "verbs": sorted({v for i in flagged for v in role.rules[i].verbs}),
                "resources": sorted({r for i in flagged for r in role.rules[i].resources}),
            },
        )]

    def _check_cluster_admin(self, binding: RoleBinding, role: Optional[Role], now: datetime) -> list[Violation]:
        if role is None or not role_is_cluster_admin(role, self._settings.cluster_admin_roles):
            return []
        standing = binding.expires_at is None
        return [self._violation(
            ViolationKind.cluster_admin_binding,
            Severity.critical if standing else Severity.high,
            str(ref_of(binding)), binding.namespace,
            (
                f"RoleBinding {binding.id} grants cluster-admin-equivalent Role {role.id} "
                f"to {binding.subject.kind.value} {binding.subject.name}"
                + ("" if standing else f" until {binding.expires_at.isoformat()}")
            ),
            now,
            {
                "role": role.id,
                "subject": binding.subject.name,
                "subject_kind": binding.subject.kind.value,
                "expires_at": binding.expires_at.isoformat() if binding.expires_at else None,
                "grant_id": binding.grant_id,
            },
        )]

    def _check_unscoped_ingress(self, policy: NetworkPolicy, now: datetime) -> list[Violation]:
        if Direction.ingress not in policy.policy_types:
            return []
        open_rules = [i for i, rule in enumerate(policy.ingress) if rule_is_unscoped(rule)]
        if not open_rules:
            return []
        any_port = any(not policy.ingress[i].ports for i in open_rules)
        return [self._violation(
            ViolationKind.unscoped_network_ingress,
            Severity.high if any_port else Severity.medium,
            str(ref_of(policy)), policy.namespace,
            f"NetworkPolicy {policy.id} allows ingress from any peer in {len(open_rules)} rule(s)",
            now,
            {"rules": open_rules, "any_port": any_port},
        )]

    def _check_orphaned_grants(self, now: datetime) -> list[Violation]:
        if self._jit is None or self._decision_log is None:
            return []
        window = timedelta(minutes=self._settings.orphan_staleness_minutes)
        violations = []
        for grant in self._jit.list_active_grants():
            last_query = self._decision_log.last_query(grant.principal.name, grant.namespace)
            reference = grant.activated_at
            if last_query is not None and (reference is None or last_query > reference):
                reference = last_query
            if reference is None or now - reference <= window:
                continue
            idle_minutes = int((now - reference).total_seconds() // 60)
            violations.append(self._violation(
                ViolationKind.orphaned_grant, Severity.medium, f"grant:{grant.id}", grant.namespace,
                (
                    f"JIT grant {grant.id} for {grant.principal.name} has not been used in "
                    f"namespace {grant.namespace} for {idle_minutes} minutes"
                ),
                now,
                {
                    "principal": grant.principal.name,
                    "role": grant.role_ref.name,
                    "last_query": last_query.isoformat() if last_query else None,
                    "activated_at": grant.activated_at.isoformat() if grant.activated_at else None,
                    "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
                    "staleness_minutes": self._settings.orphan_staleness_minutes,
                },
            ))
        return violations

    def _is_managed_binding(self, body: dict) -> bool:
        """A grant_id alone proves nothing; the controller must recognise the binding."""
        if self._jit is None or body.get("kind") != ObjectKind.role_binding.value or body.get("grant_id") is None:
            return False
        return self._jit.owns_binding(RoleBinding.model_validate(body))

    def _check_drift(self, baseline: Baseline, current: dict[str, dict], now: datetime) -> list[Violation]:
        before = {k: v for k, v in baseline.content.items() if not self._is_managed_binding(v)}
        after = {k: v for k, v in current.items() if not self._is_managed_binding(v)}

        violations = []
        for key in sorted(set(before) | set(after)):
            old, new = before.get(key), after.get(key)
            if old == new:
                continue
            if old is None:
                change, changes = "added", [{"path": "$", "before": None, "after": new}]
            elif new is None:
                change, changes = "removed", [{"path": "$", "before": old, "after": None}]
            else:
                change, changes = "modified", diff_objects(old, new)

            body = new if new is not None else old
            kind = body.get("kind", key.split(":", 1)[0])
            violations.append(self._violation(
                ViolationKind.configuration_drift,
                _DRIFT_SEVERITY.get(kind, Severity.medium),
                key, _body_namespace(body),
                f"{key} was {change} since baseline {baseline.hash[:12]}",
                now,
                {"change": change, "baseline_hash": baseline.hash, "diff": changes},
                discriminator=f"{change}|{baseline.hash}",
            ))
        return violations
