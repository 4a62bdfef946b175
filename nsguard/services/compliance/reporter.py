"""
ComplianceReporter - aggregates scan results and JIT audit trails into a Report.

Violations from every scan in the period are deduplicated by fingerprint id
(first_seen / last_seen / occurrences), ordered by severity → namespace → kind →
object, and grouped by severity then namespace. When the period covers "now",
a fresh scan is included so the report reflects the current store.
"""

import json
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from nsguard.services.compliance.controls import controls_for_kind
from nsguard.services.shared.models import SEVERITY_ORDER, Severity, Violation, ViolationKind, utcnow

logger = structlog.get_logger()

CLUSTER_SCOPE = "(cluster)"
MAX_JIT_EVENTS = 10_000


class ReportPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end:   datetime

    @model_validator(mode="after")
    def _check_order(self) -> "ReportPeriod":
        if self.end < self.start:
            raise ValueError("period end must not be before start")
        return self

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


class ReportedViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id:          str
    kind:        ViolationKind
    severity:    Severity
    object_ref:  str
    namespace:   Optional[str] = None
    message:     str
    first_seen:  datetime
    last_seen:   datetime
    occurrences: int
    detail:      dict[str, Any] = Field(default_factory=dict)


class NamespaceGroup(BaseModel):
    namespace:  str
    violations: list[ReportedViolation]


class SeverityGroup(BaseModel):
    severity:   Severity
    namespaces: list[NamespaceGroup]


class Report(BaseModel):
    generated_at: datetime
    period:       ReportPeriod
    summary:      dict[str, Any]
    groups:       list[SeverityGroup]
    jit_events:   list[dict[str, Any]]
    controls:     list[dict[str, Any]]

    def violations(self) -> list[ReportedViolation]:
        return [v for g in self.groups for ns in g.namespaces for v in ns.violations]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)

    def to_text(self) -> str:
        lines = [
            "nsguard compliance report",
            f"period: {self.period.start.isoformat()} .. {self.period.end.isoformat()}",
            f"generated: {self.generated_at.isoformat()}",
            f"violations: {self.summary['total_violations']} "
            + " ".join(f"{s}={n}" for s, n in self.summary["by_severity"].items()),
            "",
        ]
        for group in self.groups:
            lines.append(f"[{group.severity.value.upper()}]")
            for ns in group.namespaces:
                lines.append(f"  namespace {ns.namespace}")
                for v in ns.violations:
                    lines.append(
                        f"    {v.kind.value:<24} {v.object_ref}  x{v.occurrences}  "
                        f"{v.first_seen.isoformat()} .. {v.last_seen.isoformat()}"
                    )
                    lines.append(f"      {v.message}")
            lines.append("")

        lines.append(f"JIT events: {len(self.jit_events)}")
        for e in self.jit_events:
            lines.append(f"  {e['timestamp']}  {e['action']:<22} {e['resource']}  by {e['actor']}")
        lines.append("")

        if self.controls:
            lines.append("Controls:")
            for c in self.controls:
                refs = ", ".join(f"{r['framework']} {r['identifier']}" for r in c["refs"])
                lines.append(f"  {c['control_name']}: {refs}")
        return "\n".join(lines).rstrip() + "\n"


def _dedupe(violations) -> list[ReportedViolation]:
    merged: dict[str, dict[str, Any]] = {}
    for v in violations:
        entry = merged.get(v.id)
        if entry is None:
            merged[v.id] = {"latest": v, "first": v.detected_at, "last": v.detected_at, "count": 1}
            continue
        entry["count"] += 1
        entry["first"] = min(entry["first"], v.detected_at)
        if v.detected_at >= entry["last"]:
            entry["last"] = v.detected_at
            entry["latest"] = v

    reported = []
    for entry in merged.values():
        v: Violation = entry["latest"]
        reported.append(ReportedViolation(
            id=v.id,
            kind=v.kind,
            severity=v.severity,
            object_ref=v.object_ref,
            namespace=v.namespace,
            message=v.message,
            first_seen=entry["first"],
            last_seen=entry["last"],
            occurrences=entry["count"],
            detail=v.detail,
        ))
    reported.sort(key=lambda r: (SEVERITY_ORDER[r.severity], r.namespace or "", r.kind.value, r.object_ref))
    return reported


def _group(reported: list[ReportedViolation]) -> list[SeverityGroup]:
    groups: list[SeverityGroup] = []
    for v in reported:
        if not groups or groups[-1].severity != v.severity:
            groups.append(SeverityGroup(severity=v.severity, namespaces=[]))
        namespaces = groups[-1].namespaces
        ns = v.namespace or CLUSTER_SCOPE
        if not namespaces or namespaces[-1].namespace != ns:
            namespaces.append(NamespaceGroup(namespace=ns, violations=[]))
        namespaces[-1].violations.append(v)
    return groups


class ComplianceReporter:
    def __init__(self, detector, jit=None, audit=None, clock: Callable[[], datetime] = utcnow):
        self._detector = detector
        self._jit = jit
        self._audit = audit
        self._clock = clock

    def generate(self, period: ReportPeriod, live_scan: bool = True) -> Report:
        now = self._clock()
        scans = self._detector.history(since=period.start, until=period.end)
        violations = [v for scan in scans for v in scan.violations]
        if live_scan and period.contains(now):
            violations.extend(self._detector.scan())

        reported = _dedupe(violations)

        jit_events: list[dict[str, Any]] = []
        if self._audit is not None:
            entries = self._audit.query(
                action="jit_grant_*", since=period.start, until=period.end, limit=MAX_JIT_EVENTS,
            )
            entries.reverse()
            jit_events = [e.model_dump(mode="json") for e in entries]

        by_severity = {s.value: 0 for s in sorted(Severity, key=lambda s: SEVERITY_ORDER[s])}
        by_kind = {k.value: 0 for k in ViolationKind}
        for v in reported:
            by_severity[v.severity.value] += 1
            by_kind[v.kind.value] += 1

        summary: dict[str, Any] = {
            "total_violations": len(reported),
            "by_severity":      by_severity,
            "by_kind":          by_kind,
            "scans":            len(scans) + (1 if live_scan and period.contains(now) else 0),
            "jit_events":       len(jit_events),
        }
        if self._jit is not None:
            grants = [g for g in self._jit.list_grants(limit=MAX_JIT_EVENTS) if period.contains(g.requested_at)]
            states: dict[str, int] = {}
            for g in grants:
                states[g.state.value] = states.get(g.state.value, 0) + 1
            summary["jit_grants"] = {"requested": len(grants), "by_state": dict(sorted(states.items()))}

        kinds_present = {v.kind for v in reported}
        controls = [c.to_dict() for k in ViolationKind if k in kinds_present for c in controls_for_kind(k)]

        report = Report(
            generated_at=now,
            period=period,
            summary=summary,
            groups=_group(reported),
            jit_events=jit_events,
            controls=controls,
        )
        logger.info(
            "compliance_report_generated",
            violations=len(reported),
            jit_events=len(jit_events),
            start=period.start.isoformat(),
            end=period.end.isoformat(),
        )
        return report
