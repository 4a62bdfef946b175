"""
JITAccessController - creates, tracks and expires time-bounded elevated RoleBindings.

Lifecycle:
  request_grant   → Requested (auto-approved + activated when the Role does not require approval)
  approve_grant   → Approved → Active  (creates RoleBinding jit-<grant_id> with expires_at)
  deny_grant      → Revoked  (reason "denied")
  revoke_grant    → Revoked  (reason "revoked")
  sweep           → Expired  (Active past expires_at, or Requested past the request TTL)

Every terminal transition goes through _end_grant: mark the grant terminal under
the controller lock, then delete the binding if it is still present. Concurrent
revoke + expiry therefore reduce to one transition and at most one delete.

Bindings removed behind the controller's back (namespace cascade, manual delete)
are noticed through the store listener and end the grant as Revoked
(reason "binding_removed").
"""

import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

import structlog

from nsguard.services.shared.audit import AuditTrail
from nsguard.services.shared.config import EngineSettings
from nsguard.services.shared.errors import (
    DanglingReferenceError, GrantNotFoundError, InvalidDurationError,
    InvalidTargetError, SelfApprovalError,
)
from nsguard.services.shared.models import (
    TERMINAL_GRANT_STATES, AccessGrant, GrantEvent, GrantState, Namespace,
    ObjectKind, Principal, Role, RoleBinding, RoleRef, Subject, object_id, utcnow,
)
from nsguard.services.store.policy_store import PolicyStore, StoreChange

logger = structlog.get_logger()

AUTO_APPROVER = "system:auto-approver"
SWEEPER_ACTOR = "system:jit-sweeper"
STORE_ACTOR   = "system:policy-store"

BINDING_PREFIX = "jit-"


class JITAccessController:
    def __init__(
        self,
        store: PolicyStore,
        audit: Optional[AuditTrail] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._audit = audit if audit is not None else AuditTrail(clock=clock)
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._grants: dict[str, AccessGrant] = {}
        self._lock = threading.RLock()
        store.subscribe(self._on_store_change)

    # ── Requests and approvals ───────────────────────────────────────────────

    def request_grant(
        self,
        principal: Principal,
        role_ref: Union[RoleRef, str],
        namespace: str,
        duration: timedelta,
        justification: str = "",
        requested_by: Optional[str] = None,
    ) -> AccessGrant:
        if isinstance(role_ref, str):
            role_ref = RoleRef(name=role_ref)
        self._check_duration(duration)
        role = self._resolve_target(role_ref, namespace)

        now = self._clock()
        requester = requested_by or principal.name
        grant = AccessGrant(
            id=uuid.uuid4().hex[:12],
            principal=principal,
            role_ref=role_ref,
            namespace=namespace,
            duration=duration,
            justification=justification,
            requested_by=requester,
            requested_at=now,
        )
        with self._lock:
            self._grants[grant.id] = grant
            self._transition(grant, GrantState.requested, "requested", requester, {
                "role": role.id,
                "duration_seconds": int(duration.total_seconds()),
                "justification": justification,
            }, now=now)

        logger.info(
            "jit_grant_requested",
            grant_id=grant.id,
            principal=principal.name,
            role=role.id,
            namespace=namespace,
            requires_approval=role.requires_approval,
        )

        if not role.requires_approval:
            return self._approve(grant.id, AUTO_APPROVER)
        return self.get_grant(grant.id)

    def approve_grant(self, grant_id: str, approver: str) -> AccessGrant:
        """Approval activates immediately. Approving a grant that is past Requested is a no-op."""
        with self._lock:
            grant = self._get(grant_id)
            if grant.state == GrantState.requested and approver in (grant.requested_by, grant.principal.name):
                raise SelfApprovalError(
                    f"'{approver}' cannot approve grant {grant_id} they requested or would receive",
                    object_ref=f"grant:{grant_id}", field="approver",
                )
        return self._approve(grant_id, approver)

    def deny_grant(self, grant_id: str, actor: str) -> AccessGrant:
        with self._lock:
            grant = self._get(grant_id)
            if grant.state != GrantState.requested:
                logger.info("jit_grant_deny_noop", grant_id=grant_id, state=grant.state.value)
                return grant.model_copy(deep=True)
        self._end_grant(grant_id, GrantState.revoked, "denied", actor)
        return self.get_grant(grant_id)

    def revoke_grant(self, grant_id: str, actor: str) -> AccessGrant:
        """Idempotent: revoking an expired or already-revoked grant changes nothing."""
        self._end_grant(grant_id, GrantState.revoked, "revoked", actor)
        return self.get_grant(grant_id)

    # ── Expiry ───────────────────────────────────────────────────────────────

    def sweep(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Expire Active grants past expires_at and Requested grants past the request TTL."""
        now = now or self._clock()
        request_ttl = timedelta(minutes=self._settings.jit_request_ttl_minutes)
        with self._lock:
            expired = [
                g.id for g in self._grants.values()
                if g.state == GrantState.active and g.expires_at is not None and g.expires_at <= now
            ]
            stale = [
                g.id for g in self._grants.values()
                if g.state == GrantState.requested and g.requested_at + request_ttl <= now
            ]

        counts = {"expired": 0, "stale_requests": 0}
        for grant_id in expired:
            if self._end_grant(grant_id, GrantState.expired, "ttl_elapsed", SWEEPER_ACTOR, now=now):
                counts["expired"] += 1
        for grant_id in stale:
            if self._end_grant(grant_id, GrantState.expired, "request_ttl_elapsed", SWEEPER_ACTOR, now=now):
                counts["stale_requests"] += 1

        if counts["expired"] or counts["stale_requests"]:
            logger.info("jit_sweep_complete", **counts)
        return counts

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_grant(self, grant_id: str) -> AccessGrant:
        with self._lock:
            return self._get(grant_id).model_copy(deep=True)

    def list_active_grants(self, namespace: Optional[str] = None) -> list[AccessGrant]:
        with self._lock:
            grants = [
                g.model_copy(deep=True) for g in self._grants.values()
                if g.state == GrantState.active and (namespace is None or g.namespace == namespace)
            ]
        return sorted(grants, key=lambda g: (g.activated_at, g.id))

    def list_grants(
        self,
        namespace: Optional[str] = None,
        principal: Optional[str] = None,
        state: Optional[GrantState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AccessGrant]:
        """All grants including ended ones, newest request first."""
        with self._lock:
            grants = [
                g.model_copy(deep=True) for g in self._grants.values()
                if (namespace is None or g.namespace == namespace)
                and (principal is None or g.principal.name == principal)
                and (state is None or g.state == state)
            ]
        grants.sort(key=lambda g: (g.requested_at, g.id), reverse=True)
        return grants[offset:offset + limit]

    def owns_binding(self, binding: RoleBinding) -> bool:
        """True only for the exact RoleBinding this controller created for binding.grant_id."""
        if binding.grant_id is None:
            return False
        with self._lock:
            grant = self._grants.get(binding.grant_id)
            if grant is None or grant.binding_id != binding.id:
                return False
            return (
                binding.subject.name == grant.principal.name
                and binding.role_ref == grant.role_ref
                and binding.expires_at == grant.expires_at
            )

    # ── Internals ────────────────────────────────────────────────────────────

    def _get(self, grant_id: str) -> AccessGrant:
        grant = self._grants.get(grant_id)
        if grant is None:
            raise GrantNotFoundError(f"grant '{grant_id}' not found", object_ref=f"grant:{grant_id}")
        return grant

    def _check_duration(self, duration: timedelta) -> None:
        max_ttl = timedelta(hours=self._settings.max_jit_ttl_hours)
        if duration <= timedelta(0):
            raise InvalidDurationError("duration must be positive", field="duration")
        if duration > max_ttl:
            raise InvalidDurationError(
                f"Grant TTL exceeds maximum of {self._settings.max_jit_ttl_hours} hours",
                field="duration",
            )

    def _resolve_target(self, role_ref: RoleRef, namespace: str) -> Role:
        with self._store.view() as view:
            if view.get(ObjectKind.namespace, namespace) is None:
                raise InvalidTargetError(
                    f"Namespace '{namespace}' does not exist", object_ref=f"Namespace:{namespace}", field="namespace",
                )
            role_id = role_ref.name if role_ref.cluster_scoped else object_id(namespace, role_ref.name)
            role = view.get(ObjectKind.role, role_id)
        if role is None:
            raise InvalidTargetError(f"Role '{role_id}' does not exist", object_ref=f"Role:{role_id}", field="role_ref")
        return role

    def _transition(
        self,
        grant: AccessGrant,
        state: GrantState,
        action: str,
        actor: str,
        detail: dict,
        now: Optional[datetime] = None,
    ) -> None:
        """Caller holds the lock."""
        now = now or self._clock()
        grant.state = state
        grant.history.append(GrantEvent(action=action, actor=actor, timestamp=now, state=state, detail=detail))
        self._audit.emit(
            actor=actor,
            action=f"jit_grant_{action}",
            resource=f"grant:{grant.id}",
            timestamp=now,
            detail={
                "principal": grant.principal.name,
                "role": grant.role_ref.name,
                "namespace": grant.namespace,
                "state": state.value,
                **detail,
            },
        )

    def _approve(self, grant_id: str, approver: str) -> AccessGrant:
        with self._lock:
            grant = self._get(grant_id)
            if grant.state != GrantState.requested:
                logger.info("jit_grant_approve_noop", grant_id=grant_id, state=grant.state.value)
                return grant.model_copy(deep=True)

            now = self._clock()
            grant.approved_by = approver
            grant.approved_at = now
            self._transition(grant, GrantState.approved, "approved", approver, {}, now=now)
            logger.info("jit_grant_approved", grant_id=grant_id, approver=approver)
            self._activate(grant, now)
            return grant.model_copy(deep=True)

    def _activate(self, grant: AccessGrant, now: datetime) -> None:
        """Approved → Active. Caller holds the lock."""
        expires_at = now + grant.duration
        binding = RoleBinding(
            name=f"{BINDING_PREFIX}{grant.id}",
            namespace=grant.namespace,
            subject=Subject(kind=grant.principal.kind, name=grant.principal.name),
            role_ref=grant.role_ref,
            expires_at=expires_at,
            grant_id=grant.id,
        )
        try:
            self._store.put(binding)
        except DanglingReferenceError as exc:
            grant.ended_at = now
            grant.end_reason = "invalid_target"
            self._transition(grant, GrantState.revoked, "revoked", STORE_ACTOR, {"reason": "invalid_target"}, now=now)
            raise InvalidTargetError(
                f"grant {grant.id} target no longer exists: {exc.message}",
                object_ref=f"grant:{grant.id}", field=exc.field,
            ) from exc

        grant.activated_at = now
        grant.expires_at = expires_at
        grant.binding_name = binding.name
        self._transition(grant, GrantState.active, "activated", grant.approved_by or AUTO_APPROVER, {
            "binding": binding.id,
            "expires_at": expires_at.isoformat(),
        }, now=now)
        logger.info(
            "jit_grant_activated",
            grant_id=grant.id,
            principal=grant.principal.name,
            binding=binding.id,
            expires_at=expires_at.isoformat(),
        )

    def _end_grant(
        self,
        grant_id: str,
        state: GrantState,
        reason: str,
        actor: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Single terminal-transition path for expiry, revocation, denial and external removal.
        Returns False when the grant had already ended.
        """
        with self._lock:
            grant = self._get(grant_id)
            if grant.state in TERMINAL_GRANT_STATES:
                logger.info("jit_grant_end_noop", grant_id=grant_id, state=grant.state.value, reason=reason)
                return False
            grant.ended_at = now or self._clock()
            grant.end_reason = reason
            action = "expired" if state == GrantState.expired else ("denied" if reason == "denied" else "revoked")
            self._transition(grant, state, action, actor, {"reason": reason}, now=grant.ended_at)
            binding_id = grant.binding_id

        removed = False
        if binding_id is not None:
            removed = self._store.delete(ObjectKind.role_binding, binding_id)

        logger.info(
            f"jit_grant_{action}",
            grant_id=grant_id,
            actor=actor,
            reason=reason,
            binding=binding_id,
            binding_removed=removed,
        )
        return True

    def _on_store_change(self, change: StoreChange) -> None:
        removed_namespaces = {o.name for o in change.deleted if isinstance(o, Namespace)}
        removed_roles = {o.id for o in change.deleted if isinstance(o, Role)}
        removed_grant_bindings = {
            o.grant_id for o in change.deleted if isinstance(o, RoleBinding) and o.grant_id
        }
        if not (removed_namespaces or removed_roles or removed_grant_bindings):
            return

        with self._lock:
            affected: list[tuple[str, str]] = []
            for grant in self._grants.values():
                if grant.state in TERMINAL_GRANT_STATES:
                    continue
                if grant.state == GrantState.active and grant.id in removed_grant_bindings:
                    affected.append((grant.id, "binding_removed"))
                    continue
                role_id = (
                    grant.role_ref.name if grant.role_ref.cluster_scoped
                    else object_id(grant.namespace, grant.role_ref.name)
                )
                if grant.namespace in removed_namespaces or role_id in removed_roles:
                    affected.append((grant.id, "target_removed"))

        for grant_id, reason in affected:
            self._end_grant(grant_id, GrantState.revoked, reason, STORE_ACTOR)
