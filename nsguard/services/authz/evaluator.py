"""
AuthorizationEvaluator - answers "can principal P do verb V on resource R in namespace N".

Evaluation order:
  1. cancellation / deadline checkpoint       → Deny ErrCanceled
  2. decision cache (keyed by store version)  → cached Decision
  3. group resolution via IdentityProvider    → Deny ErrIdentityTimeout / ErrIdentityUnavailable
  4. walk live bindings in scope (target namespace or cluster-wide) whose subject
     matches the principal; first Rule that matches → Allow
  5. default                                  → Deny NoMatchingBinding

Roles are allow-only, so rule order never changes the outcome, only which
binding is reported. Every decision is recorded in the DecisionLog.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from cachetools import TTLCache
from pydantic import BaseModel, ConfigDict

from nsguard.services.authz.context import EvaluationContext
from nsguard.services.authz.decision_log import DecisionLog, DecisionRecord
from nsguard.services.authz.identity import IdentityProvider, StaticIdentityProvider
from nsguard.services.shared.config import EngineSettings
from nsguard.services.shared.errors import CanceledError, IdentityTimeoutError, IdentityUnavailableError
from nsguard.services.shared.matcher import (
    ResourceRequest, matches_rule, rule_covers_resource, subject_matches,
)
from nsguard.services.shared.models import DecisionOutcome, Principal, utcnow

logger = structlog.get_logger()

REASON_ALLOWED             = "Allowed"
REASON_NO_MATCHING_BINDING = "NoMatchingBinding"


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome:     DecisionOutcome
    reason_code: str
    reason:      str
    binding:     Optional[str] = None
    role:        Optional[str] = None
    rule_index:  Optional[int] = None
    cached:      bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.allow


def _deny(reason_code: str, reason: str) -> Decision:
    return Decision(outcome=DecisionOutcome.deny, reason_code=reason_code, reason=reason)


def _scope_text(namespace: Optional[str]) -> str:
    return f"namespace={namespace}" if namespace else "cluster scope"


class AuthorizationEvaluator:
    def __init__(
        self,
        store,
        settings: Optional[EngineSettings] = None,
        identity_provider: Optional[IdentityProvider] = None,
        decision_log: Optional[DecisionLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._settings = settings or EngineSettings()
        self._identity = identity_provider or StaticIdentityProvider()
        self.decision_log = decision_log if decision_log is not None else DecisionLog()
        self._clock = clock
        self._cache_lock = threading.Lock()
        self._cache: Optional[TTLCache] = None
        if self._settings.decision_cache_ttl_seconds > 0 and self._settings.decision_cache_size > 0:
            self._cache = TTLCache(
                maxsize=self._settings.decision_cache_size,
                ttl=self._settings.decision_cache_ttl_seconds,
            )

    # ── Public API ───────────────────────────────────────────────────────────

    def authorize(
        self,
        principal: Principal,
        verb: str,
        resource: str,
        namespace: Optional[str],
        *,
        api_group: str = "",
        resource_name: Optional[str] = None,
        context: Optional[EvaluationContext] = None,
    ) -> Decision:
        request = ResourceRequest(
            verb=verb, resource=resource, namespace=namespace,
            api_group=api_group, resource_name=resource_name,
        )
        now = self._clock()
        try:
            decision = self._decide(principal, request, now, context)
        except CanceledError as exc:
            decision = _deny(CanceledError.code, f"evaluation cancelled before completion: {exc.message}")
        except (IdentityTimeoutError, IdentityUnavailableError) as exc:
            decision = _deny(exc.code, exc.message)

        self._record(principal, request, decision, now)
        return decision

    def allowed_verbs(
        self,
        principal: Principal,
        resource: str,
        namespace: Optional[str],
        *,
        api_group: str = "",
        context: Optional[EvaluationContext] = None,
    ) -> list[str]:
        """
        Verbs the principal holds on every object of a resource type.
        Name-restricted rules are left out. Evaluation errors yield an empty list.
        """
        now = self._clock()
        verbs: set[str] = set()
        try:
            groups = self._resolve_groups(principal, context)
            with self._store.view() as view:
                for binding in self._candidate_bindings(view, principal, groups, namespace, now):
                    role = view.role_for(binding)
                    if role is None:
                        continue
                    for rule in role.rules:
                        if context is not None:
                            context.check()
                        if not rule.resource_names and rule_covers_resource(rule, api_group, resource):
                            verbs.update(rule.verbs)
        except (CanceledError, IdentityTimeoutError, IdentityUnavailableError) as exc:
            logger.warning("allowed_verbs_failed", principal=principal.name, code=exc.code)
            return []
        return sorted(verbs)

    def invalidate_cache(self) -> None:
        if self._cache is not None:
            with self._cache_lock:
                self._cache.clear()

    # ── Internals ────────────────────────────────────────────────────────────

    def _resolve_groups(self, principal: Principal, context: Optional[EvaluationContext]) -> frozenset[str]:
        if context is not None:
            context.check()
        remaining = context.remaining() if context is not None else None
        groups = self._identity.resolve_groups(principal, timeout=remaining)
        if context is not None:
            context.check()
        return groups

    @staticmethod
    def _candidate_bindings(view, principal: Principal, groups: frozenset[str], namespace: Optional[str], now):
        """Live bindings in scope whose subject matches; namespaced bindings first, then by id."""
        matched = [
            b for b in view.bindings()
            if (b.namespace is None or b.namespace == namespace)
            and b.is_live(now)
            and subject_matches(b.subject, principal, groups)
        ]
        return sorted(matched, key=lambda b: (b.namespace is None, b.id))

    def _decide(
        self,
        principal: Principal,
        request: ResourceRequest,
        now: datetime,
        context: Optional[EvaluationContext],
    ) -> Decision:
        if context is not None:
            context.check()

        cache_key = (principal, request, self._store.version)
        cached = self._cache_get(cache_key, now)
        if cached is not None:
            return cached.model_copy(update={"cached": True})

        groups = self._resolve_groups(principal, context)

        with self._store.view() as view:
            version = view.version
            for binding in self._candidate_bindings(view, principal, groups, request.namespace, now):
                role = view.role_for(binding)
                if role is None:
                    continue
                for index, rule in enumerate(role.rules):
                    if context is not None:
                        context.check()
                    if matches_rule(rule, request):
                        decision = Decision(
                            outcome=DecisionOutcome.allow,
                            reason_code=REASON_ALLOWED,
                            reason=(
                                f"RoleBinding {binding.id} grants verb={request.verb} on "
                                f"resource={request.resource} in {_scope_text(request.namespace)} "
                                f"via Role {role.id}"
                            ),
                            binding=binding.id,
                            role=role.id,
                            rule_index=index,
                        )
                        self._cache_put((principal, request, version), decision, now, binding.expires_at)
                        return decision

        target = request.resource if request.resource_name is None else f"{request.resource}/{request.resource_name}"
        decision = _deny(
            REASON_NO_MATCHING_BINDING,
            f"no RoleBinding grants verb={request.verb} on resource={target} in {_scope_text(request.namespace)}",
        )
        self._cache_put((principal, request, version), decision, now, None)
        return decision

    def _cache_get(self, key, now: datetime) -> Optional[Decision]:
        if self._cache is None:
            return None
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            decision, valid_until = entry
            if valid_until is not None and now >= valid_until:
                del self._cache[key]
                return None
            return decision

    def _cache_put(self, key, decision: Decision, now: datetime, binding_expires_at: Optional[datetime]) -> None:
        """Entries never outlive the expiresAt of the binding that produced them."""
        if self._cache is None:
            return
        valid_until = now + timedelta(seconds=self._settings.decision_cache_ttl_seconds)
        if binding_expires_at is not None:
            valid_until = min(valid_until, binding_expires_at)
        with self._cache_lock:
            self._cache[key] = (decision, valid_until)

    def _record(self, principal: Principal, request: ResourceRequest, decision: Decision, now: datetime) -> None:
        self.decision_log.record(DecisionRecord(
            principal=principal.name,
            verb=request.verb,
            resource=request.resource,
            resource_name=request.resource_name,
            api_group=request.api_group,
            namespace=request.namespace,
            outcome=decision.outcome,
            reason_code=decision.reason_code,
            binding=decision.binding,
            cached=decision.cached,
            timestamp=now,
        ))
        logger.info(
            "authz_decision",
            principal=principal.name,
            verb=request.verb,
            resource=request.resource,
            namespace=request.namespace,
            outcome=decision.outcome.value,
            reason_code=decision.reason_code,
            binding=decision.binding,
            cached=decision.cached,
        )
