"""
Unit tests for JITAccessController: request → approve → active → expired/revoked.
"""

from datetime import timedelta

import pytest

from conftest import make_role
from nsguard.services.jit.controller import JITAccessController
from nsguard.services.shared.audit import AuditTrail
from nsguard.services.shared.errors import (
    GrantNotFoundError, InvalidDurationError, InvalidTargetError, SelfApprovalError,
)
from nsguard.services.shared.models import GrantState, ObjectKind, Principal, RoleRef

BOB = Principal(name="bob")


def exec_allowed(engine, principal=BOB) -> bool:
    return engine.authorizer.authorize(principal, "create", "pods/exec", "ns-a").allowed


# ── Auto-approval and expiry ───────────────────────────────────────────────────

class TestAutoApproved:
    def test_role_without_approval_activates_immediately(self, engine, clock):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=30), "debug incident 42")
        assert grant.state == GrantState.active
        assert grant.approved_by == "system:auto-approver"
        assert grant.expires_at == clock() + timedelta(minutes=30)
        assert grant.binding_name == f"jit-{grant.id}"

        binding = engine.store.get(ObjectKind.role_binding, f"ns-a/jit-{grant.id}")
        assert binding.grant_id == grant.id
        assert binding.expires_at == grant.expires_at
        assert exec_allowed(engine)

    def test_sweep_stamps_the_time_it_was_given(self, engine, clock):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=30))
        at = clock() + timedelta(minutes=45)
        assert engine.jit.sweep(now=at) == {"expired": 1, "stale_requests": 0}

        ended = engine.jit.get_grant(grant.id)
        assert ended.ended_at == at
        assert ended.history[-1].timestamp == at
        assert engine.audit.query(action="jit_grant_expired")[0].timestamp == at

    def test_sweep_expires_and_removes_binding(self, engine, clock):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=30))
        clock.advance(minutes=29)
        assert engine.jit.sweep() == {"expired": 0, "stale_requests": 0}
        assert exec_allowed(engine)

        clock.advance(minutes=1)
        assert engine.jit.sweep() == {"expired": 1, "stale_requests": 0}
        ended = engine.jit.get_grant(grant.id)
        assert ended.state == GrantState.expired
        assert ended.end_reason == "ttl_elapsed"
        assert engine.store.get(ObjectKind.role_binding, f"ns-a/jit-{grant.id}") is None
        assert not exec_allowed(engine)

    def test_binding_stops_granting_at_expiry_even_before_sweep(self, engine, clock):
        engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=10))
        clock.advance(minutes=10)
        assert not exec_allowed(engine)

    def test_second_sweep_is_a_no_op(self, engine, clock):
        engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=5))
        clock.advance(minutes=5)
        engine.jit.sweep()
        version = engine.store.version
        assert engine.jit.sweep() == {"expired": 0, "stale_requests": 0}
        assert engine.store.version == version


# ── Approval workflow ──────────────────────────────────────────────────────────

class TestApprovalFlow:
    def test_requires_approval(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1), "rotate creds")
        assert grant.state == GrantState.requested
        assert engine.store.get(ObjectKind.role_binding, f"ns-a/jit-{grant.id}") is None
        assert not engine.authorizer.authorize(BOB, "get", "secrets", "ns-a").allowed

        approved = engine.jit.approve_grant(grant.id, "carol")
        assert approved.state == GrantState.active
        assert approved.approved_by == "carol"
        assert engine.authorizer.authorize(BOB, "get", "secrets", "ns-a").allowed
        assert [e.action for e in approved.history] == ["requested", "approved", "activated"]

    def test_self_approval_rejected(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))
        with pytest.raises(SelfApprovalError):
            engine.jit.approve_grant(grant.id, "bob")
        assert engine.jit.get_grant(grant.id).state == GrantState.requested

    def test_requester_cannot_approve_on_behalf(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1), requested_by="dave")
        with pytest.raises(SelfApprovalError):
            engine.jit.approve_grant(grant.id, "dave")

    def test_double_approval_is_a_no_op(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))
        first = engine.jit.approve_grant(grant.id, "carol")
        version = engine.store.version
        second = engine.jit.approve_grant(grant.id, "erin")
        assert second.approved_by == "carol"
        assert second.activated_at == first.activated_at
        assert engine.store.version == version

    def test_deny(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))
        denied = engine.jit.deny_grant(grant.id, "carol")
        assert denied.state == GrantState.revoked
        assert denied.end_reason == "denied"
        # Denied grants can no longer be approved.
        assert engine.jit.approve_grant(grant.id, "erin").state == GrantState.revoked

    def test_stale_request_expires(self, engine, clock, settings):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))
        clock.advance(minutes=settings.jit_request_ttl_minutes)
        assert engine.jit.sweep() == {"expired": 0, "stale_requests": 1}
        stale = engine.jit.get_grant(grant.id)
        assert stale.state == GrantState.expired
        assert stale.end_reason == "request_ttl_elapsed"


# ── Revocation ─────────────────────────────────────────────────────────────────

class TestRevoke:
    def test_revoke_removes_binding(self, engine):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=1))
        revoked = engine.jit.revoke_grant(grant.id, "carol")
        assert revoked.state == GrantState.revoked
        assert revoked.end_reason == "revoked"
        assert not exec_allowed(engine)

    def test_revoke_twice_is_idempotent(self, engine):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=1))
        engine.jit.revoke_grant(grant.id, "carol")
        version = engine.store.version
        again = engine.jit.revoke_grant(grant.id, "carol")
        assert again.state == GrantState.revoked
        assert engine.store.version == version
        assert len(engine.audit.query(action="jit_grant_revoked")) == 1

    def test_revoke_after_expiry_is_a_no_op(self, engine, clock):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=5))
        clock.advance(minutes=5)
        engine.jit.sweep()
        assert engine.jit.revoke_grant(grant.id, "carol").state == GrantState.expired

    def test_namespace_delete_ends_grant(self, engine):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=1))
        engine.store.delete(ObjectKind.namespace, "ns-a")
        ended = engine.jit.get_grant(grant.id)
        assert ended.state == GrantState.revoked
        assert ended.end_reason == "binding_removed"
        assert engine.jit.list_active_grants() == []

    def test_role_delete_ends_pending_request(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))
        engine.store.delete(ObjectKind.role, "ns-a/db-admin")
        ended = engine.jit.get_grant(grant.id)
        assert ended.state == GrantState.revoked
        assert ended.end_reason == "target_removed"

    def test_manual_binding_delete_ends_grant(self, engine):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=1))
        engine.store.delete(ObjectKind.role_binding, f"ns-a/jit-{grant.id}")
        assert engine.jit.get_grant(grant.id).end_reason == "binding_removed"


# ── Validation ─────────────────────────────────────────────────────────────────

class TestValidation:
    def test_missing_role(self, engine):
        with pytest.raises(InvalidTargetError):
            engine.jit.request_grant(BOB, "ghost", "ns-a", timedelta(hours=1))

    def test_missing_namespace(self, engine):
        with pytest.raises(InvalidTargetError) as exc:
            engine.jit.request_grant(BOB, "debugger", "ns-zzz", timedelta(hours=1))
        assert exc.value.field == "namespace"

    def test_role_deleted_between_request_and_approval(self, engine):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))
        # Role vanishes without a store notification, as in a race with a concurrent delete.
        engine.store._objects[ObjectKind.role].pop("ns-a/db-admin")
        with pytest.raises(InvalidTargetError):
            engine.jit.approve_grant(grant.id, "carol")
        ended = engine.jit.get_grant(grant.id)
        assert ended.state == GrantState.revoked
        assert ended.end_reason == "invalid_target"

    @pytest.mark.parametrize("duration", [timedelta(0), timedelta(minutes=-5), timedelta(hours=9)])
    def test_invalid_duration(self, engine, duration):
        with pytest.raises(InvalidDurationError):
            engine.jit.request_grant(BOB, "debugger", "ns-a", duration)

    def test_max_duration_is_accepted(self, engine):
        assert engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=8)).state == GrantState.active

    def test_cluster_role_target(self, engine):
        from conftest import make_role
        engine.store.put(make_role("viewer", namespace=None, resources=("configmaps",), verbs=("get",)))
        grant = engine.jit.request_grant(BOB, RoleRef(name="viewer", cluster_scoped=True), "ns-b", timedelta(hours=1))
        assert grant.state == GrantState.active
        assert engine.authorizer.authorize(BOB, "get", "configmaps", "ns-b").allowed
        assert not engine.authorizer.authorize(BOB, "get", "configmaps", "ns-a").allowed

    def test_unknown_grant(self, engine):
        with pytest.raises(GrantNotFoundError):
            engine.jit.get_grant("nope")


# ── Queries and audit ──────────────────────────────────────────────────────────

class TestQueriesAndAudit:
    def test_list_active_and_all(self, engine, clock):
        first = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=1))
        clock.advance(minutes=1)
        second = engine.jit.request_grant(Principal(name="erin"), "debugger", "ns-a", timedelta(hours=1))
        clock.advance(minutes=1)
        pending = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(hours=1))

        assert [g.id for g in engine.jit.list_active_grants("ns-a")] == [first.id, second.id]
        assert engine.jit.list_active_grants("ns-b") == []
        assert [g.id for g in engine.jit.list_grants()] == [pending.id, second.id, first.id]
        assert [g.id for g in engine.jit.list_grants(principal="bob", state=GrantState.requested)] == [pending.id]

    def test_returned_grants_are_copies(self, engine):
        grant = engine.jit.request_grant(BOB, "debugger", "ns-a", timedelta(hours=1))
        grant.state = GrantState.revoked
        assert engine.jit.get_grant(grant.id).state == GrantState.active

    def test_every_transition_is_audited(self, engine, clock):
        grant = engine.jit.request_grant(BOB, "db-admin", "ns-a", timedelta(minutes=15), "hotfix")
        engine.jit.approve_grant(grant.id, "carol")
        clock.advance(minutes=15)
        engine.jit.sweep()

        entries = engine.audit.query(resource_prefix=f"grant:{grant.id}")
        assert [e.action for e in reversed(entries)] == [
            "jit_grant_requested", "jit_grant_approved", "jit_grant_activated", "jit_grant_expired",
        ]
        assert entries[-1].actor == "bob"
        assert entries[-1].detail["justification"] == "hotfix"
        assert entries[0].actor == "system:jit-sweeper"

    def test_empty_shared_trail_is_used(self, store, settings, clock):
        trail = AuditTrail(clock=clock)
        assert len(trail) == 0
        jit = JITAccessController(store, audit=trail, settings=settings, clock=clock)
        store.put(make_role("debugger", "ns-a", resources=("pods/exec",), verbs=("create",)))

        grant = jit.request_grant(BOB, "debugger", "ns-a", timedelta(minutes=10))
        assert [e.action for e in trail.query(resource_prefix=f"grant:{grant.id}")] == [
            "jit_grant_activated", "jit_grant_approved", "jit_grant_requested",
        ]
