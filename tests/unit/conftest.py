"""
Shared fixtures for nsguard unit tests.

FakeClock drives JIT expiry, orphan staleness and report periods without sleeping.
The `engine` fixture wires every component around one in-memory PolicyStore.
"""

from datetime import datetime, timedelta, timezone

import pytest

from nsguard.services.engine import bootstrap
from nsguard.services.shared.config import EngineSettings
from nsguard.services.shared.models import (
    Namespace, Role, RoleBinding, RoleRef, Rule, Subject, SubjectKind,
)
from nsguard.services.store.policy_store import PolicyStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ── Object builders ────────────────────────────────────────────────────────────

def make_namespace(name: str = "ns-a", **labels) -> Namespace:
    return Namespace(name=name, labels=labels)


def make_role(
    name: str = "reader",
    namespace: str | None = "ns-a",
    resources=("pods",),
    verbs=("get", "list"),
    **kwargs,
) -> Role:
    return Role(
        name=name,
        namespace=namespace,
        rules=(Rule(resources=tuple(resources), verbs=tuple(verbs)),),
        **kwargs,
    )


def make_binding(
    name: str = "alice-reader",
    namespace: str | None = "ns-a",
    subject: str = "alice",
    role: str = "reader",
    subject_kind: SubjectKind = SubjectKind.user,
    cluster_role: bool = False,
    **kwargs,
) -> RoleBinding:
    return RoleBinding(
        name=name,
        namespace=namespace,
        subject=Subject(kind=subject_kind, name=subject),
        role_ref=RoleRef(name=role, cluster_scoped=cluster_role),
        **kwargs,
    )


# ── Fixtures ───────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        jit_sweep_interval_seconds=30,
        max_jit_ttl_hours=8,
        jit_request_ttl_minutes=120,
        orphan_staleness_minutes=60,
        decision_cache_ttl_seconds=2.0,
    )


@pytest.fixture
def store(clock) -> PolicyStore:
    """ns-a with Role reader (pods: get, list) bound to alice; empty ns-b."""
    s = PolicyStore(clock=clock)
    s.apply([
        make_namespace("ns-a", team="payments"),
        make_namespace("ns-b"),
        make_role(),
        make_binding(),
    ])
    return s


@pytest.fixture
def engine(settings, clock):
    e = bootstrap(settings, clock=clock)
    e.store.apply([
        make_namespace("ns-a", team="payments"),
        make_namespace("ns-b"),
        make_role(),
        make_binding(),
        make_role("db-admin", "ns-a", resources=("secrets", "pods"), verbs=("get", "delete"),
                  requires_approval=True),
        make_role("debugger", "ns-a", resources=("pods/exec",), verbs=("create",)),
    ])
    return e
