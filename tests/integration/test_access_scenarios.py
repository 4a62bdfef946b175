"""
Integration test: namespace isolation, network isolation and JIT expiry against a
running nsguard service.
Requires: uvicorn nsguard.services.api.main:app --port 8400

Flow:
1. Apply ns-a / ns-b / reader Role / alice binding and a db NetworkPolicy in ns-b
2. Assert namespace isolation for alice
3. Assert same-namespace-only peer matching on port 5432
4. Request a 1-minute JIT grant, sweep, and assert access is gone after expiry

Run with: pytest tests/integration/test_access_scenarios.py -v
"""

import time
import uuid

import httpx
import pytest

NSGUARD_URL = "http://localhost:8400"

_SUFFIX = uuid.uuid4().hex[:6]
_NS_A = f"it-a-{_SUFFIX}"
_NS_B = f"it-b-{_SUFFIX}"


def _service_running() -> bool:
    try:
        return httpx.get(f"{NSGUARD_URL}/health", timeout=2.0).status_code == 200
    except httpx.HTTPError:
        return False


def _authorize(principal: str, verb: str, resource: str, namespace: str) -> dict:
    r = httpx.post(
        f"{NSGUARD_URL}/api/authz/authorize",
        json={"principal": {"name": principal}, "verb": verb, "resource": resource, "namespace": namespace},
        timeout=10.0,
    )
    r.raise_for_status()
    return r.json()


def _apply_fixtures() -> None:
    r = httpx.post(f"{NSGUARD_URL}/api/policy/apply", json={"actor": "integration", "objects": [
        {"kind": "Namespace", "name": _NS_A},
        {"kind": "Namespace", "name": _NS_B},
        {"kind": "Role", "name": "reader", "namespace": _NS_A,
         "rules": [{"resources": ["pods"], "verbs": ["get", "list"]}]},
        {"kind": "RoleBinding", "name": "alice-reader", "namespace": _NS_A,
         "subject": {"name": "alice"}, "role_ref": {"name": "reader"}},
        {"kind": "Role", "name": "debugger", "namespace": _NS_A,
         "rules": [{"resources": ["pods/exec"], "verbs": ["create"]}]},
        {"kind": "NetworkPolicy", "name": "db", "namespace": _NS_B,
         "pod_selector": {"match_labels": {"app": "db"}},
         "ingress": [{"peers": [{"pod_selector": {"match_labels": {"app": "api"}}}], "ports": [{"port": 5432}]}]},
    ]}, timeout=10.0)
    assert r.status_code == 200, r.text


@pytest.mark.integration
def test_namespace_isolation():
    if not _service_running():
        pytest.skip("nsguard not running. Start with: uvicorn nsguard.services.api.main:app --port 8400")

    _apply_fixtures()
    assert _authorize("alice", "get", "pods", _NS_A)["outcome"] == "allow"
    assert _authorize("alice", "delete", "pods", _NS_A)["outcome"] == "deny"
    assert _authorize("alice", "get", "pods", _NS_B)["outcome"] == "deny"


@pytest.mark.integration
def test_network_peer_namespace_defaults_to_own():
    if not _service_running():
        pytest.skip("nsguard not running. Start with: uvicorn nsguard.services.api.main:app --port 8400")

    _apply_fixtures()
    flow = {"dest": {"namespace": _NS_B, "labels": {"app": "db"}}, "port": 5432, "protocol": "TCP"}
    other = httpx.post(f"{NSGUARD_URL}/api/network/flow",
                       json={**flow, "source": {"namespace": _NS_A, "labels": {"app": "api"}}}, timeout=10.0)
    same = httpx.post(f"{NSGUARD_URL}/api/network/flow",
                      json={**flow, "source": {"namespace": _NS_B, "labels": {"app": "api"}}}, timeout=10.0)
    assert other.json()["allowed"] is False
    assert same.json()["allowed"] is True


@pytest.mark.integration
@pytest.mark.slow
def test_jit_grant_expires():
    if not _service_running():
        pytest.skip("nsguard not running. Start with: uvicorn nsguard.services.api.main:app --port 8400")

    _apply_fixtures()
    r = httpx.post(f"{NSGUARD_URL}/api/jit/grants", json={
        "principal": {"name": "bob"}, "role": "debugger", "namespace": _NS_A,
        "duration_minutes": 1, "justification": "integration test",
    }, timeout=10.0)
    assert r.status_code == 201, r.text
    grant = r.json()
    assert grant["state"] == "Active"
    assert _authorize("bob", "create", "pods/exec", _NS_A)["outcome"] == "allow"

    time.sleep(61)
    httpx.post(f"{NSGUARD_URL}/api/jit/sweep", timeout=10.0)

    assert _authorize("bob", "create", "pods/exec", _NS_A)["outcome"] == "deny"
    ended = httpx.get(f"{NSGUARD_URL}/api/jit/grants/{grant['id']}", timeout=10.0).json()
    assert ended["state"] == "Expired"
