"""
HTTP API tests against an in-process app.
TestClient is used without the context manager so the lifespan (and its
background sweeper / drift tasks) does not start, except in the shutdown test.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from nsguard.services.api.main import create_app
from nsguard.services.authz.identity import HttpIdentityProvider
from nsguard.services.engine import bootstrap

ALICE = {"name": "alice"}
BOB   = {"name": "bob"}

MANIFEST = """
kind: Namespace
metadata: {name: ns-c}
---
kind: Role
metadata: {name: viewer, namespace: ns-c}
rules:
  - resources: [configmaps]
    verbs: [get]
---
kind: RoleBinding
metadata: {name: bob-viewer, namespace: ns-c}
subjects: [{kind: User, name: bob}]
roleRef: {kind: Role, name: viewer}
"""


@pytest.fixture
def client(engine) -> TestClient:
    return TestClient(create_app(engine))


def authorize(client, principal, verb, resource, namespace):
    r = client.post("/api/authz/authorize", json={
        "principal": principal, "verb": verb, "resource": resource, "namespace": namespace,
    })
    assert r.status_code == 200
    return r.json()


# ── Health and policy writes ───────────────────────────────────────────────────

def test_health(client, engine):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["store_version"] == engine.store.version


def test_shutdown_closes_identity_client(settings, clock):
    provider = HttpIdentityProvider(
        "http://idp.local", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"groups": []})),
    )
    engine = bootstrap(settings, clock=clock, identity_provider=provider)
    with TestClient(create_app(engine)) as client:
        assert client.get("/health").status_code == 200
        assert not provider._client.is_closed
    assert provider._client.is_closed


class TestPolicyRoutes:
    def test_apply_manifest_and_read_back(self, client):
        r = client.post("/api/policy/apply", json={"manifest": MANIFEST, "actor": "carol"})
        assert r.status_code == 200
        assert r.json()["applied"] == 3

        roles = client.get("/api/policy/Role", params={"namespace": "ns-c"}).json()
        assert [x["name"] for x in roles] == ["viewer"]
        assert client.get("/api/policy/RoleBinding/ns-c/bob-viewer").json()["subject"]["name"] == "bob"
        assert authorize(client, BOB, "get", "configmaps", "ns-c")["outcome"] == "allow"

        audit = client.get("/api/audit", params={"action": "policy_applied"}).json()
        assert audit[0]["actor"] == "carol"

    def test_apply_structured_objects(self, client):
        r = client.post("/api/policy/apply", json={"objects": [
            {"kind": "Role", "name": "cm-reader", "namespace": "ns-b",
             "rules": [{"resources": ["configmaps"], "verbs": ["get"]}]},
            {"kind": "RoleBinding", "name": "bob-cm", "namespace": "ns-b",
             "subject": {"kind": "User", "name": "bob"}, "role_ref": {"name": "cm-reader"}},
        ]})
        assert r.status_code == 200
        assert authorize(client, BOB, "get", "configmaps", "ns-b")["outcome"] == "allow"

    def test_dangling_reference_is_422(self, client, engine):
        version = engine.store.version
        r = client.put("/api/policy/objects", json={"object": {
            "kind": "RoleBinding", "name": "ghost", "namespace": "ns-a",
            "subject": {"name": "bob"}, "role_ref": {"name": "missing"},
        }})
        assert r.status_code == 422
        body = r.json()
        assert body["code"] == "ErrDanglingReference"
        assert body["object"] == "RoleBinding:ns-a/ghost"
        assert body["field"] == "role_ref.name"
        assert engine.store.version == version

    def test_grant_id_is_reserved_for_jit(self, client, engine):
        version = engine.store.version
        binding = {
            "kind": "RoleBinding", "name": "mallory", "namespace": "ns-a",
            "subject": {"name": "mallory"}, "role_ref": {"name": "reader"}, "grant_id": "made-up",
        }
        for r in (
            client.put("/api/policy/objects", json={"object": binding}),
            client.post("/api/policy/apply", json={"objects": [binding]}),
        ):
            assert r.status_code == 422
            assert r.json()["code"] == "ErrInvalidObject"
            assert r.json()["field"] == "grant_id"
        assert engine.store.version == version

    def test_empty_apply_is_400(self, client):
        assert client.post("/api/policy/apply", json={}).status_code == 400

    def test_delete_is_idempotent(self, client):
        first = client.delete("/api/policy/RoleBinding/ns-a/alice-reader").json()
        second = client.delete("/api/policy/RoleBinding/ns-a/alice-reader").json()
        assert first["deleted"] is True
        assert second["deleted"] is False
        assert second["version"] == first["version"]
        assert client.get("/api/policy/RoleBinding/ns-a/alice-reader").status_code == 404


# ── Evaluation ─────────────────────────────────────────────────────────────────

class TestEvaluationRoutes:
    def test_authorize_and_decision_log(self, client):
        assert authorize(client, ALICE, "get", "pods", "ns-a")["outcome"] == "allow"
        denied = authorize(client, ALICE, "get", "pods", "ns-b")
        assert denied["outcome"] == "deny"
        assert denied["reason_code"] == "NoMatchingBinding"

        log = client.get("/api/authz/decisions", params={"principal": "alice"}).json()
        assert [d["outcome"] for d in log] == ["deny", "allow"]

    def test_allowed_verbs(self, client):
        r = client.post("/api/authz/allowed-verbs", json={"principal": ALICE, "resource": "pods", "namespace": "ns-a"})
        assert r.json()["verbs"] == ["get", "list"]

    def test_network_flow(self, client):
        client.put("/api/policy/objects", json={"object": {
            "kind": "NetworkPolicy", "name": "db", "namespace": "ns-b",
            "pod_selector": {"match_labels": {"app": "db"}},
            "ingress": [{"peers": [{"pod_selector": {"match_labels": {"app": "api"}}}], "ports": [{"port": 5432}]}],
        }})
        flow = {"dest": {"namespace": "ns-b", "labels": {"app": "db"}}, "port": 5432}
        same_ns = client.post("/api/network/flow", json={**flow, "source": {"namespace": "ns-b", "labels": {"app": "api"}}})
        other_ns = client.post("/api/network/flow", json={**flow, "source": {"namespace": "ns-a", "labels": {"app": "api"}}})
        assert same_ns.json()["allowed"] is True
        assert other_ns.json()["allowed"] is False
        assert other_ns.json()["reason_code"] == "NoMatchingNetworkRule"


# ── JIT ────────────────────────────────────────────────────────────────────────

class TestJitRoutes:
    def test_request_approve_revoke(self, client):
        r = client.post("/api/jit/grants", json={
            "principal": BOB, "role": "db-admin", "namespace": "ns-a", "duration_minutes": 60,
            "justification": "rotate creds",
        })
        assert r.status_code == 201
        grant = r.json()
        assert grant["state"] == "Requested"

        assert client.post(f"/api/jit/grants/{grant['id']}/approve", json={"actor": "bob"}).status_code == 403
        approved = client.post(f"/api/jit/grants/{grant['id']}/approve", json={"actor": "carol"}).json()
        assert approved["state"] == "Active"
        assert authorize(client, BOB, "get", "secrets", "ns-a")["outcome"] == "allow"

        active = client.get("/api/jit/grants").json()
        assert [g["id"] for g in active] == [grant["id"]]

        revoked = client.delete(f"/api/jit/grants/{grant['id']}", params={"actor": "carol"}).json()
        assert revoked["state"] == "Revoked"
        assert authorize(client, BOB, "get", "secrets", "ns-a")["outcome"] == "deny"
        assert client.get("/api/jit/grants").json() == []
        assert len(client.get("/api/jit/grants", params={"active_only": "false"}).json()) == 1

    def test_invalid_duration_is_422(self, client):
        r = client.post("/api/jit/grants", json={
            "principal": BOB, "role": "debugger", "namespace": "ns-a", "duration_minutes": 60 * 9,
        })
        assert r.status_code == 422
        assert r.json()["code"] == "ErrInvalidDuration"

    def test_unknown_grant_is_404(self, client):
        assert client.get("/api/jit/grants/nope").status_code == 404


# ── Compliance ─────────────────────────────────────────────────────────────────

class TestComplianceRoutes:
    def test_baseline_and_drift(self, client):
        assert client.get("/api/compliance/baseline").status_code == 404
        summary = client.post("/api/compliance/baseline", json={"actor": "carol"}).json()
        assert summary["objects"] > 0

        assert client.post("/api/compliance/scan").json() == []
        client.delete("/api/policy/RoleBinding/ns-a/alice-reader")
        drift = client.post("/api/compliance/scan").json()
        assert [(v["kind"], v["object_ref"]) for v in drift] == [("ConfigurationDrift", "RoleBinding:ns-a/alice-reader")]

    def test_report_json_and_text(self, client):
        client.put("/api/policy/objects", json={"object": {
            "kind": "Role", "name": "wild", "namespace": "ns-a",
            "rules": [{"resources": ["*"], "verbs": ["get"]}],
        }})
        report = client.get("/api/compliance/report").json()
        assert report["summary"]["total_violations"] == 1

        text = client.get("/api/compliance/report", params={"format": "text"})
        assert text.headers["content-type"].startswith("text/plain")
        assert "WildcardPermission" in text.text

    def test_report_rejects_inverted_period(self, client):
        r = client.get("/api/compliance/report", params={"start": "2026-03-02T00:00:00", "end": "2026-03-01T00:00:00"})
        assert r.status_code == 400

    def test_controls(self, client):
        assert len(client.get("/api/compliance/controls").json()) == 5
