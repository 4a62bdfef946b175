"""
Pydantic request/response schemas for the nsguard HTTP API.
Domain models (policy objects, Decision, NetworkDecision, AccessGrant, Violation)
are returned as-is; only request bodies and small envelopes live here.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from nsguard.services.shared.models import (
    Baseline, DecisionOutcome, Direction, PolicyObject, Principal, Protocol,
    RoleRef, SubjectKind, Workload,
)


# ── Principals ────────────────────────────────────────────────────────────────

class PrincipalIn(BaseModel):
    name:   str = Field(..., min_length=1, examples=["alice"])
    kind:   SubjectKind = SubjectKind.user
    groups: list[str] = []

    def to_principal(self) -> Principal:
        return Principal(name=self.name, kind=self.kind, groups=frozenset(self.groups))


# ── Policy ────────────────────────────────────────────────────────────────────

class ApplyRequest(BaseModel):
    """Either structured objects, a kubectl-style YAML manifest, or both (applied as one batch)."""
    objects:  list[PolicyObject] = []
    manifest: Optional[str] = None
    actor:    str = "admin"


class ApplyResponse(BaseModel):
    version: int
    applied: int
    objects: list[str]


class PutRequest(BaseModel):
    object: PolicyObject
    actor:  str = "admin"


class WriteResponse(BaseModel):
    version: int
    object:  str


class DeleteResponse(BaseModel):
    deleted: bool
    version: int


# ── Evaluation ────────────────────────────────────────────────────────────────

class AuthorizeRequest(BaseModel):
    principal:       PrincipalIn
    verb:            str = Field(..., min_length=1, examples=["get"])
    resource:        str = Field(..., min_length=1, examples=["pods"])
    namespace:       Optional[str] = Field(None, examples=["ns-a"])
    api_group:       str = ""
    resource_name:   Optional[str] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)


class AllowedVerbsRequest(BaseModel):
    principal: PrincipalIn
    resource:  str = Field(..., min_length=1)
    namespace: Optional[str] = None
    api_group: str = ""


class DecisionRecordOut(BaseModel):
    principal:   str
    verb:        str
    resource:    str
    namespace:   Optional[str]
    outcome:     DecisionOutcome
    reason_code: str
    binding:     Optional[str]
    cached:      bool
    timestamp:   datetime


class NetworkFlowRequest(BaseModel):
    source:          Workload
    dest:            Workload
    port:            int = Field(..., ge=1, le=65535)
    protocol:        Protocol = Protocol.tcp
    direction:       Direction = Direction.ingress
    timeout_seconds: Optional[float] = Field(None, gt=0)


# ── JIT ───────────────────────────────────────────────────────────────────────

class GrantRequest(BaseModel):
    principal:        PrincipalIn
    role:             str = Field(..., min_length=1, examples=["db-admin"])
    cluster_role:     bool = False
    namespace:        str = Field(..., min_length=1, examples=["prod"])
    duration_minutes: int = Field(..., examples=[60])
    justification:    str = ""
    requested_by:     Optional[str] = None

    def role_ref(self) -> RoleRef:
        return RoleRef(name=self.role, cluster_scoped=self.cluster_role)

    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)


class GrantReview(BaseModel):
    actor: str = Field(..., min_length=1, examples=["bob"])


# ── Compliance ────────────────────────────────────────────────────────────────

class BaselineRequest(BaseModel):
    """Omit `baseline` to capture the current store as the new trusted baseline."""
    baseline: Optional[Baseline] = None
    actor:    str = "operator"


class BaselineSummary(BaseModel):
    hash:     str
    version:  int
    objects:  int
    taken_at: datetime
