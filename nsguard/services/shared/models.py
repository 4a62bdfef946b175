"""
nsguard policy object models - all domain types in one file.
Uses pydantic v2 frozen models so objects held by the PolicyStore are immutable.

Policy objects form a closed, tagged union on the `kind` field:
  Namespace, Role, RoleBinding, NetworkPolicy

Non-stored types:
  Principal, AccessGrant (owned by the JIT controller), Baseline, Violation
"""

import enum
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"
AUTHENTICATED_GROUP  = "system:authenticated"
SERVICE_ACCOUNT_PREFIX = "system:serviceaccount:"


# ── Enumerations ──────────────────────────────────────────────────────────────

class ObjectKind(str, enum.Enum):
    namespace      = "Namespace"
    role           = "Role"
    role_binding   = "RoleBinding"
    network_policy = "NetworkPolicy"


class SubjectKind(str, enum.Enum):
    user            = "User"
    group           = "Group"
    service_account = "ServiceAccount"


class SelectorOperator(str, enum.Enum):
    in_            = "In"
    not_in         = "NotIn"
    exists         = "Exists"
    does_not_exist = "DoesNotExist"


class Direction(str, enum.Enum):
    ingress = "Ingress"
    egress  = "Egress"


class Protocol(str, enum.Enum):
    tcp  = "TCP"
    udp  = "UDP"
    sctp = "SCTP"


class DecisionOutcome(str, enum.Enum):
    allow = "allow"
    deny  = "deny"


class GrantState(str, enum.Enum):
    requested = "Requested"
    approved  = "Approved"
    active    = "Active"
    expired   = "Expired"
    revoked   = "Revoked"


TERMINAL_GRANT_STATES = frozenset({GrantState.expired, GrantState.revoked})


class Severity(str, enum.Enum):
    critical = "critical"
    high     = "high"
    medium   = "medium"
    low      = "low"
    info     = "info"


SEVERITY_ORDER = {
    Severity.critical: 0,
    Severity.high:     1,
    Severity.medium:   2,
    Severity.low:      3,
    Severity.info:     4,
}


class ViolationKind(str, enum.Enum):
    wildcard_permission      = "WildcardPermission"
    cluster_admin_binding    = "ClusterAdminBinding"
    unscoped_network_ingress = "UnscopedNetworkIngress"
    orphaned_grant           = "OrphanedGrant"
    configuration_drift      = "ConfigurationDrift"


# ── Label selectors ───────────────────────────────────────────────────────────

class SelectorRequirement(BaseModel):
    """
    One expression of a label selector: key/operator/values.
    `operator` stays a plain string so the store can reject unknown operators
    with ErrMalformedSelector instead of a generic validation error.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    key:      str
    operator: str
    values:   tuple[str, ...] = ()


class LabelSelector(BaseModel):
    """
    Parsed selector AST: conjunction of match_labels (key=value) and match_expressions.
    An empty selector matches everything.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    match_labels:      dict[str, str]                 = Field(default_factory=dict)
    match_expressions: tuple[SelectorRequirement, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions


# ── Policy objects ────────────────────────────────────────────────────────────

class Namespace(BaseModel):
    """Isolation boundary. Deleting it cascades to every object scoped to it."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind:   Literal["Namespace"] = "Namespace"
    name:   str = Field(..., min_length=1)
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def namespace(self) -> Optional[str]:
        return None

    @property
    def id(self) -> str:
        return self.name

    def effective_labels(self) -> dict[str, str]:
        return {**self.labels, NAMESPACE_NAME_LABEL: self.name}


class Rule(BaseModel):
    """Allow-only RBAC rule. `resource_names=None` means every name."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    api_groups:     tuple[str, ...] = ("",)
    resources:      tuple[str, ...] = Field(..., min_length=1)
    resource_names: Optional[tuple[str, ...]] = None
    verbs:          tuple[str, ...] = Field(..., min_length=1)


class Role(BaseModel):
    """
    Named ordered set of Rules. namespace=None → cluster-wide role.
    requires_approval gates JIT grants on a second approver.
    cluster_admin flags the role as cluster-admin-equivalent for drift scans.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind:              Literal["Role"] = "Role"
    name:              str = Field(..., min_length=1)
    namespace:         Optional[str] = None
    rules:             tuple[Rule, ...] = ()
    requires_approval: bool = False
    cluster_admin:     bool = False

    @property
    def id(self) -> str:
        return object_id(self.namespace, self.name)


class Subject(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: SubjectKind = SubjectKind.user
    name: str = Field(..., min_length=1)


class RoleRef(BaseModel):
    """Reference from a binding to a Role in the binding's namespace, or a cluster-wide Role."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name:           str = Field(..., min_length=1)
    cluster_scoped: bool = False


class RoleBinding(BaseModel):
    """
    Links one subject to one Role within a namespace (namespace=None → cluster-wide).
    expires_at is set on JIT-created bindings; grant_id links them back to the AccessGrant.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind:       Literal["RoleBinding"] = "RoleBinding"
    name:       str = Field(..., min_length=1)
    namespace:  Optional[str] = None
    subject:    Subject
    role_ref:   RoleRef
    expires_at: Optional[datetime] = None
    grant_id:   Optional[str] = None

    @property
    def id(self) -> str:
        return object_id(self.namespace, self.name)

    def role_id(self) -> str:
        """Store id of the referenced Role."""
        if self.role_ref.cluster_scoped:
            return self.role_ref.name
        return object_id(self.namespace, self.role_ref.name)

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


class PortSpec(BaseModel):
    """port=None → every port of the protocol. end_port makes an inclusive range."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    port:     Optional[int] = Field(None, ge=1, le=65535)
    end_port: Optional[int] = Field(None, ge=1, le=65535)
    protocol: Protocol = Protocol.tcp


class NetworkPeer(BaseModel):
    """Both selectors None → any peer."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    pod_selector:       Optional[LabelSelector] = None
    namespace_selector: Optional[LabelSelector] = None


class NetworkPolicyRule(BaseModel):
    """Empty peers → any peer. Empty ports → any port."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    peers: tuple[NetworkPeer, ...] = ()
    ports: tuple[PortSpec, ...]    = ()


class NetworkPolicy(BaseModel):
    """
    Namespace-scoped isolation rules for the workloads matched by pod_selector.
    policy_types declares which directions the policy isolates; an empty
    ingress/egress list under a declared type denies that direction entirely.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind:         Literal["NetworkPolicy"] = "NetworkPolicy"
    name:         str = Field(..., min_length=1)
    namespace:    str = Field(..., min_length=1)
    pod_selector: LabelSelector = Field(default_factory=LabelSelector)
    policy_types: tuple[Direction, ...] = (Direction.ingress,)
    ingress:      tuple[NetworkPolicyRule, ...] = ()
    egress:       tuple[NetworkPolicyRule, ...] = ()

    @property
    def id(self) -> str:
        return object_id(self.namespace, self.name)

    def rules_for(self, direction: Direction) -> tuple[NetworkPolicyRule, ...]:
        return self.ingress if direction == Direction.ingress else self.egress


PolicyObject = Annotated[
    Union[Namespace, Role, RoleBinding, NetworkPolicy],
    Field(discriminator="kind"),
]

KIND_MODELS: dict[ObjectKind, type] = {
    ObjectKind.namespace:      Namespace,
    ObjectKind.role:           Role,
    ObjectKind.role_binding:   RoleBinding,
    ObjectKind.network_policy: NetworkPolicy,
}

# Dependency order for bulk apply: referenced objects first.
APPLY_ORDER = (
    ObjectKind.namespace,
    ObjectKind.role,
    ObjectKind.role_binding,
    ObjectKind.network_policy,
)


def object_id(namespace: Optional[str], name: str) -> str:
    return f"{namespace}/{name}" if namespace else name


class ObjectRef(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind:      ObjectKind
    name:      str
    namespace: Optional[str] = None

    @property
    def id(self) -> str:
        return object_id(self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def ref_of(obj) -> ObjectRef:
    return ObjectRef(kind=ObjectKind(obj.kind), name=obj.name, namespace=obj.namespace)


# ── Principals and workloads ──────────────────────────────────────────────────

class Principal(BaseModel):
    """Immutable identity (user or service identity) plus its group memberships."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name:   str = Field(..., min_length=1)
    kind:   SubjectKind = SubjectKind.user
    groups: frozenset[str] = frozenset()

    @classmethod
    def service_account(cls, namespace: str, name: str, groups: frozenset[str] = frozenset()) -> "Principal":
        return cls(
            name=f"{SERVICE_ACCOUNT_PREFIX}{namespace}:{name}",
            kind=SubjectKind.service_account,
            groups=frozenset(groups) | {"system:serviceaccounts", f"system:serviceaccounts:{namespace}"},
        )

    def effective_groups(self) -> frozenset[str]:
        return frozenset(self.groups) | {AUTHENTICATED_GROUP}


class Workload(BaseModel):
    """A set of pods identified by namespace + labels."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str
    labels:    dict[str, str] = Field(default_factory=dict)


# ── JIT grants ────────────────────────────────────────────────────────────────

class GrantEvent(BaseModel):
    """One audit-trail entry on an AccessGrant."""
    model_config = ConfigDict(frozen=True)

    action:    str
    actor:     str
    timestamp: datetime
    state:     GrantState
    detail:    dict[str, Any] = Field(default_factory=dict)


class AccessGrant(BaseModel):
    """
    Time-bounded elevation request. Owned and mutated only by JITAccessController;
    callers receive deep copies.
    """
    id:            str
    principal:     Principal
    role_ref:      RoleRef
    namespace:     str
    duration:      timedelta
    justification: str = ""
    state:         GrantState = GrantState.requested
    requested_by:  str
    requested_at:  datetime
    approved_by:   Optional[str] = None
    approved_at:   Optional[datetime] = None
    activated_at:  Optional[datetime] = None
    expires_at:    Optional[datetime] = None
    ended_at:      Optional[datetime] = None
    end_reason:    Optional[str] = None
    binding_name:  Optional[str] = None
    history:       list[GrantEvent] = Field(default_factory=list)

    @property
    def binding_id(self) -> Optional[str]:
        if self.binding_name is None:
            return None
        return object_id(self.namespace, self.binding_name)


# ── Baseline and violations ───────────────────────────────────────────────────

class Baseline(BaseModel):
    """Immutable snapshot of the PolicyStore: sha256 over the canonical JSON content."""
    model_config = ConfigDict(frozen=True)

    hash:     str
    content:  dict[str, dict[str, Any]]
    version:  int
    taken_at: datetime


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id:          str
    kind:        ViolationKind
    severity:    Severity
    object_ref:  str
    namespace:   Optional[str] = None
    message:     str
    detected_at: datetime
    detail:      dict[str, Any] = Field(default_factory=dict)
