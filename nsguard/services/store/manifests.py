"""
kubectl-style YAML manifests → nsguard policy objects.

Accepts multi-document YAML and `kind: List` wrappers. Supported kinds:
  Namespace, Role, ClusterRole, RoleBinding, ClusterRoleBinding, NetworkPolicy

Role annotations:
  nsguard.io/requires-approval: "true"   JIT grants need a second approver
  nsguard.io/cluster-admin: "true"       treat as cluster-admin-equivalent

Bindings with several subjects become one RoleBinding per subject
("<name>" for the first, "<name>-<n>" for the rest). Unknown kinds are skipped.
"""

from typing import Any, Optional

import structlog
import yaml
from pydantic import ValidationError

from nsguard.services.shared.errors import InvalidObjectError
from nsguard.services.shared.models import (
    SERVICE_ACCOUNT_PREFIX, Direction, LabelSelector, Namespace, NetworkPeer,
    NetworkPolicy, NetworkPolicyRule, PortSpec, Role, RoleBinding, RoleRef,
    Rule, SelectorRequirement, Subject, SubjectKind,
)

logger = structlog.get_logger()

REQUIRES_APPROVAL_ANNOTATION = "nsguard.io/requires-approval"
CLUSTER_ADMIN_ANNOTATION     = "nsguard.io/cluster-admin"

_TRUE = ("1", "true", "yes", "on")


def _metadata(doc: dict, ref: str) -> tuple[str, Optional[str], dict, dict]:
    meta = doc.get("metadata") or {}
    name = meta.get("name")
    if not name:
        raise InvalidObjectError(f"{ref} is missing metadata.name", object_ref=ref, field="metadata.name")
    return name, meta.get("namespace"), meta.get("labels") or {}, meta.get("annotations") or {}


def _flag(annotations: dict, key: str) -> bool:
    return str(annotations.get(key, "")).strip().lower() in _TRUE


def _selector(raw: Optional[dict]) -> Optional[LabelSelector]:
    if raw is None:
        return None
    return LabelSelector(
        match_labels={str(k): str(v) for k, v in (raw.get("matchLabels") or {}).items()},
        match_expressions=tuple(
            SelectorRequirement(
                key=e.get("key", ""),
                operator=e.get("operator", ""),
                values=tuple(str(v) for v in (e.get("values") or ())),
            )
            for e in (raw.get("matchExpressions") or ())
        ),
    )


# ── Per-kind converters ───────────────────────────────────────────────────────

def _namespace(doc: dict, ref: str) -> list:
    name, _, labels, _ = _metadata(doc, ref)
    return [Namespace(name=name, labels={str(k): str(v) for k, v in labels.items()})]


def _role(doc: dict, ref: str, cluster_scoped: bool) -> list:
    name, namespace, _, annotations = _metadata(doc, ref)
    rules = tuple(
        Rule(
            api_groups=tuple(r.get("apiGroups") or ("",)),
            resources=tuple(r.get("resources") or ()),
            resource_names=tuple(r["resourceNames"]) if r.get("resourceNames") else None,
            verbs=tuple(r.get("verbs") or ()),
        )
        for r in (doc.get("rules") or ())
    )
    return [Role(
        name=name,
        namespace=None if cluster_scoped else (namespace or "default"),
        rules=rules,
        requires_approval=_flag(annotations, REQUIRES_APPROVAL_ANNOTATION),
        cluster_admin=_flag(annotations, CLUSTER_ADMIN_ANNOTATION),
    )]


def _subject(raw: dict, ref: str) -> Subject:
    kind = raw.get("kind", "User")
    name = raw.get("name", "")
    if kind == SubjectKind.service_account.value:
        sa_namespace = raw.get("namespace") or "default"
        if not name.startswith(SERVICE_ACCOUNT_PREFIX):
            name = f"{SERVICE_ACCOUNT_PREFIX}{sa_namespace}:{name}"
    try:
        return Subject(kind=SubjectKind(kind), name=name)
    except ValueError as exc:
        raise InvalidObjectError(f"{ref} has invalid subject: {exc}", object_ref=ref, field="subjects") from exc


def _binding(doc: dict, ref: str, cluster_scoped: bool) -> list:
    name, namespace, _, _ = _metadata(doc, ref)
    role_ref = doc.get("roleRef") or {}
    if not role_ref.get("name"):
        raise InvalidObjectError(f"{ref} is missing roleRef.name", object_ref=ref, field="roleRef.name")
    subjects = doc.get("subjects") or []
    if not subjects:
        raise InvalidObjectError(f"{ref} has no subjects", object_ref=ref, field="subjects")

    ref_model = RoleRef(name=role_ref["name"], cluster_scoped=role_ref.get("kind") == "ClusterRole")
    scope = None if cluster_scoped else (namespace or "default")
    return [
        RoleBinding(
            name=name if i == 0 else f"{name}-{i}",
            namespace=scope,
            subject=_subject(s, ref),
            role_ref=ref_model,
        )
        for i, s in enumerate(subjects)
    ]


def _port(raw: dict, ref: str) -> PortSpec:
    port = raw.get("port")
    if port is not None and not isinstance(port, int):
        raise InvalidObjectError(
            f"{ref} uses named port '{port}'; only numeric ports are supported",
            object_ref=ref, field="ports.port",
        )
    return PortSpec(port=port, end_port=raw.get("endPort"), protocol=raw.get("protocol", "TCP"))


def _peer(raw: dict, ref: str) -> NetworkPeer:
    if "ipBlock" in raw:
        raise InvalidObjectError(f"{ref} uses ipBlock peers, which are not supported", object_ref=ref, field="ipBlock")
    return NetworkPeer(
        pod_selector=_selector(raw.get("podSelector")),
        namespace_selector=_selector(raw.get("namespaceSelector")),
    )


def _network_rules(raw_rules, peer_key: str, ref: str) -> tuple:
    return tuple(
        NetworkPolicyRule(
            peers=tuple(_peer(p, ref) for p in (r.get(peer_key) or ())),
            ports=tuple(_port(p, ref) for p in (r.get("ports") or ())),
        )
        for r in (raw_rules or ())
    )


def _network_policy(doc: dict, ref: str) -> list:
    name, namespace, _, _ = _metadata(doc, ref)
    spec = doc.get("spec") or {}
    types = spec.get("policyTypes")
    if not types:
        # Kubernetes default: Ingress always, Egress only when an egress section exists.
        types = [Direction.ingress.value] + ([Direction.egress.value] if "egress" in spec else [])
    return [NetworkPolicy(
        name=name,
        namespace=namespace or "default",
        pod_selector=_selector(spec.get("podSelector")) or LabelSelector(),
        policy_types=tuple(Direction(t) for t in types),
        ingress=_network_rules(spec.get("ingress"), "from", ref),
        egress=_network_rules(spec.get("egress"), "to", ref),
    )]


_CONVERTERS = {
    "Namespace":          _namespace,
    "Role":               lambda d, r: _role(d, r, cluster_scoped=False),
    "ClusterRole":        lambda d, r: _role(d, r, cluster_scoped=True),
    "RoleBinding":        lambda d, r: _binding(d, r, cluster_scoped=False),
    "ClusterRoleBinding": lambda d, r: _binding(d, r, cluster_scoped=True),
    "NetworkPolicy":      _network_policy,
}


def _documents(text: str) -> list[dict[str, Any]]:
    try:
        docs = [d for d in yaml.safe_load_all(text) if d]
    except yaml.YAMLError as exc:
        raise InvalidObjectError(f"manifest is not valid YAML: {exc}", field="manifest") from exc

    flat: list[dict] = []
    for doc in docs:
        if not isinstance(doc, dict):
            raise InvalidObjectError("manifest documents must be mappings", field="manifest")
        if doc.get("kind") == "List":
            flat.extend(i for i in (doc.get("items") or ()) if isinstance(i, dict))
        else:
            flat.append(doc)
    return flat


def load_manifests(text: str) -> list:
    """Parse manifest text into policy objects, in document order."""
    objects: list = []
    for index, doc in enumerate(_documents(text)):
        kind = doc.get("kind")
        converter = _CONVERTERS.get(kind)
        ref = f"{kind}:{(doc.get('metadata') or {}).get('name', f'#{index}')}"
        if converter is None:
            logger.debug("manifest_kind_skipped", kind=kind, index=index)
            continue
        try:
            objects.extend(converter(doc, ref))
        except ValidationError as exc:
            raise InvalidObjectError(f"{ref} is invalid: {exc.errors()[0]['msg']}", object_ref=ref) from exc
        except ValueError as exc:
            raise InvalidObjectError(f"{ref} is invalid: {exc}", object_ref=ref) from exc
    logger.info("manifests_loaded", objects=len(objects))
    return objects
