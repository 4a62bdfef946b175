"""
Matcher - pure, side-effect-free predicates shared by the evaluators and the drift detector.

  matches_rule(rule, request)          RBAC rule vs. resource request
  matches_selector(selector, labels)   label selector AST vs. a label set
  subject_matches(subject, principal)  binding subject vs. principal (direct or via group)
  port_matches(spec, port, protocol)   NetworkPolicy port spec vs. a flow
  rule_is_unscoped(rule)               ingress rule that admits any pod in any namespace
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from nsguard.services.shared.models import (
    LabelSelector, NetworkPeer, NetworkPolicyRule, PortSpec, Principal, Protocol, Role, Rule,
    SelectorOperator, Subject, SubjectKind,
)

WILDCARD = "*"


@dataclass(frozen=True)
class ResourceRequest:
    verb:          str
    resource:      str
    namespace:     Optional[str]
    api_group:     str = ""
    resource_name: Optional[str] = None


def _matches_value(allowed: Iterable[str], value: str) -> bool:
    allowed = tuple(allowed)
    return WILDCARD in allowed or value in allowed


def rule_covers_resource(rule: Rule, api_group: str, resource: str) -> bool:
    return _matches_value(rule.api_groups, api_group) and _matches_value(rule.resources, resource)


def matches_rule(rule: Rule, request: ResourceRequest) -> bool:
    if not rule_covers_resource(rule, request.api_group, request.resource):
        return False
    if rule.resource_names:
        # A name-restricted rule never matches a request without a name (e.g. list).
        if request.resource_name is None or request.resource_name not in rule.resource_names:
            return False
    return _matches_value(rule.verbs, request.verb)


def matches_selector(selector: Optional[LabelSelector], labels: Mapping[str, str]) -> bool:
    """Conjunction of every match_label and expression. Empty (or None) selector matches all."""
    if selector is None:
        return True
    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False
    for req in selector.match_expressions:
        present = req.key in labels
        if req.operator == SelectorOperator.in_.value:
            if not present or labels[req.key] not in req.values:
                return False
        elif req.operator == SelectorOperator.not_in.value:
            if present and labels[req.key] in req.values:
                return False
        elif req.operator == SelectorOperator.exists.value:
            if not present:
                return False
        elif req.operator == SelectorOperator.does_not_exist.value:
            if present:
                return False
        else:
            return False
    return True


def subject_matches(subject: Subject, principal: Principal, groups: Optional[frozenset[str]] = None) -> bool:
    """
    True if the binding subject names this principal directly or one of its groups.
    `groups` overrides principal.effective_groups() when an identity provider resolved them.
    """
    if subject.kind == SubjectKind.group:
        member_of = groups if groups is not None else principal.effective_groups()
        return subject.name in member_of
    return subject.kind == principal.kind and subject.name == principal.name


def port_matches(spec: PortSpec, port: int, protocol: Protocol) -> bool:
    if spec.protocol != protocol:
        return False
    if spec.port is None:
        return True
    if spec.end_port is not None:
        return spec.port <= port <= spec.end_port
    return spec.port == port


def rule_has_wildcard(rule: Rule) -> bool:
    """Wildcard verb or resource type (api group wildcards alone are not flagged)."""
    return WILDCARD in rule.verbs or WILDCARD in rule.resources


def rule_is_full_wildcard(rule: Rule) -> bool:
    return (
        WILDCARD in rule.api_groups
        and WILDCARD in rule.resources
        and WILDCARD in rule.verbs
        and not rule.resource_names
    )


def role_is_cluster_admin(role: Role, admin_names: Iterable[str] = ("cluster-admin",)) -> bool:
    if role.cluster_admin or role.name in set(admin_names):
        return True
    return any(rule_is_full_wildcard(r) for r in role.rules)


def peer_is_unscoped(peer: NetworkPeer) -> bool:
    """Matches every pod in every namespace: no selectors, or an empty namespace selector."""
    if peer.pod_selector is None and peer.namespace_selector is None:
        return True
    if peer.namespace_selector is None or not peer.namespace_selector.is_empty:
        return False
    return peer.pod_selector is None or peer.pod_selector.is_empty


def rule_is_unscoped(rule: NetworkPolicyRule) -> bool:
    return not rule.peers or any(peer_is_unscoped(p) for p in rule.peers)
