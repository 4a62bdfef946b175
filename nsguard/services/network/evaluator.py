"""
NetworkIsolationEvaluator - is a flow between two workloads permitted?

For direction=Ingress the policies of the destination's namespace that select
the destination apply, and the source is the peer. For direction=Egress the
policies of the source's namespace that select the source apply, and the
destination is the peer.

  no selecting policy for the direction   → Allow  (NoSelectingPolicy)
  any rule of any selecting policy
    matches peer AND port/protocol        → Allow  (AllowedByPolicy)
  otherwise                               → Deny   (NoMatchingNetworkRule)

Peer matching per NetworkPeer:
  pod_selector only        pods in the policy's own namespace
  namespace_selector only  any pod in a matching namespace
  both                     matching pods inside matching namespaces
  neither                  any peer
"""

from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict

from nsguard.services.authz.context import EvaluationContext
from nsguard.services.shared.errors import CanceledError
from nsguard.services.shared.matcher import matches_selector, port_matches
from nsguard.services.shared.models import (
    NAMESPACE_NAME_LABEL, Direction, NetworkPeer, NetworkPolicy, NetworkPolicyRule,
    Protocol, Workload,
)

logger = structlog.get_logger()

REASON_NO_SELECTING_POLICY = "NoSelectingPolicy"
REASON_ALLOWED_BY_POLICY   = "AllowedByPolicy"
REASON_NO_MATCHING_RULE    = "NoMatchingNetworkRule"


class NetworkDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed:            bool
    reason_code:        str
    reason:             str
    direction:          Direction
    selecting_policies: tuple[str, ...] = ()
    matched_policy:     Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def _describe(w: Workload) -> str:
    labels = ",".join(f"{k}={v}" for k, v in sorted(w.labels.items())) or "<no labels>"
    return f"{w.namespace}[{labels}]"


class NetworkIsolationEvaluator:
    def __init__(self, store):
        self._store = store

    def is_allowed(
        self,
        source: Workload,
        dest: Workload,
        port: int,
        protocol: Protocol = Protocol.tcp,
        direction: Direction = Direction.ingress,
        *,
        context: Optional[EvaluationContext] = None,
    ) -> NetworkDecision:
        direction = Direction(direction)
        protocol = Protocol(protocol)
        try:
            decision = self._decide(source, dest, port, protocol, direction, context)
        except CanceledError as exc:
            decision = NetworkDecision(
                allowed=False,
                reason_code=CanceledError.code,
                reason=f"evaluation cancelled before completion: {exc.message}",
                direction=direction,
            )

        logger.info(
            "network_decision",
            source=_describe(source),
            dest=_describe(dest),
            port=port,
            protocol=protocol.value,
            direction=direction.value,
            allowed=decision.allowed,
            reason_code=decision.reason_code,
            matched_policy=decision.matched_policy,
        )
        return decision

    def check_connection(
        self,
        source: Workload,
        dest: Workload,
        port: int,
        protocol: Protocol = Protocol.tcp,
        *,
        context: Optional[EvaluationContext] = None,
    ) -> NetworkDecision:
        """A connection needs the source's egress and the destination's ingress to both allow it."""
        egress = self.is_allowed(source, dest, port, protocol, Direction.egress, context=context)
        if not egress:
            return egress
        return self.is_allowed(source, dest, port, protocol, Direction.ingress, context=context)

    # ── Internals ────────────────────────────────────────────────────────────

    def _decide(
        self,
        source: Workload,
        dest: Workload,
        port: int,
        protocol: Protocol,
        direction: Direction,
        context: Optional[EvaluationContext],
    ) -> NetworkDecision:
        if context is not None:
            context.check()

        target, peer = (dest, source) if direction == Direction.ingress else (source, dest)

        with self._store.view() as view:
            selecting = sorted(
                (
                    p for p in view.network_policies(target.namespace)
                    if direction in p.policy_types and matches_selector(p.pod_selector, target.labels)
                ),
                key=lambda p: p.id,
            )
            if not selecting:
                return NetworkDecision(
                    allowed=True,
                    reason_code=REASON_NO_SELECTING_POLICY,
                    reason=f"no NetworkPolicy selects {_describe(target)} for {direction.value}",
                    direction=direction,
                )

            ns = view.namespace(peer.namespace)
            peer_ns_labels = ns.effective_labels() if ns is not None else {NAMESPACE_NAME_LABEL: peer.namespace}

            for policy in selecting:
                for rule in policy.rules_for(direction):
                    if context is not None:
                        context.check()
                    if self._rule_matches(policy, rule, peer, peer_ns_labels, port, protocol):
                        return NetworkDecision(
                            allowed=True,
                            reason_code=REASON_ALLOWED_BY_POLICY,
                            reason=(
                                f"NetworkPolicy {policy.id} allows {direction.value} "
                                f"{_describe(source)} → {_describe(dest)} on {port}/{protocol.value}"
                            ),
                            direction=direction,
                            selecting_policies=tuple(p.id for p in selecting),
                            matched_policy=policy.id,
                        )

        return NetworkDecision(
            allowed=False,
            reason_code=REASON_NO_MATCHING_RULE,
            reason=(
                f"{len(selecting)} NetworkPolicy(s) select {_describe(target)} for {direction.value} "
                f"but none allows {_describe(peer)} on {port}/{protocol.value}"
            ),
            direction=direction,
            selecting_policies=tuple(p.id for p in selecting),
        )

    @staticmethod
    def _peer_matches(policy: NetworkPolicy, peer: NetworkPeer, workload: Workload, ns_labels: dict) -> bool:
        if peer.pod_selector is None and peer.namespace_selector is None:
            return True
        if peer.namespace_selector is None:
            if workload.namespace != policy.namespace:
                return False
        elif not matches_selector(peer.namespace_selector, ns_labels):
            return False
        return peer.pod_selector is None or matches_selector(peer.pod_selector, workload.labels)

    def _rule_matches(
        self,
        policy: NetworkPolicy,
        rule: NetworkPolicyRule,
        peer: Workload,
        peer_ns_labels: dict,
        port: int,
        protocol: Protocol,
    ) -> bool:
        if rule.peers and not any(self._peer_matches(policy, p, peer, peer_ns_labels) for p in rule.peers):
            return False
        if rule.ports and not any(port_matches(spec, port, protocol) for spec in rule.ports):
            return False
        return True
