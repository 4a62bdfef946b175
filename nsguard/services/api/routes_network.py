"""
Network flow routes.

POST /api/network/flow        → one direction (Ingress on dest or Egress on source)
POST /api/network/connection  → source egress AND destination ingress
"""

from fastapi import APIRouter, Depends

from nsguard.services.api.deps import get_engine
from nsguard.services.authz.context import EvaluationContext
from nsguard.services.shared.schemas import NetworkFlowRequest

router = APIRouter()


def _context(req: NetworkFlowRequest):
    return EvaluationContext.with_timeout(req.timeout_seconds) if req.timeout_seconds else None


@router.post("/network/flow")
def network_flow(req: NetworkFlowRequest, engine=Depends(get_engine)):
    decision = engine.network.is_allowed(
        req.source, req.dest, req.port, req.protocol, req.direction, context=_context(req),
    )
    return decision.model_dump(mode="json")


@router.post("/network/connection")
def network_connection(req: NetworkFlowRequest, engine=Depends(get_engine)):
    decision = engine.network.check_connection(req.source, req.dest, req.port, req.protocol, context=_context(req))
    return decision.model_dump(mode="json")
