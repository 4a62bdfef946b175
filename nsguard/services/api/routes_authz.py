"""
Authorization query routes.

POST /api/authz/authorize      → Decision (never an error for evaluation failures)
POST /api/authz/allowed-verbs  → verbs a principal holds on a resource type
GET  /api/authz/decisions      → recent decisions, newest first
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from nsguard.services.api.deps import get_engine
from nsguard.services.authz.context import EvaluationContext
from nsguard.services.shared.models import DecisionOutcome
from nsguard.services.shared.schemas import AllowedVerbsRequest, AuthorizeRequest, DecisionRecordOut

router = APIRouter()


@router.post("/authz/authorize")
def authorize(req: AuthorizeRequest, engine=Depends(get_engine)):
    context = EvaluationContext.with_timeout(req.timeout_seconds) if req.timeout_seconds else None
    decision = engine.authorizer.authorize(
        req.principal.to_principal(),
        req.verb,
        req.resource,
        req.namespace,
        api_group=req.api_group,
        resource_name=req.resource_name,
        context=context,
    )
    return decision.model_dump(mode="json")


@router.post("/authz/allowed-verbs")
def allowed_verbs(req: AllowedVerbsRequest, engine=Depends(get_engine)):
    verbs = engine.authorizer.allowed_verbs(
        req.principal.to_principal(), req.resource, req.namespace, api_group=req.api_group,
    )
    return {"principal": req.principal.name, "resource": req.resource, "namespace": req.namespace, "verbs": verbs}


@router.get("/authz/decisions", response_model=list[DecisionRecordOut])
def recent_decisions(
    principal: Optional[str] = None,
    outcome:   Optional[DecisionOutcome] = None,
    limit:     int = Query(default=100, le=1000),
    engine=Depends(get_engine),
):
    records = engine.decision_log.recent(limit=limit, principal=principal, outcome=outcome)
    return [DecisionRecordOut.model_validate(r.model_dump()) for r in records]
