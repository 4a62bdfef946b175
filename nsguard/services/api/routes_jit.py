"""
JIT grant routes: request, approve, deny, revoke, list, sweep.

  POST   /api/jit/grants               → Requested (or Active when no approval is required)
  POST   /api/jit/grants/{id}/approve  → Active
  POST   /api/jit/grants/{id}/deny     → Revoked (reason "denied")
  DELETE /api/jit/grants/{id}          → Revoked; idempotent
  GET    /api/jit/grants               → active grants, or full history with active_only=false
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from nsguard.services.api.deps import get_engine
from nsguard.services.shared.models import GrantState
from nsguard.services.shared.schemas import GrantRequest, GrantReview

router = APIRouter()


@router.get("/jit/grants")
def list_grants(
    namespace:   Optional[str] = None,
    active_only: bool = True,
    principal:   Optional[str] = None,
    state:       Optional[GrantState] = None,
    limit:       int = Query(default=100, le=1000),
    offset:      int = 0,
    engine=Depends(get_engine),
):
    if active_only:
        grants = engine.jit.list_active_grants(namespace)
        if principal:
            grants = [g for g in grants if g.principal.name == principal]
        grants = grants[offset:offset + limit]
    else:
        grants = engine.jit.list_grants(
            namespace=namespace, principal=principal, state=state, limit=limit, offset=offset,
        )
    return [g.model_dump(mode="json") for g in grants]


@router.post("/jit/grants", status_code=201)
def request_grant(req: GrantRequest, engine=Depends(get_engine)):
    grant = engine.jit.request_grant(
        req.principal.to_principal(),
        req.role_ref(),
        req.namespace,
        req.duration(),
        justification=req.justification,
        requested_by=req.requested_by,
    )
    return grant.model_dump(mode="json")


@router.get("/jit/grants/{grant_id}")
def get_grant(grant_id: str, engine=Depends(get_engine)):
    return engine.jit.get_grant(grant_id).model_dump(mode="json")


@router.post("/jit/grants/{grant_id}/approve")
def approve_grant(grant_id: str, review: GrantReview, engine=Depends(get_engine)):
    return engine.jit.approve_grant(grant_id, review.actor).model_dump(mode="json")


@router.post("/jit/grants/{grant_id}/deny")
def deny_grant(grant_id: str, review: GrantReview, engine=Depends(get_engine)):
    return engine.jit.deny_grant(grant_id, review.actor).model_dump(mode="json")


@router.delete("/jit/grants/{grant_id}")
def revoke_grant(grant_id: str, actor: str = "admin", engine=Depends(get_engine)):
    return engine.jit.revoke_grant(grant_id, actor).model_dump(mode="json")


@router.post("/jit/sweep")
def sweep(engine=Depends(get_engine)):
    """Run one expiry sweep now instead of waiting for the periodic sweeper."""
    return engine.jit.sweep()
