"""
Policy object routes: bulk apply (JSON or YAML manifest), put, list, get, delete.
Every successful write emits an AuditTrail entry.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from nsguard.services.api.deps import get_engine
from nsguard.services.shared.errors import InvalidObjectError
from nsguard.services.shared.models import ObjectKind, RoleBinding, ref_of
from nsguard.services.shared.schemas import (
    ApplyRequest, ApplyResponse, DeleteResponse, PutRequest, WriteResponse,
)
from nsguard.services.store.manifests import load_manifests

router = APIRouter()


def _reject_grant_links(objects) -> None:
    """grant_id marks a JIT-managed binding; only the JIT controller may set it."""
    for obj in objects:
        if isinstance(obj, RoleBinding) and obj.grant_id is not None:
            raise InvalidObjectError(
                "grant_id is reserved for bindings created by JIT grants",
                object_ref=str(ref_of(obj)), field="grant_id",
            )


@router.post("/policy/apply", response_model=ApplyResponse)
def apply_objects(req: ApplyRequest, engine=Depends(get_engine)):
    """All-or-nothing: any invalid object rejects the whole batch."""
    objects = list(req.objects)
    if req.manifest:
        objects.extend(load_manifests(req.manifest))
    if not objects:
        raise HTTPException(status_code=400, detail="Nothing to apply")
    _reject_grant_links(objects)

    version = engine.store.apply(objects)
    refs = [str(ref_of(o)) for o in objects]
    engine.audit.emit(req.actor, "policy_applied", f"store:v{version}", {"objects": refs})
    return ApplyResponse(version=version, applied=len(objects), objects=refs)


@router.put("/policy/objects", response_model=WriteResponse)
def put_object(req: PutRequest, engine=Depends(get_engine)):
    _reject_grant_links([req.object])
    version = engine.store.put(req.object)
    ref = str(ref_of(req.object))
    engine.audit.emit(req.actor, "policy_object_put", ref, {"version": version})
    return WriteResponse(version=version, object=ref)


@router.get("/policy/{kind}")
def list_objects(kind: ObjectKind, namespace: Optional[str] = None, engine=Depends(get_engine)):
    return [o.model_dump(mode="json") for o in engine.store.list(kind, namespace)]


@router.get("/policy/{kind}/{object_id:path}")
def get_object(kind: ObjectKind, object_id: str, engine=Depends(get_engine)):
    obj = engine.store.get(kind, object_id)
    if obj is None:
        raise HTTPException(status_code=404, detail=f"{kind.value} '{object_id}' not found")
    return obj.model_dump(mode="json")


@router.delete("/policy/{kind}/{object_id:path}", response_model=DeleteResponse)
def delete_object(kind: ObjectKind, object_id: str, actor: str = "admin", engine=Depends(get_engine)):
    """Idempotent: deleting a missing object returns deleted=false."""
    deleted = engine.store.delete(kind, object_id)
    if deleted:
        engine.audit.emit(actor, "policy_object_deleted", f"{kind.value}:{object_id}", {
            "version": engine.store.version,
        })
    return DeleteResponse(deleted=deleted, version=engine.store.version)
