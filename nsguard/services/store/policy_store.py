"""
PolicyStore - versioned in-memory repository of Namespaces, Roles, RoleBindings
and NetworkPolicies.

Concurrency:
  - Reads take the shared side of an RWLock; writes take the exclusive side.
  - Every write is staged on a copy, validated, optionally persisted, then swapped
    in one assignment, so readers never observe a Binding without its Role.
  - Listeners are notified after the write lock is released.

Referential integrity (checked on every put/apply):
  RoleBinding   → Role, Namespace
  Role          → Namespace (namespaced roles)
  NetworkPolicy → Namespace
Deleting a Namespace cascades to everything scoped to it; deleting a Role
cascades to the bindings that reference it.
"""

import hashlib
import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional

import structlog

from nsguard.services.shared.errors import DanglingReferenceError, InvalidObjectError
from nsguard.services.shared.models import (
    APPLY_ORDER, Baseline, Direction, Namespace, NetworkPolicy, ObjectKind,
    Role, RoleBinding, ref_of, utcnow,
)
from nsguard.services.shared.selectors import validate_labels, validate_selector
from nsguard.services.store.rwlock import RWLock

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoreChange:
    version:  int
    upserted: tuple
    deleted:  tuple


StoreListener = Callable[[StoreChange], None]


def _kind_of(kind) -> ObjectKind:
    return kind if isinstance(kind, ObjectKind) else ObjectKind(kind)


def snapshot_key(obj) -> str:
    return f"{obj.kind}:{obj.id}"


def canonical_json(content: dict) -> str:
    return json.dumps(content, sort_keys=True, separators=(",", ":"))


# ── Read view ─────────────────────────────────────────────────────────────────

class StoreView:
    """
    Consistent read-only view over one committed version.
    Only valid inside PolicyStore.view(); do not call back into the store from here.
    """

    def __init__(self, objects: dict[ObjectKind, dict], version: int):
        self._objects = objects
        self.version = version

    def get(self, kind, object_id: str):
        return self._objects[_kind_of(kind)].get(object_id)

    def list(self, kind, namespace: Optional[str] = None) -> list:
        items = self._objects[_kind_of(kind)].values()
        if namespace is not None:
            items = [o for o in items if o.namespace == namespace]
        return sorted(items, key=lambda o: o.id)

    def namespace(self, name: str) -> Optional[Namespace]:
        return self._objects[ObjectKind.namespace].get(name)

    def role_for(self, binding: RoleBinding) -> Optional[Role]:
        return self._objects[ObjectKind.role].get(binding.role_id())

    def bindings(self) -> Iterable[RoleBinding]:
        return self._objects[ObjectKind.role_binding].values()

    def network_policies(self, namespace: str) -> "list[NetworkPolicy]":
        return [p for p in self._objects[ObjectKind.network_policy].values() if p.namespace == namespace]


# ── Store ─────────────────────────────────────────────────────────────────────

class PolicyStore:
    def __init__(self, repository=None, clock: Callable[[], datetime] = utcnow):
        self._lock = RWLock()
        self._objects: dict[ObjectKind, dict] = {kind: {} for kind in ObjectKind}
        self._version = 0
        self._repository = repository
        self._clock = clock
        self._listeners: list[StoreListener] = []
        self._listeners_lock = threading.Lock()

    @classmethod
    def load(cls, repository, clock: Callable[[], datetime] = utcnow) -> "PolicyStore":
        """Restore a store from its SQL mirror. Objects are trusted as already validated."""
        store = cls(repository=repository, clock=clock)
        objects, version = repository.load()
        for obj in objects:
            store._objects[ObjectKind(obj.kind)][obj.id] = obj
        store._version = version
        return store

    @property
    def version(self) -> int:
        return self._version

    def subscribe(self, listener: StoreListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    # ── Reads ────────────────────────────────────────────────────────────────

    @contextmanager
    def view(self) -> Iterator[StoreView]:
        with self._lock.read_locked():
            yield StoreView(self._objects, self._version)

    def get(self, kind, object_id: str):
        with self.view() as v:
            return v.get(kind, object_id)

    def list(self, kind, namespace: Optional[str] = None) -> list:
        with self.view() as v:
            return v.list(kind, namespace)

    def snapshot(self) -> Baseline:
        """Baseline-compatible serialization: canonical JSON per object + sha256 over the whole."""
        with self._lock.read_locked():
            content = {
                snapshot_key(obj): obj.model_dump(mode="json")
                for kind in ObjectKind
                for obj in self._objects[kind].values()
            }
            version = self._version
        digest = hashlib.sha256(canonical_json(content).encode()).hexdigest()
        return Baseline(hash=digest, content=content, version=version, taken_at=self._clock())

    # ── Writes ───────────────────────────────────────────────────────────────

    def put(self, obj) -> int:
        """Validate and store one object. Returns the new store version."""
        return self.apply([obj])

    def apply(self, objects: Iterable) -> int:
        """
        Transactional bulk write: every object is validated against the staged state
        (in dependency order) before anything is committed. Any failure rejects all.
        """
        ordered = sorted(objects, key=lambda o: APPLY_ORDER.index(ObjectKind(o.kind)))
        if not ordered:
            return self._version

        with self._lock.write_locked():
            staged = {kind: dict(items) for kind, items in self._objects.items()}
            for obj in ordered:
                self._validate(obj, staged)
                staged[ObjectKind(obj.kind)][obj.id] = obj
            change = self._commit(staged, upserted=tuple(ordered), deleted=())

        for obj in ordered:
            logger.info("policy_object_put", kind=obj.kind, id=obj.id, version=change.version)
        self._notify(change)
        return change.version

    def delete(self, kind, object_id: str) -> bool:
        """
        Delete if present, cascading as described in the module docstring.
        Idempotent: returns False (and bumps nothing) when the object is already gone.
        """
        kind = _kind_of(kind)
        with self._lock.write_locked():
            target = self._objects[kind].get(object_id)
            if target is None:
                return False
            staged = {k: dict(items) for k, items in self._objects.items()}
            removed = self._cascade(target, staged)
            change = self._commit(staged, upserted=(), deleted=tuple(removed))

        if kind == ObjectKind.namespace:
            logger.info(
                "namespace_cascade_deleted",
                namespace=object_id,
                removed=len(removed) - 1,
                version=change.version,
            )
        else:
            logger.info("policy_object_deleted", kind=kind.value, id=object_id,
                        cascaded=len(removed) - 1, version=change.version)
        self._notify(change)
        return True

    # ── Internals ────────────────────────────────────────────────────────────

    def _commit(self, staged: dict, upserted: tuple, deleted: tuple) -> StoreChange:
        """Caller holds the write lock. Persist first so a failed commit changes nothing."""
        version = self._version + 1
        if self._repository is not None:
            self._repository.save(version, upserted, deleted)
        self._objects = staged
        self._version = version
        return StoreChange(version=version, upserted=upserted, deleted=deleted)

    @staticmethod
    def _cascade(target, staged: dict) -> list:
        removed = [target]
        del staged[ObjectKind(target.kind)][target.id]

        if isinstance(target, Namespace):
            for kind in (ObjectKind.role_binding, ObjectKind.network_policy, ObjectKind.role):
                for obj_id, obj in list(staged[kind].items()):
                    if obj.namespace == target.name:
                        removed.append(obj)
                        del staged[kind][obj_id]
        elif isinstance(target, Role):
            for obj_id, binding in list(staged[ObjectKind.role_binding].items()):
                if binding.role_id() == target.id:
                    removed.append(binding)
                    del staged[ObjectKind.role_binding][obj_id]
        return removed

    def _notify(self, change: StoreChange) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception as exc:
                # The write is already committed; a broken listener must not undo it.
                logger.error("store_listener_error", version=change.version, error=str(exc))

    def _validate(self, obj, staged: dict) -> None:
        ref = str(ref_of(obj))
        namespaces = staged[ObjectKind.namespace]

        if isinstance(obj, Namespace):
            validate_labels(obj.labels, object_ref=ref)
            return

        if obj.namespace is not None and obj.namespace not in namespaces:
            raise DanglingReferenceError(
                f"{ref} references missing Namespace '{obj.namespace}'",
                object_ref=ref, field="namespace",
            )

        if isinstance(obj, Role):
            return

        if isinstance(obj, RoleBinding):
            if obj.namespace is None and not obj.role_ref.cluster_scoped:
                raise InvalidObjectError(
                    f"cluster-wide binding {ref} must reference a cluster-wide Role",
                    object_ref=ref, field="role_ref.cluster_scoped",
                )
            if obj.role_id() not in staged[ObjectKind.role]:
                scope = "cluster-wide" if obj.role_ref.cluster_scoped else f"namespace '{obj.namespace}'"
                raise DanglingReferenceError(
                    f"{ref} references missing Role '{obj.role_ref.name}' ({scope})",
                    object_ref=ref, field="role_ref.name",
                )
            return

        if isinstance(obj, NetworkPolicy):
            self._validate_network_policy(obj, ref)

    @staticmethod
    def _validate_network_policy(policy: NetworkPolicy, ref: str) -> None:
        if not policy.policy_types:
            raise InvalidObjectError(f"{ref} declares no policy_types", object_ref=ref, field="policy_types")
        if len(set(policy.policy_types)) != len(policy.policy_types):
            raise InvalidObjectError(f"{ref} repeats a policy type", object_ref=ref, field="policy_types")

        validate_selector(policy.pod_selector, object_ref=ref, field="pod_selector")

        for direction in (Direction.ingress, Direction.egress):
            section = direction.value.lower()
            for i, rule in enumerate(policy.rules_for(direction)):
                for j, peer in enumerate(rule.peers):
                    where = f"{section}[{i}].peers[{j}]"
                    if peer.pod_selector is not None:
                        validate_selector(peer.pod_selector, object_ref=ref, field=f"{where}.pod_selector")
                    if peer.namespace_selector is not None:
                        validate_selector(peer.namespace_selector, object_ref=ref, field=f"{where}.namespace_selector")
                for j, port in enumerate(rule.ports):
                    if port.end_port is not None and (port.port is None or port.end_port < port.port):
                        raise InvalidObjectError(
                            f"{ref} has an invalid port range",
                            object_ref=ref, field=f"{section}[{i}].ports[{j}].end_port",
                        )
