"""
nsguard PolicyStore
--------------------
Versioned repository of Namespaces, Roles, RoleBindings and NetworkPolicies.

Modules:
  policy_store.py - RWLock-guarded in-memory store, validation, cascades, snapshots
  repository.py   - optional SQLAlchemy mirror (save on commit, load on startup)
  manifests.py    - kubectl-style YAML → policy objects
  rwlock.py       - writer-preferring readers-writer lock
"""
