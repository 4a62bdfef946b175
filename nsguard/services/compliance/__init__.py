"""
nsguard Compliance
-------------------
Drift detection and audit reporting.

Modules:
  drift_detector.py - scan(): wildcard rules, cluster-admin bindings, unscoped ingress,
                      orphaned JIT grants, baseline drift with structural diffs
  diff.py           - structural diff between two JSON-like documents
  controls.py       - violation kind → CIS Kubernetes Benchmark / NIST 800-53 citations
  reporter.py       - deduplicated, severity-ordered Report with JSON and text renderings
"""
