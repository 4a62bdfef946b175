"""
nsguard Network Isolation
--------------------------
Decides whether a flow between two workloads is permitted by NetworkPolicies.
Default-open until a policy selects the workload for a direction; then
default-deny, with selecting policies combined additively.
"""
