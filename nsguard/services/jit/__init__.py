"""
nsguard Just-In-Time access
----------------------------
AccessGrant lifecycle: Requested → Approved → Active → {Expired, Revoked}.
Active grants are backed by a RoleBinding with expires_at; a periodic sweeper
expires them through the same delete path as manual revocation.
"""
