"""nsguard - namespace-scoped access-control and policy-compliance engine."""
