"""HTTP routers — thin consumers of the sync services."""
