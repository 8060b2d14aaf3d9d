"""Store access helpers: engines, fixture bundles and the cleanup ledger."""
