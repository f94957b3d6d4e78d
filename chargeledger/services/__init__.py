"""Core services: cache, protocol log, wallet, dispatch, reconciliation and sessions."""
