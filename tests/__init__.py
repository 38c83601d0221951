# Kasir Ledger Test Suite
#
# In-process tests against an in-memory SQLite database:
# - Ledger services (stock, cash, sales, returns, drawers, opname)
# - Unit of work and retry helpers
# - HTTP routes (Flask test client) and CLI commands (Flask CLI runner)
#
# Run with: python -m pytest
