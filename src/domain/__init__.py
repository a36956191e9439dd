"""Domain models and algorithms for the portfolio ledger.

This package contains in-memory (Pydantic) models describing currencies,
accounts, journaled transactions and holdings, plus the pure average-cost
calculator and portfolio aggregation. They are independent from persistence
models so that business logic and testing can evolve without DB coupling.
"""

__all__ = [
    "account",
    "base_types",
    "cost_basis",
    "currency",
    "errors",
    "holdings",
    "portfolio",
    "pricing",
    "transaction",
]
