"""Domain models and the aggregation engine.

This package contains in-memory (Pydantic) models describing operations,
parcels, matches and taxable events together with the pure policies that
act on them. They are independent from persistence models so that
business logic and testing can evolve without DB coupling.
"""

__all__ = [
    "asset",
    "base_types",
    "classification",
    "currency",
    "engine",
    "errors",
    "identification",
    "ledger_index",
    "operations",
    "partition",
    "policy",
    "records",
    "transaction",
    "views",
]
