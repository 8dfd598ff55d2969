"""Identity resolution and writes against the store.

Handles:
- Customer / order deduplication
- Product-line composite keys and intra-batch merging
- Insert vs update decisions against persisted rows
- Batched writes with per-row fallback
- Placeholder customers and orphan pruning
"""

from .keys import ProductLineKey
from .ledger import DeltaLedger, fingerprint
from .merge import (
    ProductLinePlan,
    apply_quantity,
    dedupe_customers,
    dedupe_orders,
    dedupe_records,
    index_existing,
    merge_product_lines,
    plan_product_lines,
)
from .policy import BatchOutcome, BatchWritePolicy
from .writer import PLACEHOLDER_NAME, ReconciliationWriter, TableStats

__all__ = [
    # Identity
    "ProductLineKey",
    "dedupe_records",
    "dedupe_customers",
    "dedupe_orders",
    # Quantities
    "apply_quantity",
    "merge_product_lines",
    "index_existing",
    "plan_product_lines",
    "ProductLinePlan",
    # Writes
    "BatchWritePolicy",
    "BatchOutcome",
    "ReconciliationWriter",
    "TableStats",
    "PLACEHOLDER_NAME",
    # Delta ledger
    "DeltaLedger",
    "fingerprint",
]
