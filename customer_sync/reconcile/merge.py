"""Deduplication, intra-batch merging and insert/update decisions."""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from customer_sync.config import ABSOLUTE, DELTA, KEEP_FIRST, KEEP_MOST_RECENT
from customer_sync.reconcile.keys import ProductLineKey
from customer_sync.transform.normalize import normalize_integer, normalize_timestamp

logger = logging.getLogger(__name__)

CUSTOMER_KEY_FIELDS = ("cliente_codigo", "codigo")
CUSTOMER_RECENCY_FIELDS = ("data_atualizacao", "updated_at", "data_cadastro")
ORDER_KEY_FIELDS = ("codigo_pedido",)
ORDER_RECENCY_FIELDS = ("data_hora_confirmacao", "data_hora_pagamento", "data_hora_pedido")

# Duplicate examples kept for diagnostics
MAX_DUPLICATE_EXAMPLES = 12


# ============================================
# Record deduplication
# ============================================

def record_key(record: dict, key_fields: Sequence[str]) -> Optional[str]:
    """First non-empty key field, trimmed."""
    for name in key_fields:
        value = record.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def inferred_timestamp(record: dict, recency_fields: Sequence[str]) -> Optional[str]:
    """First parseable timestamp among the recency fields (canonical form)."""
    for name in recency_fields:
        value = normalize_timestamp(record.get(name))
        if value is not None:
            return value
    return None


def dedupe_records(
    records: list[dict],
    key_fields: Sequence[str],
    policy: str = KEEP_FIRST,
    recency_fields: Sequence[str] = (),
) -> list[dict]:
    """Deduplicate records by a normalized identity key.

    Args:
        records: Records to deduplicate
        key_fields: Fields tried in order to build the key
        policy: "keep-first" keeps the first occurrence; "keep-most-recent"
            keeps the occurrence with the latest inferred timestamp
            (ties and missing timestamps keep the first seen)
        recency_fields: Date-bearing fields, in priority order

    Returns:
        Deduplicated records, in order of first appearance of each key
    """
    if policy not in (KEEP_FIRST, KEEP_MOST_RECENT):
        raise ValueError(f"Unknown dedup policy: {policy}")

    kept: dict[str, dict] = {}
    examples = []
    skipped = 0
    duplicates = 0

    for record in records:
        identity = record_key(record, key_fields)
        if identity is None:
            skipped += 1
            continue

        current = kept.get(identity)
        if current is None:
            kept[identity] = record
            continue

        duplicates += 1
        if len(examples) < MAX_DUPLICATE_EXAMPLES:
            examples.append(identity)

        if policy == KEEP_MOST_RECENT:
            challenger_ts = inferred_timestamp(record, recency_fields)
            current_ts = inferred_timestamp(current, recency_fields)
            if challenger_ts is not None and (current_ts is None or challenger_ts > current_ts):
                kept[identity] = record

    if skipped:
        logger.warning(
            f"Skipped {skipped} records without identity",
            extra={"key_fields": list(key_fields), "skipped_count": skipped},
        )

    if duplicates:
        logger.info(
            f"Removed {duplicates} duplicate records",
            extra={
                "original_count": len(records),
                "deduped_count": len(kept),
                "duplicate_count": duplicates,
                "duplicate_examples": examples,
                "policy": policy,
            },
        )

    return list(kept.values())


def dedupe_customers(records: list[dict], policy: str = KEEP_FIRST) -> list[dict]:
    return dedupe_records(records, CUSTOMER_KEY_FIELDS, policy, CUSTOMER_RECENCY_FIELDS)


def dedupe_orders(records: list[dict], policy: str = KEEP_FIRST) -> list[dict]:
    return dedupe_records(records, ORDER_KEY_FIELDS, policy, ORDER_RECENCY_FIELDS)


# ============================================
# Product-line quantities
# ============================================

def apply_quantity(existing: Optional[int], incoming: Optional[int], mode: str) -> Optional[int]:
    """New persisted quantity for a matched row.

    Returns None when the incoming quantity is unknown: a known quantity is
    never overwritten with "unknown".
    """
    if incoming is None:
        return None
    if mode == DELTA:
        return (existing or 0) + incoming
    if mode == ABSOLUTE:
        return incoming
    raise ValueError(f"Unknown quantity mode: {mode}")


def merge_product_lines(
    lines: list[dict],
    mode: str,
    strip_leading_zeros: bool = True,
) -> dict[ProductLineKey, dict]:
    """Merge lines sharing a composite key within one batch.

    Delta mode sums the known quantities; absolute mode keeps the last known
    one. Descriptive columns take the latest non-null value.

    Returns:
        Merged rows keyed by composite key, in order of first appearance
    """
    if mode not in (DELTA, ABSOLUTE):
        raise ValueError(f"Unknown quantity mode: {mode}")

    merged: dict[ProductLineKey, dict] = {}

    for line in lines:
        key = ProductLineKey.from_row(line, strip_leading_zeros)
        if key is None:
            continue

        quantity = normalize_integer(line.get("quantidade"))
        current = merged.get(key)

        if current is None:
            merged[key] = {**line, **key.as_filters(), "quantidade": quantity}
            continue

        for column, value in line.items():
            if column != "quantidade" and value is not None:
                current[column] = value
        current.update(key.as_filters())

        if quantity is None:
            continue
        if mode == DELTA:
            current["quantidade"] = (current["quantidade"] or 0) + quantity
        else:
            current["quantidade"] = quantity

    merged_away = len(lines) - len(merged)
    if merged_away > 0:
        logger.info(
            f"Merged {len(lines)} product lines into {len(merged)} composite keys",
            extra={"input_count": len(lines), "merged_count": len(merged), "mode": mode},
        )

    return merged


@dataclass
class ExistingIndex:
    """Persisted product lines grouped by composite key."""

    rows: dict[ProductLineKey, dict] = field(default_factory=dict)
    duplicate_rows: int = 0


def _row_id(row: dict) -> int:
    try:
        return int(row.get("id") or 0)
    except (TypeError, ValueError):
        return 0


def index_existing(rows: list[dict], strip_leading_zeros: bool = True) -> ExistingIndex:
    """Index persisted rows; on duplicate keys the highest row id wins."""
    index = ExistingIndex()

    for row in rows:
        key = ProductLineKey.from_row(row, strip_leading_zeros)
        if key is None:
            continue
        current = index.rows.get(key)
        if current is None:
            index.rows[key] = row
            continue
        index.duplicate_rows += 1
        if _row_id(row) > _row_id(current):
            index.rows[key] = row

    if index.duplicate_rows:
        logger.warning(
            f"Found {index.duplicate_rows} duplicate product-line rows in storage",
            extra={"duplicate_rows": index.duplicate_rows},
        )

    return index


@dataclass
class QuantityUpdate:
    """Quantity correction for one persisted row."""

    row_id: int
    key: ProductLineKey
    previous: Optional[int]
    quantity: int


@dataclass
class ProductLinePlan:
    """Insert / update decisions for one batch of merged product lines."""

    inserts: list[dict] = field(default_factory=list)
    updates: list[QuantityUpdate] = field(default_factory=list)
    unchanged: int = 0
    unknown_quantity: int = 0

    def counts(self) -> dict:
        return {
            "inserts": len(self.inserts),
            "updates": len(self.updates),
            "unchanged": self.unchanged,
            "unknown_quantity": self.unknown_quantity,
        }


def plan_product_lines(
    merged: dict[ProductLineKey, dict],
    existing: ExistingIndex,
    mode: str,
) -> ProductLinePlan:
    """Decide insert vs update vs no-op for every merged key.

    - no persisted row          -> insert
    - row + incoming quantity   -> update when the new quantity differs
    - row + unknown quantity    -> no-op
    """
    plan = ProductLinePlan()

    for key, incoming in merged.items():
        row = existing.rows.get(key)
        if row is None:
            plan.inserts.append(incoming)
            continue

        previous = normalize_integer(row.get("quantidade"))
        new_quantity = apply_quantity(previous, incoming.get("quantidade"), mode)

        if new_quantity is None:
            plan.unknown_quantity += 1
        elif new_quantity != previous:
            plan.updates.append(
                QuantityUpdate(
                    row_id=_row_id(row),
                    key=key,
                    previous=previous,
                    quantity=new_quantity,
                )
            )
        else:
            plan.unchanged += 1

    return plan
