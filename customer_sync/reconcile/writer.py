"""Chunked writes of reconciled records against the store."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from customer_sync.clients.base import StoreClient, StoreError
from customer_sync.config import SyncConfig
from customer_sync.reconcile.keys import ProductLineKey
from customer_sync.reconcile.merge import (
    ProductLinePlan,
    apply_quantity,
    index_existing,
    plan_product_lines,
)
from customer_sync.reconcile.policy import BatchOutcome, BatchWritePolicy
from customer_sync.transform.normalize import normalize_integer, sanitize_row
from customer_sync.utils.file_io import chunked
from customer_sync.utils.pipeline_logger import PipelineLogger

logger = logging.getLogger(__name__)

# Name given to customers synthesized only to satisfy foreign keys
PLACEHOLDER_NAME = "[placeholder]"

PRODUCT_LINE_KEY_COLUMNS = ("id", "cliente_codigo", "produto_codigo", "id_pedido")
PRODUCT_LINE_READ_COLUMNS = PRODUCT_LINE_KEY_COLUMNS + ("quantidade",)

# Diagnostics kept per table
MAX_TABLE_ERRORS = 50


@dataclass
class TableStats:
    """Counters for one table over a run."""

    table: str
    extracted: int = 0
    deduplicated: int = 0
    upserted: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    placeholders: int = 0
    deleted: int = 0
    read_errors: int = 0
    failed_batches: int = 0
    errors: list[dict] = field(default_factory=list)

    def absorb(self, outcome: BatchOutcome, counter: str) -> None:
        """Fold a batch outcome into the table counters."""
        setattr(self, counter, getattr(self, counter) + outcome.written)
        for action, count in outcome.resolved.items():
            if hasattr(self, action):
                setattr(self, action, getattr(self, action) + count)
        self.failed += outcome.failed
        if outcome.failed_entirely:
            self.failed_batches += 1
        room = MAX_TABLE_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(outcome.errors[:room])

    def to_dict(self) -> dict:
        data = {
            name: getattr(self, name)
            for name in (
                "extracted", "deduplicated", "upserted", "inserted", "updated",
                "unchanged", "skipped", "failed", "placeholders", "deleted",
                "read_errors", "failed_batches",
            )
        }
        data["table"] = self.table
        data["errors"] = list(self.errors)
        return data


class ReconciliationWriter:
    """Write customers, orders and product lines in bounded batches.

    Every write call is issued sequentially. Failures go through the
    BatchWritePolicy ladder; nothing here retries on its own.
    """

    def __init__(
        self,
        store: StoreClient,
        config: SyncConfig,
        run_id: str,
        stamped_at: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.config = config
        self.run_id = run_id
        self.stamped_at = stamped_at
        self._sleep = sleep
        self.policy = BatchWritePolicy(
            failure_policy=config.failure_policy,
            pace_seconds=config.pace_seconds,
            pace_every=config.fallback_pace_every,
            sleep=sleep,
        )
        self._loggers: dict[str, PipelineLogger] = {}

    def _pipeline_logger(self, table: str) -> PipelineLogger:
        if table not in self._loggers:
            self._loggers[table] = PipelineLogger(table, self.run_id)
        return self._loggers[table]

    # ------------------------------------------------------------------
    # Upserts (customers, placeholders, orders)
    # ------------------------------------------------------------------

    def _upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        stats: TableStats,
        operation: str = "upsert",
        ignore_duplicates: bool = False,
        counter: str = "upserted",
    ) -> None:
        plog = self._pipeline_logger(table)

        def bulk(batch: list[dict]) -> None:
            self.store.upsert(table, batch, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates)

        def single(row: dict) -> None:
            self.store.upsert(table, [row], on_conflict=on_conflict, ignore_duplicates=ignore_duplicates)

        for offset, chunk in chunked(rows, self.config.chunk_size):
            batch = [sanitize_row(row) for row in chunk]
            start = time.time()
            outcome = self.policy.run(
                table,
                operation,
                batch,
                bulk=bulk,
                single=single,
                label=lambda row: str(row.get(on_conflict)),
            )
            stats.absorb(outcome, counter)
            plog.log_write(
                operation,
                attempted=outcome.attempted,
                written=outcome.written,
                failed=outcome.failed,
                duration_ms=(time.time() - start) * 1000,
                offset=offset,
            )

    def write_customers(self, records: list[dict], stats: TableStats) -> None:
        """Upsert customers keyed on ``cliente_codigo``."""
        keyed = [record for record in records if record.get("cliente_codigo")]
        stats.skipped += len(records) - len(keyed)
        self._upsert(self.config.customers_table, keyed, "cliente_codigo", stats)

    def ensure_placeholders(
        self,
        known_codes: Iterable[str],
        referenced_codes: Iterable[str],
        stats: TableStats,
    ) -> list[str]:
        """Create placeholder customers for referenced codes missing from the batch.

        Placeholders are upserted with ignore-duplicates, so a customer that
        already exists in the store keeps its real data.

        Returns:
            The codes a placeholder was written for
        """
        missing = sorted(set(referenced_codes) - set(known_codes))
        if not missing:
            return []

        rows = [
            {"cliente_codigo": code, "nome": PLACEHOLDER_NAME, "criado_em": self.stamped_at}
            for code in missing
        ]
        logger.info(
            f"Creating {len(rows)} placeholder customers",
            extra={"placeholder_count": len(rows), "codes": missing[:20]},
        )
        self._upsert(
            self.config.customers_table,
            rows,
            "cliente_codigo",
            stats,
            operation="placeholder",
            ignore_duplicates=True,
            counter="placeholders",
        )
        return missing

    def write_orders(self, records: list[dict], stats: TableStats) -> None:
        """Upsert orders keyed on ``codigo_pedido``."""
        self._upsert(self.config.orders_table, records, "codigo_pedido", stats)

    # ------------------------------------------------------------------
    # Product lines
    # ------------------------------------------------------------------

    def read_existing_product_lines(
        self,
        product_codes: list[str],
        stats: TableStats,
    ) -> list[dict]:
        """Read persisted rows for the given product codes.

        A failed read is treated as "no existing rows" for that chunk: the
        engine then inserts rather than silently dropping quantities.
        """
        table = self.config.product_lines_table
        rows: list[dict] = []

        for offset, codes in chunked(product_codes, self.config.chunk_size):
            try:
                rows.extend(
                    self.store.select_all(
                        table,
                        columns=PRODUCT_LINE_READ_COLUMNS,
                        in_filters={"produto_codigo": codes},
                    )
                )
            except StoreError as e:
                stats.read_errors += 1
                logger.warning(
                    "Could not read existing product lines; assuming none exist",
                    extra={"table": table, "offset": offset, "code_count": len(codes), "error": str(e)},
                )

        return rows

    def _resolve_product_conflict(self, row: dict, error: StoreError) -> str:
        """Handle an insert that hit an existing composite key.

        Looks the row up by exact key and applies the quantity rule to it;
        if nothing matches any more, retries the insert once.
        """
        table = self.config.product_lines_table
        key = ProductLineKey.from_row(row, self.config.strip_leading_zeros)
        if key is None:
            raise error

        matches = self.store.select(table, columns=PRODUCT_LINE_READ_COLUMNS, filters=key.as_filters())
        if not matches:
            self.store.insert(table, [row])
            return "inserted"

        canonical = index_existing(matches, self.config.strip_leading_zeros).rows[key]
        previous = normalize_integer(canonical.get("quantidade"))
        new_quantity = apply_quantity(previous, row.get("quantidade"), self.config.quantity_mode)
        if new_quantity is None or new_quantity == previous:
            return "unchanged"

        self.store.update(table, {"quantidade": new_quantity}, {"id": canonical["id"]})
        logger.info(
            f"Resolved insert conflict for {key} as quantity update",
            extra={"table": table, "key": str(key), "previous": previous, "quantity": new_quantity},
        )
        return "updated"

    def write_product_lines(
        self,
        merged: dict[ProductLineKey, dict],
        stats: TableStats,
        on_applied: Optional[Callable[[list[ProductLineKey]], None]] = None,
    ) -> ProductLinePlan:
        """Insert new product lines and correct quantities of existing ones.

        Args:
            merged: Merged incoming lines by composite key
            stats: Counters of the product-line table
            on_applied: Called after every batch with the keys it settled,
                including keys that needed no write

        Returns:
            The insert / update plan that was executed
        """
        table = self.config.product_lines_table
        plog = self._pipeline_logger(table)

        def settled(rows: list[dict]) -> None:
            if on_applied is None:
                return
            keys = [ProductLineKey.from_row(row, self.config.strip_leading_zeros) for row in rows]
            keys = [key for key in keys if key is not None]
            if keys:
                on_applied(keys)

        product_codes = sorted({key.produto_codigo for key in merged})
        existing = index_existing(
            self.read_existing_product_lines(product_codes, stats),
            self.config.strip_leading_zeros,
        )
        plan = plan_product_lines(merged, existing, self.config.quantity_mode)
        stats.unchanged += plan.unchanged
        stats.skipped += plan.unknown_quantity

        pending = {ProductLineKey.from_row(row, self.config.strip_leading_zeros) for row in plan.inserts}
        pending |= {update.key for update in plan.updates}
        settled([row for key, row in merged.items() if key not in pending])

        logger.info(
            "Planned product-line writes",
            extra={"table": table, "existing_duplicates": existing.duplicate_rows, **plan.counts()},
        )

        def insert_bulk(batch: list[dict]) -> None:
            self.store.insert(table, batch)

        def insert_single(row: dict) -> None:
            self.store.insert(table, [row])

        def key_label(row: dict) -> str:
            return str(ProductLineKey.from_row(row, self.config.strip_leading_zeros))

        for offset, chunk in chunked(plan.inserts, self.config.chunk_size):
            batch = [sanitize_row(row) for row in chunk]
            start = time.time()
            outcome = self.policy.run(
                table,
                "insert",
                batch,
                bulk=insert_bulk,
                single=insert_single,
                on_conflict=self._resolve_product_conflict,
                label=key_label,
            )
            stats.absorb(outcome, "inserted")
            settled(outcome.applied)
            plog.log_write("insert", outcome.attempted, outcome.written, outcome.failed,
                           (time.time() - start) * 1000, offset)

        def update_single(row: dict) -> None:
            self.store.update(table, {"quantidade": row["quantidade"]}, {"id": row["id"]})

        def update_bulk(batch: list[dict]) -> None:
            for row in batch:
                update_single(row)

        updates = [
            {"id": update.row_id, "quantidade": update.quantity, **update.key.as_filters()}
            for update in plan.updates
        ]
        for offset, batch in chunked(updates, self.config.chunk_size):
            start = time.time()
            outcome = self.policy.run(
                table,
                "update_quantity",
                batch,
                bulk=update_bulk,
                single=update_single,
                label=lambda row: f"id={row['id']}",
            )
            stats.absorb(outcome, "updated")
            settled(outcome.applied)
            plog.log_write("update_quantity", outcome.attempted, outcome.written, outcome.failed,
                           (time.time() - start) * 1000, offset)

        return plan

    # ------------------------------------------------------------------
    # Orphan pruning
    # ------------------------------------------------------------------

    def _delete_in_chunks(self, table: str, column: str, values: list, stats: TableStats) -> None:
        for index, (offset, chunk) in enumerate(chunked(values, self.config.chunk_size)):
            if index:
                self._sleep(self.config.pace_seconds)
            try:
                self.store.delete(table, column, chunk)
                stats.deleted += len(chunk)
            except StoreError as e:
                stats.failed += len(chunk)
                stats.failed_batches += 1
                logger.error(
                    f"Orphan delete failed on {table}",
                    extra={"table": table, "offset": offset, "row_count": len(chunk), "error": str(e)},
                )

    def prune_orphans(
        self,
        table: str,
        key_column: str,
        keep_keys: set[str],
        stats: TableStats,
    ) -> list[str]:
        """Delete rows whose identity is not in ``keep_keys``.

        Returns:
            The orphan keys that were targeted
        """
        try:
            persisted = self.store.select_all(table, columns=(key_column,))
        except StoreError as e:
            stats.read_errors += 1
            logger.error(
                f"Could not read {table} identities; skipping orphan pruning",
                extra={"table": table, "error": str(e)},
            )
            return []

        orphans = sorted(
            {str(row[key_column]) for row in persisted if row.get(key_column) is not None}
            - set(keep_keys)
        )
        logger.info(
            f"Pruning {len(orphans)} orphan rows from {table}",
            extra={"table": table, "persisted_count": len(persisted), "orphan_count": len(orphans)},
        )
        self._delete_in_chunks(table, key_column, orphans, stats)
        return orphans

    def prune_product_lines(
        self,
        keep_keys: set[ProductLineKey],
        stats: TableStats,
    ) -> list[int]:
        """Delete product lines whose composite key is absent from the document."""
        table = self.config.product_lines_table
        try:
            persisted = self.store.select_all(table, columns=PRODUCT_LINE_KEY_COLUMNS)
        except StoreError as e:
            stats.read_errors += 1
            logger.error(
                f"Could not read {table} identities; skipping orphan pruning",
                extra={"table": table, "error": str(e)},
            )
            return []

        orphan_ids = sorted(
            row["id"]
            for row in persisted
            if ProductLineKey.from_row(row, self.config.strip_leading_zeros) not in keep_keys
        )
        logger.info(
            f"Pruning {len(orphan_ids)} orphan rows from {table}",
            extra={"table": table, "persisted_count": len(persisted), "orphan_count": len(orphan_ids)},
        )
        self._delete_in_chunks(table, "id", orphan_ids, stats)
        return orphan_ids
