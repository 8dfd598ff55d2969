"""Main sync entrypoint: JSON snapshot -> customers / orders / product lines.

Usage:
    python -m customer_sync.sync_from_json export.json
    python -m customer_sync.sync_from_json export.json --quantity-mode delta --ledger .delta_ledger.json
    python -m customer_sync.sync_from_json export.json --prune import_pedidos --abort-on-failure import_clientes
"""

import argparse
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from customer_sync.clients import StoreClient, SupabaseClient
from customer_sync.config import (
    ABORT,
    DEDUP_POLICIES,
    DELTA,
    QUANTITY_MODES,
    SyncConfig,
)
from customer_sync.errors import SetupError, SyncAbortedError
from customer_sync.reconcile import (
    DeltaLedger,
    ReconciliationWriter,
    TableStats,
    dedupe_customers,
    dedupe_orders,
    fingerprint,
    merge_product_lines,
)
from customer_sync.transform import RecordExtractor, locate_arrays
from customer_sync.transform.extract import SENTINEL_CUSTOMER
from customer_sync.transform.normalize import CANONICAL_TIMESTAMP_FORMAT
from customer_sync.utils import (
    PipelineLogger,
    load_json_document,
    setup_logging,
    timed_operation,
)

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def _has_any_array(document: Any) -> bool:
    if isinstance(document, list):
        return True
    if isinstance(document, dict):
        return any(isinstance(value, list) for value in document.values())
    return False


def _run_status(stats: dict[str, TableStats], aborted: bool) -> str:
    if aborted:
        return "aborted"
    for table_stats in stats.values():
        if table_stats.failed or table_stats.failed_batches or table_stats.read_errors:
            return "partial_failure"
    return "success"


def run_sync(
    document: Any,
    store: StoreClient,
    config: Optional[SyncConfig] = None,
    run_id: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Reconcile one parsed document against the store.

    Args:
        document: Parsed JSON root
        store: Store client
        config: Run options (defaults to SyncConfig())
        run_id: Optional run ID (auto-generated if not provided)
        sleep: Sleep function used for pacing (injectable for tests)

    Returns:
        Run summary: status, per-table stats and diagnostics

    Raises:
        SetupError: If no array can be located in the document
        ValueError: If the config is invalid
    """
    config = (config or SyncConfig()).validate()
    if run_id is None:
        run_id = uuid.uuid4().hex[:12]

    if not _has_any_array(document):
        raise SetupError("No customer array found in the document")

    start_time = datetime.now(timezone.utc)
    stamped_at = start_time.strftime(CANONICAL_TIMESTAMP_FORMAT)

    logger.info(
        "Starting sync run",
        extra={
            "run_id": run_id,
            "quantity_mode": config.quantity_mode,
            "dedup_policy": config.dedup_policy,
            "chunk_size": config.chunk_size,
        }
    )

    stats = {table: TableStats(table) for table in config.tables}
    customer_stats = stats[config.customers_table]
    order_stats = stats[config.orders_table]
    product_stats = stats[config.product_lines_table]
    diagnostics: list[str] = []
    aborted = False
    abort_error: Optional[str] = None

    # Locate + extract
    with timed_operation("extract", logger) as extract_timer:
        located = locate_arrays(document)
        extractor = RecordExtractor(
            strip_leading_zeros=config.strip_leading_zeros,
            stamped_at=stamped_at,
        )
        extracted = extractor.extract(located)

    customer_stats.extracted = len(extracted.customers)
    order_stats.extracted = len(extracted.orders)
    product_stats.extracted = len(extracted.product_lines)
    product_stats.skipped += extracted.skipped_product_lines
    if extracted.keyless:
        names = ", ".join(str(record.get("nome") or "?") for record in extracted.keyless[:10])
        diagnostics.append(
            f"{len(extracted.keyless)} customer(s) had no identity and were not written: {names}"
        )

    # Dedupe / merge
    with timed_operation("dedupe_customers") as timer:
        customers = dedupe_customers(extracted.customers, config.dedup_policy)
    PipelineLogger(config.customers_table, run_id).log_transform(
        "dedupe", len(extracted.customers), len(customers), timer.duration_ms
    )

    with timed_operation("dedupe_orders") as timer:
        orders = dedupe_orders(extracted.orders, config.dedup_policy)
    PipelineLogger(config.orders_table, run_id).log_transform(
        "dedupe", len(extracted.orders), len(orders), timer.duration_ms
    )

    with timed_operation("merge_product_lines") as timer:
        merged = merge_product_lines(
            extracted.product_lines,
            config.quantity_mode,
            config.strip_leading_zeros,
        )
    PipelineLogger(config.product_lines_table, run_id).log_transform(
        "merge", len(extracted.product_lines), len(merged), timer.duration_ms
    )

    customer_stats.deduplicated = len(customers)
    order_stats.deduplicated = len(orders)
    product_stats.deduplicated = len(merged)

    customer_codes = {record["cliente_codigo"] for record in customers}
    referenced_codes = {record["cliente_codigo"] for record in orders}
    referenced_codes |= {key.cliente_codigo for key in merged}
    placeholder_codes: list[str] = []

    writer = ReconciliationWriter(store, config, run_id, stamped_at=stamped_at, sleep=sleep)

    try:
        writer.write_customers(customers, customer_stats)
        placeholder_codes = writer.ensure_placeholders(customer_codes, referenced_codes, customer_stats)
        writer.write_orders(orders, order_stats)

        if config.quantity_mode == DELTA and merged:
            ledger = DeltaLedger(config.ledger_path)
            digest = fingerprint(merged)
            applied = ledger.applied_keys(digest)
            pending = {key: row for key, row in merged.items() if key not in applied}
            already_applied = len(merged) - len(pending)
            product_stats.skipped += already_applied

            if already_applied:
                diagnostics.append(
                    f"{already_applied} product-line delta(s) of this snapshot were already applied; skipped"
                )
                logger.info(
                    "Skipping product lines whose delta was already applied",
                    extra={"run_id": run_id, "digest": digest, "skipped_count": already_applied},
                )
            if pending:
                writer.write_product_lines(
                    pending,
                    product_stats,
                    on_applied=lambda keys: ledger.record(digest, keys),
                )
        else:
            writer.write_product_lines(merged, product_stats)

        # Dependents first so foreign keys never block a delete
        if config.should_prune(config.product_lines_table):
            if product_stats.failed:
                diagnostics.append(f"Skipped pruning {config.product_lines_table}: write pass had failures")
            else:
                writer.prune_product_lines(set(merged), product_stats)

        if config.should_prune(config.orders_table):
            if order_stats.failed:
                diagnostics.append(f"Skipped pruning {config.orders_table}: write pass had failures")
            else:
                keep = {record["codigo_pedido"] for record in orders}
                writer.prune_orphans(config.orders_table, "codigo_pedido", keep, order_stats)

        if config.should_prune(config.customers_table):
            if customer_stats.failed:
                diagnostics.append(f"Skipped pruning {config.customers_table}: write pass had failures")
            else:
                keep = customer_codes | referenced_codes | {SENTINEL_CUSTOMER}
                writer.prune_orphans(config.customers_table, "cliente_codigo", keep, customer_stats)

    except SyncAbortedError as e:
        aborted = True
        abort_error = str(e)
        diagnostics.append(f"Run aborted: {e}")
        logger.error(f"Sync run aborted: {e}", extra={"run_id": run_id, "table": e.table})

    end_time = datetime.now(timezone.utc)
    duration_seconds = (end_time - start_time).total_seconds()

    for table_stats in stats.values():
        if table_stats.failed_batches:
            diagnostics.append(
                f"{table_stats.failed_batches} batch(es) on {table_stats.table} failed on every row"
            )
        if table_stats.read_errors:
            diagnostics.append(
                f"{table_stats.read_errors} read error(s) on {table_stats.table}; existing rows assumed absent"
            )

    summary = {
        "run_id": run_id,
        "status": _run_status(stats, aborted),
        "quantity_mode": config.quantity_mode,
        "dedup_policy": config.dedup_policy,
        "extracted": extracted.counts(),
        "extract_duration_ms": round(extract_timer.duration_ms, 2),
        "placeholders": placeholder_codes,
        "tables": {table: table_stats.to_dict() for table, table_stats in stats.items()},
        "diagnostics": diagnostics,
        "error": abort_error,
        "duration_seconds": duration_seconds,
        "started_at": start_time.isoformat(),
        "completed_at": end_time.isoformat(),
        "store_metrics": store.metrics.to_dict() if hasattr(store, "metrics") else None,
    }

    logger.info(
        f"Sync run complete: {summary['status']} in {duration_seconds:.2f}s",
        extra={"run_id": run_id, "status": summary["status"], "diagnostics": diagnostics},
    )

    return summary


def sync_file(
    file_path: str,
    store: Optional[StoreClient] = None,
    config: Optional[SyncConfig] = None,
    run_id: Optional[str] = None,
) -> dict:
    """Load a JSON file and run the sync.

    Raises:
        SetupError: Missing credentials, unreadable/invalid file, no customer array
    """
    if store is None:
        try:
            store = SupabaseClient()
        except ValueError as e:
            raise SetupError(f"Missing store credentials: {e}") from e

    document = load_json_document(file_path)
    config = config or SyncConfig.from_env(source_path=file_path)
    return run_sync(document, store, config=config, run_id=run_id)


def format_summary(summary: dict) -> str:
    """Human-readable run summary."""
    lines = [
        f"Run {summary['run_id']}: {summary['status']} "
        f"({summary['quantity_mode']} quantities, {summary['dedup_policy']})",
    ]
    extracted = summary["extracted"]
    lines.append(
        f"  extracted: {extracted['customers']} customers, {extracted['orders']} orders, "
        f"{extracted['product_lines']} product lines"
    )
    for table, stats in summary["tables"].items():
        lines.append(
            f"  {table}: extracted={stats['extracted']} unique={stats['deduplicated']} "
            f"upserted={stats['upserted']} inserted={stats['inserted']} updated={stats['updated']} "
            f"unchanged={stats['unchanged']} skipped={stats['skipped']} failed={stats['failed']} "
            f"placeholders={stats['placeholders']} deleted={stats['deleted']}"
        )
    for message in summary["diagnostics"]:
        lines.append(f"  ! {message}")
    return "\n".join(lines)


def main():
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Reconcile a customer/order/product JSON snapshot against the store"
    )
    parser.add_argument("source", help="Path to the JSON snapshot")
    parser.add_argument(
        "--quantity-mode",
        choices=QUANTITY_MODES,
        default=None,
        help="Treat incoming quantities as deltas or absolute totals (default: absolute)",
    )
    parser.add_argument(
        "--dedup-policy",
        choices=DEDUP_POLICIES,
        default=None,
        help="Customer/order duplicate resolution (default: keep-first)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Rows per write batch (default: 200)",
    )
    parser.add_argument(
        "--prune",
        action="append",
        default=[],
        metavar="TABLE",
        help="Delete rows of TABLE that are absent from the snapshot (repeatable)",
    )
    parser.add_argument(
        "--abort-on-failure",
        action="append",
        default=[],
        metavar="TABLE",
        help="Abort the run when a batch on TABLE fails on every row (repeatable)",
    )
    parser.add_argument(
        "--ledger",
        default=None,
        help="Delta ledger file (default: .delta_ledger.json beside the snapshot in delta mode)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )

    args = parser.parse_args()

    setup_logging(level=args.log_level, json_format=args.json_logs)

    try:
        config = SyncConfig.from_env(
            source_path=args.source,
            quantity_mode=args.quantity_mode,
            dedup_policy=args.dedup_policy,
            chunk_size=args.chunk_size,
            ledger_path=args.ledger,
        )
        config.prune_orphans.update({table: True for table in args.prune})
        config.failure_policy.update({table: ABORT for table in args.abort_on_failure})
        config.validate()
        result = sync_file(args.source, config=config)
    except (SetupError, ValueError) as e:
        logger.error(f"Sync cannot start: {e}")
        sys.exit(1)

    print(format_summary(result))

    if result["status"] == "aborted":
        sys.exit(1)


if __name__ == "__main__":
    main()
