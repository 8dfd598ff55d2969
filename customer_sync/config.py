"""Run configuration for the sync engine."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DELTA = "delta"
ABSOLUTE = "absolute"
QUANTITY_MODES = (DELTA, ABSOLUTE)

KEEP_FIRST = "keep-first"
KEEP_MOST_RECENT = "keep-most-recent"
DEDUP_POLICIES = (KEEP_FIRST, KEEP_MOST_RECENT)

CONTINUE = "continue"
ABORT = "abort"
FAILURE_POLICIES = (CONTINUE, ABORT)

CUSTOMERS_TABLE = "import_clientes"
ORDERS_TABLE = "import_pedidos"
PRODUCT_LINES_TABLE = "import_clientes_produtos"

# Delta ledger written next to the snapshot when no path is configured
DEFAULT_LEDGER_NAME = ".delta_ledger.json"


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class SyncConfig:
    """Options for one sync run.

    Passed explicitly into ``run_sync``; nothing here is module state.
    """

    quantity_mode: str = ABSOLUTE
    dedup_policy: str = KEEP_FIRST
    chunk_size: int = 200
    prune_orphans: dict[str, bool] = field(default_factory=dict)
    failure_policy: dict[str, str] = field(default_factory=dict)
    strip_leading_zeros: bool = True
    pace_seconds: float = 0.25
    fallback_pace_every: int = 50
    ledger_path: Optional[str] = None
    customers_table: str = CUSTOMERS_TABLE
    orders_table: str = ORDERS_TABLE
    product_lines_table: str = PRODUCT_LINES_TABLE

    @property
    def tables(self) -> tuple[str, str, str]:
        return (self.customers_table, self.orders_table, self.product_lines_table)

    def should_prune(self, table: str) -> bool:
        return bool(self.prune_orphans.get(table, False))

    def validate(self) -> "SyncConfig":
        """Raise ValueError on unknown options."""
        if self.quantity_mode not in QUANTITY_MODES:
            raise ValueError(
                f"quantity_mode must be one of {QUANTITY_MODES}, got {self.quantity_mode!r}"
            )
        if self.dedup_policy not in DEDUP_POLICIES:
            raise ValueError(
                f"dedup_policy must be one of {DEDUP_POLICIES}, got {self.dedup_policy!r}"
            )
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.fallback_pace_every <= 0:
            raise ValueError(
                f"fallback_pace_every must be positive, got {self.fallback_pace_every}"
            )
        if self.pace_seconds < 0:
            raise ValueError(f"pace_seconds must not be negative, got {self.pace_seconds}")
        if self.quantity_mode == DELTA and not self.ledger_path:
            raise ValueError("delta quantity mode requires a ledger_path")

        for table, policy in self.failure_policy.items():
            if policy not in FAILURE_POLICIES:
                raise ValueError(
                    f"failure policy for {table} must be one of {FAILURE_POLICIES}, got {policy!r}"
                )

        unknown = (set(self.prune_orphans) | set(self.failure_policy)) - set(self.tables)
        if unknown:
            raise ValueError(f"Unknown table(s) in config: {sorted(unknown)}")

        return self

    @classmethod
    def from_env(cls, source_path: Optional[str] = None, **overrides) -> "SyncConfig":
        """Build a config from SYNC_* environment variables.

        Environment:
            SYNC_QUANTITY_MODE: delta | absolute
            SYNC_DEDUP_POLICY: keep-first | keep-most-recent
            SYNC_CHUNK_SIZE: rows per write batch
            SYNC_PRUNE_TABLES: comma-separated tables to prune
            SYNC_ABORT_TABLES: comma-separated tables whose failed batches abort the run
            SYNC_STRIP_LEADING_ZEROS: "false" keeps leading zeros in codes
            SYNC_PACE_SECONDS: delay between destructive chunks
            SYNC_LEDGER_PATH: delta ledger file

        Keyword overrides win over the environment; None overrides are ignored.
        In delta mode without a configured ledger, the ledger defaults to
        DEFAULT_LEDGER_NAME beside ``source_path``.
        """
        config = cls(
            quantity_mode=os.getenv("SYNC_QUANTITY_MODE", ABSOLUTE),
            dedup_policy=os.getenv("SYNC_DEDUP_POLICY", KEEP_FIRST),
            chunk_size=int(os.getenv("SYNC_CHUNK_SIZE", "200")),
            prune_orphans={table: True for table in _env_list("SYNC_PRUNE_TABLES")},
            failure_policy={table: ABORT for table in _env_list("SYNC_ABORT_TABLES")},
            strip_leading_zeros=os.getenv("SYNC_STRIP_LEADING_ZEROS", "true").lower() != "false",
            pace_seconds=float(os.getenv("SYNC_PACE_SECONDS", "0.25")),
            ledger_path=os.getenv("SYNC_LEDGER_PATH") or None,
        )

        for name, value in overrides.items():
            if value is not None:
                setattr(config, name, value)

        if config.quantity_mode == DELTA and not config.ledger_path and source_path:
            config.ledger_path = str(Path(source_path).parent / DEFAULT_LEDGER_NAME)

        return config.validate()
