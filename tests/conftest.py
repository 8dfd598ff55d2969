"""Pytest configuration and fixtures."""

from typing import Any, Callable, Optional, Sequence

import pytest

from customer_sync.clients.base import StoreClient, StoreError, UNIQUE_VIOLATION
from customer_sync.config import SyncConfig

UNIQUE_KEYS = {
    "import_clientes": ("cliente_codigo",),
    "import_pedidos": ("codigo_pedido",),
    "import_clientes_produtos": ("cliente_codigo", "produto_codigo", "id_pedido"),
}


class FakeStore(StoreClient):
    """In-memory store enforcing the unique keys of the three tables.

    ``row_failures`` predicates reject individual rows; ``failing_operations``
    rejects multi-row calls; ``failing_reads`` rejects every select.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = {name: [] for name in UNIQUE_KEYS}
        self.calls: list[tuple[str, str, int]] = []
        self._next_id = 1
        self.row_failures: list[Callable[[str, dict], bool]] = []
        self.failing_operations: set[tuple[str, str]] = set()
        self.failing_reads: set[str] = set()
        # Tables whose membership (in_filters) reads come back empty, like a stale read
        self.stale_reads: set[str] = set()

    # -- helpers -------------------------------------------------------

    def seed(self, table: str, rows: list[dict]) -> list[dict]:
        seeded = []
        for row in rows:
            stored = dict(row)
            if "id" not in stored:
                stored["id"] = self._next_id
                self._next_id += 1
            else:
                self._next_id = max(self._next_id, stored["id"] + 1)
            self.tables.setdefault(table, []).append(stored)
            seeded.append(stored)
        return seeded

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])

    def find(self, table: str, **filters) -> list[dict]:
        return [row for row in self.rows(table) if all(row.get(k) == v for k, v in filters.items())]

    def calls_for(self, operation: str, table: Optional[str] = None) -> list[tuple[str, str, int]]:
        return [c for c in self.calls if c[0] == operation and (table is None or c[1] == table)]

    def _key(self, table: str, row: dict) -> tuple:
        return tuple(row.get(column) for column in UNIQUE_KEYS.get(table, ("id",)))

    def _check(self, operation: str, table: str, rows: list[dict]) -> None:
        if (operation, table) in self.failing_operations and len(rows) > 1:
            raise StoreError(f"{operation} batch rejected", status_code=400, code="22P02")
        for row in rows:
            for predicate in self.row_failures:
                if predicate(table, row):
                    raise StoreError("invalid input syntax", status_code=400, code="22P02")

    # -- StoreClient ---------------------------------------------------

    def select(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        filters: Optional[dict] = None,
        in_filters: Optional[dict[str, Sequence[Any]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[dict]:
        self.calls.append(("select", table, 0))
        if table in self.failing_reads:
            raise StoreError("statement timeout", status_code=500, code="57014")

        if in_filters and table in self.stale_reads:
            return []

        matched = []
        for row in self.rows(table):
            if filters and any(row.get(k) != v for k, v in filters.items()):
                continue
            if in_filters and any(row.get(k) not in set(v) for k, v in in_filters.items()):
                continue
            if tuple(columns) == ("*",):
                matched.append(dict(row))
            else:
                matched.append({column: row.get(column) for column in columns})

        start = offset or 0
        end = start + limit if limit is not None else None
        return matched[start:end]

    def insert(self, table: str, rows: list[dict]) -> None:
        self.calls.append(("insert", table, len(rows)))
        self._check("insert", table, rows)
        existing = {self._key(table, row) for row in self.rows(table)}
        batch_keys = set()
        for row in rows:
            key = self._key(table, row)
            if key in existing or key in batch_keys:
                raise StoreError(
                    "duplicate key value violates unique constraint",
                    status_code=409,
                    code=UNIQUE_VIOLATION,
                )
            batch_keys.add(key)
        self.seed(table, rows)

    def upsert(
        self,
        table: str,
        rows: list[dict],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> None:
        self.calls.append(("upsert", table, len(rows)))
        self._check("upsert", table, rows)
        for row in rows:
            matches = self.find(table, **{on_conflict: row.get(on_conflict)})
            if matches:
                if not ignore_duplicates:
                    matches[0].update(row)
            else:
                self.seed(table, [row])

    def update(self, table: str, values: dict, filters: dict) -> None:
        self.calls.append(("update", table, 1))
        self._check("update", table, [values])
        for row in self.find(table, **filters):
            row.update(values)

    def delete(self, table: str, column: str, values: Sequence[Any]) -> None:
        self.calls.append(("delete", table, len(values)))
        doomed = set(values)
        self.tables[table] = [row for row in self.rows(table) if row.get(column) not in doomed]


@pytest.fixture
def store():
    """Empty in-memory store."""
    return FakeStore()


@pytest.fixture
def config():
    """Config with pacing disabled."""
    return SyncConfig(pace_seconds=0.0, chunk_size=100)


@pytest.fixture
def no_sleep():
    """Sleep stub recording requested delays."""
    delays = []
    def sleep(seconds):
        delays.append(seconds)
    sleep.delays = delays
    return sleep


@pytest.fixture
def embedded_document():
    """Customers with embedded orders and product maps."""
    return {
        "lista_clientes_geral": [
            {
                "codigo": "0042",
                "nome": "Maria Souza",
                "email": "maria@example.com",
                "data_cadastro": "29/11/2025",
                "cidade": "Recife",
                "estado": "PE",
                "valor_total_comprado": "1.234,56",
                "pedidos": [
                    {
                        "codigo_pedido": "9001",
                        "situacao_pedido": "Pago",
                        "data_hora_pedido": "2024-03-18 10:12:40",
                        "data_hora_confirmacao": "0000-00-00 00:00:00",
                        "valor_total_pedido": "R$ 150,90",
                        "valor_frete": "12,5",
                    },
                ],
                "produtos_comprados": {
                    "SKU-1": {"titulo": "Camiseta", "quantidade": "2", "id_pedido": "9001"},
                    "SKU-2": {"titulo": "Bermuda", "quantidade": 1, "data_pedido": "18/03/2024 10:12"},
                },
            },
            {
                "cliente_codigo": "77",
                "nome": "Joao Lima",
                "pedidos": [],
            },
        ]
    }


@pytest.fixture
def flat_document():
    """Customers, orders and products as separate top-level arrays."""
    return {
        "clientes": [
            {"codigo": "1", "nome": "Ana"},
        ],
        "pedidos": [
            {"id": "P-1", "cliente_codigo": "1", "status": "Novo", "data_pedido": "01/02/2024"},
            {"numero_pedido": "P-2", "cliente_codigo": "55"},
            {"order_id": "P-3"},
        ],
        "itens": [
            {"codigo": "X1", "cliente_codigo": "1", "id_pedido": "P-1", "quantidade": 3},
            {"codigo": "X2", "cliente_codigo": "99", "quantidade": 1},
        ],
    }
