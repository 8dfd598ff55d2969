"""End-to-end tests for the sync run against the in-memory store."""

import json
import sys

import pytest

from customer_sync import sync_from_json
from customer_sync.config import ABORT, DELTA, SyncConfig
from customer_sync.errors import SetupError
from customer_sync.reconcile.writer import PLACEHOLDER_NAME, ReconciliationWriter, TableStats
from customer_sync.sync_from_json import format_summary, main, run_sync, sync_file

CUSTOMERS = "import_clientes"
ORDERS = "import_pedidos"
PRODUCTS = "import_clientes_produtos"


def product_document(*lines, customer="1"):
    return {"clientes": [{"codigo": customer, "produtos": list(lines)}]}


def product_row(product="A", quantity=5, customer="1", order="0"):
    return {
        "cliente_codigo": customer,
        "produto_codigo": product,
        "id_pedido": order,
        "quantidade": quantity,
    }


class TestRunSync:
    """Tests for a full reconciliation run."""

    def test_embedded_document(self, store, config, no_sleep, embedded_document):
        summary = run_sync(embedded_document, store, config, run_id="test", sleep=no_sleep)

        assert summary["status"] == "success"
        assert summary["run_id"] == "test"
        assert summary["extracted"]["customers"] == 2
        assert summary["placeholders"] == []
        assert summary["tables"][CUSTOMERS]["upserted"] == 2
        assert summary["tables"][ORDERS]["upserted"] == 1
        assert summary["tables"][PRODUCTS]["inserted"] == 2
        assert summary["store_metrics"] is None

        maria = store.find(CUSTOMERS, cliente_codigo="42")[0]
        assert maria["nome"] == "Maria Souza"
        order = store.find(ORDERS, codigo_pedido="9001")[0]
        assert order["data_hora_confirmacao"] is None
        assert len(store.rows(PRODUCTS)) == 2

    def test_rerun_is_idempotent(self, store, config, no_sleep, embedded_document):
        """Test replaying a snapshot in absolute mode changes nothing."""
        run_sync(embedded_document, store, config, sleep=no_sleep)
        summary = run_sync(embedded_document, store, config, sleep=no_sleep)

        assert summary["status"] == "success"
        assert summary["tables"][PRODUCTS]["inserted"] == 0
        assert summary["tables"][PRODUCTS]["unchanged"] == 2
        assert len(store.rows(CUSTOMERS)) == 2
        assert len(store.rows(ORDERS)) == 1
        assert len(store.rows(PRODUCTS)) == 2

    def test_delta_adds_merged_quantities(self, store, config, no_sleep, tmp_path):
        store.seed(PRODUCTS, [product_row(quantity=5)])
        config.quantity_mode = DELTA
        config.ledger_path = str(tmp_path / "ledger.json")
        document = product_document({"codigo": "A", "quantidade": 2}, {"codigo": "A", "quantidade": 3})

        summary = run_sync(document, store, config, sleep=no_sleep)

        assert store.find(PRODUCTS, produto_codigo="A")[0]["quantidade"] == 10
        assert len(store.calls_for("update", PRODUCTS)) == 1
        assert summary["tables"][PRODUCTS]["updated"] == 1
        assert summary["tables"][PRODUCTS]["inserted"] == 0

    def test_absolute_overwrites(self, store, config, no_sleep):
        store.seed(PRODUCTS, [product_row(quantity=5)])
        document = product_document({"codigo": "A", "quantidade": 2}, {"codigo": "A", "quantidade": 3})

        run_sync(document, store, config, sleep=no_sleep)

        assert store.find(PRODUCTS, produto_codigo="A")[0]["quantidade"] == 3

    def test_unknown_quantity_keeps_persisted_value(self, store, config, no_sleep):
        store.seed(PRODUCTS, [product_row(quantity=5)])

        summary = run_sync(product_document({"codigo": "A"}), store, config, sleep=no_sleep)

        assert store.find(PRODUCTS, produto_codigo="A")[0]["quantidade"] == 5
        assert summary["tables"][PRODUCTS]["skipped"] == 1

    def test_delta_ledger_prevents_double_counting(self, store, config, no_sleep, tmp_path):
        config.quantity_mode = DELTA
        config.ledger_path = str(tmp_path / "ledger.json")
        document = product_document({"codigo": "A", "quantidade": 2})

        run_sync(document, store, config, sleep=no_sleep)
        summary = run_sync(document, store, config, sleep=no_sleep)

        assert store.find(PRODUCTS, produto_codigo="A")[0]["quantidade"] == 2
        assert summary["tables"][PRODUCTS]["skipped"] == 1
        assert any("already applied" in message for message in summary["diagnostics"])

    def test_delta_rerun_after_partial_failure(self, store, config, no_sleep, tmp_path):
        """Test a re-run applies only the deltas that failed the first time."""
        config.quantity_mode = DELTA
        config.ledger_path = str(tmp_path / "ledger.json")

        def rejects_p3(table, row):
            return table == PRODUCTS and row.get("produto_codigo") == "P3"

        store.row_failures.append(rejects_p3)
        document = product_document(*[{"codigo": f"P{i}", "quantidade": 2} for i in range(5)])

        first = run_sync(document, store, config, sleep=no_sleep)
        store.row_failures.remove(rejects_p3)
        second = run_sync(document, store, config, sleep=no_sleep)

        assert first["tables"][PRODUCTS]["failed"] == 1
        assert second["tables"][PRODUCTS]["inserted"] == 1
        assert second["tables"][PRODUCTS]["skipped"] == 4
        assert second["status"] == "success"
        assert {row["produto_codigo"]: row["quantidade"] for row in store.rows(PRODUCTS)} == {
            f"P{i}": 2 for i in range(5)
        }

    def test_delta_rerun_of_unchanged_file(self, monkeypatch, store, tmp_path):
        """Test delta mode from the environment keeps a ledger beside the snapshot."""
        monkeypatch.setenv("SYNC_QUANTITY_MODE", "delta")
        monkeypatch.delenv("SYNC_LEDGER_PATH", raising=False)
        path = tmp_path / "export.json"
        path.write_text(json.dumps(product_document({"codigo": "A", "quantidade": 2})), encoding="utf-8")

        sync_file(str(path), store=store)
        summary = sync_file(str(path), store=store)

        assert store.find(PRODUCTS, produto_codigo="A")[0]["quantidade"] == 2
        assert summary["tables"][PRODUCTS]["skipped"] == 1
        assert (tmp_path / ".delta_ledger.json").exists()

    def test_keyless_customers_are_named_in_diagnostics(self, store, config, no_sleep):
        document = {"clientes": [{"codigo": "1", "nome": "Ana"}, {"nome": "Sem codigo"}]}

        summary = run_sync(document, store, config, sleep=no_sleep)

        assert summary["extracted"]["keyless_customers"] == 1
        assert any("Sem codigo" in message for message in summary["diagnostics"])
        assert len(store.rows(CUSTOMERS)) == 1

    def test_placeholder_for_orphan_reference(self, store, config, no_sleep):
        """Test a referenced but absent customer gets one placeholder, before the product insert."""
        document = {
            "clientes": [{"codigo": "1"}],
            "itens": [{"codigo": "X", "cliente_codigo": "99", "quantidade": 1}],
        }

        summary = run_sync(document, store, config, sleep=no_sleep)

        assert summary["placeholders"] == ["99"]
        assert summary["tables"][CUSTOMERS]["placeholders"] == 1
        placeholder = store.find(CUSTOMERS, cliente_codigo="99")
        assert len(placeholder) == 1
        assert placeholder[0]["nome"] == PLACEHOLDER_NAME

        writes = [call for call in store.calls if call[0] != "select"]
        assert writes.index(("upsert", CUSTOMERS, 1), 1) < writes.index(("insert", PRODUCTS, 1))

    def test_placeholder_never_clobbers_existing_customer(self, store, config, no_sleep):
        store.seed(CUSTOMERS, [{"cliente_codigo": "99", "nome": "Real"}])
        document = {
            "clientes": [{"codigo": "1"}],
            "pedidos": [{"codigo_pedido": "P9", "cliente_codigo": "99"}],
        }

        run_sync(document, store, config, sleep=no_sleep)

        assert store.find(CUSTOMERS, cliente_codigo="99")[0]["nome"] == "Real"

    def test_partial_failure(self, store, config, no_sleep):
        """Test one poisoned product line fails alone."""
        store.row_failures.append(
            lambda table, row: table == PRODUCTS and row.get("produto_codigo") == "P47"
        )
        document = product_document(*[{"codigo": f"P{i}", "quantidade": 1} for i in range(100)])

        summary = run_sync(document, store, config, sleep=no_sleep)

        stats = summary["tables"][PRODUCTS]
        assert stats["inserted"] == 99
        assert stats["failed"] == 1
        assert stats["errors"][0]["row"] == "1/P47/0"
        assert summary["status"] == "partial_failure"
        assert len(store.rows(PRODUCTS)) == 99

    def test_insert_conflict_resolves_as_update(self, store, config, no_sleep, tmp_path):
        """Test a row missed by the membership read is updated, not duplicated."""
        store.seed(PRODUCTS, [product_row(quantity=5)])
        store.stale_reads.add(PRODUCTS)
        config.quantity_mode = DELTA
        config.ledger_path = str(tmp_path / "ledger.json")

        summary = run_sync(product_document({"codigo": "A", "quantidade": 2}), store, config, sleep=no_sleep)

        assert len(store.rows(PRODUCTS)) == 1
        assert store.rows(PRODUCTS)[0]["quantidade"] == 7
        assert summary["tables"][PRODUCTS]["updated"] == 1
        assert summary["tables"][PRODUCTS]["failed"] == 0
        assert summary["status"] == "success"

    def test_read_error_biases_toward_insert(self, store, config, no_sleep):
        store.failing_reads.add(PRODUCTS)

        summary = run_sync(product_document({"codigo": "A", "quantidade": 2}), store, config, sleep=no_sleep)

        assert len(store.rows(PRODUCTS)) == 1
        assert summary["tables"][PRODUCTS]["read_errors"] == 1
        assert summary["tables"][PRODUCTS]["inserted"] == 1
        assert summary["status"] == "partial_failure"
        assert any("read error" in message for message in summary["diagnostics"])

    def test_pruning(self, store, config, no_sleep):
        store.seed(CUSTOMERS, [{"cliente_codigo": "500"}])
        store.seed(ORDERS, [{"codigo_pedido": "OLD", "cliente_codigo": "1"}])
        store.seed(PRODUCTS, [product_row(product="GONE", quantity=1)])
        config.prune_orphans = {CUSTOMERS: True, ORDERS: True, PRODUCTS: True}
        document = {
            "clientes": [{"codigo": "1"}],
            "pedidos": [{"codigo_pedido": "P1", "cliente_codigo": "1"}],
            "itens": [{"codigo": "A", "cliente_codigo": "1", "quantidade": 1}],
        }

        summary = run_sync(document, store, config, sleep=no_sleep)

        assert [row["cliente_codigo"] for row in store.rows(CUSTOMERS)] == ["1"]
        assert [row["codigo_pedido"] for row in store.rows(ORDERS)] == ["P1"]
        assert [row["produto_codigo"] for row in store.rows(PRODUCTS)] == ["A"]
        assert summary["tables"][CUSTOMERS]["deleted"] == 1
        assert summary["tables"][ORDERS]["deleted"] == 1
        assert summary["tables"][PRODUCTS]["deleted"] == 1

    def test_no_pruning_by_default(self, store, config, no_sleep):
        store.seed(ORDERS, [{"codigo_pedido": "OLD", "cliente_codigo": "1"}])

        run_sync({"clientes": [{"codigo": "1"}]}, store, config, sleep=no_sleep)

        assert store.find(ORDERS, codigo_pedido="OLD")
        assert store.calls_for("delete") == []

    def test_pruning_skipped_after_write_failures(self, store, config, no_sleep):
        store.seed(PRODUCTS, [product_row(product="GONE", quantity=1)])
        store.row_failures.append(lambda table, row: table == PRODUCTS and row.get("produto_codigo") == "BAD")
        config.prune_orphans = {PRODUCTS: True}
        document = product_document({"codigo": "A", "quantidade": 1}, {"codigo": "BAD", "quantidade": 1})

        summary = run_sync(document, store, config, sleep=no_sleep)

        assert store.find(PRODUCTS, produto_codigo="GONE")
        assert any("Skipped pruning" in message for message in summary["diagnostics"])

    def test_abort_policy(self, store, config, no_sleep, flat_document):
        store.row_failures.append(lambda table, row: table == CUSTOMERS)
        config.failure_policy = {CUSTOMERS: ABORT}

        summary = run_sync(flat_document, store, config, sleep=no_sleep)

        assert summary["status"] == "aborted"
        assert summary["error"]
        assert store.rows(ORDERS) == []
        assert store.rows(PRODUCTS) == []

    def test_no_array_is_a_setup_error(self, store, config):
        with pytest.raises(SetupError):
            run_sync({"meta": {"count": 0}}, store, config)
        with pytest.raises(SetupError):
            run_sync("not a document", store, config)

    def test_invalid_config(self, store, embedded_document):
        with pytest.raises(ValueError):
            run_sync(embedded_document, store, SyncConfig(quantity_mode="sum"))

    def test_format_summary(self, store, config, no_sleep, flat_document):
        summary = run_sync(flat_document, store, config, run_id="abc", sleep=no_sleep)

        text = format_summary(summary)

        assert text.startswith("Run abc: success")
        assert f"{CUSTOMERS}: extracted=1" in text


class TestReconciliationWriter:
    """Tests for writer pieces not covered by a full run."""

    def test_orphan_deletes_are_chunked_and_paced(self, store, no_sleep):
        store.seed(ORDERS, [{"codigo_pedido": f"O{i}"} for i in range(5)])
        config = SyncConfig(chunk_size=2, pace_seconds=0.5)
        writer = ReconciliationWriter(store, config, run_id="test", sleep=no_sleep)
        stats = TableStats(ORDERS)

        orphans = writer.prune_orphans(ORDERS, "codigo_pedido", {"O0"}, stats)

        assert orphans == ["O1", "O2", "O3", "O4"]
        assert [call[2] for call in store.calls_for("delete", ORDERS)] == [2, 2]
        assert no_sleep.delays == [0.5]
        assert stats.deleted == 4
        assert store.rows(ORDERS) == [{"codigo_pedido": "O0", "id": 1}]

    def test_prune_read_error_skips_deletes(self, store, config, no_sleep):
        store.failing_reads.add(ORDERS)
        writer = ReconciliationWriter(store, config, run_id="test", sleep=no_sleep)
        stats = TableStats(ORDERS)

        assert writer.prune_orphans(ORDERS, "codigo_pedido", set(), stats) == []
        assert stats.read_errors == 1
        assert store.calls_for("delete") == []


class TestSyncFile:
    """Tests for file loading and setup errors."""

    def test_sync_file(self, store, config, tmp_path, flat_document):
        source = tmp_path / "export.json"
        source.write_text(json.dumps(flat_document), encoding="utf-8")

        summary = sync_file(str(source), store=store, config=config)

        assert summary["status"] == "success"

    def test_missing_file(self, store, tmp_path):
        with pytest.raises(SetupError):
            sync_file(str(tmp_path / "missing.json"), store=store)

    def test_invalid_json(self, store, tmp_path):
        source = tmp_path / "broken.json"
        source.write_text("{not json", encoding="utf-8")

        with pytest.raises(SetupError):
            sync_file(str(source), store=store)

    def test_missing_credentials(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)

        with pytest.raises(SetupError):
            sync_file(str(tmp_path / "export.json"))


class TestMain:
    """Tests for the CLI entrypoint."""

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr(sync_from_json, "setup_logging", lambda **kwargs: None)

    def test_setup_error_exits_1(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)
        monkeypatch.setattr(sys, "argv", ["sync", str(tmp_path / "export.json")])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1

    def test_options_reach_the_config(self, monkeypatch, capsys, store, flat_document):
        seen = {}
        monkeypatch.delenv("SYNC_LEDGER_PATH", raising=False)

        def fake_sync_file(path, config=None):
            seen["config"] = config
            return run_sync(flat_document, store, SyncConfig(pace_seconds=0.0), run_id="cli")

        monkeypatch.setattr(sync_from_json, "sync_file", fake_sync_file)
        monkeypatch.setattr(
            sys,
            "argv",
            ["sync", "export.json", "--quantity-mode", "delta", "--prune", ORDERS, "--abort-on-failure", CUSTOMERS],
        )

        main()

        config = seen["config"]
        assert config.quantity_mode == DELTA
        assert config.should_prune(ORDERS)
        assert config.failure_policy[CUSTOMERS] == ABORT
        assert config.ledger_path == ".delta_ledger.json"
        assert "Run cli: success" in capsys.readouterr().out

    def test_aborted_run_exits_1(self, monkeypatch, store, flat_document):
        store.row_failures.append(lambda table, row: table == CUSTOMERS)

        def fake_sync_file(path, config=None):
            return run_sync(
                flat_document,
                store,
                SyncConfig(pace_seconds=0.0, failure_policy={CUSTOMERS: ABORT}),
            )

        monkeypatch.setattr(sync_from_json, "sync_file", fake_sync_file)
        monkeypatch.setattr(sys, "argv", ["sync", "export.json"])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1
