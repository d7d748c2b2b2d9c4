"""Tests for marketcore/cli/__main__.py."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from marketcore.cli.__main__ import UnconfiguredPaymentProcessor, load_object, main
from marketcore.config import SettlementConfig
from marketcore.credits.models import CreditSource
from marketcore.engine import SettlementEngine

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def cli_config():
    return SettlementConfig(retry_max_attempts=1, retry_delay_seconds=0, payment_processor="fake:payments")


@pytest.fixture
def seeded(db_path, payments, cli_config):
    """An SQLite engine with one ACTIVE batch that has reached its minimum."""
    engine = SettlementEngine.sqlite(db_path, payments, config=cli_config)
    batch = engine.batches.create_batch(
        vendor_id="vendor-1",
        listing_id="listing-1",
        region="Kano",
        unit_price="30.00",
        minimum_quantity=2,
        deadline=datetime.now(timezone.utc) + timedelta(days=3),
    )
    engine.batches.activate(batch.id, "vendor-1")
    engine.batches.join_batch(batch.id, "buyer-1")
    engine.batches.join_batch(batch.id, "buyer-2")
    engine.credits.issue("user-1", "7.50", CreditSource.BONUS)
    return engine, batch


def run_cli(argv, config, payments):
    with patch("marketcore.cli.__main__.get_config", return_value=config):
        with patch("marketcore.cli.__main__.load_object", return_value=payments):
            main(argv)


# ============================================================================
# Commands
# ============================================================================


class TestCommands:
    """Tests for CLI command output."""

    def test_batch_show_json(self, seeded, db_path, cli_config, payments, capsys):
        _, batch = seeded

        run_cli(["--db", db_path, "--json", "batch", "show", batch.id], cli_config, payments)

        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "active"
        assert data["current_quantity"] == 2
        assert [o["escrow_status"] for o in data["orders"]] == ["held", "held"]

    def test_batch_evaluate(self, seeded, db_path, cli_config, payments, capsys):
        _, batch = seeded

        run_cli(["--db", db_path, "batch", "evaluate", batch.id], cli_config, payments)

        out = capsys.readouterr().out
        assert "is now successful" in out
        assert "release: 2 settled, 0 failed" in out
        assert len(payments.captured) == 2

    def test_sweep_json(self, seeded, db_path, cli_config, payments, capsys):
        run_cli(["--db", db_path, "--json", "sweep"], cli_config, payments)

        report = json.loads(capsys.readouterr().out)
        assert report["batches_closed"] == 1
        assert report["errors"] == 0

    def test_wallet_show(self, seeded, db_path, cli_config, payments, capsys):
        engine, batch = seeded
        engine.batches.evaluate(batch.id)

        run_cli(["--db", db_path, "wallet", "show", "vendor-1"], cli_config, payments)

        out = capsys.readouterr().out
        assert "Available: 60.00" in out
        assert "Pending:   0.00" in out

    def test_wallet_reconcile_json(self, seeded, db_path, cli_config, payments, capsys):
        run_cli(["--db", db_path, "--json", "wallet", "reconcile", "vendor-1"], cli_config, payments)

        data = json.loads(capsys.readouterr().out)
        assert data["wallet"]["pending_balance"] == "60.00"

    def test_credits_balance_and_history(self, seeded, db_path, cli_config, payments, capsys):
        run_cli(["--db", db_path, "--json", "credits", "balance", "user-1"], cli_config, payments)
        assert json.loads(capsys.readouterr().out) == {"user_id": "user-1", "balance": "7.50"}

        run_cli(["--db", db_path, "credits", "history", "user-1"], cli_config, payments)
        out = capsys.readouterr().out
        assert "7.50" in out
        assert "available" in out

    def test_credits_history_empty(self, db_path, cli_config, payments, capsys):
        run_cli(["--db", db_path, "credits", "history", "nobody"], cli_config, payments)
        assert "No credit history" in capsys.readouterr().out


class TestErrors:
    """Tests for CLI error handling."""

    def test_no_storage_configured(self, payments):
        config = SettlementConfig(payment_processor="fake:payments")
        with pytest.raises(SystemExit) as exc:
            run_cli(["sweep"], config, payments)
        assert exc.value.code == 1

    def test_sweep_needs_payment_processor(self, db_path, payments):
        config = SettlementConfig(payment_processor=None)
        with pytest.raises(SystemExit) as exc:
            run_cli(["--db", db_path, "sweep"], config, payments)
        assert exc.value.code == 1

    def test_read_only_command_without_processor(self, seeded, db_path, payments, capsys):
        config = SettlementConfig(payment_processor=None)
        run_cli(["--db", db_path, "--json", "credits", "balance", "user-1"], config, payments)
        assert json.loads(capsys.readouterr().out)["balance"] == "7.50"

    def test_unknown_batch_exits(self, db_path, cli_config, payments):
        with pytest.raises(SystemExit) as exc:
            run_cli(["--db", db_path, "batch", "show", "missing"], cli_config, payments)
        assert exc.value.code == 1

    def test_missing_subcommand(self, db_path, cli_config, payments):
        with pytest.raises(SystemExit) as exc:
            run_cli(["--db", db_path, "wallet"], cli_config, payments)
        assert exc.value.code == 2


class TestLoadObject:
    """Tests for load_object."""

    def test_class_is_instantiated(self):
        assert load_object("decimal:Decimal") == Decimal("0")

    def test_function_is_returned(self):
        assert load_object("json:dumps") is json.dumps

    @pytest.mark.parametrize("path", ["json", "json:", ":dumps"])
    def test_bad_format(self, path):
        with pytest.raises(ValueError, match="module:attribute"):
            load_object(path)

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_object("json:nope")

    def test_unconfigured_processor_refuses(self):
        with pytest.raises(RuntimeError, match="MARKETCORE_PAYMENT_PROCESSOR"):
            UnconfiguredPaymentProcessor().capture("pi_1")
