"""Tests for the command line interface."""

import json

import pytest

from county_tax.cli import build_parser, main
from county_tax.config import get_settings
from county_tax.enums import IncludeMode


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


async def run_cli(*args: str) -> int:
    return await main(["--log-level", "ERROR", *args])


class TestParser:
    """Tests for argument parsing."""

    def test_calculate_defaults(self):
        args = build_parser().parse_args(["calculate"])

        assert args.mode == IncludeMode.ALL.value
        assert args.customers is None

    def test_calculate_repeated_customer(self):
        args = build_parser().parse_args(
            ["calculate", "--mode", "include_only", "--customer", "C-1", "--customer", "C-2"]
        )

        assert args.mode == "include_only"
        assert args.customers == ["C-1", "C-2"]

    def test_quote_address_and_county_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["quote", "10", "--address", "x", "--county", "Wake"])

    def test_bad_report_date(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["report", "--start", "03/01/2024"])

    def test_status_requires_uuid(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["status", "42"])


class TestCommands:
    """Tests for commands run against a temporary database."""

    @pytest.mark.asyncio
    async def test_init_db(self, cli_env, capsys):
        assert await run_cli("init-db") == 0
        assert "Database ready" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_load_rates_then_quote(self, cli_env, capsys):
        csv_path = cli_env / "rates.csv"
        csv_path.write_text(
            "county_name,state_tax_rate,county_tax_rate\n"
            "Buncombe,4.75,2.25\n"
            "Wake,0.0475,0.025\n"
        )

        assert await run_cli("load-rates", str(csv_path)) == 0
        assert json.loads(capsys.readouterr().out) == {"created": 2, "updated": 0}

        assert await run_cli("quote", "1000", "--county", "Buncombe") == 0
        out = capsys.readouterr().out
        assert "NC State Tax (4.75%): $47.50" in out
        assert "Buncombe Tax (2.25%): $22.50" in out
        assert "Total Tax (7.00%): $70.00" in out

    @pytest.mark.asyncio
    async def test_exclusion_list_lifecycle(self, cli_env, capsys):
        assert await run_cli("exclusions", "add", "C-1", "--reason", "exempt") == 0
        entry = json.loads(capsys.readouterr().out)
        assert entry["customer_id"] == "C-1"

        assert await run_cli("exclusions", "add", "C-1") == 1
        assert "already on the" in capsys.readouterr().err

        assert await run_cli("exclusions", "list") == 0
        listed = json.loads(capsys.readouterr().out)
        assert [(e["customer_id"], e["reason"]) for e in listed] == [("C-1", "exempt")]

        assert await run_cli("exclusions", "remove", str(entry["id"])) == 0
        assert await run_cli("exclusions", "remove", str(entry["id"])) == 1
        capsys.readouterr()
        assert await run_cli("exclusions", "list") == 0
        assert json.loads(capsys.readouterr().out) == []

    @pytest.mark.asyncio
    async def test_inclusions_are_separate(self, cli_env, capsys):
        assert await run_cli("inclusions", "add", "C-9") == 0
        capsys.readouterr()

        assert await run_cli("exclusions", "list") == 0
        assert json.loads(capsys.readouterr().out) == []

    @pytest.mark.asyncio
    async def test_empty_report(self, cli_env, capsys):
        assert await run_cli("report") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["counties"] == []
        assert data["totals"]["invoice_count"] == 0

    @pytest.mark.asyncio
    async def test_local_commands_need_no_billcom_credentials(
        self, cli_env, monkeypatch, capsys
    ):
        for name in ("BILLCOM_DEV_KEY", "BILLCOM_USERNAME", "BILLCOM_PASSWORD", "BILLCOM_ORG_ID"):
            monkeypatch.delenv(name, raising=False)
        get_settings.cache_clear()

        assert await run_cli("report", "--group-by", "invoice") == 0
        assert json.loads(capsys.readouterr().out)["invoices"] == []
        assert await run_cli("quote", "100", "--county", "Wake") == 0
        assert "Total Tax" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unknown_run_status(self, cli_env, capsys):
        assert await run_cli("status", "6f1c2a52-6c5e-4c57-9d7f-3a3b1c9b2f10") == 1
        assert "not found" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_calculate_then_runs(self, cli_env, capsys):
        assert await run_cli("calculate", "--user", "ops") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True

        assert await run_cli("runs", "--type", "calculate") == 0
        runs = json.loads(capsys.readouterr().out)
        assert [run["id"] for run in runs] == [result["run_id"]]
        assert runs[0]["created_by"] == "ops"
