"""Tests for CLI interface and command validation."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
import respx
from typer.testing import CliRunner

from cli import app
from recon.db import create_db_engine
from tests.utils.db_helper import (
    BASE_URL,
    page_body,
    remote_row,
    seed_linked_batch,
    txn,
)

runner = CliRunner()


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """File-backed SQLite database initialised through the CLI."""
    url = f"sqlite:///{tmp_path / 'recon.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("RECON_PLAIN", "1")
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    assert "Database schema initialized successfully" in result.output
    return url


@pytest.fixture
def seeded_url(database_url: str) -> str:
    engine = create_db_engine(database_url)
    with engine.begin() as conn:
        seed_linked_batch(
            conn,
            [
                txn("2024-03-04", "-45.00", "AMAZON MKTPLACE"),
                txn("2024-03-15", "-60.00", "SHELL OIL"),
            ],
        )
    engine.dispose()
    return database_url


def test_commands_require_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    """Missing DATABASE_URL exits 2 before touching anything."""
    monkeypatch.delenv("DATABASE_URL", raising=False)

    for args in (
        ["init-db"],
        ["stats", "--batch", "1", "--user", "1"],
        ["match", "--batch", "1", "--user", "1"],
    ):
        result = runner.invoke(app, args)
        assert result.exit_code == 2
        assert "DATABASE_URL not found" in result.output


def test_missing_options_exit_2() -> None:
    result = runner.invoke(app, ["can-match", "--batch", "1"])
    assert result.exit_code == 2
    assert "Missing option" in result.output


def test_can_match_reports_eligibility(seeded_url: str) -> None:
    ok = runner.invoke(app, ["can-match", "--batch", "1", "--user", "1"])
    assert ok.exit_code == 0
    assert "Batch 1 can be matched against Main Ledger" in ok.output

    foreign = runner.invoke(app, ["can-match", "--batch", "1", "--user", "2"])
    assert foreign.exit_code == 1
    assert "Batch not found" in foreign.output


@respx.mock
def test_match_then_stats_and_orphans(seeded_url: str) -> None:
    respx.get(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(
            200,
            json=page_body(
                [
                    remote_row(101, "2024-03-04", 45.00),
                    remote_row(104, "2024-03-10", 310.00, description="Office rent"),
                ]
            ),
        )
    )

    result = runner.invoke(app, ["match", "--batch", "1", "--user", "1"])
    assert result.exit_code == 0, result.output
    assert "Matched 1 of 2 transactions (1 orphans found)" in result.output

    stats = runner.invoke(app, ["stats", "--batch", "1", "--user", "1", "--json"])
    assert stats.exit_code == 0
    summary = json.loads(stats.output)
    assert summary["matched"] == 1
    assert summary["high_confidence"] == 1
    assert summary["orphans"] == 1
    assert summary["job_status"] == "complete"

    orphans = runner.invoke(app, ["orphans", "--batch", "1", "--user", "1"])
    assert orphans.exit_code == 0
    assert "Office rent" in orphans.output

    step = runner.invoke(
        app, ["match-step", "--batch", "1", "--user", "1", "--json"]
    )
    assert json.loads(step.output)["status"] == "complete"


@respx.mock
def test_match_failure_exits_1_and_reset_recovers(seeded_url: str) -> None:
    respx.get(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(401, json={"message": "Unauthenticated."})
    )

    failed = runner.invoke(app, ["match", "--batch", "1", "--user", "1"])
    assert failed.exit_code == 1
    assert "API error: Unauthenticated." in failed.output

    reset = runner.invoke(app, ["match-reset", "--batch", "1", "--user", "1"])
    assert reset.exit_code == 0
    assert "reset" in reset.output

    cleared = runner.invoke(app, ["clear-matches", "--batch", "1", "--user", "1"])
    assert cleared.exit_code == 0
    assert "Cleared matches on 2 transactions" in cleared.output


def test_match_reset_without_job(seeded_url: str) -> None:
    result = runner.invoke(app, ["match-reset", "--batch", "1", "--user", "1"])
    assert result.exit_code == 1
    assert "No match job for batch 1" in result.output


def test_push_validates_date_and_amount(seeded_url: str) -> None:
    base = [
        "push", "--batch", "1", "--txn", "1", "--user", "1", "--type", "expense",
        "--category-id", "9", "--payment-method", "card",
    ]

    bad_date = runner.invoke(app, [*base, "--amount", "45.00", "--date", "03/04/2024"])
    assert bad_date.exit_code == 1
    assert "Invalid date format" in bad_date.output

    bad_amount = runner.invoke(app, [*base, "--amount", "0", "--date", "2024-03-04"])
    assert bad_amount.exit_code == 1
    assert "Invalid request" in bad_amount.output


@respx.mock
def test_push_twice_reports_duplicate(seeded_url: str) -> None:
    route = respx.post(f"{BASE_URL}/api/transactions").mock(
        return_value=httpx.Response(201, json={"data": {"id": 555}})
    )
    args = [
        "push", "--batch", "1", "--txn", "2", "--user", "1", "--type", "expense",
        "--amount", "60.00", "--category-id", "4", "--payment-method", "card",
        "--date", "2024-03-15", "--category", "Fuel",
    ]

    first = runner.invoke(app, args)
    assert first.exit_code == 0, first.output
    assert "Pushed IMP-TRA-2 (remote id 555)" in first.output

    second = runner.invoke(app, args)
    assert second.exit_code == 1
    assert "already pushed as IMP-TRA-2" in second.output
    assert route.call_count == 1

    suggestion = runner.invoke(
        app, ["suggest", "--installation", "1", "--user", "1", "--description",
              "Shell Oil 1234"]
    )
    assert suggestion.exit_code == 0
    assert "category=Fuel" in suggestion.output


def test_demo_runs_offline(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECON_NO_EGRESS", "0")
    monkeypatch.setenv("RECON_PLAIN", "1")

    result = runner.invoke(app, ["demo"])

    assert result.exit_code == 0, result.output
    assert "Match: 5/6 (high=4 medium=1 low=0), orphans=1" in result.output
    assert "Account: missing=1 orphans=1" in result.output


def test_doctor_flags_invalid_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("RECON_API_PAGE_SIZE", "0")

    result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 1
    assert "Invalid RECON_* settings" in result.output
