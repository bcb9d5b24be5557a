from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from felix_loop.main import felix_loop

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands"),
]


def _write_plan(tmp_path: Path, *, extra_dependency: str | None = None) -> Path:
    dependencies = [extra_dependency] if extra_dependency else []
    payload = {
        "project": "demo",
        "tasks": [
            {
                "id": "a",
                "title": "Add parser",
                "description": "Parse the input file",
                "acceptanceCriteria": ["parser handles empty input"],
                "dependencies": dependencies,
            },
            {
                "id": "b",
                "title": "Wire parser",
                "description": "Call the parser from main",
                "acceptanceCriteria": ["main uses parser"],
                "dependencies": ["a"],
            },
        ],
    }
    path = tmp_path / "plan.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_validate_plan_reports_warnings(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, extra_dependency="setup")

    result = CliRunner().invoke(felix_loop, ["validate-plan", str(plan_path)])

    assert result.exit_code == 0, result.output
    assert "Plan OK: project=demo version=1.0 tasks=2" in result.output
    assert "warning: task 'a' depends on unknown task 'setup'" in result.output


def test_validate_plan_rejects_invalid_json(tmp_path: Path) -> None:
    plan_path = tmp_path / "broken.json"
    plan_path.write_text("{not json", encoding="utf-8")

    result = CliRunner().invoke(felix_loop, ["validate-plan", str(plan_path)])

    assert result.exit_code == 1
    assert "plan is not valid JSON" in result.output


def test_route_prints_decisions_and_estimate(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path)

    result = CliRunner().invoke(
        felix_loop,
        ["route", str(plan_path), "--db-path", str(tmp_path / "loop.db")],
    )

    assert result.exit_code == 0, result.output
    assert "Plan: demo (2 task(s))" in result.output
    assert "  a: model=pro tier=mid source=static" in result.output
    assert "By tier: mid=2" in result.output
    assert "Estimated cost: optimistic=$" in result.output


def test_dry_run_completes_without_database(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path)
    db_path = tmp_path / "loop.db"

    result = CliRunner().invoke(
        felix_loop,
        [
            "run",
            str(plan_path),
            "--dry-run",
            "--db-path",
            str(db_path),
            "--project-root",
            str(tmp_path),
            "--mode",
            "sequential",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Dry run: no files or database rows were written." in result.output
    assert "> a [pro]" in result.output
    assert "status: completed" in result.output
    assert "completed: 2 (a, b)" in result.output
    assert not db_path.exists()


def test_run_rejects_invalid_plan(tmp_path: Path) -> None:
    plan_path = tmp_path / "plan.json"
    plan_path.write_text(json.dumps({"project": "demo", "tasks": []}), encoding="utf-8")

    result = CliRunner().invoke(
        felix_loop,
        ["run", str(plan_path), "--dry-run", "--project-root", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "Invalid plan" in result.output


def test_checkpoint_commands_on_empty_database(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("FELIX_LOOP_PROJECT_ROOT", str(tmp_path))
    db_path = str(tmp_path / "loop.db")
    runner = CliRunner()

    listed = runner.invoke(felix_loop, ["checkpoints", "list", "--db-path", db_path])
    cleaned = runner.invoke(felix_loop, ["checkpoints", "cleanup", "--db-path", db_path])
    cleared = runner.invoke(
        felix_loop,
        ["checkpoints", "clear", "--db-path", db_path, "--session-id", "felix-123"],
    )
    history = runner.invoke(felix_loop, ["history", "--db-path", db_path])

    assert "No checkpoints." in listed.output
    assert "Removed 0 checkpoint(s) older than 30 day(s)." in cleaned.output
    assert "Removed 0 checkpoint(s)." in cleared.output
    assert "Patterns: 0 (with sufficient data: 0)" in history.output


def test_checkpoints_clear_requires_a_selector(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        felix_loop,
        ["checkpoints", "clear", "--db-path", str(tmp_path / "loop.db")],
    )

    assert result.exit_code == 2
    assert "--session-id or --plan" in result.output


def test_health_reports_provider_without_cli() -> None:
    result = CliRunner().invoke(felix_loop, ["health", "--provider", "openai"])

    assert result.exit_code == 0, result.output
    assert "openai: unhealthy No CLI executable configured" in result.output
