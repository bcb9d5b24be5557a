"""Shared test fixtures."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from felix_loop.config import RetrySettings, RunSettings, Settings
from felix_loop.models import AcceptanceCriterion, Backend, PlanTask
from felix_loop.plugins.validation import CommandResult
from felix_loop.providers.health import CliCheck
from felix_loop.providers.workers import WorkerRequest, WorkerResponse
from felix_loop.routing.catalog import ModelSpec
from felix_loop.storage.repository import LoopRepository


class ScriptedWorker:
    """Worker handle whose responses come from the shared ``ScriptedWorkers`` script."""

    def __init__(self, owner: ScriptedWorkers, *, provider: str, model: str, backend: Backend):
        self.owner = owner
        self.provider = provider
        self.model = model
        self.backend = backend

    async def execute(self, request: WorkerRequest) -> WorkerResponse:
        self.owner.calls.append((request.task.id, self.model))
        script = self.owner.scripts.get(request.task.id)
        if not script:
            return WorkerResponse(
                success=True,
                input_tokens=100,
                output_tokens=50,
                cost_usd=self.owner.default_cost,
            )
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return replace(item)


class ScriptedWorkers:
    """Factory plus script: ``scripts[task_id]`` is replayed, the last entry repeats."""

    def __init__(self, *, default_cost: float = 0.0) -> None:
        self.default_cost = default_cost
        self.scripts: dict[str, list[WorkerResponse | Exception]] = {}
        self.calls: list[tuple[str, str]] = []
        self.built: list[tuple[str, str, Backend]] = []

    def factory(self, spec: ModelSpec, backend: Backend) -> ScriptedWorker:
        self.built.append((spec.provider, spec.id, backend))
        return ScriptedWorker(self, provider=spec.provider, model=spec.id, backend=backend)

    def task_ids(self) -> list[str]:
        return [task_id for task_id, _ in self.calls]


def always_available(executable: str) -> CliCheck:
    return CliCheck(available=True, version=f"{executable} 1.0")


async def no_sleep(_: float) -> None:
    return None


def make_task(task_id: str, **overrides) -> PlanTask:
    values = {
        "id": task_id,
        "title": f"Task {task_id}",
        "description": f"Implement {task_id}",
        "acceptance_criteria": (AcceptanceCriterion(description="works"),),
    }
    values.update(overrides)
    return PlanTask(**values)


@pytest.fixture()
def workers() -> ScriptedWorkers:
    return ScriptedWorkers()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    project_root = tmp_path / "project"
    project_root.mkdir()
    return Settings(
        db_path=tmp_path / "loop.db",
        project_root=project_root,
        run=RunSettings(execution_mode="sequential"),
        retry=RetrySettings(base_delay_seconds=0.0, max_delay_seconds=0.0),
    )


@pytest.fixture()
def repository(settings: Settings):
    repo = LoopRepository(settings.db_path, project_path=str(settings.project_root.resolve()))
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def write_plan(tmp_path: Path):
    def _write(payload: dict, name: str = "plan.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def fake_commands():
    """Command runner returning canned results keyed by command string."""

    results: dict[str, CommandResult] = {}
    calls: list[str] = []

    async def runner(command: str, cwd: Path, timeout_seconds: float) -> CommandResult:
        calls.append(command)
        return results.get(
            command,
            CommandResult(command=command, exit_code=0, output="", duration_ms=1),
        )

    runner.results = results
    runner.calls = calls
    return runner
