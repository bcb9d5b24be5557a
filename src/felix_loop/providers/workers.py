"""Worker backends: local CLI agents, OpenAI-compatible APIs and a dry-run stub."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import httpx

from felix_loop.models import Backend, FileChange, FileChangeType, PlanTask
from felix_loop.pricing import PricingTable

logger = logging.getLogger(__name__)

_PROMPT_TOKENS = re.compile(r'"(?:prompt_tokens|input_tokens)"\s*:\s*(\d+)', re.IGNORECASE)
_COMPLETION_TOKENS = re.compile(
    r'"(?:completion_tokens|output_tokens)"\s*:\s*(\d+)',
    re.IGNORECASE,
)
_TEXT_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TEXT_OUTPUT_TOKENS = re.compile(
    r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)
_ERROR_TAIL_CHARS = 2000
_TRANSIENT_HTTP_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class WorkerRequest:
    """Inputs required to execute one task attempt."""

    task: PlanTask
    prompt: str
    workdir: Path
    temperature: float | None = None


@dataclass(slots=True)
class WorkerResponse:
    """What a worker reports back after one attempt."""

    success: bool
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    file_changes: list[FileChange] = field(default_factory=list)
    error: str | None = None
    output: str = ""

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class WorkerHandle(Protocol):
    """Executable worker bound to one provider, model and backend."""

    provider: str
    model: str
    backend: Backend

    async def execute(self, request: WorkerRequest) -> WorkerResponse:
        """Run one attempt. Raises ``BackendRunError`` when the backend cannot run at all."""


def build_task_prompt(task: PlanTask, *, retry_context: str | None = None) -> str:
    """Render the instruction text handed to a worker."""

    lines = [f"# Task {task.id}: {task.title}", "", task.description.strip(), ""]
    if task.files_affected:
        lines.append("Files you are expected to change:")
        lines.extend(f"- {path}" for path in task.files_affected)
        lines.append("")
    lines.append("Acceptance criteria:")
    for criterion in task.acceptance_criteria:
        suffix = f" (verify with: {criterion.test_command})" if criterion.test_command else ""
        lines.append(f"- {criterion.description}{suffix}")
    if retry_context:
        lines.extend(["", "Previous attempt failed:", retry_context.strip()])
    lines.extend(["", "Make the changes directly in the working tree. Do not ask questions."])
    return "\n".join(lines) + "\n"


def snapshot_files(workdir: Path, paths: tuple[str, ...]) -> dict[str, tuple[int, int] | None]:
    """``path -> (mtime_ns, size)`` or ``None`` for files that do not exist."""

    snapshot: dict[str, tuple[int, int] | None] = {}
    for relative in paths:
        target = workdir / relative
        try:
            stat = target.stat()
        except OSError:
            snapshot[relative] = None
            continue
        snapshot[relative] = (stat.st_mtime_ns, stat.st_size)
    return snapshot


def diff_snapshots(
    before: dict[str, tuple[int, int] | None],
    after: dict[str, tuple[int, int] | None],
) -> list[FileChange]:
    changes: list[FileChange] = []
    for path, previous in before.items():
        current = after.get(path)
        if previous is None and current is not None:
            changes.append(FileChange(change_type=FileChangeType.CREATED, path=path))
        elif previous is not None and current is None:
            changes.append(FileChange(change_type=FileChangeType.DELETED, path=path))
        elif previous is not None and current != previous:
            changes.append(FileChange(change_type=FileChangeType.MODIFIED, path=path))
    return changes


def extract_token_usage(*, stdout: str, stderr: str) -> tuple[int, int]:
    """Best-effort ``(input, output)`` token counts from agent output streams."""

    for pattern_in, pattern_out in (
        (_PROMPT_TOKENS, _COMPLETION_TOKENS),
        (_TEXT_INPUT_TOKENS, _TEXT_OUTPUT_TOKENS),
    ):
        for text in (stdout, stderr):
            prompt = _extract_int(pattern_in, text)
            completion = _extract_int(pattern_out, text)
            if prompt is not None or completion is not None:
                return prompt or 0, completion or 0
    return 0, 0


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None


def build_run_args(*, command_template: str, model: str, prompt: str) -> list[str]:
    """Render a ``{model}``/``{prompt}`` command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt}.",
            transient=False,
        )
    try:
        rendered = stripped.format(model=shlex.quote(model), prompt=shlex.quote(prompt))
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv


class CliWorker:
    """Runs a local agent CLI as an asyncio subprocess."""

    backend = Backend.CLI

    def __init__(
        self,
        *,
        provider: str,
        model: str,
        command_template: str,
        pricing: PricingTable,
    ) -> None:
        self.provider = provider
        self.model = model
        self.command_template = command_template
        self.pricing = pricing

    async def execute(self, request: WorkerRequest) -> WorkerResponse:
        argv = build_run_args(
            command_template=self.command_template,
            model=self.model,
            prompt=request.prompt,
        )
        before = snapshot_files(request.workdir, request.task.files_affected)
        env = os.environ.copy()
        env["FELIX_LOOP_TASK_ID"] = request.task.id
        env["FELIX_LOOP_MODEL"] = self.model
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(request.workdir),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            _kill(process)
            await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        input_tokens, output_tokens = extract_token_usage(stdout=stdout, stderr=stderr)
        file_changes = diff_snapshots(
            before,
            snapshot_files(request.workdir, request.task.files_affected),
        )
        success = process.returncode == 0
        return WorkerResponse(
            success=success,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.pricing.estimate_cost_usd(
                model=self.model,
                provider=self.provider,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            ),
            file_changes=file_changes,
            error=None
            if success
            else (
                f"exit code {process.returncode}: "
                f"{(stderr.strip() or stdout.strip())[-_ERROR_TAIL_CHARS:]}"
            ),
            output=stdout,
        )


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return


class ApiWorker:
    """Calls an OpenAI-compatible ``/chat/completions`` endpoint with httpx."""

    backend = Backend.API

    def __init__(  # noqa: PLR0913
        self,
        *,
        provider: str,
        model: str,
        api_model_name: str,
        base_url: str,
        api_key: str,
        timeout_seconds: float,
        pricing: PricingTable,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.api_model_name = api_model_name
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._transport = transport
        self.pricing = pricing

    async def execute(self, request: WorkerRequest) -> WorkerResponse:
        payload: dict[str, object] = {
            "model": self.api_model_name,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        before = snapshot_files(request.workdir, request.task.files_affected)
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s for model %s", self.base_url, self.model)
            raise BackendRunError(f"API request timed out: {error}", transient=True) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s: %s", self.base_url, error)
            raise BackendRunError(f"API request failed: {error}", transient=True) from error

        if not response.is_success:
            message = f"HTTP {response.status_code}: {response.text[:_ERROR_TAIL_CHARS]}"
            if response.status_code in _TRANSIENT_HTTP_STATUSES:
                raise BackendRunError(message, transient=True)
            return WorkerResponse(success=False, error=message)

        try:
            body = response.json()
        except json.JSONDecodeError as error:
            raise BackendRunError(f"API returned invalid JSON: {error}", transient=True) from error
        usage = body.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or usage.get("output_tokens") or 0)
        choices = body.get("choices") or []
        content = ""
        if choices and isinstance(choices[0], dict):
            content = str((choices[0].get("message") or {}).get("content") or "")
        logger.debug(
            "API call to %s finished in %.1fs (%d/%d tokens)",
            self.provider,
            time.monotonic() - started,
            input_tokens,
            output_tokens,
        )
        return WorkerResponse(
            success=bool(content.strip()),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.pricing.estimate_cost_usd(
                model=self.model,
                provider=self.provider,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            ),
            file_changes=diff_snapshots(
                before,
                snapshot_files(request.workdir, request.task.files_affected),
            ),
            error=None if content.strip() else "API returned an empty completion",
            output=content,
        )


class DryRunWorker:
    """Succeeds immediately without touching the filesystem or the network."""

    def __init__(self, *, provider: str, model: str, backend: Backend = Backend.CLI) -> None:
        self.provider = provider
        self.model = model
        self.backend = backend

    async def execute(self, request: WorkerRequest) -> WorkerResponse:
        logger.info("[dry-run] %s would run task %s", self.model, request.task.id)
        return WorkerResponse(success=True, output="dry-run")
