"""Post-task validation steps run as local commands."""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

OUTPUT_LIMIT_CHARS = 20_000


@dataclass(slots=True, frozen=True)
class CommandResult:
    command: str
    exit_code: int
    output: str
    duration_ms: int
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


CommandRunner = Callable[[str, Path, float], Awaitable[CommandResult]]


@dataclass(slots=True)
class ValidationReport:
    """Combined outcome of every validation step."""

    steps: list[CommandResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(step.passed for step in self.steps)

    @property
    def failed_steps(self) -> list[str]:
        return [step.command for step in self.steps if not step.passed]

    @property
    def output(self) -> str:
        return "\n".join(
            f"$ {step.command}\n{step.output.strip()}" for step in self.steps if not step.passed
        )

    @property
    def duration_ms(self) -> int:
        return sum(step.duration_ms for step in self.steps)

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "failed_steps": self.failed_steps,
            "duration_ms": self.duration_ms,
        }


async def run_command(command: str, cwd: Path, timeout_seconds: float) -> CommandResult:
    """Run one command without a shell and capture combined output."""

    argv = shlex.split(command)
    started = time.monotonic()
    if not argv:
        return CommandResult(command=command, exit_code=2, output="empty command", duration_ms=0)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as error:
        return CommandResult(
            command=command,
            exit_code=127,
            output=f"failed to start: {error}",
            duration_ms=_elapsed_ms(started),
        )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return CommandResult(
            command=command,
            exit_code=-1,
            output=f"timed out after {timeout_seconds:.0f}s",
            duration_ms=_elapsed_ms(started),
            timed_out=True,
        )
    return CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        output=stdout.decode("utf-8", errors="replace")[-OUTPUT_LIMIT_CHARS:],
        duration_ms=_elapsed_ms(started),
    )


async def run_validation(
    commands: tuple[str, ...] | list[str],
    *,
    cwd: Path,
    timeout_seconds: float,
    runner: CommandRunner = run_command,
) -> ValidationReport:
    """Run every step in order. Steps keep running after a failure so the report is complete."""

    report = ValidationReport()
    for command in commands:
        result = await runner(command, cwd, timeout_seconds)
        report.steps.append(result)
        if result.passed:
            logger.debug("Validation step passed: %s", command)
        else:
            logger.info("Validation step failed (exit %d): %s", result.exit_code, command)
    return report


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
