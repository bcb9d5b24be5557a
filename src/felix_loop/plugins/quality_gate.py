"""Final, non-fatal code-health gate."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from felix_loop.plugins.validation import CommandRunner, run_command

logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "high", "medium", "low")
BLOCKING_SEVERITIES = frozenset({"critical", "high"})
_SEVERITY_PATTERN = re.compile(r"\b(critical|high|medium|low)\b", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class QualityIssue:
    severity: str
    message: str
    command: str


@dataclass(slots=True)
class QualityGateSummary:
    passed: bool = True
    counts: dict[str, int] = field(default_factory=lambda: dict.fromkeys(SEVERITIES, 0))
    issues: list[QualityIssue] = field(default_factory=list)
    failed_commands: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "counts": dict(self.counts),
            "total": self.total,
            "failed_commands": list(self.failed_commands),
            "duration_ms": self.duration_ms,
        }


def parse_issues(output: str, *, command: str) -> list[QualityIssue]:
    """One issue per output line that names a severity."""

    issues: list[QualityIssue] = []
    for line in output.splitlines():
        match = _SEVERITY_PATTERN.search(line)
        if match is None:
            continue
        issues.append(
            QualityIssue(severity=match.group(1).lower(), message=line.strip(), command=command),
        )
    return issues


async def run_quality_gate(
    commands: tuple[str, ...] | list[str],
    *,
    cwd: Path,
    timeout_seconds: float,
    runner: CommandRunner = run_command,
) -> QualityGateSummary:
    summary = QualityGateSummary()
    for command in commands:
        result = await runner(command, cwd, timeout_seconds)
        summary.duration_ms += result.duration_ms
        if not result.passed:
            summary.failed_commands.append(command)
        for issue in parse_issues(result.output, command=command):
            summary.issues.append(issue)
            summary.counts[issue.severity] += 1

    blocking = sum(summary.counts[severity] for severity in BLOCKING_SEVERITIES)
    summary.passed = not summary.failed_commands and blocking == 0
    if not summary.passed:
        logger.warning(
            "Quality gate failed: %d critical, %d high, %d failing command(s)",
            summary.counts["critical"],
            summary.counts["high"],
            len(summary.failed_commands),
        )
    return summary
