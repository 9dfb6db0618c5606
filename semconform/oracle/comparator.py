from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from semconform.adapter.base import ExecutionResult, ExecutionStatus
from semconform.registry.probes import Probe

DEFAULT_CONTEXT_BYTES = 40
_STDERR_PREVIEW_BYTES = 500


class Outcome(str, Enum):
    PASS = "pass"
    MISMATCH = "mismatch"
    TIMEOUT = "timeout"
    EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class Divergence:
    """First differing region between expected and actual output."""

    offset: int
    window_start: int
    expected_context: bytes
    actual_context: bytes
    expected_length: int
    actual_length: int

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "offset": self.offset,
            "window_start": self.window_start,
            "expected_context": self.expected_context.decode("utf-8", errors="backslashreplace"),
            "actual_context": self.actual_context.decode("utf-8", errors="backslashreplace"),
            "expected_length": self.expected_length,
            "actual_length": self.actual_length,
        }


@dataclass(frozen=True)
class Verdict:
    probe_name: str
    category: str
    outcome: Outcome
    divergence: Divergence | None = None
    detail: str | None = None
    # Wall time varies run to run; equal verdicts ignore it.
    duration_seconds: float = field(default=0.0, compare=False)

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASS

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "probe": self.probe_name,
            "category": self.category,
            "outcome": self.outcome.value,
            "divergence": self.divergence.to_json_obj() if self.divergence is not None else None,
            "detail": self.detail,
            "duration_seconds": round(self.duration_seconds, 6),
        }


def first_divergence(expected: bytes, actual: bytes) -> int | None:
    """Index of the first differing byte; the shorter length for a strict prefix; None if equal."""
    if expected == actual:
        return None
    n = min(len(expected), len(actual))
    for i in range(n):
        if expected[i] != actual[i]:
            return i
    return n


def compare(result: ExecutionResult, probe: Probe, context_bytes: int = DEFAULT_CONTEXT_BYTES) -> Verdict:
    """Pure function of (result, probe): no I/O, no mutation."""
    if result.status is ExecutionStatus.TIMED_OUT:
        return Verdict(
            probe_name=probe.name,
            category=probe.category,
            outcome=Outcome.TIMEOUT,
            detail=_failure_detail(result),
            duration_seconds=result.duration_seconds,
        )
    if result.status is not ExecutionStatus.COMPLETED:
        return Verdict(
            probe_name=probe.name,
            category=probe.category,
            outcome=Outcome.EXECUTION_ERROR,
            detail=_failure_detail(result),
            duration_seconds=result.duration_seconds,
        )

    expected = probe.expected_bytes()
    actual = result.stdout
    k = first_divergence(expected, actual)
    if k is None:
        return Verdict(probe_name=probe.name, category=probe.category, outcome=Outcome.PASS, duration_seconds=result.duration_seconds)

    ctx = max(0, int(context_bytes))
    lo = max(0, k - ctx)
    divergence = Divergence(
        offset=k,
        window_start=lo,
        expected_context=expected[lo : k + ctx + 1],
        actual_context=actual[lo : k + ctx + 1],
        expected_length=len(expected),
        actual_length=len(actual),
    )
    return Verdict(
        probe_name=probe.name,
        category=probe.category,
        outcome=Outcome.MISMATCH,
        divergence=divergence,
        detail=f"expected {probe.expected.describe()}",
        duration_seconds=result.duration_seconds,
    )


def _failure_detail(result: ExecutionResult) -> str:
    parts = [f"status={result.status.value}"]
    if result.cause:
        parts.append(f"cause={result.cause}")
    if result.exit_code is not None:
        parts.append(f"exit_code={result.exit_code}")
    parts.append(f"stdout_bytes={len(result.stdout)}")
    err = result.stderr[:_STDERR_PREVIEW_BYTES].decode("utf-8", errors="replace").strip()
    if err:
        parts.append(f"stderr={err!r}")
    return " ".join(parts)
