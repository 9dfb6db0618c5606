from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from semconform.registry.probes import Probe


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CRASHED_NONZERO_EXIT = "crashed_nonzero_exit"
    ADAPTER_ERROR = "adapter_error"


@dataclass(frozen=True)
class ExecutionResult:
    """
    One engine execution of one probe.

    `stdout` is always the bytes captured so far, including the partial output
    of a timed-out or canceled execution. `exit_code` is None when the process
    was killed or never started.
    """

    probe_name: str
    status: ExecutionStatus
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int | None = None
    duration_seconds: float = 0.0
    cause: str | None = None


class ExecutionAdapter(Protocol):
    def run(
        self,
        probe: Probe,
        budget: float | None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult: ...


class ReplayAdapter:
    """
    Deterministic stand-in for an engine: prints each probe's frozen transcript.

    Used by `run --dry-run` to check catalog and harness wiring without an
    engine installed.
    """

    def run(
        self,
        probe: Probe,
        budget: float | None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        if cancel is not None and cancel.is_set():
            return ExecutionResult(probe_name=probe.name, status=ExecutionStatus.ADAPTER_ERROR, cause="canceled")
        return ExecutionResult(
            probe_name=probe.name,
            status=ExecutionStatus.COMPLETED,
            stdout=probe.expected_bytes(),
            exit_code=0,
        )
