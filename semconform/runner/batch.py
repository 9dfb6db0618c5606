from __future__ import annotations

import sys
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from semconform.adapter.base import ExecutionAdapter, ExecutionResult
from semconform.core.atomic_io import write_atomic_bytes, write_atomic_json
from semconform.core.ids import new_run_id
from semconform.core.time import utc_isoformat
from semconform.oracle.comparator import DEFAULT_CONTEXT_BYTES, Outcome, Verdict, compare
from semconform.registry.probes import Probe


@dataclass(frozen=True)
class RunReport:
    run_id: str
    verdicts: tuple[Verdict, ...]
    started_at: str
    finished_at: str
    canceled: bool = False

    def counts(self) -> dict[str, int]:
        out = {o.value: 0 for o in Outcome}
        for v in self.verdicts:
            out[v.outcome.value] += 1
        return out

    @property
    def ok(self) -> bool:
        return bool(self.verdicts) and not self.canceled and all(v.passed for v in self.verdicts)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "ok": self.ok,
            "canceled": self.canceled,
            "counts": self.counts(),
            "total": len(self.verdicts),
            "verdicts": [v.to_json_obj() for v in self.verdicts],
        }


class BatchRunner:
    """
    Executes probes on a bounded thread pool.

    Each probe's adapter call and comparison is independent: any exception is
    turned into an execution_error verdict for that probe only. Verdicts are
    reassembled in input (registry) order regardless of completion order.
    """

    def __init__(
        self,
        adapter: ExecutionAdapter,
        *,
        default_timeout_seconds: float | None = None,
        timeout_override_seconds: float | None = None,
        context_bytes: int = DEFAULT_CONTEXT_BYTES,
        artifacts_dir: Path | None = None,
        on_verdict: Callable[[Verdict], None] | None = None,
    ) -> None:
        self._adapter = adapter
        self._default_timeout = default_timeout_seconds
        self._timeout_override = timeout_override_seconds
        self._context_bytes = context_bytes
        self._artifacts_dir = artifacts_dir
        self._on_verdict = on_verdict

    def budget_for(self, probe: Probe) -> float | None:
        if self._timeout_override is not None:
            return self._timeout_override
        if probe.timeout_seconds is not None:
            return probe.timeout_seconds
        return self._default_timeout

    def run_all(
        self,
        probes: Iterable[Probe],
        concurrency: int,
        cancel: threading.Event | None = None,
    ) -> RunReport:
        probes = tuple(probes)
        if int(concurrency) < 1:
            raise ValueError("concurrency must be >= 1")
        cancel = cancel if cancel is not None else threading.Event()
        run_id = new_run_id()
        started_at = utc_isoformat()
        slots: list[Verdict | None] = [None] * len(probes)
        aborted = False

        def collect(fut: Future, i: int) -> None:
            try:
                v = fut.result()
            except Exception as e:
                v = _error_verdict(probes[i], f"harness error: {type(e).__name__}: {e}")
            slots[i] = v
            if self._on_verdict is not None:
                try:
                    self._on_verdict(v)
                except Exception as e:
                    print(f"[run] progress callback failed for {v.probe_name}: {type(e).__name__}: {e}", file=sys.stderr)

        workers = max(1, min(int(concurrency), len(probes)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="semconform-probe") as ex:
            futures = {ex.submit(self._run_one, run_id, p, cancel): i for i, p in enumerate(probes)}
            try:
                for fut in as_completed(futures):
                    collect(fut, futures[fut])
            except KeyboardInterrupt:
                # Run-level abort: stop every in-flight engine, then drain what is left.
                aborted = True
                cancel.set()
                for fut, i in futures.items():
                    if slots[i] is None:
                        collect(fut, i)

        verdicts = tuple(v if v is not None else _error_verdict(p, "no verdict produced") for v, p in zip(slots, probes))
        return RunReport(
            run_id=run_id,
            verdicts=verdicts,
            started_at=started_at,
            finished_at=utc_isoformat(),
            canceled=aborted or cancel.is_set(),
        )

    def _run_one(self, run_id: str, probe: Probe, cancel: threading.Event) -> Verdict:
        if cancel.is_set():
            return _error_verdict(probe, "canceled before start")
        try:
            result = self._adapter.run(probe, self.budget_for(probe), cancel)
        except Exception as e:
            return _error_verdict(probe, f"adapter raised {type(e).__name__}: {e}")
        verdict = compare(result, probe, self._context_bytes)
        if self._artifacts_dir is not None:
            self._write_artifacts(run_id, probe, result, verdict)
        return verdict

    def _write_artifacts(self, run_id: str, probe: Probe, result: ExecutionResult, verdict: Verdict) -> None:
        d = self._artifacts_dir / run_id / probe.name  # type: ignore[operator]
        try:
            write_atomic_bytes(d / "stdout.bin", result.stdout)
            write_atomic_bytes(d / "stderr.bin", result.stderr)
            write_atomic_bytes(d / "expected.bin", probe.expected_bytes())
            write_atomic_json(
                d / "verdict.json",
                {
                    **verdict.to_json_obj(),
                    "status": result.status.value,
                    "exit_code": result.exit_code,
                    "cause": result.cause,
                },
            )
        except OSError as e:
            # Artifacts are diagnostics only; a full disk must not change the verdict.
            print(f"[run] failed to write artifacts for {probe.name}: {e}", file=sys.stderr)


def _error_verdict(probe: Probe, detail: str) -> Verdict:
    return Verdict(probe_name=probe.name, category=probe.category, outcome=Outcome.EXECUTION_ERROR, detail=detail)
