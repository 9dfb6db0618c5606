from __future__ import annotations

import os
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from semconform.adapter.base import ExecutionResult, ExecutionStatus
from semconform.adapter.process import ProcessOutcome, run_bounded
from semconform.core.time import monotonic_seconds
from semconform.registry.probes import Probe

PLACEHOLDERS = ("source", "unit", "name")


class TemplateError(ValueError):
    pass


@dataclass(frozen=True)
class EngineSpec:
    """
    How to reach the engine under test.

    `command` is an argv template run once per probe. `build`, when set, is run
    first to turn the probe source into a runnable unit inside a per-probe temp
    dir, e.g. ["riscv32-unknown-elf-gcc", "-march=rv32im", "-mabi=ilp32", "-o", "{unit}", "{source}"].
    Without `build`, `{unit}` is the source path itself.
    """

    command: tuple[str, ...]
    build: tuple[str, ...] | None = None
    env: dict[str, str] = field(default_factory=dict)
    grace_seconds: float = 1.0

    @staticmethod
    def from_json_obj(obj: dict[str, Any]) -> "EngineSpec":
        command = obj.get("command")
        if not isinstance(command, list) or not command or not all(isinstance(x, str) and x for x in command):
            raise TemplateError("engine.command must be a non-empty list of strings")
        build = obj.get("build")
        if build is not None and (not isinstance(build, list) or not build or not all(isinstance(x, str) and x for x in build)):
            raise TemplateError("engine.build must be a non-empty list of strings when provided")
        env = obj.get("env") or {}
        if not isinstance(env, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
            raise TemplateError("engine.env must map strings to strings")
        grace = obj.get("grace_seconds", 1.0)
        if isinstance(grace, bool) or not isinstance(grace, (int, float)) or grace < 0:
            raise TemplateError("engine.grace_seconds must be a non-negative number")
        spec = EngineSpec(
            command=tuple(command),
            build=tuple(build) if build else None,
            env=dict(env),
            grace_seconds=float(grace),
        )
        spec.check_placeholders()
        return spec

    def check_placeholders(self) -> None:
        for part in (*self.command, *(self.build or ())):
            render_template([part], {k: "" for k in PLACEHOLDERS})


def render_template(template: tuple[str, ...] | list[str], fields: dict[str, str]) -> list[str]:
    argv: list[str] = []
    for part in template:
        try:
            argv.append(part.format(**fields))
        except (KeyError, IndexError, ValueError) as e:
            raise TemplateError(f"bad placeholder in {part!r} (allowed: {', '.join('{' + p + '}' for p in PLACEHOLDERS)}): {e}") from e
    return argv


class SubprocessAdapter:
    """Runs each probe as a child process of the configured engine."""

    def __init__(self, engine: EngineSpec, *, verbose: bool = False) -> None:
        self._engine = engine
        self._verbose = verbose

    def run(
        self,
        probe: Probe,
        budget: float | None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        started = monotonic_seconds()
        deadline = started + budget if budget is not None and budget > 0 else None
        env = {**os.environ, **self._engine.env}

        def result(status: ExecutionStatus, outcome: ProcessOutcome | None = None, cause: str | None = None) -> ExecutionResult:
            return ExecutionResult(
                probe_name=probe.name,
                status=status,
                stdout=outcome.stdout if outcome is not None else b"",
                stderr=outcome.stderr if outcome is not None else b"",
                exit_code=outcome.returncode if outcome is not None else None,
                duration_seconds=monotonic_seconds() - started,
                cause=cause,
            )

        if not probe.source.is_file():
            return result(ExecutionStatus.ADAPTER_ERROR, cause=f"probe source missing: {probe.source}")

        # The temp dir holds the built unit; it is removed on every exit path.
        with tempfile.TemporaryDirectory(prefix=f"semconform_{probe.name}_") as td:
            fields = {"source": str(probe.source), "unit": str(probe.source), "name": probe.name}
            if self._engine.build:
                fields["unit"] = str(Path(td) / probe.name)
                try:
                    build_argv = render_template(self._engine.build, fields)
                except TemplateError as e:
                    return result(ExecutionStatus.ADAPTER_ERROR, cause=str(e))
                self._log(f"build {probe.name}: {' '.join(build_argv)}")
                built = run_bounded(
                    build_argv,
                    deadline=deadline,
                    cancel=cancel,
                    env=env,
                    cwd=td,
                    grace_seconds=self._engine.grace_seconds,
                )
                if built.launch_error:
                    return result(ExecutionStatus.ADAPTER_ERROR, cause=f"build: {built.launch_error}")
                if built.canceled:
                    return result(ExecutionStatus.ADAPTER_ERROR, cause="canceled")
                if built.timed_out:
                    return result(ExecutionStatus.TIMED_OUT, cause=f"build exceeded budget of {budget}s")
                if built.returncode != 0:
                    preview = built.stderr.decode("utf-8", errors="replace").strip()[:500]
                    return result(ExecutionStatus.ADAPTER_ERROR, cause=f"build failed exit={built.returncode} stderr={preview}")
                if not Path(fields["unit"]).exists():
                    return result(ExecutionStatus.ADAPTER_ERROR, cause=f"build produced no unit at {fields['unit']}")

            try:
                argv = render_template(self._engine.command, fields)
            except TemplateError as e:
                return result(ExecutionStatus.ADAPTER_ERROR, cause=str(e))
            self._log(f"exec {probe.name}: {' '.join(argv)}")
            outcome = run_bounded(
                argv,
                deadline=deadline,
                cancel=cancel,
                env=env,
                cwd=td,
                grace_seconds=self._engine.grace_seconds,
            )

        if outcome.launch_error:
            return result(ExecutionStatus.ADAPTER_ERROR, outcome, cause=outcome.launch_error)
        if outcome.canceled:
            return result(ExecutionStatus.ADAPTER_ERROR, outcome, cause="canceled")
        if outcome.timed_out:
            return result(ExecutionStatus.TIMED_OUT, outcome, cause=f"exceeded budget of {budget}s")
        if outcome.returncode != 0:
            return result(ExecutionStatus.CRASHED_NONZERO_EXIT, outcome, cause=f"engine exited with {outcome.returncode}")
        return result(ExecutionStatus.COMPLETED, outcome)

    def _log(self, msg: str) -> None:
        if self._verbose:
            print(f"[adapter] {msg}", file=sys.stderr)
