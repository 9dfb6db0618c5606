from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable

from semconform.adapter.base import ExecutionAdapter, ReplayAdapter
from semconform.adapter.subprocess_adapter import PLACEHOLDERS, SubprocessAdapter
from semconform.config.harness_config import HarnessConfig, load_harness_config
from semconform.oracle.comparator import Verdict
from semconform.registry.probes import Probe, ProbeRegistry, load_registry
from semconform.runner.batch import BatchRunner, RunReport


class EmptySelection(ValueError):
    pass


@dataclass(frozen=True)
class Harness:
    config: HarnessConfig
    registry: ProbeRegistry

    @staticmethod
    def load(config_path: Path | None = None, catalog_dir: Path | None = None) -> "Harness":
        """
        Load config then registry. Both raise (InvalidHarnessConfig,
        InvalidProbeDefinition) before anything is executed.
        """
        cfg = load_harness_config(config_path)
        if catalog_dir is None and cfg.catalog_dir:
            catalog_dir = Path(cfg.catalog_dir)
        return Harness(config=cfg, registry=load_registry(catalog_dir))

    def select(self, filters: Iterable[str] | None) -> tuple[Probe, ...]:
        filters = list(filters or [])
        probes = self.registry.select(filters)
        if not probes:
            raise EmptySelection(f"no probes match filters: {', '.join(filters)}")
        return probes

    def make_adapter(
        self,
        *,
        dry_run: bool = False,
        engine_override: list[str] | None = None,
        verbose: bool = False,
    ) -> ExecutionAdapter:
        if dry_run:
            return ReplayAdapter()
        engine = self.config.engine_spec()
        if engine_override:
            engine = replace(engine, command=tuple(_with_unit(engine_override)), build=None)
            engine.check_placeholders()
        return SubprocessAdapter(engine, verbose=verbose)

    def run(
        self,
        filters: Iterable[str] | None = None,
        *,
        concurrency: int | None = None,
        timeout_override_seconds: float | None = None,
        dry_run: bool = False,
        engine_override: list[str] | None = None,
        artifacts_dir: Path | None = None,
        cancel: threading.Event | None = None,
        on_verdict: Callable[[Verdict], None] | None = None,
        verbose: bool = False,
    ) -> RunReport:
        probes = self.select(filters)
        adapter = self.make_adapter(dry_run=dry_run, engine_override=engine_override, verbose=verbose)
        runner = BatchRunner(
            adapter,
            default_timeout_seconds=self.config.probe_timeout_seconds(),
            timeout_override_seconds=timeout_override_seconds,
            context_bytes=self.config.context_bytes(),
            artifacts_dir=artifacts_dir,
            on_verdict=on_verdict,
        )
        return runner.run_all(probes, concurrency if concurrency is not None else self.config.concurrency(), cancel)


def _with_unit(argv: list[str]) -> list[str]:
    # A bare command line (no placeholders) gets the unit path appended.
    if any("{" + p + "}" in part for part in argv for p in PLACEHOLDERS):
        return list(argv)
    return [*argv, "{unit}"]
