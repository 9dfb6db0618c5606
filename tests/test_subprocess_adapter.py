from __future__ import annotations

import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from semconform.adapter.base import ExecutionStatus
from semconform.adapter.subprocess_adapter import EngineSpec, SubprocessAdapter, TemplateError
from semconform.registry.probes import ExpectedTranscript, Probe

_FAKE_ENGINE = r"""
import os, sys, time
from pathlib import Path

def main():
    name = sys.argv[1]
    d = Path(os.environ["FAKE_ENGINE_DIR"])
    out = d / (name + ".out")
    if out.exists():
        sys.stdout.buffer.write(out.read_bytes())
        sys.stdout.flush()
    sleep = d / (name + ".sleep")
    if sleep.exists():
        time.sleep(float(sleep.read_text()))
    (d / (name + ".cwd")).write_text(os.getcwd())
    code = d / (name + ".exit")
    if code.exists():
        sys.stderr.write("fake engine failure\n")
        return int(code.read_text())
    return 0

raise SystemExit(main())
"""


def _write_fake_engine(root: Path) -> Path:
    """
    Fake engine run as `python fake_engine.py {name}`. Per-probe behavior comes
    from files in $FAKE_ENGINE_DIR: <name>.out (stdout), <name>.sleep (seconds
    to sleep after printing), <name>.exit (exit code).
    """
    script = root / "fake_engine.py"
    script.write_text(_FAKE_ENGINE, encoding="utf-8")
    return script


def _probe(root: Path, name: str, expected: bytes = b"ok\n") -> Probe:
    src = root / f"{name}.c"
    src.write_text("int main() { return 0; }\n", encoding="utf-8")
    return Probe(name=name, category="arithmetic", source=src, expected=ExpectedTranscript(data=expected))


def _adapter(root: Path, *, build: tuple[str, ...] | None = None) -> SubprocessAdapter:
    script = _write_fake_engine(root)
    engine = EngineSpec(
        command=(sys.executable, str(script), "{name}"),
        build=build,
        env={"FAKE_ENGINE_DIR": str(root)},
        grace_seconds=0.5,
    )
    return SubprocessAdapter(engine)


class SubprocessAdapterTests(unittest.TestCase):
    def test_completed_captures_stdout_bytes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "p1")
            (root / "p1.out").write_bytes(b"Addition: 115\n\x00\xff")
            res = _adapter(root).run(probe, 10.0)
            self.assertEqual(res.status, ExecutionStatus.COMPLETED)
            self.assertEqual(res.stdout, b"Addition: 115\n\x00\xff")
            self.assertEqual(res.exit_code, 0)
            self.assertGreater(res.duration_seconds, 0.0)

    def test_nonzero_exit_keeps_output_and_stderr(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "p1")
            (root / "p1.out").write_bytes(b"partial\n")
            (root / "p1.exit").write_text("3")
            res = _adapter(root).run(probe, 10.0)
            self.assertEqual(res.status, ExecutionStatus.CRASHED_NONZERO_EXIT)
            self.assertEqual(res.exit_code, 3)
            self.assertEqual(res.stdout, b"partial\n")
            self.assertIn(b"fake engine failure", res.stderr)

    def test_timeout_kills_engine_and_keeps_partial_output(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "slow")
            (root / "slow.out").write_bytes(b"Counting from 1 to 5:\n")
            (root / "slow.sleep").write_text("30")
            t0 = time.monotonic()
            res = _adapter(root).run(probe, 1.0)
            elapsed = time.monotonic() - t0
            self.assertEqual(res.status, ExecutionStatus.TIMED_OUT)
            self.assertEqual(res.stdout, b"Counting from 1 to 5:\n")
            self.assertIsNone(res.exit_code)
            self.assertLess(elapsed, 10.0)

    def test_background_child_holding_stdout_does_not_outlive_budget(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "bg")
            # The engine exits at once but leaves a child in its session with stdout open.
            engine = EngineSpec(command=("sh", "-c", "echo hi; sleep 30 &", "{unit}"), grace_seconds=0.5)
            t0 = time.monotonic()
            res = SubprocessAdapter(engine).run(probe, 2.0)
            elapsed = time.monotonic() - t0
            self.assertEqual(res.status, ExecutionStatus.COMPLETED)
            self.assertEqual(res.stdout, b"hi\n")
            self.assertLess(elapsed, 5.0)

    def test_cancel_stops_running_engine(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "slow")
            (root / "slow.sleep").write_text("30")
            cancel = threading.Event()
            timer = threading.Timer(0.5, cancel.set)
            timer.start()
            try:
                res = _adapter(root).run(probe, 60.0, cancel)
            finally:
                timer.cancel()
            self.assertEqual(res.status, ExecutionStatus.ADAPTER_ERROR)
            self.assertEqual(res.cause, "canceled")

    def test_missing_engine_is_adapter_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "p1")
            engine = EngineSpec(command=(str(root / "no-such-engine"), "{source}"))
            res = SubprocessAdapter(engine).run(probe, 5.0)
            self.assertEqual(res.status, ExecutionStatus.ADAPTER_ERROR)
            self.assertIn("failed to launch", res.cause or "")

    def test_missing_source_is_adapter_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "p1")
            probe.source.unlink()
            res = _adapter(root).run(probe, 5.0)
            self.assertEqual(res.status, ExecutionStatus.ADAPTER_ERROR)

    def test_build_step_output_is_the_unit(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "p1")
            (root / "p1.out").write_bytes(b"built\n")
            # "Compile" by copying the source to {unit}.
            build = (sys.executable, "-c", "import shutil, sys; shutil.copy(sys.argv[1], sys.argv[2])", "{source}", "{unit}")
            res = _adapter(root, build=build).run(probe, 10.0)
            self.assertEqual(res.status, ExecutionStatus.COMPLETED, res.cause)
            self.assertEqual(res.stdout, b"built\n")
            # The per-probe temp dir is gone once the adapter returns.
            workdir = Path((root / "p1.cwd").read_text())
            self.assertFalse(workdir.exists())

    def test_build_failure_is_adapter_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            probe = _probe(root, "p1")
            build = (sys.executable, "-c", "import sys; sys.stderr.write('syntax error'); sys.exit(1)", "{source}")
            res = _adapter(root, build=build).run(probe, 10.0)
            self.assertEqual(res.status, ExecutionStatus.ADAPTER_ERROR)
            self.assertIn("syntax error", res.cause or "")

    def test_unknown_placeholder_rejected(self) -> None:
        with self.assertRaises(TemplateError):
            EngineSpec.from_json_obj({"command": ["qemu-riscv32", "{binary}"]})
        with self.assertRaises(TemplateError):
            EngineSpec.from_json_obj({"command": []})


if __name__ == "__main__":
    unittest.main()
