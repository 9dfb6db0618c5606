from __future__ import annotations

import contextlib
import io
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from semconform.__main__ import main

_FAKE_ENGINE = r"""
import os, sys
from pathlib import Path

name = sys.argv[1]
out = Path(os.environ["FAKE_ENGINE_DIR"]) / (name + ".out")
if out.exists():
    sys.stdout.buffer.write(out.read_bytes())
"""


def _run_main(argv: list[str]) -> tuple[int, str, str]:
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = main(argv)
    return code, out.getvalue(), err.getvalue()


def _write_catalog(root: Path) -> Path:
    cat = root / "catalog"
    cat.mkdir()
    probes = []
    for name, expected in (("alpha", "1 2 3\n"), ("beta", "120\n")):
        (cat / f"{name}.c").write_text("int main() { return 0; }\n", encoding="utf-8")
        probes.append({"name": name, "category": "arithmetic", "source": f"{name}.c", "expected": {"text": expected}})
    (cat / "catalog.json").write_text(json.dumps({"catalog_version": "1.0.0", "probes": probes}), encoding="utf-8")
    return cat


class CliExitCodeTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.config = self.root / "semconform.json"
        code, _, _ = _run_main(["init", "--path", str(self.config)])
        self.assertEqual(code, 0)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _fake_engine(self, outputs: dict[str, bytes]) -> list[str]:
        script = self.root / "fake_engine.py"
        script.write_text(_FAKE_ENGINE, encoding="utf-8")
        for name, data in outputs.items():
            (self.root / f"{name}.out").write_bytes(data)
        return [sys.executable, str(script), "{name}"]

    def test_dry_run_of_bundled_catalog_exits_zero(self) -> None:
        code, out, _ = _run_main(["run", "--config", str(self.config), "--dry-run", "--concurrency", "3"])
        self.assertEqual(code, 0)
        lines = out.strip().splitlines()
        self.assertEqual(lines[-1], "SUMMARY pass=7 mismatch=0 timeout=0 execution_error=0 total=7")
        self.assertEqual(lines[0].split()[0], "binary")

    def test_dry_run_json_output(self) -> None:
        code, out, _ = _run_main(["run", "--config", str(self.config), "--dry-run", "--json", "--filter", "layout"])
        self.assertEqual(code, 0)
        obj = json.loads(out)
        self.assertTrue(obj["ok"])
        self.assertEqual([v["probe"] for v in obj["verdicts"]], ["union_layout"])

    def test_engine_after_double_dash_all_pass(self) -> None:
        cat = _write_catalog(self.root)
        engine = self._fake_engine({"alpha": b"1 2 3\n", "beta": b"120\n"})
        with mock.patch.dict(os.environ, {"FAKE_ENGINE_DIR": str(self.root)}):
            code, out, _ = _run_main(["run", "--config", str(self.config), "--catalog", str(cat), "--", *engine])
        self.assertEqual(code, 0, out)

    def test_mismatch_exits_one_and_writes_json_out(self) -> None:
        cat = _write_catalog(self.root)
        engine = self._fake_engine({"alpha": b"1 2 3\n", "beta": b"121\n"})
        json_out = self.root / "report.json"
        with mock.patch.dict(os.environ, {"FAKE_ENGINE_DIR": str(self.root)}):
            code, out, _ = _run_main(
                ["run", "--config", str(self.config), "--catalog", str(cat), "--json-out", str(json_out), "--", *engine]
            )
        self.assertEqual(code, 1)
        self.assertIn("first difference at byte 2", out)
        obj = json.loads(json_out.read_text(encoding="utf-8"))
        self.assertEqual([v["outcome"] for v in obj["verdicts"]], ["pass", "mismatch"])

    def test_unwritable_json_out_exits_two_even_when_all_pass(self) -> None:
        blocker = self.root / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        code, out, err = _run_main(
            ["run", "--config", str(self.config), "--dry-run", "--json-out", str(blocker / "report.json")]
        )
        self.assertEqual(code, 2)
        self.assertIn("pass=7", out)
        self.assertIn("[run] harness error", err)

    def test_empty_selection_exits_two(self) -> None:
        code, _, err = _run_main(["run", "--config", str(self.config), "--dry-run", "--filter", "no-such-probe"])
        self.assertEqual(code, 2)
        self.assertIn("no probes match", err)

    def test_invalid_catalog_exits_two_before_running(self) -> None:
        cat = self.root / "broken"
        cat.mkdir()
        (cat / "catalog.json").write_text('{"catalog_version": "1.0.0", "probes": [{"name": "x"}]}', encoding="utf-8")
        code, out, err = _run_main(["run", "--config", str(self.config), "--catalog", str(cat), "--dry-run"])
        self.assertEqual(code, 2)
        self.assertEqual(out, "")
        self.assertIn("probes[0]", err)

    def test_invalid_config_exits_two(self) -> None:
        obj = json.loads(self.config.read_text(encoding="utf-8"))
        obj["engine"]["env"] = {"API_TOKEN": "abc"}
        bad = self.root / "bad.json"
        bad.write_text(json.dumps(obj), encoding="utf-8")
        code, _, err = _run_main(["run", "--config", str(bad), "--dry-run"])
        self.assertEqual(code, 2)
        self.assertIn("Secret-like key", err)

    def test_bad_engine_placeholder_exits_two(self) -> None:
        code, _, _ = _run_main(["run", "--config", str(self.config), "--engine", "interp {binary}"])
        self.assertEqual(code, 2)

    def test_init_refuses_to_overwrite(self) -> None:
        code, _, _ = _run_main(["init", "--path", str(self.config)])
        self.assertEqual(code, 2)
        code, _, _ = _run_main(["init", "--path", str(self.config), "--force"])
        self.assertEqual(code, 0)

    def test_list_and_show(self) -> None:
        code, out, _ = _run_main(["list", "--config", str(self.config), "--json"])
        self.assertEqual(code, 0)
        self.assertEqual(len(json.loads(out)), 7)

        code, out, _ = _run_main(["show", "fib_heavy", "--config", str(self.config)])
        self.assertEqual(code, 0)
        self.assertTrue(out.endswith("717296428\n"))

        code, out, _ = _run_main(["show", "int_wrap", "--source", "--config", str(self.config)])
        self.assertEqual(code, 0)
        self.assertIn("#include <stdio.h>", out)

        code, _, _ = _run_main(["show", "nope", "--config", str(self.config)])
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
