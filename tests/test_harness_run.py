from __future__ import annotations

import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from semconform.adapter.base import ReplayAdapter
from semconform.adapter.subprocess_adapter import SubprocessAdapter
from semconform.config.harness_config import HarnessConfig
from semconform.harness.harness import EmptySelection, Harness
from semconform.oracle.comparator import Outcome
from semconform.registry.probes import load_registry

_FAKE_ENGINE = r"""
import os, sys, time
from pathlib import Path

name = Path(sys.argv[1]).stem
d = Path(os.environ["FAKE_ENGINE_DIR"])
sys.stdout.write(name + "\n")
sys.stdout.flush()
if (d / (name + ".sleep")).exists():
    time.sleep(30)
"""


def _catalog(root: Path, names: list[str]) -> Path:
    cat = root / "catalog"
    cat.mkdir()
    probes = []
    for n in names:
        (cat / f"{n}.c").write_text("int main() { return 0; }\n", encoding="utf-8")
        probes.append({"name": n, "category": "control-flow", "source": f"{n}.c", "expected": {"text": f"{n}\n"}})
    (cat / "catalog.json").write_text(json.dumps({"catalog_version": "1", "probes": probes}), encoding="utf-8")
    return cat


class HarnessRunTests(unittest.TestCase):
    def test_adapter_choice(self) -> None:
        h = Harness(config=HarnessConfig.default(), registry=load_registry())
        self.assertIsInstance(h.make_adapter(dry_run=True), ReplayAdapter)
        self.assertIsInstance(h.make_adapter(), SubprocessAdapter)

    def test_empty_selection_raises(self) -> None:
        h = Harness(config=HarnessConfig.default(), registry=load_registry())
        with self.assertRaises(EmptySelection):
            h.run(["zzz"], dry_run=True)

    def test_hung_probe_times_out_without_affecting_others(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            cat = _catalog(root, ["first", "hang", "last"])
            script = root / "fake_engine.py"
            script.write_text(_FAKE_ENGINE, encoding="utf-8")
            (root / "hang.sleep").write_text("")
            h = Harness(config=HarnessConfig.default(), registry=load_registry(cat))
            with mock.patch.dict(os.environ, {"FAKE_ENGINE_DIR": str(root)}):
                # No placeholder: the unit path (here the source) is appended.
                report = h.run(
                    concurrency=3,
                    timeout_override_seconds=1.0,
                    engine_override=[sys.executable, str(script)],
                )
            self.assertEqual([v.outcome for v in report.verdicts], [Outcome.PASS, Outcome.TIMEOUT, Outcome.PASS])
            self.assertIn("exceeded budget", report.verdicts[1].detail or "")


if __name__ == "__main__":
    unittest.main()
