from __future__ import annotations

from pathlib import Path
from typing import Any

from semconform.core.atomic_io import write_atomic_json
from semconform.oracle.comparator import Divergence, Outcome, Verdict
from semconform.runner.batch import RunReport

_LABEL_EXPECTED = "      expected: "
_LABEL_ACTUAL = "      actual:   "


def emit(report: RunReport) -> str:
    """
    Human-readable summary: one line per probe in registry order, diagnostics
    indented under failures, then one aggregate line.

    Field order is fixed and no timestamps or ids are printed, so the text of
    two runs with the same verdicts is identical.
    """
    name_w = max([len(v.probe_name) for v in report.verdicts] + [4])
    cat_w = max([len(v.category) for v in report.verdicts] + [8])
    lines: list[str] = []
    for v in report.verdicts:
        lines.append(f"{v.probe_name.ljust(name_w)}  {v.category.ljust(cat_w)}  {v.outcome.value.upper()}")
        if v.outcome is Outcome.PASS:
            continue
        lines.extend(_diagnostics(v))
    counts = report.counts()
    summary = " ".join(f"{o.value}={counts[o.value]}" for o in Outcome)
    lines.append(f"SUMMARY {summary} total={len(report.verdicts)}" + (" (canceled)" if report.canceled else ""))
    return "\n".join(lines)


def to_json_obj(report: RunReport) -> dict[str, Any]:
    return report.to_json_obj()


def write_json_report(path: Path, report: RunReport) -> None:
    write_atomic_json(path, to_json_obj(report))


def _diagnostics(v: Verdict) -> list[str]:
    out: list[str] = []
    if v.divergence is not None:
        out.extend(_divergence_lines(v.divergence))
    if v.detail:
        out.append(f"    {v.detail}")
    return out


def _divergence_lines(d: Divergence) -> list[str]:
    prefix = render_bytes(d.expected_context[: d.offset - d.window_start])
    caret = " " * (len(_LABEL_EXPECTED) + 1 + len(prefix)) + "^"
    return [
        f"    first difference at byte {d.offset} (expected {d.expected_length} bytes, got {d.actual_length} bytes)",
        f'{_LABEL_EXPECTED}"{render_bytes(d.expected_context)}"',
        f'{_LABEL_ACTUAL}"{render_bytes(d.actual_context)}"',
        caret,
    ]


def render_bytes(data: bytes) -> str:
    """Single-line rendering of captured output; non-printable bytes are escaped."""
    out: list[str] = []
    for b in data:
        if b in _ESCAPES:
            out.append(_ESCAPES[b])
        elif 0x20 <= b < 0x7F:
            out.append(chr(b))
        else:
            out.append(f"\\x{b:02x}")
    return "".join(out)


_ESCAPES = {0x0A: "\\n", 0x0D: "\\r", 0x09: "\\t", 0x5C: "\\\\", 0x22: '\\"'}
