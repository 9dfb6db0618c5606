from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

SUPPORTED_CATALOG_MAJOR = 1

CATEGORIES: tuple[str, ...] = ("arithmetic", "memory", "control-flow", "layout", "mixed")


def default_catalog_dir() -> Path:
    return Path(__file__).resolve().parents[1] / "probes"


class InvalidProbeDefinition(ValueError):
    """Raised at registry load time; the harness must not run with a defective catalog."""


@dataclass(frozen=True)
class ExpectedTranscript:
    data: bytes
    origin: str | None = None

    def expected_bytes(self) -> bytes:
        return self.data

    def describe(self) -> str:
        return f"transcript ({len(self.data)} bytes)" + (f" from {self.origin}" if self.origin else "")


@dataclass(frozen=True)
class ExpectedValue:
    """Single decimal accumulator printed on its own line, e.g. `printf("%llu\\n", result)`."""

    value: int
    width_bits: int

    def expected_bytes(self) -> bytes:
        return f"{self.value}\n".encode("ascii")

    def describe(self) -> str:
        return f"value {self.value} (mod 2^{self.width_bits})"


@dataclass(frozen=True)
class Probe:
    name: str
    category: str
    source: Path
    expected: ExpectedTranscript | ExpectedValue
    timeout_seconds: float | None = None

    def expected_bytes(self) -> bytes:
        return self.expected.expected_bytes()

    def source_text(self) -> str:
        return self.source.read_text(encoding="utf-8")

    def to_json_obj(self) -> dict[str, Any]:
        exp = self.expected
        expected: dict[str, Any]
        if isinstance(exp, ExpectedValue):
            expected = {"value": exp.value, "width_bits": exp.width_bits}
        else:
            expected = {"transcript": exp.origin, "bytes": len(exp.data)}
        return {
            "name": self.name,
            "category": self.category,
            "source": self.source.name,
            "expected": expected,
            "timeout_seconds": self.timeout_seconds,
        }


class ProbeRegistry:
    """Read-only catalog; safe to share across worker threads once loaded."""

    def __init__(self, probes: Iterable[Probe], catalog_dir: Path | None = None) -> None:
        self._probes = tuple(probes)
        self._by_name = {p.name: p for p in self._probes}
        self.catalog_dir = catalog_dir

    def list_probes(self) -> tuple[Probe, ...]:
        return self._probes

    def get(self, name: str) -> Probe:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"unknown probe: {name}") from None

    def select(self, filters: Iterable[str] | None) -> tuple[Probe, ...]:
        wanted = [f.strip() for f in (filters or []) if isinstance(f, str) and f.strip()]
        if not wanted:
            return self._probes
        return tuple(p for p in self._probes if any(f == p.category or f in p.name for f in wanted))

    def __len__(self) -> int:
        return len(self._probes)


def load_registry(catalog_dir: Path | None = None) -> ProbeRegistry:
    catalog_dir = (catalog_dir or default_catalog_dir()).resolve()
    manifest_path = catalog_dir / "catalog.json"
    try:
        raw = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise InvalidProbeDefinition(f"catalog manifest missing: {manifest_path}") from None
    except json.JSONDecodeError as e:
        raise InvalidProbeDefinition(f"catalog manifest is not valid JSON: {manifest_path} ({e})") from e
    if not isinstance(raw, dict):
        raise InvalidProbeDefinition("catalog manifest must be a JSON object")

    major = _catalog_major(raw.get("catalog_version"))
    if major != SUPPORTED_CATALOG_MAJOR:
        raise InvalidProbeDefinition(
            f"unsupported catalog_version {raw.get('catalog_version')!r}; supported={SUPPORTED_CATALOG_MAJOR}.x"
        )

    entries = raw.get("probes")
    if not isinstance(entries, list) or not entries:
        raise InvalidProbeDefinition("probes[] is required and must be non-empty")

    probes: list[Probe] = []
    seen: set[str] = set()
    for i, ent in enumerate(entries):
        probe = _parse_probe(ent, catalog_dir, where=f"probes[{i}]")
        if probe.name in seen:
            raise InvalidProbeDefinition(f"probes[{i}]: duplicate probe name {probe.name!r}")
        seen.add(probe.name)
        probes.append(probe)
    return ProbeRegistry(probes, catalog_dir=catalog_dir)


def _parse_probe(ent: Any, catalog_dir: Path, *, where: str) -> Probe:
    if not isinstance(ent, dict):
        raise InvalidProbeDefinition(f"{where}: entry must be an object")
    name = ent.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InvalidProbeDefinition(f"{where}: name is required")
    name = name.strip()
    where = f"{where} ({name})"

    category = ent.get("category")
    if category not in CATEGORIES:
        raise InvalidProbeDefinition(f"{where}: category must be one of {', '.join(CATEGORIES)}; got {category!r}")

    src = ent.get("source")
    if not isinstance(src, str) or not src.strip():
        raise InvalidProbeDefinition(f"{where}: source is required")
    source = (catalog_dir / src).resolve()
    if not source.is_file():
        raise InvalidProbeDefinition(f"{where}: source not found: {source}")

    timeout = ent.get("timeout_seconds")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise InvalidProbeDefinition(f"{where}: timeout_seconds must be a positive number")
        timeout = float(timeout)

    expected = _parse_expected(ent.get("expected"), catalog_dir, where=where)
    return Probe(name=name, category=category, source=source, expected=expected, timeout_seconds=timeout)


def _parse_expected(obj: Any, catalog_dir: Path, *, where: str) -> ExpectedTranscript | ExpectedValue:
    if not isinstance(obj, dict):
        raise InvalidProbeDefinition(f"{where}: expected is required")
    kinds = [k for k in ("transcript", "text", "value") if k in obj]
    if len(kinds) != 1:
        raise InvalidProbeDefinition(f"{where}: expected must define exactly one of transcript|text|value")
    kind = kinds[0]

    if kind == "transcript":
        ref = obj["transcript"]
        if not isinstance(ref, str) or not ref.strip():
            raise InvalidProbeDefinition(f"{where}: expected.transcript must be a file name")
        path = (catalog_dir / ref).resolve()
        try:
            data = path.read_bytes()
        except OSError as e:
            raise InvalidProbeDefinition(f"{where}: cannot read transcript {path}: {e}") from e
        if not data:
            raise InvalidProbeDefinition(f"{where}: transcript {path} is empty")
        return ExpectedTranscript(data=data, origin=path.name)

    if kind == "text":
        text = obj["text"]
        if not isinstance(text, str) or not text:
            raise InvalidProbeDefinition(f"{where}: expected.text must be a non-empty string")
        return ExpectedTranscript(data=text.encode("utf-8"))

    value = obj["value"]
    width = obj.get("width_bits", 64)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidProbeDefinition(f"{where}: expected.value must be an integer")
    if isinstance(width, bool) or not isinstance(width, int) or width not in (8, 16, 32, 64):
        raise InvalidProbeDefinition(f"{where}: expected.width_bits must be one of 8, 16, 32, 64")
    if not 0 <= value < (1 << width):
        raise InvalidProbeDefinition(f"{where}: expected.value {value} does not fit in {width} unsigned bits")
    return ExpectedValue(value=value, width_bits=width)


def _catalog_major(version: Any) -> int | None:
    # "1", "1.0" and "1.0.0" all name major 1.
    if not isinstance(version, str) or not version.strip():
        return None
    try:
        return int(version.strip().split(".", 1)[0])
    except ValueError:
        return None
