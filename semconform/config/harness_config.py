from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from semconform.adapter.subprocess_adapter import EngineSpec, TemplateError
from semconform.core.atomic_io import write_atomic_json, write_once_json
from semconform.core.ids import new_config_version
from semconform.core.time import utc_isoformat

CONFIG_FILENAME = "semconform.json"
CONFIG_ENV_VAR = "SEMCONFORM_CONFIG"

_SECRET_KEY_RE = re.compile(r"(secret|token|api[_-]?key|private[_-]?key|password)", re.IGNORECASE)


class InvalidHarnessConfig(ValueError):
    pass


def _deny_secrets(obj: Any, path: str = "$") -> list[str]:
    problems: list[str] = []
    if isinstance(obj, dict):
        for k, v in obj.items():
            kp = f"{path}.{k}"
            if isinstance(k, str) and _SECRET_KEY_RE.search(k):
                problems.append(f"Secret-like key not allowed in harness config: {kp}")
            problems.extend(_deny_secrets(v, kp))
    elif isinstance(obj, list):
        for i, v in enumerate(obj):
            problems.extend(_deny_secrets(v, f"{path}[{i}]"))
    elif isinstance(obj, str):
        if "-----BEGIN" in obj and "PRIVATE KEY-----" in obj:
            problems.append(f"Private key material not allowed in harness config at {path}")
    return problems


@dataclass(frozen=True)
class HarnessConfig:
    config_version: str
    written_at: str
    engine: dict[str, Any]
    defaults: dict[str, Any]
    interfaces: dict[str, Any]
    catalog_dir: str | None = None

    @staticmethod
    def default(config_version: str | None = None) -> "HarnessConfig":
        return HarnessConfig(
            config_version=config_version or new_config_version(),
            written_at=utc_isoformat(),
            # Same toolchain and emulator the frozen transcripts were recorded with.
            engine={
                "command": ["qemu-riscv32", "{unit}"],
                "build": ["riscv32-unknown-elf-gcc", "-march=rv32im", "-mabi=ilp32", "-o", "{unit}", "{source}"],
                "env": {},
                "grace_seconds": 1.0,
            },
            defaults={
                "timeouts": {"probe_timeout_seconds": 30},
                # null: number of available hardware threads.
                "concurrency": None,
                "report": {"context_bytes": 40},
            },
            interfaces={"api_mode": {"enabled": False, "auth_mode": "local_trust"}},
        )

    @staticmethod
    def from_json_obj(obj: Any) -> "HarnessConfig":
        errors = validate_harness_config(obj)
        if errors:
            raise InvalidHarnessConfig("Invalid harness config:\n" + "\n".join(errors))
        return HarnessConfig(
            config_version=obj["config_version"],
            written_at=obj.get("written_at") or utc_isoformat(),
            engine=dict(obj["engine"]),
            defaults=dict(obj.get("defaults") or {}),
            interfaces=dict(obj.get("interfaces") or {}),
            catalog_dir=obj.get("catalog_dir"),
        )

    def to_json_obj(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "config_version": self.config_version,
            "written_at": self.written_at,
            "engine": self.engine,
            "defaults": self.defaults,
            "interfaces": self.interfaces,
        }
        if self.catalog_dir is not None:
            out["catalog_dir"] = self.catalog_dir
        return out

    def engine_spec(self) -> EngineSpec:
        try:
            return EngineSpec.from_json_obj(self.engine)
        except TemplateError as e:
            raise InvalidHarnessConfig(str(e)) from e

    def probe_timeout_seconds(self) -> float | None:
        t = (self.defaults.get("timeouts") or {}).get("probe_timeout_seconds")
        return float(t) if t is not None else None

    def concurrency(self) -> int:
        c = self.defaults.get("concurrency")
        if c is None:
            return default_concurrency()
        return int(c)

    def context_bytes(self) -> int:
        return int((self.defaults.get("report") or {}).get("context_bytes", 40))

    def api_mode(self) -> dict[str, Any]:
        return dict((self.interfaces or {}).get("api_mode") or {})


def default_concurrency() -> int:
    try:
        return max(1, len(os.sched_getaffinity(0)))
    except AttributeError:
        return max(1, os.cpu_count() or 1)


def validate_harness_config(obj: Any) -> list[str]:
    if not isinstance(obj, dict):
        return ["harness config must be a JSON object"]
    errors: list[str] = []
    if not isinstance(obj.get("config_version"), str) or not obj["config_version"]:
        errors.append("config_version is required")

    engine = obj.get("engine")
    if not isinstance(engine, dict):
        errors.append("engine is required (object)")
    else:
        try:
            EngineSpec.from_json_obj(engine)
        except TemplateError as e:
            errors.append(str(e))

    defaults = obj.get("defaults") or {}
    if not isinstance(defaults, dict):
        errors.append("defaults must be an object")
        defaults = {}
    timeout = (defaults.get("timeouts") or {}).get("probe_timeout_seconds")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        errors.append("defaults.timeouts.probe_timeout_seconds must be a positive number or null")
    conc = defaults.get("concurrency")
    if conc is not None and (isinstance(conc, bool) or not isinstance(conc, int) or conc < 1):
        errors.append("defaults.concurrency must be an integer >= 1 or null")
    ctx = (defaults.get("report") or {}).get("context_bytes", 40)
    if isinstance(ctx, bool) or not isinstance(ctx, int) or ctx < 0:
        errors.append("defaults.report.context_bytes must be an integer >= 0")

    catalog_dir = obj.get("catalog_dir")
    if catalog_dir is not None and (not isinstance(catalog_dir, str) or not catalog_dir.strip()):
        errors.append("catalog_dir must be a non-empty string when provided")

    errors.extend(_deny_secrets(obj))
    return errors


def resolve_config_path(explicit: str | None, cwd: Path) -> Path | None:
    if explicit:
        return Path(explicit).expanduser().resolve()
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env).expanduser().resolve()
    candidate = cwd / CONFIG_FILENAME
    return candidate.resolve() if candidate.exists() else None


def load_harness_config(path: Path | None) -> HarnessConfig:
    """Load config from `path`; no path means built-in defaults."""
    if path is None:
        return HarnessConfig.default(config_version="builtin")
    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise InvalidHarnessConfig(f"harness config not found: {path}") from None
    except json.JSONDecodeError as e:
        raise InvalidHarnessConfig(f"harness config is not valid JSON: {path} ({e})") from e
    cfg = HarnessConfig.from_json_obj(obj)
    if cfg.catalog_dir is not None and not Path(cfg.catalog_dir).is_absolute():
        # Relative catalog paths are anchored at the config file's directory.
        cfg = replace(cfg, catalog_dir=str((path.parent / cfg.catalog_dir).resolve()))
    return cfg


def write_harness_config(path: Path, cfg: HarnessConfig, *, overwrite: bool = False) -> None:
    obj = cfg.to_json_obj()
    errors = validate_harness_config(obj)
    if errors:
        raise InvalidHarnessConfig("Invalid harness config:\n" + "\n".join(errors))
    if overwrite:
        write_atomic_json(path, obj)
    else:
        write_once_json(path, obj)
