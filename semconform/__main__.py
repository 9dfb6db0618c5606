from __future__ import annotations

import argparse
import json
import shlex
import sys
from pathlib import Path

from semconform.config.harness_config import (
    CONFIG_FILENAME,
    HarnessConfig,
    InvalidHarnessConfig,
    resolve_config_path,
    write_harness_config,
)
from semconform.harness.harness import Harness
from semconform.oracle.comparator import Verdict
from semconform.registry.probes import InvalidProbeDefinition
from semconform.report.emitter import emit, to_json_obj, write_json_report

EXIT_OK = 0
EXIT_NON_PASS = 1
EXIT_HARNESS_ERROR = 2
EXIT_ABORTED = 130


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="semconform")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_sources(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--config",
            default=None,
            help=f"Harness config JSON (default: $SEMCONFORM_CONFIG, then ./{CONFIG_FILENAME}, then built-in defaults)",
        )
        p.add_argument("--catalog", default=None, help="Probe catalog directory (default: the bundled probes)")

    p_run = sub.add_parser("run", help="Run the selected probes against the engine and report verdicts")
    add_sources(p_run)
    p_run.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Worker count (default: config, else number of hardware threads)",
    )
    p_run.add_argument(
        "--filter",
        action="append",
        default=[],
        dest="filters",
        help="Select probes by category or name substring (repeatable)",
    )
    p_run.add_argument("--timeout", type=float, default=None, help="Per-probe time budget in seconds (overrides catalog)")
    p_run.add_argument(
        "--engine",
        default=None,
        help="Engine command line, e.g. '--engine \"./interp {source}\"'; may also be given after `--`",
    )
    p_run.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not launch an engine; replay the frozen transcripts (self-check of the catalog)",
    )
    p_run.add_argument("--json", action="store_true", help="Emit the result set as JSON to stdout")
    p_run.add_argument("--json-out", default=None, help="Also write the JSON result set to this path")
    p_run.add_argument("--artifacts-dir", default=None, help="Keep per-probe stdout/stderr/verdict under this directory")
    p_run.add_argument("--verbose", action="store_true", help="Progress lines on stderr")

    p_list = sub.add_parser("list", help="List probes in registry order")
    add_sources(p_list)
    p_list.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    p_show = sub.add_parser("show", help="Show one probe's definition and expected output")
    add_sources(p_show)
    p_show.add_argument("name")
    p_show.add_argument("--source", action="store_true", help="Print the C source instead of the expected output")

    p_init = sub.add_parser("init", help="Write a default harness config file")
    p_init.add_argument("--path", default=CONFIG_FILENAME, help=f"Destination (default: ./{CONFIG_FILENAME})")
    p_init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    p_api = sub.add_parser("api", help="Run the HTTP API (requires the [api] extra)")
    add_sources(p_api)
    p_api.add_argument("--host", default="127.0.0.1")
    p_api.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    engine_tail: list[str] = []
    if "--" in argv:
        i = argv.index("--")
        argv, engine_tail = argv[:i], argv[i + 1 :]
    args = _parse_args(argv)
    try:
        return _dispatch(args, engine_tail)
    except KeyboardInterrupt:
        print(f"[{args.cmd}] aborted", file=sys.stderr)
        return EXIT_ABORTED
    except Exception as e:
        # Anything unexpected is a harness fault, never a probe failure.
        print(f"[{args.cmd}] harness error: {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_HARNESS_ERROR


def _dispatch(args: argparse.Namespace, engine_tail: list[str]) -> int:
    if args.cmd == "init":
        path = Path(args.path).expanduser().resolve()
        try:
            write_harness_config(path, HarnessConfig.default(), overwrite=bool(args.force))
        except FileExistsError:
            print(f"[init] refusing to overwrite {path} (use --force)", file=sys.stderr)
            return EXIT_HARNESS_ERROR
        print(json.dumps({"ok": True, "config_path": str(path)}))
        return EXIT_OK

    try:
        harness = Harness.load(
            resolve_config_path(args.config, Path.cwd()),
            Path(args.catalog).expanduser().resolve() if args.catalog else None,
        )
    except (InvalidHarnessConfig, InvalidProbeDefinition) as e:
        print(f"[{args.cmd}] {e}", file=sys.stderr)
        return EXIT_HARNESS_ERROR

    if args.cmd == "list":
        probes = harness.registry.list_probes()
        if args.json:
            print(json.dumps([p.to_json_obj() for p in probes], indent=2))
        else:
            for p in probes:
                print(f"{p.name}\t{p.category}\t{p.source.name}\t{p.expected.describe()}")
        return EXIT_OK

    if args.cmd == "show":
        try:
            probe = harness.registry.get(args.name)
        except KeyError as e:
            print(f"[show] {e.args[0]}", file=sys.stderr)
            return EXIT_HARNESS_ERROR
        if args.source:
            sys.stdout.write(probe.source_text())
        else:
            print(json.dumps(probe.to_json_obj(), indent=2))
            sys.stdout.write(probe.expected_bytes().decode("utf-8", errors="backslashreplace"))
        return EXIT_OK

    if args.cmd == "api":
        from semconform.api.server import run_api_server

        run_api_server(harness=harness, host=str(args.host), port=int(args.port))
        return EXIT_OK

    return _cmd_run(args, harness, engine_tail)


def _cmd_run(args: argparse.Namespace, harness: Harness, engine_tail: list[str]) -> int:
    engine_override = engine_tail or (shlex.split(args.engine) if args.engine else None)
    if args.concurrency is not None and args.concurrency < 1:
        print("[run] --concurrency must be >= 1", file=sys.stderr)
        return EXIT_HARNESS_ERROR
    if args.timeout is not None and args.timeout <= 0:
        print("[run] --timeout must be > 0", file=sys.stderr)
        return EXIT_HARNESS_ERROR

    def progress(v: Verdict) -> None:
        print(f"[run] {v.probe_name} {v.outcome.value} ({v.duration_seconds:.2f}s)", file=sys.stderr)

    try:
        report = harness.run(
            args.filters,
            concurrency=args.concurrency,
            timeout_override_seconds=args.timeout,
            dry_run=bool(args.dry_run),
            engine_override=engine_override,
            artifacts_dir=Path(args.artifacts_dir).expanduser().resolve() if args.artifacts_dir else None,
            on_verdict=progress if args.verbose else None,
            verbose=bool(args.verbose),
        )
    except ValueError as e:
        # EmptySelection, InvalidHarnessConfig, or a malformed --engine placeholder.
        print(f"[run] {e}", file=sys.stderr)
        return EXIT_HARNESS_ERROR
    except KeyboardInterrupt:
        print("[run] aborted", file=sys.stderr)
        return EXIT_ABORTED

    if args.json:
        print(json.dumps(to_json_obj(report), indent=2, sort_keys=True))
    else:
        print(emit(report))
    if args.json_out:
        write_json_report(Path(args.json_out).expanduser().resolve(), report)

    if report.canceled:
        return EXIT_ABORTED
    return EXIT_OK if report.ok else EXIT_NON_PASS


if __name__ == "__main__":
    raise SystemExit(main())
