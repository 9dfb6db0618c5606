from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import IO

from semconform.core.time import monotonic_seconds

_READ_CHUNK = 64 * 1024


@dataclass(frozen=True)
class ProcessOutcome:
    stdout: bytes
    stderr: bytes
    returncode: int | None
    timed_out: bool = False
    canceled: bool = False
    launch_error: str | None = None


def run_bounded(
    argv: list[str],
    *,
    deadline: float | None,
    cancel: threading.Event | None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    grace_seconds: float = 1.0,
    poll_seconds: float = 0.05,
) -> ProcessOutcome:
    """
    Run argv to completion, the deadline (monotonic seconds) or cancellation,
    whichever comes first.

    The child gets its own session so the whole process group can be killed.
    stdout/stderr are drained by threads as they are produced, so whatever the
    child wrote before being killed is still returned.
    """
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            cwd=cwd,
            start_new_session=True,
        )
    except OSError as e:
        return ProcessOutcome(stdout=b"", stderr=b"", returncode=None, launch_error=f"failed to launch {argv[0]!r}: {e}")

    out = bytearray()
    err = bytearray()
    assert proc.stdout is not None and proc.stderr is not None
    drains = [
        threading.Thread(target=_drain, args=(proc.stdout, out), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err), daemon=True),
    ]
    for t in drains:
        t.start()

    timed_out = False
    canceled = False
    try:
        while True:
            try:
                proc.wait(timeout=poll_seconds)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                canceled = True
                break
            if deadline is not None and monotonic_seconds() >= deadline:
                timed_out = True
                break
    finally:
        if proc.poll() is None:
            kill_process_group(proc, grace_seconds=grace_seconds)
        # Anything the engine left running in its session may still hold the pipes.
        _kill_session(proc.pid)
        for stream, t in zip((proc.stdout, proc.stderr), drains):
            # A grandchild that left the process group may still hold the pipe open.
            t.join(timeout=2.0)
            if not t.is_alive():
                stream.close()

    returncode = None if (timed_out or canceled) else proc.returncode
    return ProcessOutcome(
        stdout=bytes(out),
        stderr=bytes(err),
        returncode=returncode,
        timed_out=timed_out,
        canceled=canceled,
    )


def kill_process_group(proc: subprocess.Popen, grace_seconds: float) -> None:
    # start_new_session=True makes the pid the process group id too.
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.terminate()
    try:
        proc.wait(timeout=max(0.0, grace_seconds))
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
    proc.wait()


def _drain(stream: IO[bytes], sink: bytearray) -> None:
    try:
        while True:
            chunk = stream.read1(_READ_CHUNK)  # type: ignore[attr-defined]
            if not chunk:
                return
            sink.extend(chunk)
    except (OSError, ValueError):
        # Pipe closed underneath us after the process group was killed.
        return


def _kill_session(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
