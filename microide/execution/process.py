from __future__ import annotations

import contextlib
import os
import selectors
import signal
import subprocess
import threading
import time
from dataclasses import dataclass

_TRUNCATED_MARKER = b"\n<output truncated>"
_KILL_GRACE_S = 1.0
_DRAIN_AFTER_KILL_S = 1.0
_POLL_INTERVAL_S = 0.2


@dataclass(frozen=True)
class ProcessOutcome:
    stdout: bytes
    stderr: bytes
    returncode: int | None
    timed_out: bool = False
    cancelled: bool = False
    duration_s: float = 0.0


class _Capture:
    def __init__(self, max_bytes: int) -> None:
        self.buf = bytearray()
        self.truncated = False
        self._max = max_bytes

    def feed(self, chunk: bytes) -> None:
        if not self._max:
            self.buf.extend(chunk)
            return
        if len(self.buf) >= self._max:
            self.truncated = True
            return
        take = min(len(chunk), self._max - len(self.buf))
        self.buf.extend(chunk[:take])
        if take < len(chunk):
            self.truncated = True

    def value(self) -> bytes:
        data = bytes(self.buf)
        return data + _TRUNCATED_MARKER if self.truncated else data


def kill_process_tree(proc: subprocess.Popen[bytes]) -> None:
    # `start_new_session=True` makes proc.pid the process group id on Linux.
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except OSError:
        with contextlib.suppress(OSError):
            proc.terminate()
    try:
        proc.wait(timeout=_KILL_GRACE_S)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        with contextlib.suppress(OSError):
            proc.kill()


def _drain(
    sel: selectors.BaseSelector,
    captures: dict[str, _Capture],
    *,
    timeout_s: float,
) -> None:
    deadline = time.monotonic() + timeout_s
    while sel.get_map():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        for key, _ in sel.select(timeout=min(_POLL_INTERVAL_S, remaining)):
            _read_ready(sel, key, captures)


def _read_ready(
    sel: selectors.BaseSelector,
    key: selectors.SelectorKey,
    captures: dict[str, _Capture],
) -> None:
    stream = key.fileobj
    try:
        chunk = os.read(stream.fileno(), 65536)  # type: ignore[union-attr]
    except OSError:
        chunk = b""
    if not chunk:
        sel.unregister(stream)
        with contextlib.suppress(OSError):
            stream.close()  # type: ignore[union-attr]
        return
    captures[key.data].feed(chunk)


def run_limited(
    args: list[str],
    *,
    cwd: str,
    timeout_s: float,
    max_output_bytes: int = 0,
    cancel: threading.Event | None = None,
    env: dict[str, str] | None = None,
) -> ProcessOutcome:
    """Run ``args`` without a shell and capture stdout/stderr separately.

    The child runs in its own session so that the whole process group can be
    killed when ``timeout_s`` elapses or ``cancel`` is set. Pipes are drained
    for a bounded time after a kill so no output that was already written is
    lost. ``max_output_bytes`` of 0 means no cap.

    Raises ``OSError`` if the process cannot be started at all.
    """
    started = time.monotonic()
    proc: subprocess.Popen[bytes] = subprocess.Popen(
        args,
        cwd=cwd,
        env=env if env is not None else os.environ.copy(),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    assert proc.stdout is not None
    assert proc.stderr is not None

    captures = {
        "stdout": _Capture(max_output_bytes),
        "stderr": _Capture(max_output_bytes),
    }
    timed_out = False
    cancelled = False

    with selectors.DefaultSelector() as sel:
        sel.register(proc.stdout, selectors.EVENT_READ, data="stdout")
        sel.register(proc.stderr, selectors.EVENT_READ, data="stderr")

        deadline = started + float(timeout_s)
        while sel.get_map():
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            for key, _ in sel.select(timeout=min(_POLL_INTERVAL_S, remaining)):
                _read_ready(sel, key, captures)

        if timed_out or cancelled:
            kill_process_tree(proc)
            _drain(sel, captures, timeout_s=_DRAIN_AFTER_KILL_S)
            for key in list(sel.get_map().values()):
                sel.unregister(key.fileobj)
                with contextlib.suppress(OSError):
                    key.fileobj.close()  # type: ignore[union-attr]

    rc: int | None = None
    if not (timed_out or cancelled):
        # Pipes hit EOF, but the child may have closed them and kept running.
        try:
            rc = proc.wait(timeout=max(_POLL_INTERVAL_S, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            timed_out = True
            kill_process_tree(proc)
    with contextlib.suppress(subprocess.TimeoutExpired):
        proc.wait(timeout=_KILL_GRACE_S)

    return ProcessOutcome(
        stdout=captures["stdout"].value(),
        stderr=captures["stderr"].value(),
        returncode=rc,
        timed_out=timed_out,
        cancelled=cancelled,
        duration_s=time.monotonic() - started,
    )
