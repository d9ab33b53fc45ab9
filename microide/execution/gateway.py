from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import tempfile
import threading
from dataclasses import dataclass

from microide.config import IdeConfig
from microide.execution.process import ProcessOutcome, run_limited

logger = logging.getLogger(__name__)


class InvalidExecutionRequest(ValueError):
    """Missing or malformed execution request fields."""


class UnsupportedLanguage(ValueError):
    pass


NODE = "node"
PYTHON = "python"
SHELL = "shell"

_LANGUAGE_ALIASES = {
    "node": NODE,
    "javascript": NODE,
    "js": NODE,
    "python": PYTHON,
    "python3": PYTHON,
    "py": PYTHON,
    "bash": SHELL,
    "sh": SHELL,
    "shell": SHELL,
}


def canonical_language(language: str) -> str:
    key = (language or "").strip().lower()
    lang = _LANGUAGE_ALIASES.get(key)
    if lang is None:
        raise UnsupportedLanguage(f"unsupported language: {language!r}")
    return lang


@dataclass(frozen=True)
class ExecutionResult:
    stdout: bytes
    stderr: bytes
    exit_code: int | None
    timed_out: bool = False


def _failure_diagnostic(outcome: ProcessOutcome, *, timeout_s: float) -> str | None:
    if outcome.timed_out:
        return f"Execution timed out after {timeout_s:g}s and was killed"
    if outcome.cancelled:
        return "Execution cancelled"
    rc = outcome.returncode
    if rc is None or rc == 0:
        return None
    if rc < 0:
        try:
            name = signal.Signals(-rc).name
        except ValueError:
            name = str(-rc)
        return f"Process terminated by signal {name}"
    return f"Process exited with code {rc}"


class ExecutionGateway:
    """Run source snippets in an external interpreter.

    Interpreter-level failures (non-zero exit, signal, timeout, missing
    interpreter binary) never raise; their diagnostic is put ahead of the
    captured stderr. Only a bad request or an unknown language raises.
    """

    def __init__(
        self,
        *,
        workspace_root: str,
        timeout_s: float = 10.0,
        isolated: bool = False,
        max_output_bytes: int = 0,
        node_bin: str = "node",
        python_bin: str = "python3",
        shell_bin: str = "/bin/sh",
    ) -> None:
        self._root = workspace_root
        self._timeout_s = float(timeout_s)
        self._isolated = isolated
        self._max_output_bytes = max_output_bytes
        self._commands = {
            NODE: (node_bin, "-e"),
            PYTHON: (python_bin, "-c"),
            SHELL: (shell_bin, "-c"),
        }

    @classmethod
    def from_config(cls, config: IdeConfig) -> ExecutionGateway:
        return cls(
            workspace_root=config.workspace_root,
            timeout_s=config.exec_timeout_s,
            isolated=config.exec_isolated,
            max_output_bytes=config.exec_max_output_bytes,
            node_bin=config.node_bin,
            python_bin=config.python_bin,
            shell_bin=config.shell_bin,
        )

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    def build_argv(self, language: str, source: str) -> list[str]:
        # Source is always a single argv element; only the shell parses it.
        return [*self._commands[canonical_language(language)], source]

    def _run_sync(self, argv: list[str], cancel: threading.Event) -> ExecutionResult:
        workdir = self._root
        private_dir: str | None = None
        if self._isolated:
            private_dir = tempfile.mkdtemp(prefix="microide-run-")
            workdir = private_dir
        try:
            try:
                outcome = run_limited(
                    argv,
                    cwd=workdir,
                    timeout_s=self._timeout_s,
                    max_output_bytes=self._max_output_bytes,
                    cancel=cancel,
                )
            except OSError as exc:
                logger.warning("Failed to start interpreter %s: %s", argv[0], exc)
                return ExecutionResult(
                    stdout=b"",
                    stderr=f"Failed to start interpreter: {exc}\n".encode(),
                    exit_code=None,
                )
        finally:
            if private_dir is not None:
                shutil.rmtree(private_dir, ignore_errors=True)

        stderr = outcome.stderr
        diag = _failure_diagnostic(outcome, timeout_s=self._timeout_s)
        if diag:
            stderr = (diag + "\n").encode() + stderr
        if outcome.timed_out:
            logger.warning(
                "Execution of %s timed out after %.1fs", argv[0], outcome.duration_s
            )
        logger.info(
            "Execution finished: bin=%s exit_code=%s timed_out=%s cancelled=%s "
            "duration=%.2fs",
            argv[0],
            outcome.returncode,
            outcome.timed_out,
            outcome.cancelled,
            outcome.duration_s,
        )
        return ExecutionResult(
            stdout=outcome.stdout,
            stderr=stderr,
            exit_code=outcome.returncode,
            timed_out=outcome.timed_out,
        )

    async def execute(self, language: str, source: str) -> ExecutionResult:
        if not language or not source:
            raise InvalidExecutionRequest("language and code required")
        if "\x00" in source:
            raise InvalidExecutionRequest("code must not contain NUL bytes")
        argv = self.build_argv(language, source)
        logger.info(
            "Executing %s snippet (%d chars)", canonical_language(language), len(source)
        )

        cancel = threading.Event()
        try:
            return await asyncio.to_thread(self._run_sync, argv, cancel)
        except asyncio.CancelledError:
            # The worker thread notices the flag, kills the child and cleans up.
            cancel.set()
            logger.warning("Execution cancelled; killing %s", argv[0])
            raise
