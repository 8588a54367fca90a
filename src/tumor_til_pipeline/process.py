"""Subprocess invocation.

The runtime and the orchestrator only describe *what* to run (an argv list,
an environment and a log file). `SubprocessRunner` is the only place that
starts processes.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

import typer

logger = logging.getLogger(__name__)

# Exit codes reported when a process could not be started or was killed for
# exceeding its time limit (same values as a POSIX shell / coreutils timeout).
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


class CommandRunner:
    """Interface for running external commands."""

    def check(  # pragma: no cover - interface
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run quietly and return the exit status."""
        raise NotImplementedError

    def stream(  # pragma: no cover - interface
        self,
        argv: Sequence[str],
        *,
        log_path: Path,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run, echoing combined output to the console and appending it to `log_path`."""
        raise NotImplementedError


class SubprocessRunner(CommandRunner):
    def __init__(self, echo: Callable[..., None] = typer.echo) -> None:
        self._echo = echo

    def check(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        logger.debug("check: %s", list(argv))
        try:
            result = subprocess.run(
                list(argv),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=timeout,
                env=dict(env) if env is not None else None,
            )
        except subprocess.TimeoutExpired:
            logger.debug("timed out after %ss: %s", timeout, argv[0])
            return EXIT_TIMEOUT
        except (FileNotFoundError, PermissionError):
            return EXIT_NOT_FOUND
        return result.returncode

    def stream(
        self,
        argv: Sequence[str],
        *,
        log_path: Path,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        logger.debug("stream: %s (log=%s)", list(argv), log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as log_fh:
            try:
                proc = subprocess.Popen(
                    list(argv),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                    bufsize=1,
                    env=dict(env) if env is not None else None,
                    start_new_session=True,
                )
            except (FileNotFoundError, PermissionError) as e:
                msg = f"could not start {argv[0]}: {e}\n"
                self._echo(msg, nl=False, err=True)
                log_fh.write(msg)
                return EXIT_NOT_FOUND

            timed_out = threading.Event()
            timer: Optional[threading.Timer] = None
            if timeout is not None:

                def _kill() -> None:
                    timed_out.set()
                    _kill_group(proc)

                timer = threading.Timer(timeout, _kill)
                timer.start()

            try:
                assert proc.stdout is not None
                for line in iter(proc.stdout.readline, ""):
                    self._echo(line, nl=False)
                    log_fh.write(line)
                    log_fh.flush()
                returncode = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()
                if proc.stdout is not None:
                    proc.stdout.close()

            if timed_out.is_set():
                msg = f"killed after exceeding the stage timeout of {timeout}s\n"
                self._echo(msg, nl=False, err=True)
                log_fh.write(msg)
                return EXIT_TIMEOUT
            return returncode


def _kill_group(proc: subprocess.Popen) -> None:
    # The stage runs in its own session; its children hold the stdout pipe too.
    if not hasattr(os, "killpg"):
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # already exited
