# steps.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from .cache import CacheProvider, compute_cache_key, pack_paths, safe_get, safe_put, unpack_archive
from .model import (
    CANCELLED_EXIT_CODE,
    NOT_EXECUTABLE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CacheStep,
    CommandStep,
    FailureKind,
    Step,
    StepResult,
)

logger = logging.getLogger(__name__)

# POSIX shells report "found but not executable" / "not found" with these
SHELL_NOT_EXECUTABLE_CODES = (126, 127)

# how often a running command is checked for timeout / cancellation
POLL_INTERVAL = 0.1


@dataclass
class StepContext:
    """
    Everything a step sees while executing: the shared workspace, the
    explicit process environment of this run, the cache, and the
    cancellation signal. One context per run; steps mutate the workspace
    in place and later steps observe it.
    """
    root: Path
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheProvider] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    cache_salt: Dict[str, str] = field(default_factory=dict)
    restored_keys: Set[str] = field(default_factory=set)

    def process_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        return env

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _kill(proc: subprocess.Popen) -> None:
    # the command runs in its own session, so take the whole process group down
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def run_command(step: CommandStep, context: StepContext) -> StepResult:
    start = time.monotonic()
    cwd = (context.root / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        return StepResult(
            step=step,
            exit_code=NOT_EXECUTABLE_EXIT_CODE,
            duration_ms=_elapsed_ms(start),
            stderr=f"working directory not found: {cwd}".encode(),
            failure=FailureKind.STEP_NOT_EXECUTABLE,
        )

    try:
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=context.process_env(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        return StepResult(
            step=step,
            exit_code=NOT_EXECUTABLE_EXIT_CODE,
            duration_ms=_elapsed_ms(start),
            stderr=str(e).encode(),
            failure=FailureKind.STEP_NOT_EXECUTABLE,
        )

    deadline = start + step.timeout_seconds if step.timeout_seconds else None
    stop: Optional[FailureKind] = None
    while True:
        try:
            # communicate() may be retried after TimeoutExpired without losing output
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if context.cancelled:
                stop = FailureKind.CANCELLED
            elif deadline is not None and time.monotonic() >= deadline:
                stop = FailureKind.TIMEOUT
            if stop is not None:
                _kill(proc)
                stdout, stderr = proc.communicate()
                break

    duration = _elapsed_ms(start)
    stdout, stderr = stdout or b"", stderr or b""

    if stop is FailureKind.TIMEOUT:
        logger.debug("step %r timed out after %ss", step.name, step.timeout_seconds)
        return StepResult(step, TIMEOUT_EXIT_CODE, duration, stdout, stderr, FailureKind.TIMEOUT)
    if stop is FailureKind.CANCELLED:
        return StepResult(step, CANCELLED_EXIT_CODE, duration, stdout, stderr, FailureKind.CANCELLED)

    code = proc.returncode
    if code == 0:
        return StepResult(step, 0, duration, stdout, stderr)
    if code in SHELL_NOT_EXECUTABLE_CODES:
        return StepResult(step, code, duration, stdout, stderr, FailureKind.STEP_NOT_EXECUTABLE)
    if code < 0:
        # killed by a signal from outside
        code = 128 - code
    return StepResult(step, code, duration, stdout, stderr, FailureKind.STEP_NON_ZERO_EXIT)


def _cache_key(step: CacheStep, context: StepContext) -> str:
    return compute_cache_key(
        context.root,
        paths=step.paths,
        key_files=step.key_files,
        prefix=step.prefix,
        salt=context.cache_salt,
    )


def run_cache(step: CacheStep, context: StepContext) -> StepResult:
    """
    Restore or save cached paths. Cache trouble never fails the step:
    a missing provider, a miss, or a backend failure all report exit 0.
    """
    start = time.monotonic()
    if context.cache is None:
        return StepResult(step, 0, _elapsed_ms(start), b"cache disabled\n")

    try:
        key = _cache_key(step, context)
    except (OSError, ValueError) as e:
        logger.warning("cache key for %r could not be computed: %s", step.name, e)
        return StepResult(step, 0, _elapsed_ms(start), f"cache unavailable, skipped: {e}\n".encode())

    if step.action == "restore":
        blob = safe_get(context.cache, key)
        if blob is None:
            return StepResult(step, 0, _elapsed_ms(start), f"cache miss: {key}\n".encode())
        try:
            count = unpack_archive(context.root, blob)
        except (OSError, ValueError, EOFError, tarfile.TarError) as e:
            logger.warning("cache entry %s could not be restored: %s", key, e)
            return StepResult(step, 0, _elapsed_ms(start), f"cache miss (unreadable entry): {key}\n".encode())
        context.restored_keys.add(key)
        return StepResult(step, 0, _elapsed_ms(start), f"cache hit: {key} ({count} entries)\n".encode())

    # save
    if key in context.restored_keys:
        return StepResult(step, 0, _elapsed_ms(start), f"cache hit occurred on {key}, not saving\n".encode())
    try:
        blob = pack_paths(context.root, step.paths)
    except (OSError, ValueError, tarfile.TarError) as e:
        logger.warning("cache paths for %s could not be archived: %s", key, e)
        return StepResult(step, 0, _elapsed_ms(start), f"cache unavailable, not saved: {key}\n".encode())
    if blob is None:
        return StepResult(step, 0, _elapsed_ms(start), b"nothing to cache: no declared path exists\n")
    if safe_put(context.cache, key, blob):
        return StepResult(step, 0, _elapsed_ms(start), f"cache saved: {key} ({len(blob)} bytes)\n".encode())
    return StepResult(step, 0, _elapsed_ms(start), f"cache unavailable, not saved: {key}\n".encode())


def execute(step: Step, context: StepContext) -> StepResult:
    """Run one step against the shared workspace and return its result."""
    if isinstance(step, CommandStep):
        return run_command(step, context)
    if isinstance(step, CacheStep):
        return run_cache(step, context)
    raise TypeError(f"unknown step type: {type(step).__name__}")
