# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from .errors import ConfigError


# ---------------------------------------------------------------------
# Events & triggers
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


@dataclass(frozen=True)
class EventDescriptor:
    """The code event that may trigger a run (push to a branch, or a pull request)."""
    kind: EventKind
    branch: str | None = None

    def describe(self) -> str:
        if self.branch:
            return f"{self.kind.value} ({self.branch})"
        return self.kind.value

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "branch": self.branch}


@dataclass(frozen=True)
class TriggerRules:
    on_push_branches: Tuple[str, ...] = ()
    on_pull_request: bool = False


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CommandStep:
    """A single shell command inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    continue_on_error: bool = False
    timeout_seconds: float | None = None


CACHE_ACTIONS = ("restore", "save")


@dataclass(frozen=True)
class CacheStep:
    """
    Restore or save a set of workspace paths through the cache provider.

    The cache key is derived from the contents of `key_files` (lock files etc.),
    never from the step name, so a restore and a save declaring the same
    inputs agree on the key.
    """
    name: str
    action: str
    paths: Tuple[str, ...]
    key_files: Tuple[str, ...] = ()
    prefix: str = "gateci"
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        if self.action not in CACHE_ACTIONS:
            raise ConfigError(
                f"cache step action must be one of {list(CACHE_ACTIONS)}, got {self.action!r}",
                step=self.name,
            )
        if not self.paths:
            raise ConfigError("cache step must declare at least one path", step=self.name)


Step = Union[CommandStep, CacheStep]


@dataclass
class Job:
    """A linear CI job: an ordered list of steps plus the environment they run in."""
    name: str
    steps: List[Step]
    runs_on: str = "local"
    env: Dict[str, str] = field(default_factory=dict)
    requires: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("job name must not be empty")
        seen: set[str] = set()
        dupes: list[str] = []
        for s in self.steps:
            if s.name in seen:
                dupes.append(s.name)
            seen.add(s.name)
        if dupes:
            raise ConfigError(
                f"Duplicate step names found: {sorted(set(dupes))}",
                job=self.name,
            )


@dataclass(frozen=True)
class Toolchain:
    """Toolchain pinned by the pipeline (e.g. "stable"), installed before any step runs."""
    version: str
    install: str | None = None


@dataclass
class PipelineConfig:
    triggers: TriggerRules
    jobs: Dict[str, Job]
    env: Dict[str, str] = field(default_factory=dict)
    toolchain: Optional[Toolchain] = None


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class FailureKind(str, Enum):
    STEP_NON_ZERO_EXIT = "StepNonZeroExit"
    STEP_NOT_EXECUTABLE = "StepNotExecutable"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


# Sentinel exit codes for failures that never produced a real one.
TIMEOUT_EXIT_CODE = 124
NOT_EXECUTABLE_EXIT_CODE = 127
CANCELLED_EXIT_CODE = 130


@dataclass(frozen=True)
class StepResult:
    step: Step
    exit_code: int
    duration_ms: int
    stdout: bytes = b""
    stderr: bytes = b""
    failure: FailureKind | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def fatal(self) -> bool:
        """True if this result halts the pipeline."""
        return not self.ok and not self.step.continue_on_error

    def to_dict(self) -> dict:
        return {
            "name": self.step.name,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "failure": self.failure.value if self.failure else None,
            "continue_on_error": self.step.continue_on_error,
        }


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: bytes
    created_at: datetime


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.SKIPPED)


_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
}


@dataclass
class PipelineRun:
    event: EventDescriptor
    steps: List[Step]
    results: List[StepResult] = field(default_factory=list)
    status: RunStatus = RunStatus.PENDING

    def transition(self, new: RunStatus) -> None:
        if new not in _TRANSITIONS.get(self.status, set()):
            raise RuntimeError(f"illegal pipeline transition {self.status.value} -> {new.value}")
        self.status = new

    def record(self, result: StepResult) -> None:
        if self.status is not RunStatus.RUNNING:
            raise RuntimeError(f"cannot record a step result while {self.status.value}")
        idx = len(self.results)
        if idx >= len(self.steps) or self.steps[idx] is not result.step:
            raise RuntimeError(f"step {result.step.name!r} executed out of order")
        self.results.append(result)


# exit codes handed back to the calling system
EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.SKIPPED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 130,
}


@dataclass
class PipelineRunReport:
    """Final, machine-consumable outcome of one job run."""
    job: str
    status: RunStatus
    event: EventDescriptor
    results: List[StepResult] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[dict] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.status, 1)

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "status": self.status.value,
            "event": self.event.to_dict(),
            "duration_ms": self.duration_ms,
            "steps": [r.to_dict() for r in self.results],
            "error": self.error,
        }
