# src/gateci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .errors import ConfigError
from .model import CacheStep, CommandStep, Job, PipelineConfig, Step, Toolchain, TriggerRules


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> CommandStep:
    """Create a shell step."""
    return CommandStep(name=name, run=cmd, cwd=cwd, continue_on_error=continue_on_error, timeout_seconds=timeout)


def restore_cache(
    name: str,
    *,
    paths: Iterable[str],
    key_files: Iterable[str] = (),
    prefix: str = "gateci",
    continue_on_error: bool = False,
) -> CacheStep:
    return CacheStep(
        name=name,
        action="restore",
        paths=tuple(paths),
        key_files=tuple(key_files),
        prefix=prefix,
        continue_on_error=continue_on_error,
    )


def save_cache(
    name: str,
    *,
    paths: Iterable[str],
    key_files: Iterable[str] = (),
    prefix: str = "gateci",
    continue_on_error: bool = False,
) -> CacheStep:
    return CacheStep(
        name=name,
        action="save",
        paths=tuple(paths),
        key_files=tuple(key_files),
        prefix=prefix,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Job / pipeline helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    runs_on: str = "local",
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> Job:
    steps_final: List[Step] = list(steps)
    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, CommandStep) and s.cwd is None else s
            for s in steps_final
        ]
    return Job(
        name=name,
        steps=steps_final,
        runs_on=runs_on,
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
    )


def triggers(*, branches: Iterable[str] = (), pull_request: bool = False) -> TriggerRules:
    return TriggerRules(on_push_branches=tuple(branches), on_pull_request=pull_request)


def pipeline(
    *jobs: Job,
    on: Optional[TriggerRules] = None,
    env: Optional[Dict[str, str]] = None,
    toolchain: str | Toolchain | None = None,
) -> PipelineConfig:
    """
    Workflow definition helper.

        from gateci.dsl import pipeline, job, sh, triggers

        def workflow():
            return pipeline(
                job("full", sh("fmt", "cargo fmt -- --check"), sh("test", "cargo test")),
                on=triggers(branches=["main"], pull_request=True),
            )
    """
    by_name: Dict[str, Job] = {}
    for j in jobs:
        if j.name in by_name:
            raise ConfigError(f"Duplicate job name: {j.name}")
        by_name[j.name] = j
    if not by_name:
        raise ConfigError("pipeline(...) needs at least one job")

    if isinstance(toolchain, str):
        toolchain = Toolchain(version=toolchain)

    return PipelineConfig(
        triggers=on or TriggerRules(),
        jobs=by_name,
        env={k: str(v) for k, v in (env or {}).items()},
        toolchain=toolchain,
    )
