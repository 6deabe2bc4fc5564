# runner.py
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .cache import CacheProvider
from .errors import ConfigError, EnvironmentSetupError
from .model import EventDescriptor, Job, PipelineConfig, PipelineRunReport, RunStatus
from .pipeline import Pipeline
from .steps import StepContext
from .toolchain import ToolchainInstaller, prepare_environment
from .triggers import should_run
from .ui.console import Console, get_console


class SupersedingRegistry:
    """
    Tracks the in-flight run per concurrency group (job + branch).

    Starting a run for a group cancels the run it supersedes; runs in other
    groups are left alone. Safe to share between threads.
    """

    def __init__(self) -> None:
        self._active: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def start(self, group: str) -> threading.Event:
        token = threading.Event()
        with self._lock:
            previous = self._active.get(group)
            self._active[group] = token
        if previous is not None:
            previous.set()
        return token

    def finish(self, group: str, token: threading.Event) -> None:
        with self._lock:
            if self._active.get(group) is token:
                del self._active[group]


def select_job(config: PipelineConfig, job_name: Optional[str] = None) -> Job:
    if job_name is not None:
        if job_name not in config.jobs:
            raise ConfigError(
                f"Unknown job: {job_name!r}",
                details={"known_jobs": sorted(config.jobs)},
            )
        return config.jobs[job_name]
    if len(config.jobs) == 1:
        return next(iter(config.jobs.values()))
    if not config.jobs:
        raise ConfigError("pipeline defines no jobs")
    raise ConfigError(
        "pipeline defines several jobs; choose one",
        details={"known_jobs": sorted(config.jobs)},
    )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class Runner:
    """
    Top-level driver for one workspace:
      trigger check -> environment (toolchain, required tools) -> pipeline -> report

    The runner itself never touches the cache; it hands the provider to the
    steps that ask for it.

    cancel() is sticky: the run in progress ends CANCELLED, and so does every
    later run() on the same runner, before its first step.
    """

    def __init__(
        self,
        *,
        workspace: str | Path = ".",
        cache: Optional[CacheProvider] = None,
        installer: Optional[ToolchainInstaller] = None,
        registry: Optional[SupersedingRegistry] = None,
        console: Optional[Console] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.cache = cache
        self.installer = installer
        self.registry = registry
        self.console = console
        self._active: set[threading.Event] = set()
        self._installers: Dict[Tuple[Optional[str], Tuple[Tuple[str, str], ...]], ToolchainInstaller] = {}
        self._cancelled = False
        self._lock = threading.Lock()

    def _console(self) -> Console:
        return self.console or get_console()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the currently running step(s) and mark their runs CANCELLED."""
        with self._lock:
            self._cancelled = True
            tokens = list(self._active)
        for t in tokens:
            t.set()

    def _begin(self, group: str) -> threading.Event:
        token = self.registry.start(group) if self.registry else threading.Event()
        with self._lock:
            self._active.add(token)
            if self._cancelled:
                token.set()
        return token

    def _end(self, group: str, token: threading.Event) -> None:
        with self._lock:
            self._active.discard(token)
        if self.registry:
            self.registry.finish(group, token)

    def _installer_for(self, config: PipelineConfig) -> Optional[ToolchainInstaller]:
        if config.toolchain is None:
            return None
        if self.installer is not None:
            return self.installer
        key = (config.toolchain.install, tuple(sorted(config.env.items())))
        if key not in self._installers:
            self._installers[key] = ToolchainInstaller(config.toolchain.install, env=config.env)
        return self._installers[key]

    def run(self, event: EventDescriptor, config: PipelineConfig, job_name: Optional[str] = None) -> PipelineRunReport:
        job = select_job(config, job_name)
        console = self._console()
        start = time.monotonic()

        if not should_run(event, config.triggers):
            console.print_skipped(job.name, event.describe())
            return PipelineRunReport(job=job.name, status=RunStatus.SKIPPED, event=event, duration_ms=_elapsed_ms(start))

        env = dict(config.env)
        env.update(job.env)

        # token is live before the toolchain install; cancel() during setup reaches it
        group = f"{job.name}:{event.branch or event.kind.value}"
        token = self._begin(group)
        try:
            try:
                prepare_environment(
                    config.toolchain,
                    self._installer_for(config),
                    requires=job.requires,
                    env=env,
                    job=job.name,
                )
            except EnvironmentSetupError as e:
                console.print_error("Environment setup failed", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
                return PipelineRunReport(
                    job=job.name,
                    status=RunStatus.FAILED,
                    event=event,
                    duration_ms=_elapsed_ms(start),
                    error=e.to_dict(),
                )

            if token.is_set():
                report = PipelineRunReport(job=job.name, status=RunStatus.CANCELLED, event=event, duration_ms=_elapsed_ms(start))
                console.print_report(report)
                return report

            salt = {"toolchain": config.toolchain.version} if config.toolchain else {}
            context = StepContext(
                root=self.workspace,
                env=env,
                cache=self.cache,
                cancel_event=token,
                cache_salt=salt,
            )

            console.print_run_started(job.name, event.describe(), len(job.steps))
            run = Pipeline(job).run(
                context,
                event,
                on_step_start=console.print_step,
                on_step_end=console.print_step_result,
            )
        finally:
            self._end(group, token)

        report = PipelineRunReport(
            job=job.name,
            status=run.status,
            event=event,
            results=list(run.results),
            duration_ms=_elapsed_ms(start),
        )
        console.print_report(report)
        return report

    def run_all(
        self,
        event: EventDescriptor,
        config: PipelineConfig,
        *,
        fail_fast: bool = True,
    ) -> List[PipelineRunReport]:
        """Run every job in declaration order, one after the other."""
        reports: List[PipelineRunReport] = []
        for name in config.jobs:
            report = self.run(event, config, name)
            reports.append(report)
            if report.status is RunStatus.CANCELLED or self.cancelled:
                break
            if fail_fast and report.status is RunStatus.FAILED:
                break
        return reports
