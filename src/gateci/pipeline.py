# pipeline.py
from __future__ import annotations

import logging
from typing import Callable, Optional

from .model import EventDescriptor, FailureKind, Job, PipelineRun, RunStatus, Step, StepResult
from .steps import StepContext, execute

logger = logging.getLogger(__name__)

StepStarted = Callable[[Step], None]
StepFinished = Callable[[StepResult], None]


class Pipeline:
    """
    Ordered, fail-fast sequence of steps for one job.

    run() drives PENDING -> RUNNING -> {SUCCEEDED, FAILED, CANCELLED}:
      - steps execute strictly in declaration order
      - the first non-zero result of a step without continue_on_error stops the run
      - a cancelled step (or a cancellation between steps) ends the run as CANCELLED
    """

    def __init__(self, job: Job):
        self.job = job

    @property
    def steps(self) -> list[Step]:
        return list(self.job.steps)

    def run(
        self,
        context: StepContext,
        event: EventDescriptor,
        *,
        on_step_start: Optional[StepStarted] = None,
        on_step_end: Optional[StepFinished] = None,
    ) -> PipelineRun:
        run = PipelineRun(event=event, steps=self.steps)
        run.transition(RunStatus.RUNNING)

        for step in run.steps:
            if context.cancelled:
                logger.debug("[%s] cancelled before %r", self.job.name, step.name)
                run.transition(RunStatus.CANCELLED)
                return run

            if on_step_start:
                on_step_start(step)
            result = execute(step, context)
            run.record(result)
            if on_step_end:
                on_step_end(result)

            if result.failure is FailureKind.CANCELLED:
                run.transition(RunStatus.CANCELLED)
                return run
            if result.fatal:
                run.transition(RunStatus.FAILED)
                return run

        run.transition(RunStatus.SUCCEEDED)
        return run
