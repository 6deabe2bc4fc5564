from .dsl import job, sh, restore_cache, save_cache, triggers, pipeline
from .model import (
    CacheStep,
    CommandStep,
    EventDescriptor,
    EventKind,
    Job,
    PipelineConfig,
    PipelineRunReport,
    RunStatus,
    StepResult,
)
from .runner import Runner
from .triggers import should_run
from .config import load_config

__all__ = [
    "job",
    "sh",
    "restore_cache",
    "save_cache",
    "triggers",
    "pipeline",
    "CacheStep",
    "CommandStep",
    "EventDescriptor",
    "EventKind",
    "Job",
    "PipelineConfig",
    "PipelineRunReport",
    "RunStatus",
    "StepResult",
    "Runner",
    "should_run",
    "load_config",
]
