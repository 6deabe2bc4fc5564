# config.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import CacheStep, CommandStep, Job, PipelineConfig, Toolchain, TriggerRules

DEFAULT_CONFIG_FILES = ("gateci.yml", "gateci.yaml", "gateci_workflow.py")


# -------------------- Schemas --------------------
# Keys follow the camelCase of the pipeline document; snake_case is accepted too.

class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class OnPushSchema(_Schema):
    branches: List[str] = Field(default_factory=list)

    @field_validator("branches", mode="before")
    @classmethod
    def _single_branch(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class TriggersSchema(_Schema):
    on_push: Optional[OnPushSchema] = Field(default=None, alias="onPush")
    on_pull_request: bool = Field(default=False, alias="onPullRequest")


class CacheSchema(_Schema):
    action: str = "restore"
    paths: List[str]
    key_files: List[str] = Field(default_factory=list, alias="keyFiles")
    prefix: str = "gateci"

    @field_validator("action")
    @classmethod
    def _known_action(cls, v: str) -> str:
        if v not in ("restore", "save"):
            raise ValueError("must be 'restore' or 'save'")
        return v

    @field_validator("paths")
    @classmethod
    def _some_paths(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one path is required")
        return v


class StepSchema(_Schema):
    name: str = Field(min_length=1)
    run: Optional[str] = None
    cache: Optional[CacheSchema] = None
    cwd: Optional[str] = None
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, alias="timeoutSeconds")

    @model_validator(mode="after")
    def _one_kind(self) -> "StepSchema":
        if (self.run is None) == (self.cache is None):
            raise ValueError("a step needs exactly one of 'run' or 'cache'")
        if self.cache is not None and (self.cwd is not None or self.timeout_seconds is not None):
            raise ValueError("'cwd' and 'timeoutSeconds' only apply to 'run' steps")
        return self

    def to_step(self) -> Union[CommandStep, CacheStep]:
        if self.cache is not None:
            return CacheStep(
                name=self.name,
                action=self.cache.action,
                paths=tuple(self.cache.paths),
                key_files=tuple(self.cache.key_files),
                prefix=self.cache.prefix,
                continue_on_error=self.continue_on_error,
            )
        return CommandStep(
            name=self.name,
            run=self.run,
            cwd=self.cwd,
            continue_on_error=self.continue_on_error,
            timeout_seconds=self.timeout_seconds,
        )


class JobSchema(_Schema):
    runs_on: str = Field(default="local", alias="runsOn")
    env: Dict[str, str] = Field(default_factory=dict)
    requires: List[str] = Field(default_factory=list)
    steps: List[StepSchema] = Field(default_factory=list)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        # force values to str for env compatibility (YAML turns `1` into an int)
        if isinstance(v, dict):
            return {k: _env_value(x) for k, x in v.items()}
        return v


class ToolchainSchema(_Schema):
    version: str = Field(min_length=1)
    install: Optional[str] = None


class PipelineSchema(_Schema):
    triggers: TriggersSchema
    env: Dict[str, str] = Field(default_factory=dict)
    toolchain: Optional[ToolchainSchema] = None
    jobs: Dict[str, JobSchema]

    @field_validator("toolchain", mode="before")
    @classmethod
    def _bare_version(cls, v: Any) -> Any:
        return {"version": v} if isinstance(v, str) else v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: _env_value(x) for k, x in v.items()}
        return v

    @field_validator("jobs")
    @classmethod
    def _some_jobs(cls, v: Dict[str, JobSchema]) -> Dict[str, JobSchema]:
        if not v:
            raise ValueError("at least one job is required")
        return v


def _env_value(v: Any) -> Any:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return v


def _format_validation_error(exc: ValidationError) -> List[str]:
    lines = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        lines.append(f"{loc}: {err['msg']}")
    return lines


# -------------------- Conversion --------------------

def parse_config(raw: Any) -> PipelineConfig:
    """Validate a parsed pipeline document and build the runtime config."""
    if not isinstance(raw, dict):
        raise ConfigError("pipeline definition must be a mapping at top level")
    try:
        doc = PipelineSchema.model_validate(raw)
    except ValidationError as e:
        errors = _format_validation_error(e)
        raise ConfigError(
            f"invalid pipeline definition ({len(errors)} error(s))",
            details={"errors": errors},
        ) from None

    push = doc.triggers.on_push
    triggers = TriggerRules(
        on_push_branches=tuple(push.branches) if push else (),
        on_pull_request=doc.triggers.on_pull_request,
    )
    jobs = {
        name: Job(
            name=name,
            steps=[s.to_step() for s in j.steps],
            runs_on=j.runs_on,
            env=dict(j.env),
            requires=list(j.requires),
        )
        for name, j in doc.jobs.items()
    }
    toolchain = Toolchain(version=doc.toolchain.version, install=doc.toolchain.install) if doc.toolchain else None
    return PipelineConfig(triggers=triggers, jobs=jobs, env=dict(doc.env), toolchain=toolchain)


def load_workflow(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline from a python file.

    The file must define either:
      - workflow() -> PipelineConfig
      - PIPELINE = PipelineConfig(...)
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"gateci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"workflow file failed to load: {e}", details={"path": str(wf_path)}) from e

    config = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        config = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        config = globals_dict["PIPELINE"]

    if not isinstance(config, PipelineConfig):
        raise ConfigError(
            "Workflow must return/define a PipelineConfig. "
            "Define workflow() -> PipelineConfig or PIPELINE = pipeline(...).",
            details={"path": str(wf_path)},
        )
    return config


def load_config(path: str | Path) -> PipelineConfig:
    """Load a pipeline definition from YAML/JSON or a python workflow file."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Pipeline definition not found: {p}")
    if p.suffix == ".py":
        return load_workflow(p)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"could not parse {p.name}: {e}", details={"path": str(p)}) from None
    return parse_config(raw or {})


def discover_config(directory: str | Path = ".") -> Optional[Path]:
    """Return the first default pipeline file present in `directory`."""
    d = Path(directory)
    for name in DEFAULT_CONFIG_FILES:
        candidate = d / name
        if candidate.exists():
            return candidate
    return None
