"""Tests for the data model, errors and console output."""

import pytest

from gateci.dsl import job, pipeline, sh
from gateci.errors import CIError, ConfigError, EnvironmentSetupError
from gateci.model import (
    EventDescriptor,
    EventKind,
    FailureKind,
    Job,
    PipelineRunReport,
    RunStatus,
    StepResult,
)
from gateci.ui.console import Console


def test_job_rejects_duplicate_step_names():
    with pytest.raises(ConfigError) as exc_info:
        Job(name="j", steps=[sh("a", "true"), sh("a", "false")])
    assert "a" in exc_info.value.message


def test_job_requires_name():
    with pytest.raises(ConfigError):
        Job(name="", steps=[])


def test_pipeline_rejects_duplicate_jobs():
    with pytest.raises(ConfigError):
        pipeline(job("j", sh("a", "true")), job("j", sh("b", "true")))


def test_job_default_cwd_applies_to_shell_steps_only():
    j = job("j", sh("a", "true"), sh("b", "true", cwd="other"), cwd="sub")
    assert [s.cwd for s in j.steps] == ["sub", "other"]


@pytest.mark.parametrize(
    "status, code",
    [
        (RunStatus.SUCCEEDED, 0),
        (RunStatus.SKIPPED, 0),
        (RunStatus.FAILED, 1),
        (RunStatus.CANCELLED, 130),
    ],
)
def test_report_exit_codes(status, code):
    report = PipelineRunReport(job="j", status=status, event=EventDescriptor(EventKind.PUSH, "main"))
    assert report.exit_code == code


def test_step_result_fatal():
    strict = sh("a", "exit 1")
    lenient = sh("b", "exit 1", continue_on_error=True)
    assert StepResult(strict, 1, 5, failure=FailureKind.STEP_NON_ZERO_EXIT).fatal
    assert not StepResult(lenient, 1, 5, failure=FailureKind.STEP_NON_ZERO_EXIT).fatal
    assert not StepResult(strict, 0, 5).fatal


def test_ci_error_str():
    err = CIError(kind="StepNonZeroExit", message="boom", job="full", step="test", details={"exit_code": 2})
    assert str(err).splitlines() == ["StepNonZeroExit: boom", "job=full", "step=test", "exit_code=2"]


def test_environment_error_kind():
    err = EnvironmentSetupError("rustup missing", job="full")
    assert err.kind == "EnvironmentError"
    assert err.to_dict()["job"] == "full"
    with pytest.raises(CIError):
        raise err


def test_console_report(capsys):
    a, b = sh("a", "true"), sh("b", "exit 1", continue_on_error=True)
    report = PipelineRunReport(
        job="full",
        status=RunStatus.SUCCEEDED,
        event=EventDescriptor(EventKind.PUSH, "main"),
        results=[
            StepResult(a, 0, 12),
            StepResult(b, 1, 3, stderr=b"lint warning\n", failure=FailureKind.STEP_NON_ZERO_EXIT),
        ],
        duration_ms=20,
    )
    console = Console()
    console.print_step_result(report.results[1])
    console.print_report(report)
    out = capsys.readouterr().out
    assert "| lint warning" in out
    assert "a: SUCCESS" in out
    assert "b: STEPNONZEROEXIT (ignored)" in out
    assert "STATUS: succeeded (2 step(s) ran, 20ms)" in out
