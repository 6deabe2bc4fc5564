"""Tests for the runner: triggers, environment preparation, reports."""

import threading
import time

import pytest

from gateci.cache import MemoryCacheProvider
from gateci.dsl import job, pipeline, restore_cache, save_cache, sh, triggers
from gateci.errors import ConfigError, EnvironmentSetupError
from gateci.model import EventDescriptor, EventKind, RunStatus, Toolchain
from gateci.runner import Runner, SupersedingRegistry, select_job
from gateci.toolchain import ToolchainInstaller, check_required_tools

ON = triggers(branches=["main"], pull_request=True)


def _config(*steps, **kwargs):
    return pipeline(job("full", *steps), on=ON, **kwargs)


def test_trigger_mismatch_skips_without_running(workspace):
    config = _config(sh("mark", "touch ran"))
    report = Runner(workspace=workspace).run(EventDescriptor(EventKind.PUSH, "dev"), config)
    assert report.status is RunStatus.SKIPPED
    assert report.results == []
    assert report.exit_code == 0
    assert not (workspace / "ran").exists()


def test_pull_request_runs(workspace):
    report = Runner(workspace=workspace).run(EventDescriptor(EventKind.PULL_REQUEST, "feature"), _config(sh("ok", "true")))
    assert report.status is RunStatus.SUCCEEDED


def test_format_failure_scenario(workspace, push_main):
    config = _config(sh("format", "exit 1"), sh("lint", "true"))
    report = Runner(workspace=workspace).run(push_main, config)
    assert report.status is RunStatus.FAILED
    assert [r.step.name for r in report.results] == ["format"]
    assert report.exit_code == 1


def test_build_test_bench_scenario(workspace, push_main):
    config = _config(sh("build", "true"), sh("test", "true"), sh("bench", "true"))
    report = Runner(workspace=workspace).run(push_main, config)
    assert report.status is RunStatus.SUCCEEDED
    assert len(report.results) == 3
    assert report.duration_ms >= 0


def test_report_to_dict(workspace, push_main):
    config = _config(sh("a", "true"), sh("b", "exit 4", continue_on_error=True))
    data = Runner(workspace=workspace).run(push_main, config).to_dict()
    assert data["job"] == "full"
    assert data["status"] == "succeeded"
    assert data["event"] == {"kind": "push", "branch": "main"}
    assert data["error"] is None
    assert [(s["name"], s["exit_code"], s["failure"]) for s in data["steps"]] == [
        ("a", 0, None),
        ("b", 4, "StepNonZeroExit"),
    ]


def test_config_and_job_env_reach_steps(workspace, push_main):
    config = pipeline(
        job("full", sh("check", 'test "$A" = 1 && test "$B" = job'), env={"B": "job"}),
        on=ON,
        env={"A": "1", "B": "global"},
    )
    assert Runner(workspace=workspace).run(push_main, config).status is RunStatus.SUCCEEDED


# -------------------- environment --------------------

def test_toolchain_install_runs_once(workspace, push_main, tmp_path):
    log = tmp_path / "installs.log"
    config = _config(sh("ok", "true"), toolchain=Toolchain("stable", install=f"echo {{version}} >> {log}"))
    runner = Runner(workspace=workspace)
    runner.run(push_main, config)
    runner.run(push_main, config)
    assert log.read_text().splitlines() == ["stable"]


def test_toolchain_install_sees_each_config_env(workspace, push_main, tmp_path):
    log = tmp_path / "installs.log"
    install = f'echo "$CHANNEL" >> {log}'
    runner = Runner(workspace=workspace)
    for channel in ("first", "second"):
        config = _config(sh("ok", "true"), env={"CHANNEL": channel}, toolchain=Toolchain("stable", install=install))
        assert runner.run(push_main, config).status is RunStatus.SUCCEEDED
    assert log.read_text().splitlines() == ["first", "second"]


def test_toolchain_failure_aborts_before_steps(workspace, push_main):
    config = _config(sh("mark", "touch ran"), toolchain=Toolchain("nightly", install="exit 3"))
    report = Runner(workspace=workspace).run(push_main, config)
    assert report.status is RunStatus.FAILED
    assert report.results == []
    assert report.error["kind"] == "EnvironmentError"
    assert report.error["job"] == "full"
    assert not (workspace / "ran").exists()


def test_installer_is_idempotent(tmp_path):
    log = tmp_path / "log"
    installer = ToolchainInstaller(f"echo {{version}} >> {log}")
    installer.ensure_toolchain("stable")
    installer.ensure_toolchain("stable")
    installer.ensure_toolchain("1.80")
    assert log.read_text().splitlines() == ["stable", "1.80"]


def test_installer_failure_is_not_remembered(tmp_path):
    installer = ToolchainInstaller("exit 1")
    with pytest.raises(EnvironmentSetupError):
        installer.ensure_toolchain("stable")
    with pytest.raises(EnvironmentSetupError):
        installer.ensure_toolchain("stable")


def test_toolchain_without_install_command_is_noop():
    ToolchainInstaller(None).ensure_toolchain("stable")


def test_missing_required_tool(workspace, push_main):
    config = pipeline(job("full", sh("ok", "true"), requires=["definitely-not-a-tool-gateci"]), on=ON)
    report = Runner(workspace=workspace).run(push_main, config)
    assert report.status is RunStatus.FAILED
    assert report.error["kind"] == "EnvironmentError"
    assert "definitely-not-a-tool-gateci" in report.error["message"]


def test_required_tool_hint():
    with pytest.raises(EnvironmentSetupError) as exc_info:
        check_required_tools(["sh", "cargo"], path="/nonexistent")
    assert "cargo" in exc_info.value.details["hints"]
    assert "rustup" in exc_info.value.details["hints"]["cargo"]


# -------------------- job selection --------------------

def test_select_job_single():
    config = _config(sh("a", "true"))
    assert select_job(config).name == "full"


def test_select_job_ambiguous():
    config = pipeline(job("a", sh("x", "true")), job("b", sh("y", "true")), on=ON)
    with pytest.raises(ConfigError):
        select_job(config)
    assert select_job(config, "b").name == "b"


def test_select_unknown_job():
    with pytest.raises(ConfigError):
        select_job(_config(sh("a", "true")), "missing")


def test_run_all_stops_after_failed_job(workspace, push_main):
    config = pipeline(job("a", sh("x", "exit 1")), job("b", sh("y", "true")), on=ON)
    reports = Runner(workspace=workspace).run_all(push_main, config)
    assert [r.job for r in reports] == ["a"]

    reports = Runner(workspace=workspace).run_all(push_main, config, fail_fast=False)
    assert [(r.job, r.status) for r in reports] == [("a", RunStatus.FAILED), ("b", RunStatus.SUCCEEDED)]


# -------------------- cancellation --------------------

def _run_in_thread(runner, event, config):
    box = {}
    t = threading.Thread(target=lambda: box.setdefault("report", runner.run(event, config)))
    t.start()
    return t, box


def test_runner_cancel(workspace, push_main):
    runner = Runner(workspace=workspace)
    t, box = _run_in_thread(runner, push_main, _config(sh("slow", "touch started && sleep 10"), sh("after", "true")))
    deadline = time.monotonic() + 5
    while not (workspace / "started").exists() and time.monotonic() < deadline:
        time.sleep(0.02)
    while t.is_alive() and time.monotonic() < deadline:
        runner.cancel()
        time.sleep(0.05)
    t.join(5)
    report = box["report"]
    assert report.status is RunStatus.CANCELLED
    assert [r.step.name for r in report.results] == ["slow"]
    assert report.exit_code != 0


def test_cancel_during_toolchain_install(workspace, push_main):
    config = _config(sh("mark", "touch ran"), toolchain=Toolchain("stable", install="sleep 1"))
    runner = Runner(workspace=workspace)
    timer = threading.Timer(0.3, runner.cancel)
    timer.start()
    report = runner.run(push_main, config)
    timer.join()
    assert report.status is RunStatus.CANCELLED
    assert report.results == []
    assert report.exit_code == 130
    assert not (workspace / "ran").exists()


def test_cancel_between_jobs_stops_run_all(workspace, push_main):
    config = pipeline(job("a", sh("x", "touch a")), job("b", sh("y", "touch b")), on=ON)
    runner = Runner(workspace=workspace)
    runner.cancel()
    reports = runner.run_all(push_main, config)
    assert [(r.job, r.status) for r in reports] == [("a", RunStatus.CANCELLED)]
    assert not (workspace / "a").exists()
    assert not (workspace / "b").exists()


def test_newer_run_supersedes_same_branch():
    registry = SupersedingRegistry()
    first = registry.start("full:main")
    other = registry.start("full:dev")
    second = registry.start("full:main")
    assert first.is_set()
    assert not other.is_set()
    assert not second.is_set()
    registry.finish("full:main", first)  # stale token leaves the newer one registered
    third = registry.start("full:main")
    assert second.is_set()
    assert not third.is_set()


def test_superseded_run_is_cancelled(tmp_path, push_main):
    registry = SupersedingRegistry()
    slow = _config(sh("slow", "touch started && sleep 10"))
    fast = _config(sh("fast", "true"))
    ws1, ws2 = tmp_path / "1", tmp_path / "2"
    ws1.mkdir()
    ws2.mkdir()

    runner1 = Runner(workspace=ws1, registry=registry)
    t, box = _run_in_thread(runner1, push_main, slow)
    deadline = time.monotonic() + 5
    while not (ws1 / "started").exists() and time.monotonic() < deadline:
        time.sleep(0.02)
    report2 = Runner(workspace=ws2, registry=registry).run(push_main, fast)
    t.join(5)

    assert report2.status is RunStatus.SUCCEEDED
    assert box["report"].status is RunStatus.CANCELLED


# -------------------- cache through the runner --------------------

def test_rerun_with_warm_cache_is_idempotent(workspace, push_main):
    (workspace / "Cargo.lock").write_text("lock")
    cache_args = dict(paths=["target"], key_files=["Cargo.lock"])
    config = _config(
        restore_cache("restore", **cache_args),
        sh("build", "mkdir -p target && echo built > target/out"),
        sh("test", "grep built target/out"),
        save_cache("save", **cache_args),
        toolchain="stable",
    )
    cache = MemoryCacheProvider()
    runner = Runner(workspace=workspace, cache=cache)

    cold = runner.run(push_main, config)
    warm = runner.run(push_main, config)

    assert [r.exit_code for r in cold.results] == [r.exit_code for r in warm.results] == [0, 0, 0, 0]
    assert b"cache miss" in cold.results[0].stdout
    assert b"cache hit" in warm.results[0].stdout
    assert b"not saving" in warm.results[3].stdout
    assert len(cache) == 1


def test_link_outside_workspace_does_not_break_save(workspace, push_main, tmp_path):
    (tmp_path / "outside.txt").write_text("x")
    config = _config(
        sh("build", f"mkdir -p target && echo built > target/out && ln -s {tmp_path / 'outside.txt'} target/link"),
        save_cache("save", paths=["target"], key_files=[]),
    )
    cache = MemoryCacheProvider()
    report = Runner(workspace=workspace, cache=cache).run(push_main, config)
    assert report.status is RunStatus.SUCCEEDED
    assert [r.step.name for r in report.results] == ["build", "save"]
    assert b"cache saved" in report.results[1].stdout
    assert len(cache) == 1
