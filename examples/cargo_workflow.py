# cargo_workflow.py
# The examples/cargo.yml pipeline, written with the python DSL.
from __future__ import annotations

from gateci.dsl import job, pipeline, restore_cache, save_cache, sh, triggers

CACHE = dict(paths=["target"], key_files=["Cargo.lock", "**/Cargo.toml"], prefix="rust")


def workflow():
    return pipeline(
        job(
            "full",
            sh("cargo fmt", "cargo fmt -- --check"),
            restore_cache("restore build cache", **CACHE),
            sh("check", "cargo check"),
            sh("clippy", "cargo clippy"),
            sh("test suite", "cargo test", timeout=1800),
            sh("bench smoke test", "cargo bench --profile=dev -- --test", timeout=1800),
            save_cache("save build cache", **CACHE),
            runs_on="ubuntu-latest",
            requires=["cargo"],
        ),
        on=triggers(branches=["main"], pull_request=True),
        env={"CARGO_TERM_COLOR": "always", "RUSTFLAGS": "-C debuginfo=0 --deny warnings"},
        toolchain="stable",
    )
