# triggers.py
from __future__ import annotations

import os
import subprocess
from fnmatch import fnmatchcase
from typing import Mapping, Optional

from .errors import ConfigError
from .model import EventDescriptor, EventKind, TriggerRules


def _matches_any(branch: str, patterns) -> bool:
    return any(fnmatchcase(branch, p) for p in patterns)


def should_run(event: EventDescriptor, rules: TriggerRules) -> bool:
    """
    Decide whether a pipeline is eligible to run for `event`.

    Pull requests run iff `rules.on_pull_request`; pushes run iff the pushed
    branch matches one of `rules.on_push_branches` (shell-style globs, so
    "release/*" matches "release/1.2"). A push without a branch never matches.
    """
    if event.kind is EventKind.PULL_REQUEST:
        return rules.on_pull_request
    if event.kind is EventKind.PUSH:
        if not event.branch:
            return False
        return _matches_any(event.branch, rules.on_push_branches)
    return False


def parse_event_kind(value: str) -> EventKind:
    normalized = value.strip().lower().replace("-", "_")
    if normalized in ("pr", "pullrequest", "pull_request_target"):
        normalized = "pull_request"
    try:
        return EventKind(normalized)
    except ValueError:
        raise ConfigError(
            f"Unknown event kind: {value!r}",
            details={"expected": [k.value for k in EventKind]},
        ) from None


def _strip_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def event_from_environment(environ: Optional[Mapping[str, str]] = None) -> EventDescriptor:
    """
    Build the triggering event from the hosting CI's environment.

    Understands the GitHub Actions variables (GITHUB_EVENT_NAME, GITHUB_HEAD_REF,
    GITHUB_REF_NAME, GITHUB_REF). Outside a hosted CI this is a push of the
    current git branch.
    """
    env = os.environ if environ is None else environ

    event_name = env.get("GITHUB_EVENT_NAME")
    if event_name:
        kind = parse_event_kind(event_name)
        if kind is EventKind.PULL_REQUEST:
            branch = env.get("GITHUB_HEAD_REF") or None
        else:
            branch = env.get("GITHUB_REF_NAME") or _strip_ref(env.get("GITHUB_REF", "")) or None
        return EventDescriptor(kind=kind, branch=branch)

    from .git_facts.git import current_branch

    try:
        branch = current_branch()
    except (subprocess.CalledProcessError, FileNotFoundError):
        branch = None
    return EventDescriptor(kind=EventKind.PUSH, branch=branch)
