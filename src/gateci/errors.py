# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - machine-readable reports
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "job": self.job,
            "step": self.step,
            "details": dict(self.details),
        }


class ConfigError(CIError):
    """Malformed trigger or job definition. Raised at load time, never retried."""

    def __init__(self, message: str, *, job: str | None = None, step: str | None = None, details: dict | None = None):
        super().__init__(kind="ConfigError", message=message, job=job, step=step, details=details or {})


class EnvironmentSetupError(CIError):
    """Toolchain install / environment preparation failed. Fatal for the run."""

    def __init__(self, message: str, *, job: str | None = None, details: dict | None = None):
        super().__init__(kind="EnvironmentError", message=message, job=job, details=details or {})


class CacheUnavailable(CIError):
    """Cache backend could not be reached. Callers degrade to a cache miss."""

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(kind="CacheUnavailable", message=message, details=details or {})
