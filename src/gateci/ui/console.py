"""Console output formatting utilities for gateci."""

from __future__ import annotations

import sys
from typing import Optional

from ..model import PipelineRunReport, RunStatus, Step, StepResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, tail_bytes: int = 4000):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            tail_bytes: How much captured output to show for a failed step
        """
        self.debug = debug
        self.tail_bytes = tail_bytes

    def print_run_started(self, job: str, event: str, step_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Job: {job}")
        print(f"Event: {event}")
        print(f"Steps: {step_count}")
        print()

    def print_step(self, step: Step) -> None:
        """Print step start message."""
        print(f"STEP: {step.name}")

    def print_step_result(self, result: StepResult) -> None:
        """Print the outcome of a finished step, with output tail on failure."""
        seconds = result.duration_ms / 1000
        if result.ok:
            print(f"  ok ({seconds:.1f}s)")
            if self.debug and result.stdout:
                print(self._tail(result.stdout))
            return

        label = "failed (continuing)" if result.step.continue_on_error else "failed"
        kind = result.failure.value if result.failure else "error"
        print(f"  {label}: {kind}, exit code {result.exit_code} ({seconds:.1f}s)")
        for stream in (result.stdout, result.stderr):
            if stream:
                print(self._tail(stream))

    def _tail(self, data: bytes) -> str:
        text = data[-self.tail_bytes:].decode("utf-8", errors="replace").rstrip()
        return "\n".join(f"    | {line}" for line in text.splitlines())

    def print_skipped(self, job: str, event: str) -> None:
        """Print a run that did not start because no trigger matched."""
        print(f"\nJOB SKIPPED: {job}")
        print(f"No trigger matches {event}")

    def print_plan(self, job: str, runs_on: str, steps: list[Step]) -> None:
        """Print the steps a job would execute."""
        print(f"\n{job} (runs on {runs_on})")
        for idx, step in enumerate(steps, start=1):
            flags = []
            if step.continue_on_error:
                flags.append("continue-on-error")
            timeout = getattr(step, "timeout_seconds", None)
            if timeout:
                flags.append(f"timeout {timeout:g}s")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            print(f"  {idx}. {step.name}{suffix}")

    def print_report(self, report: PipelineRunReport) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS: {report.job}")
        print("=" * 40)
        for r in report.results:
            status = "SUCCESS" if r.ok else (r.failure.value.upper() if r.failure else "FAILED")
            if not r.ok and r.step.continue_on_error:
                status += " (ignored)"
            print(f"  {r.step.name}: {status} [{r.duration_ms}ms]")
        if report.status is RunStatus.SKIPPED:
            print("  no step ran: trigger did not match")
        if report.error:
            print(f"  {report.error['kind']}: {report.error['message']}")
        print(f"STATUS: {report.status.value} ({len(report.results)} step(s) ran, {report.duration_ms}ms)")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Optional[Console]) -> None:
    """Set the global console instance (None resets to the default on next use)."""
    global _console
    _console = console
