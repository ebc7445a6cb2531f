"""Console output formatting utilities for bringup."""

from __future__ import annotations

import sys
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(
        self,
        run_id: str,
        target: str,
        step_count: int,
        status: str,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run ID: {run_id}")
        print(f"Target: {target}")
        print(f"Steps: {step_count}")
        print(f"Status: {status}")
        print()

    def print_step(self, name: str, attempt: int, max_attempts: int, remediation: bool = False) -> None:
        """Print step start message."""
        label = "REMEDIATION" if remediation else "STEP"
        suffix = f" (attempt {attempt}/{max_attempts})" if attempt > 1 else ""
        print(f"{label}: {name}{suffix}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print success message."""
        if duration is None:
            print("STATUS: success")
        else:
            print(f"STATUS: success ({duration:.1f}s)")

    def print_failure(
        self,
        name: str,
        reason: str,
        kind: Optional[str] = None,
        output_ref: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step id
            reason: Failure diagnostic (output tail or check detail)
            kind: FailureKind value plus reason tag
            output_ref: Path of the captured output log
        """
        print(f"STEP FAILED: {name}")
        if kind:
            print(f"Kind: {kind}")
        if output_ref:
            print(f"Log: {output_ref}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            error_line = reason.strip().split("\n")[-1] if reason else ""
            if error_line:
                print(f"Error: {error_line}")

    def print_retry(self, name: str, delay: float) -> None:
        print(f"RETRY: {name} in {delay:.0f}s")

    def print_remediation(self, name: str, key: str, target: str) -> None:
        print(f"REMEDIATE: {name} ({key}) -> {target}")

    def print_blocked(self, name: str, dependents: Iterable[str]) -> None:
        deps = sorted(dependents)
        print(f"BLOCKED: {name} exhausted its retries")
        if deps:
            print(f"  not run: {', '.join(deps)}")

    def print_recovered(self, name: str, status: str, note: str = "") -> None:
        """Print what happened to a step found `running` after a restart."""
        print(f"RECOVER: {name} -> {status}" + (f" ({note})" if note else ""))

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for run_id, outcome in results.items():
            print(f"  {run_id}: {outcome.upper()}")

    def print_run_finished(self, run_id: str, outcome: str, message: str = "") -> None:
        print("\nRUN FINISHED")
        print(f"Run ID: {run_id}")
        print(f"Outcome: {outcome}")
        if message:
            print(message)

    def print_status(self, run, lease_holder: Optional[str] = None) -> None:
        """Print a run and its step records."""
        print(f"Run ID: {run.run_id}")
        print(f"Status: {run.status.value}")
        h = run.handle
        print(f"Resource: {h.resource_group}/{h.vm_name} ({h.lifecycle.value})")
        if h.public_ip:
            print(f"Public IP: {h.public_ip}")
        if lease_holder:
            print(f"Driven by: {lease_holder}")
        if run.error:
            print(f"Error: {run.error}")
        print(f"Updated: {run.updated_at}")

        print("\nSteps:")
        width = max((len(sid) for sid in run.records), default=0)
        for sid, rec in run.records.items():
            line = f"  {sid:<{width}}  {rec.status.value:<9}  attempts={rec.attempts}"
            if rec.failure_kind:
                line += f"  {rec.failure_kind.value}"
                if rec.failure_reason:
                    line += f"/{rec.failure_reason}"
            if rec.needs_confirmation:
                line += "  NEEDS CONFIRMATION"
            print(line)
            if self.debug and rec.output_ref:
                print(f"  {'':<{width}}  log: {rec.output_ref}")

        if run.remediations:
            print("\nRemediations:")
            for r in run.remediations:
                state = "done" if r.get("done") else "queued"
                print(f"  {r['step']} ({r['key']}) -> {r['target']} [{state}]")

    def print_runs(self, runs) -> None:
        if not runs:
            print("No runs recorded.")
            return
        for run in runs:
            print(f"  {run.run_id}  {run.status.value:<12}  {run.handle.lifecycle.value:<12}  {run.updated_at}")

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


# set by the CLI
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
