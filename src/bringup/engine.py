# engine.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import IntegrityError

from .config import Deployment
from .context import ExecutionContext
from .errors import ConfigurationError, EnvironmentFault, RunLocked, UnknownRun
from .executor import StepExecutor
from .model import (
    FailureKind,
    Lifecycle,
    Outcome,
    ResourceHandle,
    Run,
    RunStatus,
    Step,
    StepStatus,
)
from .settings import LOG_DIR
from .store import StateStore
from .ui.console import get_console

logger = logging.getLogger(__name__)

# CLI exit codes
EXIT_OK = 0
EXIT_STEP_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_RESUMABLE = 3

COMPLETED = "completed"
FAILED = "failed"
CONFIGURATION_ERROR = "configuration_error"
CLOSED = "closed"
INTERRUPTED = "interrupted"
NEEDS_CONFIRMATION = "needs_confirmation"
LOCKED = "locked"
CLEANED = "cleaned"

EXIT_CODES = {
    COMPLETED: EXIT_OK,
    CLEANED: EXIT_OK,
    FAILED: EXIT_STEP_FAILURE,
    CONFIGURATION_ERROR: EXIT_CONFIGURATION,
    CLOSED: EXIT_CONFIGURATION,
    INTERRUPTED: EXIT_RESUMABLE,
    NEEDS_CONFIRMATION: EXIT_RESUMABLE,
    LOCKED: EXIT_RESUMABLE,
}

DONE = (StepStatus.SUCCEEDED, StepStatus.SKIPPED)


@dataclass
class RunResult:
    run_id: str
    status: Optional[RunStatus]
    outcome: str
    executed: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK


def handle_for(deployment: Deployment) -> ResourceHandle:
    t = deployment.target
    return ResourceHandle(
        provider=t.provider,
        resource_group=t.resource_group,
        vm_name=t.vm_name,
        region=t.region,
    )


class Engine:
    """
    Drives one deployment's Run through its DAG.

    One Run is one thread of control. Everything the engine decides is
    persisted before it acts on it, so a killed process resumes from the
    State Store on the next `run`.
    """

    def __init__(
        self,
        deployment: Deployment,
        store: StateStore,
        *,
        executor: Optional[StepExecutor] = None,
        cancel: Optional[threading.Event] = None,
        log_dir: Path = LOG_DIR,
        channel_factory=None,
    ):
        self.deployment = deployment
        self.registry = deployment.registry()
        self.store = store
        self.executor = executor or StepExecutor(store, log_dir)
        self.cancel = cancel or threading.Event()
        self.channel_factory = channel_factory
        self.console = get_console()
        self._owner: Optional[str] = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        run_id: Optional[str] = None,
        *,
        reprovision: bool = False,
        confirm: Sequence[str] = (),
    ) -> RunResult:
        """Create or resume a Run and drive it as far as it goes."""
        run_id = run_id or self.deployment.resolved_run_id()
        self._ensure_run(run_id)

        try:
            owner = self.store.acquire_lease(run_id)
        except RunLocked as e:
            return RunResult(run_id, None, LOCKED, message=str(e))
        self._owner = owner

        try:
            run = self.store.load(run_id)
            if run.status == RunStatus.CLEANED:
                if not reprovision:
                    return RunResult(
                        run_id,
                        run.status,
                        CLOSED,
                        message=f"run {run_id} was cleaned up; pass --reprovision to bring it up again",
                    )
                self._reprovision(run)
            elif reprovision:
                logger.info("run %s is %s; --reprovision ignored", run_id, run.status.value)

            self._confirm(run, confirm)
            self._recover(run)
            if run.status == RunStatus.FAILED:
                self._reopen(run)
            self.store.save_run(run)
            return self.drive(run)
        except ConfigurationError as e:
            return RunResult(run_id, None, CONFIGURATION_ERROR, message=str(e))
        finally:
            self.store.release_lease(run_id, owner)
            self._owner = None

    def drive(self, run: Run) -> RunResult:
        """Walk the DAG until the Run completes, halts or is interrupted."""
        if run.status == RunStatus.COMPLETED:
            return RunResult(run.run_id, run.status, COMPLETED, message="already completed; nothing to do")
        if run.status == RunStatus.CLEANED:
            return RunResult(run.run_id, run.status, CLOSED, message=f"run {run.run_id} was cleaned up")

        self.console.print_run_started(
            run.run_id,
            f"{run.handle.resource_group}/{run.handle.vm_name}",
            len(self.registry.scheduled_steps()),
            run.status.value,
        )

        ctx = self._context(run)
        executed: List[str] = []
        blocked: Set[str] = set()
        try:
            while True:
                if self.cancel.is_set():
                    return self._interrupted(run, executed)

                step, entry = self._next(run, blocked)
                if step is None:
                    break

                if entry is None:
                    run.advance(step.phase)
                    self.store.save_run(run)
                self._renew_lease(run.run_id)

                rec = run.record(step.id)
                self.console.print_step(step.id, rec.attempts + 1, step.retry.max_attempts, remediation=entry is not None)
                outcome = self.executor.execute(step, ctx)
                executed.append(step.id)

                if outcome.cancelled:
                    self._cancelled(run, step)
                    return self._interrupted(run, executed)

                if outcome.ok:
                    self.console.print_success(step.id, outcome.duration_seconds)
                    if entry is not None:
                        entry["done"] = True
                        self.store.save_run(run)
                        # a remediation may have rebooted or rebuilt the host
                        ctx.reset_remote()
                    continue

                self.console.print_failure(
                    step.id,
                    outcome.detail,
                    kind=_kind_label(outcome),
                    output_ref=outcome.output_ref,
                )
                decision, message = self._on_failure(run, step, outcome, entry, blocked)
                if decision == "interrupted":
                    return self._interrupted(run, executed)
                if decision == "halt":
                    outcome_name = (
                        CONFIGURATION_ERROR
                        if outcome.classification.kind == FailureKind.CONFIGURATION
                        else FAILED
                    )
                    return self._fail(run, ctx, executed, message, outcome_name)

            return self._finish(run, ctx, executed, blocked)
        finally:
            ctx.close()

    def cleanup(self, run_id: str, *, force: bool = False) -> RunResult:
        """
        Tear down the Run's resources with the cleanup-role steps and mark it
        cleaned. `force` records cleaned without calling the provider.
        """
        if force:
            return mark_cleaned(self.store, run_id)
        if not self.store.exists(run_id):
            raise UnknownRun(run_id)
        try:
            owner = self.store.acquire_lease(run_id)
        except RunLocked as e:
            return RunResult(run_id, None, LOCKED, message=str(e))
        self._owner = owner

        try:
            run = self.store.load(run_id)
            if run.status == RunStatus.CLEANED:
                return RunResult(run_id, run.status, CLEANED, message="already cleaned")

            steps = self.registry.cleanup_steps()
            if not steps:
                return RunResult(
                    run_id,
                    run.status,
                    CONFIGURATION_ERROR,
                    message="deployment declares no cleanup steps; use --force to mark the run cleaned",
                )

            ctx = self._context(run)
            executed: List[str] = []
            try:
                error = self._run_cleanup(run, ctx, steps, executed)
            finally:
                ctx.close()

            if error == INTERRUPTED:
                return self._interrupted(run, executed)
            if error:
                run.error = error
                self.store.save_run(run)
                return RunResult(run_id, run.status, FAILED, executed, message=error)

            run.status = RunStatus.CLEANED
            run.error = None
            self.store.save_run(run)
            return RunResult(run_id, run.status, CLEANED, executed)
        finally:
            self.store.release_lease(run_id, owner)
            self._owner = None

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def _ensure_run(self, run_id: str) -> None:
        if self.store.exists(run_id):
            return
        src = self.deployment.source
        run = Run(
            run_id=run_id,
            handle=handle_for(self.deployment),
            config_path=str(src) if src else None,
        )
        for step in self.registry.topological_order():
            run.record(step.id)
        try:
            self.store.create(run)
        except IntegrityError:
            # created concurrently; the lease decides who drives it
            logger.debug("run %s already created", run_id)

    def _renew_lease(self, run_id: str) -> None:
        if self._owner is not None:
            self.store.acquire_lease(run_id, self._owner)

    def _context(self, run: Run) -> ExecutionContext:
        src = self.deployment.source
        return ExecutionContext(
            run=run,
            target=self.deployment.target,
            provider=self.deployment.provider,
            base_env=dict(self.deployment.env),
            cancel=self.cancel,
            workdir=src.parent if src else Path.cwd(),
            channel_factory=self.channel_factory,
        )

    def _confirm(self, run: Run, confirm: Iterable[str]) -> None:
        for sid in confirm:
            if sid not in self.registry:
                raise ConfigurationError(f"--confirm names unknown step '{sid}'")
            rec = run.record(sid)
            if not rec.needs_confirmation:
                logger.info("step %s does not need confirmation", sid)
                continue
            rec.needs_confirmation = False
            rec.status = StepStatus.PENDING
            self.console.print_recovered(sid, rec.status.value, "confirmed by operator")

    def _recover(self, run: Run) -> None:
        """Re-evaluate records a dead process left `running`."""
        for sid, rec in run.records.items():
            if rec.status != StepStatus.RUNNING:
                continue
            # the interrupted attempt does not count
            rec.attempts = max(0, rec.attempts - 1)
            step = self.registry.get(sid)
            if step is None or step.idempotent:
                rec.status = StepStatus.PENDING
                note = "idempotent, will rerun"
            elif rec.marker:
                rec.status = StepStatus.PENDING
                note = f"resuming from marker {rec.marker!r}"
            else:
                rec.status = StepStatus.FAILED
                rec.needs_confirmation = True
                rec.detail = "interrupted part way; inspect the target, then rerun with --confirm " + sid
                note = "not idempotent, needs confirmation"
            self.console.print_recovered(sid, rec.status.value, note)

    def _reopen(self, run: Run) -> None:
        """A failed Run invoked again: failed steps get a fresh retry budget."""
        for rec in run.records.values():
            if rec.status == StepStatus.FAILED and not rec.needs_confirmation:
                rec.reset()
        run.status = RunStatus.PENDING
        run.error = None

    def _reprovision(self, run: Run) -> None:
        if run.handle.lifecycle == Lifecycle.DELETED:
            run.handle = handle_for(self.deployment)
        for rec in run.records.values():
            rec.reset()
        for step in self.registry.topological_order():
            run.record(step.id)
        run.remediations = []
        run.env = {}
        run.status = RunStatus.PENDING
        run.error = None
        self.console.print_info(f"Reprovisioning run {run.run_id} ({run.handle.lifecycle.value})")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _ready(self, run: Run, step: Step) -> bool:
        return all(run.record(n).status in DONE for n in step.needs)

    def _runnable(self, run: Run, step: Step) -> bool:
        rec = run.record(step.id)
        if rec.needs_confirmation:
            return False
        if rec.status == StepStatus.PENDING:
            return True
        return rec.status == StepStatus.FAILED and rec.attempts < step.retry.max_attempts

    def _next(self, run: Run, blocked: Set[str]) -> Tuple[Optional[Step], Optional[dict]]:
        # queued remediations go first, newest first
        for entry in reversed(run.remediations):
            if entry.get("done"):
                continue
            step = self.registry[entry["target"]]
            if self._runnable(run, step):
                return step, entry

        for step in self.registry.scheduled_steps():
            if step.id in blocked or run.record(step.id).status in DONE:
                continue
            if self._ready(run, step) and self._runnable(run, step):
                return step, None
        return None, None

    def _applied(self, run: Run, step_id: str, key: str) -> bool:
        return any(r["step"] == step_id and r["key"] == key for r in run.remediations)

    def _remediation_note(self, run: Run, step: Step, key: Optional[str], retries_left: bool) -> str:
        """Why no remediation was inserted for this failure."""
        if not key:
            return "none declared"
        if self._applied(run, step.id, key):
            return f"{key} already applied"
        if not retries_left:
            return f"{key} skipped: no attempts left"
        return f"{key} -> {step.remediations[key]} skipped: prerequisites not met"

    def _on_failure(
        self,
        run: Run,
        step: Step,
        outcome: Outcome,
        entry: Optional[dict],
        blocked: Set[str],
    ) -> Tuple[str, str]:
        """
        Decide what a failed attempt means for the Run.

        Returns ("retry" | "blocked" | "halt" | "interrupted", message).
        """
        c = outcome.classification
        rec = run.record(step.id)
        retries_left = rec.attempts < step.retry.max_attempts

        if c.kind == FailureKind.FATAL:
            return "halt", f"step {step.id} failed fatally ({c.key}): {outcome.detail}"

        key = self.registry.remediation_for(step, c)
        if key and retries_left and not self._applied(run, step.id, key):
            target = self.registry[step.remediations[key]]
            if self._ready(run, target):
                run.record(target.id).reset()
                run.remediations.append({"step": step.id, "key": key, "target": target.id, "done": False})
                self.store.save_run(run)
                self.console.print_remediation(step.id, key, target.id)
                return "retry", ""
            logger.warning("remediation %s for %s is not ready; prerequisites unmet", target.id, step.id)

        if c.kind == FailureKind.TRANSIENT and retries_left:
            delay = step.retry.delay(rec.attempts)
            self.console.print_retry(step.id, delay)
            if self.cancel.wait(delay):
                return "interrupted", ""
            return "retry", ""

        if c.kind == FailureKind.CONFIGURATION:
            return "halt", f"configuration error in step {step.id}: {outcome.detail}"

        if c.kind == FailureKind.ENVIRONMENT:
            fault = EnvironmentFault(
                f"step {step.id} hit an environment problem ({c.key})",
                step=step.id,
                details={
                    "expected": step.description or _describe(step),
                    "observed": outcome.detail or "(no output)",
                    "remediation": self._remediation_note(run, step, key, retries_left),
                },
            )
            return "halt", str(fault)

        # transient, retries exhausted
        if entry is not None:
            return "halt", f"remediation {step.id} exhausted its retries: {outcome.detail}"
        dependents = self.registry.dependents(step.id)
        blocked.add(step.id)
        blocked.update(dependents)
        self.console.print_blocked(step.id, dependents)
        return "blocked", ""

    def _cancelled(self, run: Run, step: Step) -> None:
        rec = run.record(step.id)
        rec.attempts = max(0, rec.attempts - 1)
        if step.idempotent:
            rec.status = StepStatus.PENDING
        else:
            rec.status = StepStatus.FAILED
            rec.needs_confirmation = not rec.marker
        self.store.save_run(run)

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    def _interrupted(self, run: Run, executed: List[str]) -> RunResult:
        self.store.save_run(run)
        result = RunResult(run.run_id, run.status, INTERRUPTED, executed, message="interrupted; rerun to resume")
        self.console.print_run_finished(run.run_id, result.outcome, result.message)
        return result

    def _fail(self, run: Run, ctx: ExecutionContext, executed: List[str], message: str, outcome: str) -> RunResult:
        run.status = RunStatus.FAILED
        run.error = message
        self.store.save_run(run)

        if self.deployment.cleanup_on_failure:
            steps = self.registry.cleanup_steps()
            if steps:
                error = self._run_cleanup(run, ctx, steps, executed)
                if error:
                    logger.error("cleanup after failure of %s did not finish: %s", run.run_id, error)
                self.store.save_run(run)

        result = RunResult(run.run_id, run.status, outcome, executed, message=message)
        self.console.print_run_finished(run.run_id, result.outcome, message)
        return result

    def _finish(self, run: Run, ctx: ExecutionContext, executed: List[str], blocked: Set[str]) -> RunResult:
        waiting = [s.id for s in self.registry.scheduled_steps() if run.record(s.id).needs_confirmation]
        if waiting:
            self.store.save_run(run)
            message = "steps need confirmation: " + ", ".join(waiting)
            result = RunResult(run.run_id, run.status, NEEDS_CONFIRMATION, executed, message=message)
            self.console.print_run_finished(run.run_id, result.outcome, message)
            return result

        if blocked:
            failed = sorted(
                s.id for s in self.registry.scheduled_steps()
                if run.record(s.id).status == StepStatus.FAILED
            )
            return self._fail(run, ctx, executed, "steps exhausted their retries: " + ", ".join(failed), FAILED)

        unfinished = [s.id for s in self.registry.scheduled_steps() if run.record(s.id).status not in DONE]
        if unfinished:
            return self._fail(run, ctx, executed, "steps could not run: " + ", ".join(unfinished), FAILED)

        for step in self.registry.topological_order():
            rec = run.record(step.id)
            if (step.remediation_only or step.cleanup) and rec.status == StepStatus.PENDING:
                rec.status = StepStatus.SKIPPED
        run.status = RunStatus.COMPLETED
        run.error = None
        self.store.save_run(run)

        result = RunResult(run.run_id, run.status, COMPLETED, executed)
        self.console.print_run_finished(run.run_id, result.outcome)
        return result

    def _run_cleanup(self, run: Run, ctx: ExecutionContext, steps: List[Step], executed: List[str]) -> Optional[str]:
        """Run cleanup steps with their retry policies. Returns an error message, or None."""
        for step in steps:
            rec = run.record(step.id)
            rec.reset()
            while True:
                if self.cancel.is_set():
                    return INTERRUPTED
                self.console.print_step(step.id, rec.attempts + 1, step.retry.max_attempts)
                outcome = self.executor.execute(step, ctx)
                executed.append(step.id)
                if outcome.cancelled:
                    self._cancelled(run, step)
                    return INTERRUPTED
                if outcome.ok:
                    self.console.print_success(step.id, outcome.duration_seconds)
                    break

                self.console.print_failure(step.id, outcome.detail, kind=_kind_label(outcome), output_ref=outcome.output_ref)
                c = outcome.classification
                if c.kind == FailureKind.TRANSIENT and rec.attempts < step.retry.max_attempts:
                    if self.cancel.wait(step.retry.delay(rec.attempts)):
                        return INTERRUPTED
                    continue
                return f"cleanup step {step.id} failed ({c.key}): {outcome.detail}"
        return None


def _kind_label(outcome: Outcome) -> Optional[str]:
    c = outcome.classification
    if c is None:
        return None
    return f"{c.kind.value}/{c.reason}" if c.reason else c.kind.value


def _describe(step: Step) -> str:
    describe = getattr(step.action, "describe", None)
    return describe() if callable(describe) else step.id


# ----------------------------------------------------------------------
# Several Runs at once
# ----------------------------------------------------------------------

def run_many(
    deployments: Sequence[Deployment],
    store: StateStore,
    *,
    max_workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    reprovision: bool = False,
    confirm: Sequence[str] = (),
    log_dir: Path = LOG_DIR,
    channel_factory=None,
) -> Dict[str, RunResult]:
    """
    Drive independent Runs concurrently. Each Run has its own engine,
    context and lease; one Run failing never stops the others.
    """
    cancel = cancel or threading.Event()
    ids = [d.resolved_run_id() for d in deployments]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise ConfigurationError(f"Several deployments resolve to the same run id: {dupes}")

    if max_workers is None:
        max_workers = max(1, len(deployments))

    def _one(dep: Deployment) -> RunResult:
        engine = Engine(dep, store, cancel=cancel, log_dir=log_dir, channel_factory=channel_factory)
        return engine.run(reprovision=reprovision, confirm=confirm)

    results: Dict[str, RunResult] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        in_flight = {pool.submit(_one, dep): run_id for dep, run_id in zip(deployments, ids)}
        for fut in as_completed(in_flight):
            run_id = in_flight[fut]
            try:
                results[run_id] = fut.result()
            except ConfigurationError as e:
                results[run_id] = RunResult(run_id, None, CONFIGURATION_ERROR, message=str(e))
            except Exception as e:
                logger.exception("run %s crashed", run_id)
                results[run_id] = RunResult(run_id, None, FAILED, message=f"{type(e).__name__}: {e}")

    return {run_id: results[run_id] for run_id in ids}


def mark_cleaned(store: StateStore, run_id: str) -> RunResult:
    """Record a Run as cleaned without running anything (cleanup --force)."""
    if not store.exists(run_id):
        raise UnknownRun(run_id)
    try:
        owner = store.acquire_lease(run_id)
    except RunLocked as e:
        return RunResult(run_id, None, LOCKED, message=str(e))
    try:
        run = store.load(run_id)
        if run.status != RunStatus.CLEANED:
            run.status = RunStatus.CLEANED
            store.save_run(run)
            logger.warning("run %s marked cleaned without touching the provider", run_id)
        return RunResult(run_id, run.status, CLEANED, message="marked cleaned (forced)")
    finally:
        store.release_lease(run_id, owner)
