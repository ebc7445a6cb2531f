# executor.py
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional

from .classify import DEFAULT_CLASSIFIER
from .errors import BringupError
from .model import (
    ActionResult,
    Classification,
    FailureKind,
    Outcome,
    Step,
    StepStatus,
    utc_now_iso,
)
from .settings import LOG_DIR

logger = logging.getLogger(__name__)

MARKER_PREFIX = "BRINGUP-MARKER:"
TAIL_LINES = 20


def output_tail(result: ActionResult, lines: int = TAIL_LINES) -> str:
    text = (result.stderr.strip() or result.stdout.strip())
    return "\n".join(text.splitlines()[-lines:])


def classify(step: Step, result: ActionResult) -> Optional[Classification]:
    """None means the attempt succeeded."""
    if result.cancelled:
        return Classification(FailureKind.TRANSIENT, "cancelled")
    if result.timed_out:
        return Classification(FailureKind.TRANSIENT, "timeout")
    if result.failure is not None:
        return result.failure
    classifier = step.classifier or DEFAULT_CLASSIFIER
    return classifier(result.exit_code, result.stdout, result.stderr)


class StepExecutor:
    """
    Runs one attempt of one step and records it.

    The StepRecord goes to `running` (attempt counted) before the action
    starts and is finalized (`succeeded`/`failed`, output log reference)
    before `execute` returns. Partial-completion markers are persisted the
    moment they are printed.
    """

    def __init__(self, store, log_dir: Path = LOG_DIR):
        self.store = store
        self.log_dir = Path(log_dir)

    def _log_path(self, run_id: str, step_id: str, attempt: int) -> Path:
        return self.log_dir / run_id / f"{step_id}.{attempt}.log"

    def _write_log(self, path: Path, step: Step, attempt: int, result: ActionResult, detail: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        describe = getattr(step.action, "describe", None)
        header = describe() if callable(describe) else repr(step.action)
        with path.open("w", encoding="utf-8") as f:
            f.write(f"# step={step.id} attempt={attempt}\n# {header}\n")
            f.write(f"# exit={result.exit_code} timed_out={result.timed_out} cancelled={result.cancelled}\n")
            f.write("--- stdout ---\n")
            f.write(result.stdout)
            f.write("\n--- stderr ---\n")
            f.write(result.stderr)
            if detail:
                f.write(f"\n--- detail ---\n{detail}\n")

    def execute(self, step: Step, ctx) -> Outcome:
        run = ctx.run
        rec = run.record(step.id)
        rec.status = StepStatus.RUNNING
        rec.attempts += 1
        rec.started_at = utc_now_iso()
        rec.finished_at = None
        self.store.save(run.run_id, rec)
        attempt = rec.attempts

        lock = threading.Lock()

        def on_line(stream: str, line: str) -> None:
            logger.debug("[%s] %s: %s", step.id, stream, line)
            if not line.startswith(MARKER_PREFIX):
                return
            with lock:
                rec.marker = line[len(MARKER_PREFIX):].strip()
                self.store.save(run.run_id, rec)

        started = time.monotonic()
        try:
            result = step.action.run(ctx, step, on_line)
            classification = classify(step, result)
            detail = result.detail
            if classification is not None and not detail:
                detail = output_tail(result)
        except BringupError as e:
            result = ActionResult(exit_code=None, stderr=str(e))
            classification = Classification(e.kind, str(e.details.get("reason", "")))
            detail = e.message
        except Exception as e:
            logger.exception("step %s raised", step.id)
            result = ActionResult(exit_code=None, stderr=f"{type(e).__name__}: {e}")
            classification = Classification(FailureKind.FATAL, "unexpected_error")
            detail = f"{type(e).__name__}: {e}"
        duration = time.monotonic() - started

        log_path = self._log_path(run.run_id, step.id, attempt)
        self._write_log(log_path, step, attempt, result, detail)

        with lock:
            rec.finished_at = utc_now_iso()
            rec.output_ref = str(log_path)
            rec.detail = detail or None
            if classification is None:
                rec.status = StepStatus.SUCCEEDED
                rec.failure_kind = None
                rec.failure_reason = None
            else:
                rec.status = StepStatus.FAILED
                rec.failure_kind = classification.kind
                rec.failure_reason = classification.reason or None
            # actions may have moved the handle or the run env
            self.store.save_run(run)

        return Outcome(
            step_id=step.id,
            status=rec.status,
            attempt=attempt,
            exit_code=result.exit_code,
            classification=classification,
            detail=detail,
            output_ref=str(log_path),
            cancelled=result.cancelled,
            duration_seconds=duration,
        )
