# actions.py
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional

from .errors import ConfigurationError
from .model import ActionResult, Step

# Called with (stream_name, line) for every captured line, as it arrives.
LineSink = Callable[[str, str], None]

POLL_INTERVAL = 0.2
KILL_GRACE_SECONDS = 5.0


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _pump(stream: IO[str], name: str, sink: List[str], on_line: Optional[LineSink]) -> None:
    for line in iter(stream.readline, ""):
        sink.append(line)
        if on_line is not None:
            on_line(name, line.rstrip("\n"))
    stream.close()


def _terminate(proc: subprocess.Popen) -> None:
    # the shell and everything it spawned share one process group
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()


def run_process(
    command: str,
    *,
    env: Dict[str, str],
    cwd: Path,
    timeout: float,
    cancel: Optional[threading.Event] = None,
    on_line: Optional[LineSink] = None,
) -> ActionResult:
    """
    Run a shell command, streaming its output.

    Stops the process when `timeout` elapses or `cancel` is set; the result
    says which one happened.
    """
    proc = subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd),
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    out: List[str] = []
    err: List[str] = []
    pumps = [
        threading.Thread(target=_pump, args=(proc.stdout, "stdout", out, on_line), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, "stderr", err, on_line), daemon=True),
    ]
    for t in pumps:
        t.start()

    deadline = time.monotonic() + timeout
    timed_out = cancelled = False
    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            _terminate(proc)
            break

    for t in pumps:
        t.join(timeout=KILL_GRACE_SECONDS)

    return ActionResult(
        exit_code=proc.returncode,
        stdout="".join(out),
        stderr="".join(err),
        timed_out=timed_out,
        cancelled=cancelled,
    )


def local_env(extra: Dict[str, str]) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(extra)
    return env


# ----------------------------------------------------------------------
# Actions
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ShellAction:
    """A command template run locally or on the target over SSH."""
    command: str
    where: str = "local"
    cwd: Optional[str] = None

    def __post_init__(self) -> None:
        if self.where not in ("local", "remote"):
            raise ConfigurationError(f"where must be 'local' or 'remote', got {self.where!r}")

    def describe(self) -> str:
        return f"[{self.where}] {self.command}"

    def run(self, ctx, step: Step, on_line: Optional[LineSink] = None) -> ActionResult:
        return run_command(
            ctx,
            step,
            ctx.render(self.command, step),
            where=self.where,
            cwd=ctx.render(self.cwd, step) if self.cwd else None,
            on_line=on_line,
        )


def run_command(
    ctx,
    step: Step,
    command: str,
    *,
    where: str = "local",
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    on_line: Optional[LineSink] = None,
) -> ActionResult:
    """Run an already rendered command with the step's env and the run's cancel signal."""
    timeout = step.timeout_seconds if timeout is None else timeout

    if where == "remote":
        return ctx.remote().run(
            command,
            env=ctx.env_for(step),
            cwd=cwd,
            timeout=timeout,
            cancel=ctx.cancel,
            on_line=on_line,
        )

    workdir = (ctx.workdir / (cwd or ".")).resolve()
    if not workdir.exists():
        raise ConfigurationError(f"cwd not found: {workdir}", step=step.id)
    return run_process(
        command,
        env=local_env(ctx.env_for(step)),
        cwd=workdir,
        timeout=timeout,
        cancel=ctx.cancel,
        on_line=on_line,
    )


@dataclass(frozen=True)
class SetEnvAction:
    """
    Adds variables to the run's scoped environment. Later steps see them;
    with `profile` set they are also written to that file on the target.
    """
    values: Dict[str, str] = field(default_factory=dict)
    profile: Optional[str] = None

    def describe(self) -> str:
        return "set " + " ".join(f"{k}={v}" for k, v in self.values.items())

    def run(self, ctx, step: Step, on_line: Optional[LineSink] = None) -> ActionResult:
        rendered = {k: ctx.render(str(v), step) for k, v in self.values.items()}
        lines = [f"export {k}={shlex.quote(v)}" for k, v in rendered.items()]

        if self.profile:
            body = "\n".join(lines) + "\n"
            cmd = f"printf '%s' {shlex.quote(body)} >> {self.profile}"
            result = ctx.remote().run(cmd, env={}, cwd=None, timeout=step.timeout_seconds, cancel=ctx.cancel)
            if result.exit_code != 0 or result.cancelled or result.timed_out:
                return result

        ctx.run.env.update(rendered)
        return ActionResult(exit_code=0, stdout="\n".join(lines) + "\n")
