"""
Verification runner.

A verification step is an ordinary step whose action is a VerifyAction: run
a command (optional), then evaluate acceptance checks against what it left
behind. Success needs exit code 0 and every check passing.
"""

from __future__ import annotations

import json
import logging
import shlex
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from .actions import LineSink, run_command
from .errors import ConfigurationError, TransientError
from .model import ActionResult, Classification, FailureKind, Step

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    ok: bool
    detail: str = ""
    classification: Optional[Classification] = None
    cancelled: bool = False

    @classmethod
    def passed(cls, detail: str = "") -> "CheckResult":
        return cls(ok=True, detail=detail)

    @classmethod
    def failed(cls, kind: FailureKind, reason: str, detail: str) -> "CheckResult":
        return cls(ok=False, detail=detail, classification=Classification(kind, reason))


def last_json_object(text: str) -> Optional[dict]:
    """Last line of `text` that parses as a JSON object."""
    for line in reversed(text.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


# ----------------------------------------------------------------------
# Checks
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactsPresent:
    """Every path exists and holds at least `min_bytes`."""
    paths: Tuple[str, ...]
    min_bytes: int = 1
    where: str = "remote"

    def describe(self) -> str:
        return f"artifacts present: {', '.join(self.paths)}"

    def _size(self, ctx, step: Step, path: str) -> Optional[int]:
        if self.where == "remote":
            res = run_command(ctx, step, f'stat -c %s "{path}"', where="remote", timeout=60)
            if res.exit_code != 0:
                return None
            try:
                return int(res.stdout.strip().splitlines()[-1])
            except (ValueError, IndexError):
                return None

        local = ctx.workdir / path
        return local.stat().st_size if local.is_file() else None

    def check(self, ctx, step: Step, result: ActionResult) -> CheckResult:
        missing = []
        for raw in self.paths:
            path = ctx.render(raw, step)
            size = self._size(ctx, step, path)
            if size is None or size < self.min_bytes:
                missing.append(f"{path} ({'missing' if size is None else f'{size} bytes'})")
        if missing:
            return CheckResult.failed(
                FailureKind.ENVIRONMENT,
                "missing_artifact",
                "expected artifacts not produced: " + "; ".join(missing),
            )
        return CheckResult.passed(f"{len(self.paths)} artifact(s) present")


@dataclass(frozen=True)
class ResultSize:
    """
    The last JSON object the command printed reports `key` >= `minimum`.

    `key` may hold a number or a list (its length counts). Zero elements is
    an environment failure even though the command exited 0.
    """
    key: str = "size"
    minimum: int = 1

    def describe(self) -> str:
        return f"result {self.key} >= {self.minimum}"

    def check(self, ctx, step: Step, result: ActionResult) -> CheckResult:
        data = last_json_object(result.stdout)
        if data is None or self.key not in data:
            return CheckResult.failed(
                FailureKind.ENVIRONMENT,
                "malformed_result",
                f"no JSON object with '{self.key}' in command output",
            )

        value = data[self.key]
        if isinstance(value, (list, tuple, dict)):
            size = len(value)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            size = int(value)
        else:
            return CheckResult.failed(
                FailureKind.ENVIRONMENT,
                "malformed_result",
                f"'{self.key}' is {type(value).__name__}, expected a number or list",
            )

        if size == 0:
            return CheckResult.failed(FailureKind.ENVIRONMENT, "empty_result", "result has zero elements")
        if size < self.minimum:
            return CheckResult.failed(
                FailureKind.ENVIRONMENT,
                "result_too_small",
                f"result {self.key}={size}, expected at least {self.minimum}",
            )
        return CheckResult.passed(f"{self.key}={size}")


@dataclass(frozen=True)
class ServiceHealthy:
    """HTTP GET answers 2xx/3xx before `timeout` runs out, else transient."""
    port: Optional[int] = None
    path: str = "/"
    timeout: float = 300.0
    interval: float = 5.0
    host: Optional[str] = None

    def describe(self) -> str:
        return f"service healthy on :{self.port or 'service_port'}{self.path}"

    def url(self, ctx) -> str:
        host = self.host or ctx.public_ip
        if not host:
            raise ConfigurationError("No host to health check; the target has no public IP")
        port = self.port or ctx.target.service_port
        return f"http://{host}:{port}{self.path}"

    def check(self, ctx, step: Step, result: ActionResult) -> CheckResult:
        url = self.url(ctx)
        deadline = time.monotonic() + self.timeout
        last = "no answer"

        while True:
            try:
                with urllib.request.urlopen(url, timeout=min(10.0, self.interval * 2)) as resp:
                    if resp.status < 400:
                        return CheckResult.passed(f"GET {url} -> {resp.status}")
                    last = f"HTTP {resp.status}"
            except urllib.error.HTTPError as e:
                last = f"HTTP {e.code}"
            except (urllib.error.URLError, OSError) as e:
                last = str(getattr(e, "reason", e))

            logger.debug("health check %s: %s", url, last)
            if time.monotonic() >= deadline:
                return CheckResult.failed(
                    FailureKind.TRANSIENT,
                    "service_timeout",
                    f"GET {url} not healthy after {self.timeout:.0f}s (last: {last})",
                )
            if ctx.cancel.wait(self.interval):
                return CheckResult(ok=False, detail="cancelled", cancelled=True)


@dataclass(frozen=True)
class CommandSucceeds:
    """
    Polls a command until it exits 0 (and prints `expect`, when set).

    Unreachable SSH counts as "not yet", which is what waiting out a reboot
    looks like.
    """
    command: str
    where: str = "remote"
    timeout: float = 600.0
    interval: float = 10.0
    expect: Optional[str] = None
    # wait before the first poll (e.g. for a scheduled reboot to begin)
    settle: float = 0.0

    def describe(self) -> str:
        return f"command succeeds: {self.command}"

    def check(self, ctx, step: Step, result: ActionResult) -> CheckResult:
        cmd = ctx.render(self.command, step)
        if self.settle and ctx.cancel.wait(self.settle):
            return CheckResult(ok=False, detail="cancelled", cancelled=True)
        deadline = time.monotonic() + self.timeout
        last = ""

        while True:
            try:
                res = run_command(ctx, step, cmd, where=self.where, timeout=min(120.0, self.timeout))
            except TransientError as e:
                last = e.message
                if self.where == "remote":
                    ctx.reset_remote()
            else:
                if res.cancelled:
                    return CheckResult(ok=False, detail="cancelled", cancelled=True)
                output = res.stdout + res.stderr
                if res.exit_code == 0 and (self.expect is None or self.expect in output):
                    return CheckResult.passed(f"{cmd} ok")
                last = output.strip().splitlines()[-1] if output.strip() else f"exit {res.exit_code}"

            if time.monotonic() >= deadline:
                return CheckResult.failed(
                    FailureKind.TRANSIENT,
                    "not_ready",
                    f"'{cmd}' did not succeed within {self.timeout:.0f}s (last: {last})",
                )
            if ctx.cancel.wait(self.interval):
                return CheckResult(ok=False, detail="cancelled", cancelled=True)


# ----------------------------------------------------------------------
# Action
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class VerifyAction:
    """
    Runs `command` (optionally detached, for long-lived services) and then
    every check in order. The first failing check decides the classification.
    """
    command: Optional[str] = None
    checks: Tuple[Any, ...] = ()
    where: str = "remote"
    cwd: Optional[str] = None
    background: bool = False
    log_path: str = "/tmp/bringup-{run_id}.log"

    def describe(self) -> str:
        parts = [self.command or "(no command)"]
        parts.extend(c.describe() for c in self.checks)
        return "[verify] " + " | ".join(parts)

    def run(self, ctx, step: Step, on_line: Optional[LineSink] = None) -> ActionResult:
        if self.command:
            cmd = ctx.render(self.command, step)
            if self.background:
                log = ctx.render(self.log_path, step)
                cmd = f"nohup sh -c {shlex.quote(cmd)} > {shlex.quote(log)} 2>&1 & echo started pid $!"
            cwd = ctx.render(self.cwd, step) if self.cwd else None
            result = run_command(ctx, step, cmd, where=self.where, cwd=cwd, on_line=on_line)
            if result.exit_code != 0 or result.cancelled or result.timed_out:
                return result
        else:
            result = ActionResult(exit_code=0)

        passed = []
        for chk in self.checks:
            res = chk.check(ctx, step, result)
            if res.cancelled:
                result.cancelled = True
                result.detail = f"{chk.describe()}: cancelled"
                return result
            if not res.ok:
                result.failure = res.classification
                result.detail = f"{chk.describe()}: {res.detail}"
                return result
            passed.append(res.detail)

        result.data["checks"] = passed
        return result
