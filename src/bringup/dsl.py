# src/bringup/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

from .actions import SetEnvAction, ShellAction
from .classify import Classifier, Rule
from .model import ClassifierFn, RetryPolicy, RunStatus, Step
from .provider import ProviderAction
from .verify import VerifyAction


# ---------------------------------------------------------------------
# Action helpers
# ---------------------------------------------------------------------

def sh(cmd: str, *, cwd: str | None = None) -> ShellAction:
    """Run `cmd` on the orchestrator host."""
    return ShellAction(command=cmd, where="local", cwd=cwd)


def remote(cmd: str, *, cwd: str | None = None) -> ShellAction:
    """Run `cmd` on the target over SSH."""
    return ShellAction(command=cmd, where="remote", cwd=cwd)


def provider(operation: str) -> ProviderAction:
    return ProviderAction(operation)


def set_env(profile: str | None = None, **values: Any) -> SetEnvAction:
    # force values to str for env compatibility
    return SetEnvAction(values={k: str(v) for k, v in values.items()}, profile=profile)


def verify(
    command: str | None = None,
    *checks: Any,
    where: str = "remote",
    cwd: str | None = None,
    background: bool = False,
) -> VerifyAction:
    return VerifyAction(command=command, checks=tuple(checks), where=where, cwd=cwd, background=background)


def retry(
    max_attempts: int = 3,
    *,
    backoff: float = 5.0,
    factor: float = 2.0,
    max_backoff: float = 120.0,
) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        backoff_seconds=backoff,
        backoff_factor=factor,
        max_backoff_seconds=max_backoff,
    )


# ---------------------------------------------------------------------
# Functional Step helper
# ---------------------------------------------------------------------

def step(
    id: str,
    action: Any,
    *,
    needs: Optional[Iterable[str]] = None,
    description: str = "",
    phase: Union[RunStatus, str, None] = None,
    idempotent: bool = True,
    retry: Optional[RetryPolicy] = None,
    timeout: float = 1800.0,
    rules: Optional[Iterable[Rule]] = None,
    classifier: Optional[ClassifierFn] = None,
    remediate: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, Any]] = None,
    remediation_only: bool = False,
    cleanup: bool = False,
) -> Step:
    """
    Declare one step.

    `rules` builds a Classifier (step rules first, then the common ones);
    pass `classifier` instead for full control. `remediate` maps a reason
    tag or FailureKind value to the id of the corrective step.
    """
    if rules is not None and classifier is not None:
        raise ValueError(f"step({id!r}): pass rules or classifier, not both")
    if rules is not None:
        classifier = Classifier(rules)

    return Step(
        id=id,
        action=action,
        description=description,
        needs=tuple(needs or ()),
        phase=RunStatus(phase) if phase is not None else None,
        idempotent=idempotent,
        retry=retry or RetryPolicy(),
        timeout_seconds=timeout,
        classifier=classifier,
        remediations=dict(remediate or {}),
        env={k: str(v) for k, v in (env or {}).items()},
        remediation_only=remediation_only,
        cleanup=cleanup,
    )


# ---------------------------------------------------------------------
# Plan helper (single-file story)
# ---------------------------------------------------------------------

def plan(*steps: Union[Step, Iterable[Step]]) -> List[Step]:
    """
    Flatten steps (and lists of steps, e.g. a whole runbook) into the
    ordered list a Deployment takes:

        def deployment():
            return Deployment(target=..., steps=plan(gpu_runbook(), step(...)))
    """
    out: List[Step] = []
    for s in steps:
        if isinstance(s, Step):
            out.append(s)
        else:
            out.extend(s)
    return out
