"""
Pytest configuration and fixtures for bringup tests.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from bringup.config import Deployment, ProviderCommands, Target
from bringup.engine import Engine
from bringup.model import ActionResult, Classification, FailureKind
from bringup.store import StateStore
from bringup.ui.console import Console, set_console


# ============================================================================
# Fake actions and channel
# ============================================================================


def ok(stdout: str = "") -> ActionResult:
    return ActionResult(exit_code=0, stdout=stdout)


def fail(stderr: str = "boom", exit_code: int = 1, stdout: str = "") -> ActionResult:
    return ActionResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


def failure(kind: FailureKind, reason: str, detail: str = "") -> ActionResult:
    """Exit 0 but a predicate failed (what a verification check reports)."""
    return ActionResult(exit_code=0, failure=Classification(kind, reason), detail=detail)


class ScriptedAction:
    """
    Returns the scripted results in order; the last one repeats. A callable
    entry is called with (ctx, step, on_line) and its result returned.
    """

    def __init__(self, *results):
        self.results = list(results) or [ok()]
        self.calls = 0
        self.envs: List[Dict[str, str]] = []

    def describe(self) -> str:
        return "scripted"

    def run(self, ctx, step, on_line=None) -> ActionResult:
        self.calls += 1
        self.envs.append(ctx.env_for(step))
        res = self.results[min(self.calls - 1, len(self.results) - 1)]
        if callable(res):
            return res(ctx, step, on_line)
        return replace(res, data=dict(res.data))


class FakeChannel:
    """Stands in for SSHChannel: records commands, replays scripted results."""

    def __init__(self, results: Optional[Dict[str, ActionResult]] = None):
        self.results = results or {}
        self.commands: List[str] = []
        self.envs: List[Dict[str, str]] = []
        self.closed = False

    def run(self, command, *, env, cwd, timeout, cancel=None, on_line=None) -> ActionResult:
        self.commands.append(command)
        self.envs.append(dict(env))
        for needle, res in self.results.items():
            if needle in command:
                if on_line is not None:
                    for line in res.stdout.splitlines():
                        on_line("stdout", line)
                return replace(res, data=dict(res.data))
        return ActionResult(exit_code=0)

    def close(self) -> None:
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def quiet_console() -> None:
    set_console(Console(debug=False))


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(f"sqlite:///{tmp_path / 'state.db'}")


@pytest.fixture
def target() -> Target:
    return Target(resource_group="rg", vm_name="vm1", region="eastus", public_ip="10.0.0.5")


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def make_deployment(tmp_path: Path, target: Target) -> Callable[..., Deployment]:
    def _make(steps, **kwargs) -> Deployment:
        kwargs.setdefault("provider", ProviderCommands())
        dep = Deployment(target=kwargs.pop("target", target), steps=list(steps), **kwargs)
        dep.source = tmp_path / "deployment.py"
        return dep

    return _make


@pytest.fixture
def make_engine(store: StateStore, tmp_path: Path, channel: FakeChannel) -> Callable[..., Engine]:
    def _make(deployment: Deployment, **kwargs) -> Engine:
        kwargs.setdefault("log_dir", tmp_path / "logs")
        kwargs.setdefault("channel_factory", lambda ctx: channel)
        return Engine(deployment, store, **kwargs)

    return _make
