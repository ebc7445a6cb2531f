# errors.py
from __future__ import annotations

from dataclasses import dataclass, field

from .model import FailureKind


@dataclass
class BringupError(Exception):
    """
    Structured orchestrator error with enough context for:
      - clean CLI output
      - mapping back to a FailureKind
      - debugging without full tracebacks
    """
    message: str
    step: str | None = None
    details: dict = field(default_factory=dict)

    kind = FailureKind.FATAL

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(BringupError):
    """Malformed DAG, bad deployment file, missing credentials."""
    kind = FailureKind.CONFIGURATION


class TransientError(BringupError):
    """Timeout, network blip, resource not ready yet."""
    kind = FailureKind.TRANSIENT


class EnvironmentFault(BringupError):
    """Version mismatch, missing system library, ABI incompatibility."""
    kind = FailureKind.ENVIRONMENT


class FatalError(BringupError):
    """Provider rejected the request, quota exhausted."""
    kind = FailureKind.FATAL


class InvalidTransition(ValueError):
    pass


class UnknownRun(KeyError):
    def __str__(self) -> str:
        return f"unknown run: {self.args[0]}"


class RunLocked(RuntimeError):
    pass
