# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    CONFIGURATION = "configuration"
    ENVIRONMENT = "environment"
    FATAL = "fatal"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    CONFIGURING = "configuring"
    INSTALLING = "installing"
    BUILDING = "building"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANED = "cleaned"


# Phases a run walks through while steps execute, in order.
PHASE_ORDER: Tuple[RunStatus, ...] = (
    RunStatus.PENDING,
    RunStatus.PROVISIONING,
    RunStatus.CONFIGURING,
    RunStatus.INSTALLING,
    RunStatus.BUILDING,
    RunStatus.VERIFYING,
)

TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CLEANED)


class Lifecycle(str, Enum):
    UNSET = "unset"
    PROVISIONED = "provisioned"
    DEALLOCATED = "deallocated"
    DELETED = "deleted"


_LIFECYCLE_RANK = {
    Lifecycle.UNSET: 0,
    Lifecycle.PROVISIONED: 1,
    Lifecycle.DEALLOCATED: 2,
    Lifecycle.DELETED: 3,
}


@dataclass(frozen=True)
class Classification:
    """What went wrong: a FailureKind plus a short reason tag (e.g. 'secure_boot_blocked')."""
    kind: FailureKind
    reason: str = ""

    @property
    def key(self) -> str:
        return self.reason or self.kind.value


# (exit_code, stdout, stderr) -> Classification, or None when nothing matched
ClassifierFn = Callable[[Optional[int], str, str], Optional[Classification]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 120.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after `attempt` failed (1-based)."""
        raw = self.backoff_seconds * (self.backoff_factor ** max(0, attempt - 1))
        return min(self.max_backoff_seconds, raw)


@dataclass(frozen=True)
class Step:
    """
    One declared unit of provisioning / installation / verification work.

    `remediations` maps a reason tag or a FailureKind value to the id of a
    corrective step. Reason tags win over kinds.
    """
    id: str
    action: Any
    description: str = ""
    needs: Tuple[str, ...] = ()
    phase: Optional[RunStatus] = None
    idempotent: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float = 1800.0
    classifier: Optional[ClassifierFn] = None
    remediations: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    # scheduling roles
    remediation_only: bool = False
    cleanup: bool = False


@dataclass
class ActionResult:
    """Raw result of running one action (before classification)."""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    # predicate failure reported by the action itself (verification checks)
    failure: Optional[Classification] = None
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Outcome:
    step_id: str
    status: StepStatus
    attempt: int
    exit_code: Optional[int] = None
    classification: Optional[Classification] = None
    detail: str = ""
    output_ref: Optional[str] = None
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


@dataclass
class StepRecord:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    failure_kind: Optional[FailureKind] = None
    failure_reason: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    output_ref: Optional[str] = None
    detail: Optional[str] = None
    marker: Optional[str] = None
    needs_confirmation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "output_ref": self.output_ref,
            "detail": self.detail,
            "marker": self.marker,
            "needs_confirmation": self.needs_confirmation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        kind = data.get("failure_kind")
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data.get("status", "pending")),
            attempts=int(data.get("attempts", 0)),
            failure_kind=FailureKind(kind) if kind else None,
            failure_reason=data.get("failure_reason"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            output_ref=data.get("output_ref"),
            detail=data.get("detail"),
            marker=data.get("marker"),
            needs_confirmation=bool(data.get("needs_confirmation", False)),
        )

    def reset(self) -> None:
        """Back to a fresh pending record (attempt budget included)."""
        self.status = StepStatus.PENDING
        self.attempts = 0
        self.failure_kind = None
        self.failure_reason = None
        self.detail = None
        self.marker = None
        self.needs_confirmation = False


@dataclass
class ResourceHandle:
    """Provider-assigned identity of the compute target, plus its lifecycle."""
    provider: str = ""
    resource_group: str = ""
    vm_name: str = ""
    region: str = ""
    public_ip: Optional[str] = None
    lifecycle: Lifecycle = Lifecycle.UNSET

    def transition(self, new: Lifecycle) -> None:
        """
        Move to `new`. Lifecycle only moves forward, except the explicit
        deallocated -> provisioned re-activation of a stopped VM.
        """
        from .errors import InvalidTransition

        if new == self.lifecycle:
            return
        reactivate = self.lifecycle == Lifecycle.DEALLOCATED and new == Lifecycle.PROVISIONED
        if not reactivate and _LIFECYCLE_RANK[new] < _LIFECYCLE_RANK[self.lifecycle]:
            raise InvalidTransition(
                f"resource {self.vm_name or '?'}: {self.lifecycle.value} -> {new.value} is not allowed"
            )
        self.lifecycle = new

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "resource_group": self.resource_group,
            "vm_name": self.vm_name,
            "region": self.region,
            "public_ip": self.public_ip,
            "lifecycle": self.lifecycle.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceHandle":
        return cls(
            provider=data.get("provider", ""),
            resource_group=data.get("resource_group", ""),
            vm_name=data.get("vm_name", ""),
            region=data.get("region", ""),
            public_ip=data.get("public_ip"),
            lifecycle=Lifecycle(data.get("lifecycle", "unset")),
        )


@dataclass
class Run:
    run_id: str
    handle: ResourceHandle = field(default_factory=ResourceHandle)
    status: RunStatus = RunStatus.PENDING
    records: Dict[str, StepRecord] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    # remediation queue + history: {"step", "key", "target", "done"}
    remediations: List[Dict[str, Any]] = field(default_factory=list)
    config_path: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def record(self, step_id: str) -> StepRecord:
        if step_id not in self.records:
            self.records[step_id] = StepRecord(step_id=step_id)
        return self.records[step_id]

    def advance(self, phase: Optional[RunStatus]) -> None:
        """Move the run status forward to `phase`; never backwards."""
        if phase is None or self.status not in PHASE_ORDER or phase not in PHASE_ORDER:
            return
        if PHASE_ORDER.index(phase) > PHASE_ORDER.index(self.status):
            self.status = phase

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
