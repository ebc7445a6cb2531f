from .dsl import sh, remote, provider, set_env, verify, step, retry, plan
from .classify import rule
from .config import Deployment, ProviderCommands, Target, load_deployment
from .engine import Engine, RunResult, run_many
from .model import FailureKind, RunStatus, Step, StepStatus
from .verify import ArtifactsPresent, CommandSucceeds, ResultSize, ServiceHealthy

__all__ = [
    "sh", "remote", "provider", "set_env", "verify", "step", "retry", "plan", "rule",
    "Deployment", "ProviderCommands", "Target", "load_deployment",
    "Engine", "RunResult", "run_many",
    "FailureKind", "RunStatus", "Step", "StepStatus",
    "ArtifactsPresent", "CommandSucceeds", "ResultSize", "ServiceHealthy",
]
