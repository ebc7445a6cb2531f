# provider.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Optional

from .actions import LineSink, local_env, run_process
from .errors import ConfigurationError, FatalError, InvalidTransition
from .model import ActionResult, Classification, FailureKind, Lifecycle, Step

OPERATIONS = ("create", "start", "deallocate", "delete", "open_port")

_LIFECYCLE_AFTER = {
    "create": Lifecycle.PROVISIONED,
    "start": Lifecycle.PROVISIONED,
    "deallocate": Lifecycle.DEALLOCATED,
    "delete": Lifecycle.DELETED,
}

_IPV4 = re.compile(r"^\s*(\d{1,3}(?:\.\d{1,3}){3})\s*$")


def parse_public_ip(stdout: str, field_name: str) -> Optional[str]:
    """
    Pull the reachability address out of provider output: a JSON object (or
    list of objects) carrying `field_name`, or a bare IPv4 line.
    """
    text = stdout.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        m = _IPV4.match(text.splitlines()[-1])
        return m.group(1) if m else None

    items = data if isinstance(data, list) else [data]
    for item in items:
        if isinstance(item, dict) and item.get(field_name):
            return str(item[field_name])
    return None


@dataclass(frozen=True)
class ProviderAction:
    """
    One resource provider operation, run through the deployment's command
    templates. Keeps the Run's ResourceHandle in step with what happened.
    """
    operation: str

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ConfigurationError(f"Unknown provider operation {self.operation!r}; expected one of {OPERATIONS}")

    def describe(self) -> str:
        return f"[provider] {self.operation}"

    def run(self, ctx, step: Step, on_line: Optional[LineSink] = None) -> ActionResult:
        handle = ctx.handle
        op = self.operation
        if op == "create" and handle.lifecycle == Lifecycle.DEALLOCATED:
            # re-activation of a stopped VM instead of a second create
            op = "start"
        elif op == "create" and handle.lifecycle == Lifecycle.PROVISIONED:
            return ActionResult(exit_code=0, stdout=f"{handle.vm_name} already provisioned\n", data={"operation": op})

        template = getattr(ctx.provider, op)
        if not template:
            raise ConfigurationError(f"No provider command configured for '{op}'", step=step.id)

        result = run_process(
            ctx.render(template, step),
            env=local_env(ctx.env_for(step)),
            cwd=ctx.workdir,
            timeout=step.timeout_seconds,
            cancel=ctx.cancel,
            on_line=on_line,
        )
        result.data["operation"] = op
        if result.exit_code != 0 or result.timed_out or result.cancelled:
            return result

        if op in ("create", "start"):
            ip = parse_public_ip(result.stdout, ctx.provider.ip_field)
            if ip:
                handle.public_ip = ip
            elif not ctx.public_ip:
                result.failure = Classification(FailureKind.CONFIGURATION, "no_public_ip")
                result.detail = f"provider output has no '{ctx.provider.ip_field}' and target.public_ip is unset"
                return result

        if op in _LIFECYCLE_AFTER:
            try:
                handle.transition(_LIFECYCLE_AFTER[op])
            except InvalidTransition as e:
                raise FatalError(str(e), step=step.id) from e
            # address or host keys may have changed
            ctx.reset_remote()

        return result
