# context.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import ProviderCommands, Target
from .errors import ConfigurationError
from .model import ResourceHandle, Run, Step

RESUME_MARKER_ENV = "BRINGUP_RESUME_MARKER"


@dataclass
class ExecutionContext:
    """
    Everything a step invocation may read: the run (handle + accumulated env),
    the target, provider templates, the cancel signal and the remote channel.

    Nothing here is process-wide, so several Runs can proceed side by side.
    """
    run: Run
    target: Target
    provider: ProviderCommands = field(default_factory=ProviderCommands)
    base_env: Dict[str, str] = field(default_factory=dict)
    cancel: threading.Event = field(default_factory=threading.Event)
    workdir: Path = field(default_factory=Path.cwd)
    channel_factory: Optional[Callable[["ExecutionContext"], Any]] = None
    _channel: Any = field(default=None, init=False, repr=False)

    @property
    def handle(self) -> ResourceHandle:
        return self.run.handle

    @property
    def public_ip(self) -> Optional[str]:
        return self.run.handle.public_ip or self.target.public_ip

    def env_for(self, step: Optional[Step] = None) -> Dict[str, str]:
        """deployment env < env accumulated by earlier steps < step env."""
        env = dict(self.base_env)
        env.update(self.run.env)
        if step is not None:
            env.update(step.env)
            rec = self.run.records.get(step.id)
            if rec is not None and rec.marker:
                env[RESUME_MARKER_ENV] = rec.marker
        return env

    def variables(self, step: Optional[Step] = None) -> Dict[str, Any]:
        values: Dict[str, Any] = dict(self.env_for(step))
        values.update(self.target.model_dump())
        values.update(
            run_id=self.run.run_id,
            public_ip=self.public_ip or "",
            ssh_user=self.target.admin_user,
        )
        return values

    def render(self, template: str, step: Optional[Step] = None) -> str:
        """Fill {placeholders}; literal braces must be doubled."""
        try:
            return template.format_map(self.variables(step))
        except KeyError as e:
            raise ConfigurationError(
                f"Unknown placeholder {e} in template",
                step=step.id if step else None,
                details={"template": template},
            ) from e
        except (ValueError, IndexError) as e:
            raise ConfigurationError(
                f"Malformed template: {e}",
                step=step.id if step else None,
                details={"template": template},
            ) from e

    # ------------------------------------------------------------------
    # Remote channel (lazy, dropped whenever the VM may have changed)
    # ------------------------------------------------------------------

    def remote(self):
        if self._channel is None:
            if self.channel_factory is not None:
                self._channel = self.channel_factory(self)
            else:
                from .remote import SSHChannel

                self._channel = SSHChannel.for_context(self)
        return self._channel

    def reset_remote(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    def close(self) -> None:
        self.reset_remote()
