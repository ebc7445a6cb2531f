"""
Remote execution channel: a command runner over SSH (paramiko).

Connection trouble is a TransientError (the VM may still be booting or
rebooting). A rejected key is a ConfigurationError.
"""

from __future__ import annotations

import logging
import shlex
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import paramiko

from .actions import LineSink
from .errors import ConfigurationError, TransientError
from .model import ActionResult
from .settings import SSH_CONNECT_TIMEOUT

logger = logging.getLogger(__name__)

_RECV_BYTES = 32768
_IDLE_SLEEP = 0.1


def wrap_command(command: str, env: Dict[str, str], cwd: Optional[str]) -> str:
    """Build the login-shell invocation carrying the step's scoped env."""
    parts = [f"export {k}={shlex.quote(str(v))}" for k, v in env.items()]
    if cwd:
        parts.append(f"cd {shlex.quote(cwd)}")
    parts.append(command)
    return "bash -lc " + shlex.quote(" && ".join(parts))


class _LineSplitter:
    def __init__(self, name: str, on_line: Optional[LineSink]):
        self.name = name
        self.on_line = on_line
        self.chunks: List[str] = []
        self._partial = ""

    def feed(self, data: bytes) -> None:
        text = data.decode("utf-8", errors="replace")
        self.chunks.append(text)
        if self.on_line is None:
            return
        text = self._partial + text
        *lines, self._partial = text.split("\n")
        for line in lines:
            self.on_line(self.name, line)

    def finish(self) -> str:
        if self.on_line is not None and self._partial:
            self.on_line(self.name, self._partial)
            self._partial = ""
        return "".join(self.chunks)


class SSHChannel:
    """One SSH connection to the target, reused across steps of a Run."""

    def __init__(
        self,
        host: str,
        *,
        user: str,
        port: int = 22,
        key_path: Optional[str] = None,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None

    @classmethod
    def for_context(cls, ctx) -> "SSHChannel":
        host = ctx.public_ip
        if not host:
            raise ConfigurationError(
                "Target has no public IP yet; provision it first or set target.public_ip",
                details={"vm": ctx.target.vm_name},
            )
        return cls(
            host,
            user=ctx.target.admin_user,
            port=ctx.target.ssh_port,
            key_path=str(Path(ctx.target.ssh_key_path).expanduser()) if ctx.target.ssh_key_path else None,
        )

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.user,
                key_filename=self.key_path,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise ConfigurationError(
                f"SSH authentication failed for {self.user}@{self.host}",
                details={"error": str(e), "key": self.key_path},
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransientError(
                f"SSH connection to {self.host}:{self.port} failed",
                details={"error": str(e), "reason": "ssh_unreachable"},
            ) from e

        logger.debug("ssh connected to %s@%s:%s", self.user, self.host, self.port)
        self._client = client
        return client

    def run(
        self,
        command: str,
        *,
        env: Dict[str, str],
        cwd: Optional[str],
        timeout: float,
        cancel: Optional[threading.Event] = None,
        on_line: Optional[LineSink] = None,
    ) -> ActionResult:
        client = self._connect()
        out = _LineSplitter("stdout", on_line)
        err = _LineSplitter("stderr", on_line)
        deadline = time.monotonic() + timeout
        timed_out = cancelled = False

        try:
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException("transport is not active")
            chan = transport.open_session(timeout=self.connect_timeout)
            chan.exec_command(wrap_command(command, env, cwd))

            while True:
                busy = False
                if chan.recv_ready():
                    out.feed(chan.recv(_RECV_BYTES))
                    busy = True
                if chan.recv_stderr_ready():
                    err.feed(chan.recv_stderr(_RECV_BYTES))
                    busy = True
                if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                    break
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    break
                if not busy:
                    time.sleep(_IDLE_SLEEP)

            if cancelled or timed_out:
                # closing the session hangs up the remote process
                chan.close()
                exit_code = None
            else:
                exit_code = chan.recv_exit_status()
                chan.close()
        except (paramiko.SSHException, OSError, EOFError) as e:
            self.close()
            raise TransientError(
                f"SSH session to {self.host} dropped",
                details={"error": str(e), "reason": "ssh_dropped"},
            ) from e

        return ActionResult(
            exit_code=exit_code,
            stdout=out.finish(),
            stderr=err.finish(),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None
