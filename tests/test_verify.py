"""
Tests for verification checks and the verify action.
"""

from __future__ import annotations

import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from conftest import FakeChannel, ok

from bringup.context import ExecutionContext
from bringup.dsl import step, verify
from bringup.errors import TransientError
from bringup.model import ActionResult, FailureKind, Run
from bringup.verify import (
    ArtifactsPresent,
    CommandSucceeds,
    ResultSize,
    ServiceHealthy,
    VerifyAction,
    last_json_object,
)


@pytest.fixture
def ctx(target, channel, tmp_path) -> ExecutionContext:
    return ExecutionContext(run=Run(run_id="r1"), target=target, workdir=tmp_path, channel_factory=lambda c: channel)


@pytest.fixture
def http_server():
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            code = 200 if self.path == "/" else 503
            self.send_response(code)
            self.end_headers()
            self.wfile.write(b"ok")

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield server
    server.shutdown()
    server.server_close()


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _result(stdout: str) -> ActionResult:
    return ActionResult(exit_code=0, stdout=stdout)


class TestResultSize:
    @pytest.mark.parametrize(
        "stdout,reason",
        [
            ('{"size": 0}', "empty_result"),
            ('{"size": []}', "empty_result"),
            ('{"size": 2}', "result_too_small"),
            ("done, no json", "malformed_result"),
            ('{"count": 4}', "malformed_result"),
            ('{"size": "many"}', "malformed_result"),
        ],
    )
    def test_failures(self, ctx, stdout: str, reason: str) -> None:
        res = ResultSize(minimum=3).check(ctx, step("v", verify()), _result(stdout))
        assert not res.ok
        assert res.classification.kind == FailureKind.ENVIRONMENT
        assert res.classification.reason == reason

    def test_list_length_counts(self, ctx) -> None:
        out = 'loading model\n{"size": ["a.glb", "b.glb", "c.glb"]}\n'
        assert ResultSize(minimum=3).check(ctx, step("v", verify()), _result(out)).ok

    def test_last_object_wins(self) -> None:
        assert last_json_object('{"size": 0}\nnoise\n{"size": 5}\n') == {"size": 5}
        assert last_json_object("[1, 2]") is None


class TestArtifactsPresent:
    def test_local(self, ctx, tmp_path) -> None:
        (tmp_path / "sample.glb").write_bytes(b"glTF" * 10)
        (tmp_path / "empty.glb").write_bytes(b"")
        s = step("v", verify())

        assert ArtifactsPresent(("sample.glb",), where="local").check(ctx, s, _result("")).ok

        res = ArtifactsPresent(("sample.glb", "empty.glb", "gone.glb"), where="local").check(ctx, s, _result(""))
        assert res.classification.reason == "missing_artifact"
        assert "empty.glb (0 bytes)" in res.detail
        assert "gone.glb (missing)" in res.detail

    def test_remote(self, target, tmp_path) -> None:
        channel = FakeChannel({'stat -c %s "out/model.glb"': ok("2048\n")})
        ctx = ExecutionContext(run=Run(run_id="r1"), target=target, workdir=tmp_path, channel_factory=lambda c: channel)
        s = step("v", verify())
        assert ArtifactsPresent(("out/model.glb",)).check(ctx, s, _result("")).ok
        # FakeChannel answers exit 0 with empty output for anything else
        assert not ArtifactsPresent(("other.glb",)).check(ctx, s, _result("")).ok


class TestServiceHealthy:
    def test_healthy(self, ctx, http_server) -> None:
        chk = ServiceHealthy(port=http_server.server_port, host="127.0.0.1", timeout=5, interval=0.1)
        res = chk.check(ctx, step("v", verify()), _result(""))
        assert res.ok
        assert "200" in res.detail

    def test_unhealthy_status_times_out(self, ctx, http_server) -> None:
        chk = ServiceHealthy(port=http_server.server_port, host="127.0.0.1", path="/broken", timeout=0.3, interval=0.1)
        res = chk.check(ctx, step("v", verify()), _result(""))
        assert res.classification.kind == FailureKind.TRANSIENT
        assert res.classification.reason == "service_timeout"
        assert "HTTP 503" in res.detail

    def test_nothing_listening(self, ctx) -> None:
        chk = ServiceHealthy(port=_free_port(), host="127.0.0.1", timeout=0.2, interval=0.05)
        assert chk.check(ctx, step("v", verify()), _result("")).classification.reason == "service_timeout"

    def test_cancel(self, ctx) -> None:
        ctx.cancel.set()
        chk = ServiceHealthy(port=_free_port(), host="127.0.0.1", timeout=60, interval=30)
        assert chk.check(ctx, step("v", verify()), _result("")).cancelled

    def test_url_uses_target(self, ctx) -> None:
        assert ServiceHealthy().url(ctx) == "http://10.0.0.5:7860/"


class TestCommandSucceeds:
    def test_local_success(self, ctx) -> None:
        chk = CommandSucceeds("echo driver ok", where="local", expect="driver ok", timeout=5, interval=0.1)
        assert chk.check(ctx, step("v", verify()), _result("")).ok

    def test_local_never_ready(self, ctx) -> None:
        chk = CommandSucceeds("echo not yet; exit 1", where="local", timeout=0.3, interval=0.1)
        res = chk.check(ctx, step("v", verify()), _result(""))
        assert res.classification.kind == FailureKind.TRANSIENT
        assert res.classification.reason == "not_ready"
        assert "not yet" in res.detail

    def test_unreachable_then_back(self, target, tmp_path) -> None:
        class Rebooting(FakeChannel):
            def run(self, command, **kwargs):
                self.commands.append(command)
                if len(self.commands) < 3:
                    raise TransientError("connection refused")
                return ok("NVIDIA-SMI 550.54")

        channels = []

        def factory(ctx):
            if not channels:
                channels.append(Rebooting())
            return channels[0]

        ctx = ExecutionContext(run=Run(run_id="r1"), target=target, workdir=tmp_path, channel_factory=factory)
        chk = CommandSucceeds("nvidia-smi", expect="NVIDIA-SMI", timeout=5, interval=0.05)
        assert chk.check(ctx, step("v", verify()), _result("")).ok
        assert len(channels[0].commands) == 3
        assert channels[0].closed


class TestVerifyAction:
    def test_command_then_checks(self, ctx) -> None:
        s = step("v", verify("echo '{{\"size\": 3}}'", ResultSize(), where="local"))
        result = s.action.run(ctx, s)
        assert result.failure is None
        assert result.data["checks"] == ["size=3"]

    def test_zero_elements_fail_despite_exit_zero(self, ctx) -> None:
        s = step("v", verify("echo '{{\"size\": 0}}'", ResultSize(), where="local"))
        result = s.action.run(ctx, s)
        assert result.exit_code == 0
        assert result.failure.reason == "empty_result"
        assert result.detail.startswith("result size >= 1")

    def test_command_failure_skips_checks(self, ctx) -> None:
        s = step("v", verify("exit 4", ResultSize(), where="local"))
        result = s.action.run(ctx, s)
        assert result.exit_code == 4
        assert result.failure is None

    def test_background_on_target(self, ctx, channel) -> None:
        s = step("v", verify("python app.py", where="remote", cwd="app", background=True))
        s.action.run(ctx, s)
        assert channel.commands[0].startswith("nohup sh -c 'python app.py' > /tmp/bringup-r1.log")

    def test_checks_only(self, ctx, tmp_path) -> None:
        (tmp_path / "a.txt").write_text("x")
        action = VerifyAction(checks=(ArtifactsPresent(("a.txt",), where="local"),))
        assert action.run(ctx, step("v", action)).failure is None
