"""
End-to-end engine behaviour against scripted actions: resumption,
remediation, retry isolation, cleanup and concurrent runs.
"""

from __future__ import annotations

import os
import socket
import threading

import pytest

from conftest import FakeChannel, ScriptedAction, fail, ok

from bringup.config import Target
from bringup.context import RESUME_MARKER_ENV
from bringup.dsl import retry, step, verify
from bringup.engine import (
    CLEANED,
    CLOSED,
    COMPLETED,
    CONFIGURATION_ERROR,
    FAILED,
    INTERRUPTED,
    LOCKED,
    NEEDS_CONFIRMATION,
    mark_cleaned,
    run_many,
)
from bringup.errors import ConfigurationError, UnknownRun
from bringup.model import ActionResult, FailureKind, Run, RunStatus, StepRecord, StepStatus
from bringup.verify import ResultSize

NO_WAIT = retry(3, backoff=0)


def _seed(store, run_id, steps, **records: StepRecord) -> None:
    """Persist a Run as a previous (possibly killed) process left it."""
    run = Run(run_id=run_id)
    for s in steps:
        run.record(s.id)
    run.records.update(records)
    store.create(run)


def _stop(ctx, step, on_line) -> ActionResult:
    ctx.cancel.set()
    return ActionResult(exit_code=None, cancelled=True)


class TestHappyPath:
    def test_runs_in_dependency_order(self, make_deployment, make_engine, store) -> None:
        seen = []

        def note(name):
            def _run(ctx, step, on_line):
                seen.append((name, ctx.run.status))
                return ok()
            return _run

        dep = make_deployment([
            step("provision", ScriptedAction(note("provision")), phase="provisioning"),
            step("install", ScriptedAction(note("install")), needs=["provision"], phase="installing"),
            step("build", ScriptedAction(note("build")), needs=["install"], phase="building"),
        ])
        result = make_engine(dep).run()

        assert result.outcome == COMPLETED
        assert result.exit_code == 0
        assert result.executed == ["provision", "install", "build"]
        assert seen == [
            ("provision", RunStatus.PROVISIONING),
            ("install", RunStatus.INSTALLING),
            ("build", RunStatus.BUILDING),
        ]
        run = store.load("rg-vm1")
        assert run.status == RunStatus.COMPLETED
        assert all(r.status == StepStatus.SUCCEEDED for r in run.records.values())

    def test_completed_run_is_not_touched_again(self, make_deployment, make_engine) -> None:
        a = ScriptedAction()
        dep = make_deployment([step("a", a)])
        make_engine(dep).run()

        again = make_engine(dep).run()
        assert again.outcome == COMPLETED
        assert again.executed == []
        assert a.calls == 1

    def test_transient_failure_retried(self, make_deployment, make_engine) -> None:
        a = ScriptedAction(fail("curl: (56) Connection reset by peer"), ok())
        result = make_engine(make_deployment([step("a", a, retry=NO_WAIT)])).run()
        assert result.outcome == COMPLETED
        assert a.calls == 2

    def test_unused_remediation_and_cleanup_skipped(self, make_deployment, make_engine, store) -> None:
        dep = make_deployment([
            step("fix", ScriptedAction(), remediation_only=True),
            step("a", ScriptedAction(), remediate={"abi_mismatch": "fix"}),
            step("teardown", ScriptedAction(), cleanup=True),
        ])
        assert make_engine(dep).run().executed == ["a"]
        records = store.load("rg-vm1").records
        assert records["fix"].status == StepStatus.SKIPPED
        assert records["teardown"].status == StepStatus.SKIPPED

    def test_config_path_recorded(self, make_deployment, make_engine, store, tmp_path) -> None:
        make_engine(make_deployment([step("a", ScriptedAction())])).run(run_id="custom")
        assert store.load("custom").config_path == str(tmp_path / "deployment.py")


class TestResume:
    def test_idempotent_step_rerun_after_crash(self, make_deployment, make_engine, store) -> None:
        a, b = ScriptedAction(), ScriptedAction()
        steps = [step("a", a), step("b", b, needs=["a"])]
        _seed(
            store, "r1", steps,
            a=StepRecord("a", status=StepStatus.SUCCEEDED, attempts=1),
            b=StepRecord("b", status=StepStatus.RUNNING, attempts=1),
        )

        result = make_engine(make_deployment(steps)).run("r1")

        assert result.outcome == COMPLETED
        assert result.executed == ["b"]
        assert a.calls == 0
        # the attempt the dead process was making does not count
        assert store.load("r1").records["b"].attempts == 1

    def test_non_idempotent_step_waits_for_confirmation(self, make_deployment, make_engine, store) -> None:
        b, c = ScriptedAction(), ScriptedAction()
        steps = [step("a", ScriptedAction()), step("b", b, needs=["a"], idempotent=False), step("c", c, needs=["b"])]
        _seed(
            store, "r1", steps,
            a=StepRecord("a", status=StepStatus.SUCCEEDED, attempts=1),
            b=StepRecord("b", status=StepStatus.RUNNING, attempts=1),
        )
        dep = make_deployment(steps)

        result = make_engine(dep).run("r1")
        assert result.outcome == NEEDS_CONFIRMATION
        assert result.exit_code == 3
        assert "b" in result.message
        assert b.calls == 0 and c.calls == 0
        assert store.load("r1").records["b"].needs_confirmation

        # still blocked without --confirm
        assert make_engine(dep).run("r1").outcome == NEEDS_CONFIRMATION

        result = make_engine(dep).run("r1", confirm=["b"])
        assert result.outcome == COMPLETED
        assert result.executed == ["b", "c"]

    def test_confirm_unknown_step(self, make_deployment, make_engine) -> None:
        result = make_engine(make_deployment([step("a", ScriptedAction())])).run(confirm=["nope"])
        assert result.outcome == CONFIGURATION_ERROR
        assert result.exit_code == 2

    def test_non_idempotent_step_resumes_from_marker(self, make_deployment, make_engine, store) -> None:
        build = ScriptedAction()
        steps = [step("build", build, idempotent=False)]
        _seed(store, "r1", steps, build=StepRecord("build", status=StepStatus.RUNNING, attempts=1, marker="deps-installed"))

        result = make_engine(make_deployment(steps)).run("r1")

        assert result.outcome == COMPLETED
        assert build.envs[0][RESUME_MARKER_ENV] == "deps-installed"

    def test_cancel_then_resume(self, make_deployment, make_engine, store) -> None:
        a, b = ScriptedAction(), ScriptedAction(_stop, ok())
        dep = make_deployment([step("a", a), step("b", b, needs=["a"])])

        first = make_engine(dep).run()
        assert first.outcome == INTERRUPTED
        assert first.exit_code == 3
        rec = store.load("rg-vm1").records["b"]
        assert rec.status == StepStatus.PENDING
        assert rec.attempts == 0

        second = make_engine(dep).run()
        assert second.outcome == COMPLETED
        assert second.executed == ["b"]
        assert a.calls == 1

    def test_cancelled_non_idempotent_needs_confirmation(self, make_deployment, make_engine, store) -> None:
        dep = make_deployment([step("b", ScriptedAction(_stop), idempotent=False)])
        assert make_engine(dep).run().outcome == INTERRUPTED
        rec = store.load("rg-vm1").records["b"]
        assert rec.status == StepStatus.FAILED
        assert rec.needs_confirmation

    def test_failed_run_reinvoked_gets_fresh_budget(self, make_deployment, make_engine, store) -> None:
        a = ScriptedAction()
        b = ScriptedAction(fail("connection timed out"), ok())
        dep = make_deployment([step("a", a), step("b", b, needs=["a"], retry=retry(1, backoff=0))])

        first = make_engine(dep).run()
        assert first.outcome == FAILED
        assert store.load("rg-vm1").status == RunStatus.FAILED

        second = make_engine(dep).run()
        assert second.outcome == COMPLETED
        assert second.executed == ["b"]
        assert a.calls == 1

    def test_locked_run(self, make_deployment, make_engine, store) -> None:
        a = ScriptedAction()
        engine = make_engine(make_deployment([step("a", a)]))
        store.create(Run(run_id="rg-vm1"))
        store.acquire_lease("rg-vm1", f"{socket.gethostname()}:{os.getpid()}:999")

        result = engine.run()
        assert result.outcome == LOCKED
        assert result.exit_code == 3
        assert a.calls == 0


class TestRemediation:
    def _deployment(self, make_deployment, build, fix):
        return make_deployment([
            step("fix-abi", fix, remediation_only=True),
            step("build", build, retry=NO_WAIT, remediate={"abi_mismatch": "fix-abi"}),
            step("verify", ScriptedAction(), needs=["build"]),
        ])

    def test_remediation_inserted_once_then_retried(self, make_deployment, make_engine, store) -> None:
        build = ScriptedAction(fail("ImportError: undefined symbol: flash_attn_fwd"), ok())
        fix = ScriptedAction()

        result = make_engine(self._deployment(make_deployment, build, fix)).run()

        assert result.outcome == COMPLETED
        assert result.executed == ["build", "fix-abi", "build", "verify"]
        run = store.load("rg-vm1")
        assert run.remediations == [{"step": "build", "key": "abi_mismatch", "target": "fix-abi", "done": True}]
        assert run.records["fix-abi"].status == StepStatus.SUCCEEDED
        assert run.records["build"].attempts == 2

    def test_same_remediation_never_applied_twice(self, make_deployment, make_engine) -> None:
        build = ScriptedAction(fail("undefined symbol: flash_attn_fwd"))
        fix = ScriptedAction()

        result = make_engine(self._deployment(make_deployment, build, fix)).run()

        assert result.outcome == FAILED
        assert result.exit_code == 1
        assert fix.calls == 1
        assert build.calls == 2
        assert "abi_mismatch already applied" in result.message

    def test_secure_boot_blocked_driver(self, make_deployment, make_engine, store) -> None:
        driver = ScriptedAction(fail("modprobe: ERROR: could not insert 'nvidia': Key was rejected by service"), ok())
        disable = ScriptedAction()
        dep = make_deployment([
            step("provision", ScriptedAction()),
            step("disable-secure-boot", disable, needs=["provision"], remediation_only=True),
            step("install-driver", driver, needs=["provision"], retry=NO_WAIT,
                 remediate={"secure_boot_blocked": "disable-secure-boot"}),
            step("verify-driver", ScriptedAction(), needs=["install-driver"]),
        ])

        result = make_engine(dep).run()

        assert result.outcome == COMPLETED
        assert result.executed == ["provision", "install-driver", "disable-secure-boot", "install-driver", "verify-driver"]
        assert store.load("rg-vm1").records["install-driver"].status == StepStatus.SUCCEEDED

    def test_remediation_drops_the_remote_channel(self, make_deployment, make_engine) -> None:
        channels = []

        def factory(ctx):
            channels.append(FakeChannel())
            return channels[-1]

        def over_ssh(result):
            def _run(ctx, step, on_line):
                ctx.remote().run("nvidia-smi", env={}, cwd=None, timeout=10)
                return result
            return _run

        driver = ScriptedAction(over_ssh(fail("could not insert 'nvidia': Key was rejected by service")), over_ssh(ok()))
        dep = make_deployment([
            step("disable-secure-boot", ScriptedAction(), remediation_only=True),
            step("install-driver", driver, retry=NO_WAIT, remediate={"secure_boot_blocked": "disable-secure-boot"}),
        ])

        result = make_engine(dep, channel_factory=factory).run()

        assert result.outcome == COMPLETED
        assert len(channels) == 2
        assert channels[0].closed
        assert channels[0].commands == ["nvidia-smi"]
        assert channels[1].commands == ["nvidia-smi"]

    def test_unready_remediation_is_reported_as_skipped(self, make_deployment, make_engine) -> None:
        fix = ScriptedAction()
        dep = make_deployment([
            step("a", ScriptedAction(fail("undefined symbol: flash_attn_fwd")), retry=NO_WAIT,
                 remediate={"abi_mismatch": "fix"}),
            step("b", ScriptedAction(), needs=["a"]),
            step("fix", fix, needs=["b"], remediation_only=True),
        ])

        result = make_engine(dep).run()

        assert result.outcome == FAILED
        assert fix.calls == 0
        assert "abi_mismatch -> fix skipped: prerequisites not met" in result.message
        assert "already applied" not in result.message

    def test_remediation_survives_restart(self, make_deployment, make_engine, store) -> None:
        # the process died right after queueing the remediation
        build, fix = ScriptedAction(), ScriptedAction()
        dep = self._deployment(make_deployment, build, fix)
        run = Run(run_id="rg-vm1")
        run.records["build"] = StepRecord(
            "build", status=StepStatus.FAILED, attempts=1,
            failure_kind=FailureKind.ENVIRONMENT, failure_reason="abi_mismatch",
        )
        run.remediations.append({"step": "build", "key": "abi_mismatch", "target": "fix-abi", "done": False})
        run.status = RunStatus.BUILDING
        store.create(run)

        result = make_engine(dep).run()

        assert result.outcome == COMPLETED
        assert result.executed == ["fix-abi", "build", "verify"]


class TestFailures:
    def test_exhausted_transient_isolates_dependents(self, make_deployment, make_engine, store) -> None:
        c, d = ScriptedAction(), ScriptedAction()
        b = ScriptedAction(fail("Could not resolve host: pypi.org"))
        dep = make_deployment([
            step("a", ScriptedAction()),
            step("b", b, needs=["a"], retry=retry(2, backoff=0)),
            step("c", c, needs=["b"]),
            step("d", d, needs=["a"]),
        ])

        result = make_engine(dep).run()

        assert result.outcome == FAILED
        assert result.exit_code == 1
        assert result.executed == ["a", "b", "b", "d"]
        assert c.calls == 0
        assert d.calls == 1
        assert "exhausted their retries: b" in result.message
        records = store.load("rg-vm1").records
        assert records["b"].failure_kind == FailureKind.TRANSIENT
        assert records["c"].status == StepStatus.PENDING

    def test_fatal_halts_without_retry(self, make_deployment, make_engine, store) -> None:
        a = ScriptedAction(fail("(QuotaExceeded) Operation could not be completed"))
        b = ScriptedAction()
        dep = make_deployment([step("a", a, retry=NO_WAIT), step("b", b)])

        result = make_engine(dep).run()

        assert result.outcome == FAILED
        assert a.calls == 1
        assert b.calls == 0
        run = store.load("rg-vm1")
        assert run.status == RunStatus.FAILED
        assert "quota" in run.error

    def test_configuration_error_exit_code(self, make_deployment, make_engine) -> None:
        def bad(ctx, step, on_line):
            raise ConfigurationError("ssh key not readable")

        result = make_engine(make_deployment([step("a", ScriptedAction(bad), retry=NO_WAIT)])).run()
        assert result.outcome == CONFIGURATION_ERROR
        assert result.exit_code == 2
        assert "ssh key not readable" in result.message

    def test_environment_failure_is_diagnosed(self, make_deployment, make_engine) -> None:
        a = ScriptedAction(fail("libcudnn.so.9: cannot open shared object file"))
        dep = make_deployment([step("a", a, description="torch imports with CUDA", retry=NO_WAIT)])

        result = make_engine(dep).run()

        assert result.outcome == FAILED
        assert a.calls == 1
        assert "missing_library" in result.message
        assert "expected=torch imports with CUDA" in result.message
        assert "observed=libcudnn.so.9" in result.message
        assert "remediation=none declared" in result.message

    def test_zero_element_result_fails_verification(self, make_deployment, make_engine, store) -> None:
        dep = make_deployment([
            step("verify-multi", verify("echo '{{\"size\": 0}}'", ResultSize(), where="local"), retry=NO_WAIT),
        ])

        result = make_engine(dep).run()

        assert result.outcome == FAILED
        assert "empty_result" in result.message
        rec = store.load("rg-vm1").records["verify-multi"]
        assert rec.failure_kind == FailureKind.ENVIRONMENT
        assert rec.failure_reason == "empty_result"

    def test_cleanup_on_failure(self, make_deployment, make_engine) -> None:
        teardown = ScriptedAction()
        dep = make_deployment(
            [step("a", ScriptedAction(fail("QuotaExceeded"))), step("teardown", teardown, cleanup=True)],
            cleanup_on_failure=True,
        )
        result = make_engine(dep).run()
        assert result.outcome == FAILED
        assert teardown.calls == 1
        assert result.executed == ["a", "teardown"]


class TestCleanup:
    def test_cleanup_closes_run_until_reprovision(self, make_deployment, make_engine, store) -> None:
        a, teardown = ScriptedAction(), ScriptedAction()
        dep = make_deployment([step("a", a), step("teardown", teardown, cleanup=True)])
        make_engine(dep).run()

        result = make_engine(dep).cleanup("rg-vm1")
        assert result.outcome == CLEANED
        assert result.executed == ["teardown"]
        assert store.load("rg-vm1").status == RunStatus.CLEANED

        again = make_engine(dep).cleanup("rg-vm1")
        assert again.outcome == CLEANED
        assert teardown.calls == 1

        refused = make_engine(dep).run()
        assert refused.outcome == CLOSED
        assert refused.exit_code == 2
        assert a.calls == 1

        revived = make_engine(dep).run(reprovision=True)
        assert revived.outcome == COMPLETED
        assert revived.executed == ["a"]
        assert store.load("rg-vm1").status == RunStatus.COMPLETED

    def test_cleanup_failure_keeps_status(self, make_deployment, make_engine, store) -> None:
        dep = make_deployment([
            step("a", ScriptedAction()),
            step("teardown", ScriptedAction(fail("AuthorizationFailed")), cleanup=True),
        ])
        make_engine(dep).run()

        result = make_engine(dep).cleanup("rg-vm1")
        assert result.outcome == FAILED
        run = store.load("rg-vm1")
        assert run.status == RunStatus.COMPLETED
        assert "teardown" in run.error

    def test_no_cleanup_steps(self, make_deployment, make_engine) -> None:
        dep = make_deployment([step("a", ScriptedAction())])
        make_engine(dep).run()
        assert make_engine(dep).cleanup("rg-vm1").outcome == CONFIGURATION_ERROR

    def test_unknown_run(self, make_deployment, make_engine) -> None:
        with pytest.raises(UnknownRun):
            make_engine(make_deployment([step("a", ScriptedAction())])).cleanup("nope")

    def test_force(self, make_deployment, make_engine, store) -> None:
        dep = make_deployment([step("a", ScriptedAction())])
        make_engine(dep).run()
        assert mark_cleaned(store, "rg-vm1").outcome == CLEANED
        assert store.load("rg-vm1").status == RunStatus.CLEANED


class TestRunMany:
    def test_independent_runs(self, make_deployment, store, tmp_path) -> None:
        gate = threading.Event()

        def first(ctx, step, on_line):
            # the other run must be able to finish while this one is busy
            assert gate.wait(10)
            return ok()

        def second(ctx, step, on_line):
            gate.set()
            return ok()

        deps = [
            make_deployment([step("a", ScriptedAction(first))]),
            make_deployment(
                [step("a", ScriptedAction(second))],
                target=Target(resource_group="rg", vm_name="vm2", region="westus", public_ip="10.0.0.6"),
            ),
        ]

        results = run_many(deps, store, log_dir=tmp_path / "logs")

        assert list(results) == ["rg-vm1", "rg-vm2"]
        assert all(r.outcome == COMPLETED for r in results.values())

    def test_one_failure_does_not_stop_others(self, make_deployment, store, tmp_path) -> None:
        deps = [
            make_deployment([step("a", ScriptedAction(fail("QuotaExceeded")))]),
            make_deployment(
                [step("a", ScriptedAction())],
                target=Target(resource_group="rg", vm_name="vm2", region="westus"),
            ),
        ]
        results = run_many(deps, store, log_dir=tmp_path / "logs")
        assert results["rg-vm1"].outcome == FAILED
        assert results["rg-vm2"].outcome == COMPLETED

    def test_duplicate_run_ids(self, make_deployment, store) -> None:
        deps = [make_deployment([step("a", ScriptedAction())]) for _ in range(2)]
        with pytest.raises(ConfigurationError, match="same run id"):
            run_many(deps, store)
