# tests/test_runner.py
import pytest

from relayci.dsl import download, job, publish, sh, ssh_copy, ssh_run
from relayci.errors import CIError, RemoteError
from relayci.remote import RemoteResult, ServiceConnection
from relayci.runner import RunContext, run_job, run_step


@pytest.fixture
def context(workspace, store, console):
    return RunContext(run_id="run1", workspace=workspace, artifacts=store, console=console)


def test_step_captures_output_and_env(context):
    j = job("build", sh("greet", "echo $GREETING-$STEP_VAR; echo oops >&2", env={"STEP_VAR": "s"}),
            env={"GREETING": "hello"})
    res = run_step(j.steps[0], job=j, context=context)
    assert res.status == "succeeded"
    assert res.exit_code == 0
    assert res.stdout == "hello-s\n"
    assert res.stderr == "oops\n"


def test_step_env_overrides_job_env(context):
    j = job("build", sh("x", "echo $V", env={"V": "step"}), env={"V": "job"})
    assert run_step(j.steps[0], job=j, context=context).stdout == "step\n"


def test_working_directory_resolved_against_workspace(context, workspace):
    (workspace / "app").mkdir()
    j = job("build", sh("where", "pwd"), cwd="app")
    res = run_step(j.steps[0], job=j, context=context)
    assert res.stdout.strip() == str((workspace / "app").resolve())


def test_nonzero_exit_fails_step(context):
    j = job("build", sh("boom", "exit 7"))
    res = run_step(j.steps[0], job=j, context=context)
    assert res.status == "failed"
    assert res.exit_code == 7
    assert "exit=7" in res.error


def test_timeout_kills_step(context):
    j = job("build", sh("slow", "sleep 5; echo never", timeout=0.3))
    res = run_step(j.steps[0], job=j, context=context)
    assert res.status == "failed"
    assert res.exit_code is None
    assert "timed out" in res.error
    assert "never" not in res.stdout
    assert res.duration < 5


def test_missing_tools_preflight(context):
    j = job("build", sh("x", "true"), requires=["definitely-not-a-real-tool-xyz"])
    with pytest.raises(CIError) as exc:
        run_job(j, context)
    assert exc.value.kind == "MissingTools"
    assert "definitely-not-a-real-tool-xyz" in exc.value.details["hints"]


def test_bad_job_working_directory(context):
    j = job("build", sh("x", "true"))
    j.working_directory = "missing"
    with pytest.raises(CIError) as exc:
        run_job(j, context)
    assert exc.value.kind == "BadWorkingDirectory"


def test_bad_step_cwd_fails_that_step(context):
    j = job("build", sh("x", "true", cwd="missing"))
    res = run_job(j, context)
    assert res.status == "failed"
    assert "BadWorkingDirectory" in res.steps[0].error


def test_steps_after_failure_are_skipped_unless_condition_says_otherwise(context):
    j = job(
        "build",
        sh("first", "exit 1"),
        sh("second", "echo second"),
        sh("cleanup", "echo cleanup", condition="always()"),
        sh("on-failure", "echo failed", condition="failed()"),
    )
    res = run_job(j, context)
    assert res.status == "failed"
    assert [s.status for s in res.steps] == ["failed", "skipped", "succeeded", "succeeded"]
    assert res.steps[2].stdout == "cleanup\n"


def test_continue_on_error(context):
    j = job("build", sh("flaky", "exit 2", continue_on_error=True), sh("next", "echo next"))
    res = run_job(j, context)
    assert res.status == "succeeded_with_issues"
    assert [s.status for s in res.steps] == ["succeeded_with_issues", "succeeded"]


def test_step_condition_uses_job_variables(context):
    j = job("build", sh("gated", "echo yes", condition="eq(variables.mode, 'release')"),
            variables={"mode": "debug"})
    res = run_job(j, context)
    assert res.steps[0].status == "skipped"
    assert res.status == "succeeded"


def test_job_timeout_budget(context):
    j = job("build", sh("slow", "sleep 5"), sh("after", "echo after"), timeout_minutes=0.005)
    res = run_job(j, context)
    assert res.status == "failed"
    assert res.steps[0].exit_code is None


def test_publish_and_download_steps(context, workspace, store):
    (workspace / "build").mkdir()
    (workspace / "build" / "index.html").write_text("hi")
    producer = job("build", publish("webapp", "build"))
    assert run_job(producer, context).status == "succeeded"
    assert context.published == ["webapp"]

    consumer = job("deploy", download("webapp", "fetched"), sh("check", "cat fetched/index.html"))
    res = run_job(consumer, context)
    assert res.status == "succeeded"
    assert res.steps[1].stdout == "hi"


def test_download_missing_artifact_fails_step(context):
    res = run_job(job("deploy", download("nope", "x")), context)
    assert res.status == "failed"
    assert "not found" in res.steps[0].error


class FakeExecutor:
    instances = []

    def __init__(self, connection):
        self.connection = connection
        self.calls = []
        FakeExecutor.instances.append(self)

    def copy(self, source_folder, target_folder, *, contents, clean_target, timeout):
        self.calls.append(("copy", str(source_folder), target_folder, list(contents), clean_target))
        return RemoteResult(argv=["scp"], exit_code=0, stdout="", stderr="")

    def run(self, script, *, timeout=None):
        self.calls.append(("run", script))
        if "fail" in script:
            raise RemoteError("Remote script on vm failed with exit code 5", exit_code=5, output="bad")
        return RemoteResult(argv=["ssh"], exit_code=0, stdout="restarted\n", stderr="")


def test_remote_steps_dispatch_to_executor(context, workspace):
    FakeExecutor.instances = []
    context.connections = {"vm": ServiceConnection(name="vm", host="h", user="u")}
    context.remote_factory = FakeExecutor
    (workspace / "site").mkdir()

    j = job("deploy", ssh_copy("vm", "site", "/var/www", clean_target=True), ssh_run("vm", "systemctl restart x"))
    res = run_job(j, context)
    assert res.status == "succeeded"
    calls = [c for inst in FakeExecutor.instances for c in inst.calls]
    assert calls[0] == ("copy", str((workspace / "site").resolve()), "/var/www", ["**"], True)
    assert calls[1] == ("run", "systemctl restart x")
    assert res.steps[1].stdout == "restarted\n"


def test_remote_failure_becomes_failed_step(context):
    context.connections = {"vm": ServiceConnection(name="vm", host="h", user="u")}
    context.remote_factory = FakeExecutor
    res = run_job(job("deploy", ssh_run("vm", "fail please")), context)
    assert res.status == "failed"
    assert res.steps[0].exit_code == 5
    assert res.steps[0].stderr == "bad"


def test_unknown_connection_fails_step(context):
    res = run_job(job("deploy", ssh_run("ghost", "true")), context)
    assert res.status == "failed"
    assert "Unknown service connection 'ghost'" in res.steps[0].error
