"""Tests for the pipeline executor."""

import os
import threading
import time

import pytest

from runner.src.models.result import RunStatus, StageStatus
from runner.src.services.executor import PipelineExecutor, run_definition
from runner.src.services.loader import parse_definition_dict
from runner.src.services.log_collector import collect_logs
from runner.src.services.status_reporter import RunReporter
from runner.src.services.tools import ToolResolver

class CountingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, definition, result, context):
        self.calls.append(result.status)
        return []

class RecordingReporter(RunReporter):
    def __init__(self):
        self.events = []

    def run_started(self, run_id, started_at):
        self.events.append(("run_started", None, None))

    def stage_started(self, run_id, stage):
        self.events.append(("stage_started", stage.name, stage.status.value))

    def stage_finished(self, run_id, stage):
        self.events.append(("stage_finished", stage.name, stage.status.value))

    def run_finished(self, run_id, result):
        self.events.append(("run_finished", None, result.status.value))

def pipeline(*stages, **extra):
    return parse_definition_dict({"name": "test-pipeline", "stages": list(stages), **extra})

def make_executor(step_runner, **kwargs):
    kwargs.setdefault("tool_resolver", ToolResolver(installations={}))
    kwargs.setdefault("notifier", CountingNotifier())
    return PipelineExecutor(step_runner=step_runner, **kwargs)

def test_all_stages_succeed_in_order(step_runner, context):
    executor = make_executor(step_runner)
    marker = os.path.join(context.workspace, "order.txt")
    definition = pipeline(
        {"name": "Checkout", "steps": [f"echo checkout >> {marker}"]},
        {"name": "Build", "steps": [f"echo build >> {marker}"]},
        {"name": "Test", "steps": [f"echo test >> {marker}"]},
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.SUCCESS
    assert result.statuses == {"Checkout": "success", "Build": "success", "Test": "success"}
    with open(marker) as f:
        assert f.read().split() == ["checkout", "build", "test"]
    assert executor.notifier.calls == [RunStatus.SUCCESS]

def test_failed_stage_skips_the_rest(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Checkout", "steps": ["echo checkout"]},
        {"name": "Build", "steps": ["echo compiling", "exit 1", "echo never"]},
        {"name": "Scan", "steps": ["echo scan"]},
        {"name": "Deploy", "steps": ["echo deploy"]},
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.FAILED
    assert result.statuses == {
        "Checkout": "success",
        "Build": "failed",
        "Scan": "skipped",
        "Deploy": "skipped",
    }
    build = result.stage("Build")
    assert [s.status.value for s in build.steps] == ["success", "failed"]
    assert "exited with code 1" in build.error
    assert result.stage("Scan").steps == []
    assert executor.notifier.calls == [RunStatus.FAILED]

def test_steps_share_the_workspace(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Build", "steps": ["echo artifact > out.txt"]},
        {"name": "Verify", "steps": ["test -f out.txt"]},
    )

    assert executor.execute(definition, context).status == RunStatus.SUCCESS

def test_best_effort_failure_marks_run_unstable(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Build", "steps": ["true"]},
        {"name": "Scan", "best_effort": True, "steps": ["exit 2"]},
        {"name": "Deploy", "steps": ["true"]},
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.UNSTABLE
    assert result.statuses == {"Build": "success", "Scan": "failed", "Deploy": "success"}

def test_needs_of_failed_best_effort_stage_are_skipped(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Scan", "best_effort": True, "steps": ["exit 1"]},
        {"name": "Publish Report", "needs": ["Scan"], "steps": ["true"]},
        {"name": "Deploy", "steps": ["true"]},
    )

    result = executor.execute(definition, context)

    assert result.statuses == {"Scan": "failed", "Publish Report": "skipped", "Deploy": "success"}
    assert "Scan" in result.stage("Publish Report").skip_reason
    assert result.status == RunStatus.UNSTABLE

def test_when_guard_skips_stage(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Build", "steps": ["true"]},
        {"name": "Deploy", "when": {"branch": "release/*"}, "steps": ["exit 1"]},
        {"name": "Notify", "when": {"branch": "main", "environment": {"DEPLOY_ENV": "prod"}},
         "environment": {"DEPLOY_ENV": "prod"}, "steps": ["true"]},
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.SUCCESS
    assert result.statuses == {"Build": "success", "Deploy": "skipped", "Notify": "success"}
    assert result.stage("Deploy").skip_reason == "when condition not met"

def test_when_guard_sees_expanded_tool_paths(step_runner, context, tmp_path):
    jdk = tmp_path / "jdk-17"
    (jdk / "bin").mkdir(parents=True)
    executor = make_executor(step_runner, tool_resolver=ToolResolver(installations={"jdk17": str(jdk)}))
    definition = pipeline(
        {"name": "Build", "when": {"environment": {"JAVA_HOME": str(jdk)}}, "steps": ["true"]},
        {"name": "Legacy", "when": {"environment": {"JAVA_HOME": "/opt/jdk8"}}, "steps": ["true"]},
        tools={"jdk": "jdk17"},
        environment={"JAVA_HOME": "${tools.jdk17}"},
    )

    result = executor.execute(definition, context)

    assert result.statuses == {"Build": "success", "Legacy": "skipped"}

def test_cancellation_aborts_run(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Build", "steps": ["true"]},
        {"name": "Long Test", "steps": ["sleep 10"]},
        {"name": "Deploy", "steps": ["true"]},
    )
    cancel = threading.Event()
    threading.Timer(0.5, cancel.set).start()

    started = time.monotonic()
    result = executor.execute(definition, context, cancel_event=cancel)

    assert time.monotonic() - started < 8
    assert result.status == RunStatus.ABORTED
    assert result.statuses == {"Build": "success", "Long Test": "aborted", "Deploy": "skipped"}
    assert executor.notifier.calls == [RunStatus.ABORTED]

def test_cancel_before_start_skips_everything(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline({"name": "Build", "steps": ["true"]}, {"name": "Deploy", "steps": ["true"]})
    cancel = threading.Event()
    cancel.set()

    result = executor.execute(definition, context, cancel_event=cancel)

    assert result.status == RunStatus.ABORTED
    assert set(result.statuses.values()) == {"skipped"}

def test_missing_tool_is_fatal_even_for_best_effort(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Scan", "best_effort": True, "tools": {"sonar": "no-such-tool-xyz"}, "steps": ["true"]},
        {"name": "Deploy", "steps": ["true"]},
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.FAILED
    assert result.statuses == {"Scan": "failed", "Deploy": "skipped"}
    assert "no-such-tool-xyz" in result.stage("Scan").error

def test_tools_are_put_on_path(step_runner, context, tmp_path):
    jdk = tmp_path / "jdk-17"
    (jdk / "bin").mkdir(parents=True)
    executor = make_executor(step_runner, tool_resolver=ToolResolver(installations={"jdk17": str(jdk)}))
    definition = pipeline(
        {"name": "Build", "steps": ['echo "$PATH" > path.txt', "echo ${tools.jdk17} > home.txt"]},
        tools={"jdk": "jdk17"},
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.SUCCESS
    with open(os.path.join(context.workspace, "path.txt")) as f:
        assert f.read().split(os.pathsep)[0] == str(jdk / "bin")
    with open(os.path.join(context.workspace, "home.txt")) as f:
        assert f.read().strip() == str(jdk)
    assert context.tool_paths == {"jdk17": str(jdk)}

def test_pipeline_environment_reaches_steps(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline(
        {"name": "Build", "environment": {"STAGE": "build"}, "steps": [
            {"sh": 'test "$APP:$STAGE:$STEP" = "netflix:build:one"', "env": {"STEP": "one"}},
        ]},
        environment={"APP": "netflix"},
    )

    assert executor.execute(definition, context).status == RunStatus.SUCCESS

def test_secret_output_is_redacted(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline({"name": "Push", "steps": [
        {"sh": 'echo "token is $DOCKER_TOKEN"', "credentials": [{"id": "docker-token", "env": "DOCKER_TOKEN"}]},
    ]})

    result = executor.execute(definition, context)

    step = result.stage("Push").steps[0]
    assert step.stdout == "token is ****\n"
    assert "s3cr3t-docker-token" not in collect_logs(context)
    assert "s3cr3t-docker-token" not in str(context.to_dict())

def test_missing_credential_fails_stage(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline({"name": "Push", "steps": [
        {"sh": "true", "credentials": [{"id": "unknown-secret", "env": "TOKEN"}]},
    ]})

    result = executor.execute(definition, context)

    assert result.status == RunStatus.FAILED
    assert "unknown-secret" in result.stage("Push").error

def test_archived_artifacts_are_on_result(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline({"name": "Scan", "steps": ["echo clean > trivyfs.txt", {"archive": "trivyfs.txt"}]})

    result = executor.execute(definition, context)

    assert [a.name for a in result.artifacts] == ["trivyfs.txt"]
    assert result.artifacts[0].stage == "Scan"

def test_step_logs_are_collected(step_runner, context):
    executor = make_executor(step_runner)
    definition = pipeline({"name": "Build", "steps": ["echo hello-from-build"]})

    executor.execute(definition, context)

    logs = collect_logs(context)
    assert "00-build/00-echo-hello-from-build.log" in logs
    assert "hello-from-build" in logs

def test_reporter_receives_transitions(step_runner, context):
    reporter = RecordingReporter()
    executor = make_executor(step_runner, reporter=reporter)
    definition = pipeline(
        {"name": "Build", "steps": ["exit 1"]},
        {"name": "Deploy", "steps": ["true"]},
    )

    executor.execute(definition, context)

    assert reporter.events == [
        ("run_started", None, None),
        ("stage_started", "Build", "running"),
        ("stage_finished", "Build", "failed"),
        ("stage_finished", "Deploy", "skipped"),
        ("run_finished", None, "failed"),
    ]

def test_post_hooks_run_once_with_final_status(step_runner, context):
    executor = PipelineExecutor(step_runner=step_runner, tool_resolver=ToolResolver(installations={}))
    marker = os.path.join(context.workspace, "..", "hooks.txt")
    definition = pipeline(
        {"name": "Build", "steps": ["exit 1"]},
        post={
            "always": [{"sh": f'echo "always $CONVEYOR_RUN_STATUS" >> {marker}'}],
            "failure": [{"sh": f"echo failure >> {marker}"}],
            "success": [{"sh": f"echo success >> {marker}"}],
        },
    )

    result = executor.execute(definition, context)

    assert result.status == RunStatus.FAILED
    with open(marker) as f:
        assert f.read().splitlines() == ["always failed", "failure"]

def test_failing_hook_does_not_change_status(step_runner, context):
    executor = PipelineExecutor(step_runner=step_runner, tool_resolver=ToolResolver(installations={}))
    definition = pipeline({"name": "Build", "steps": ["true"]}, post={"always": [{"sh": "exit 5"}]})

    result = executor.execute(definition, context)

    assert result.status == RunStatus.SUCCESS
    assert len(result.hook_errors) == 1
    assert result.hook_errors[0].startswith("always/sh:")

def test_run_definition_exit_codes(step_runner, context):
    executor = make_executor(step_runner)

    _, code = run_definition(pipeline({"name": "Build", "steps": ["true"]}), context, executor=executor)
    assert code == 0

    _, code = run_definition(pipeline({"name": "Build", "steps": ["false"]}), context, executor=executor)
    assert code == 1

class BrokenStageReporter(RecordingReporter):
    def stage_started(self, run_id, stage):
        raise RuntimeError("db connection lost")

class BrokenRunReporter(RecordingReporter):
    def run_started(self, run_id, started_at):
        raise RuntimeError("db connection lost")

def test_reporter_error_in_stage_fails_the_run(step_runner, context):
    executor = make_executor(step_runner, reporter=BrokenStageReporter())
    definition = pipeline({"name": "Build", "steps": ["exit 1"]}, {"name": "Deploy", "steps": ["true"]})

    result = executor.execute(definition, context)

    assert result.status == RunStatus.FAILED
    assert result.statuses == {"Build": "failed", "Deploy": "skipped"}
    assert "db connection lost" in result.stage("Build").error
    assert executor.notifier.calls == [RunStatus.FAILED]

def test_reporter_error_before_first_stage_fails_the_run(step_runner, context):
    executor = make_executor(step_runner, reporter=BrokenRunReporter())
    definition = pipeline({"name": "Build", "steps": ["true"]})

    with pytest.raises(RuntimeError, match="db connection lost"):
        executor.execute(definition, context)

    assert executor.notifier.calls == [RunStatus.FAILED]
    assert ("run_finished", None, "failed") in executor.reporter.events
