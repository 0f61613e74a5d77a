"""
Step runner - executes a single step as an OS process or built-in action.
"""

import glob
import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from runner.src.config import get_settings
from runner.src.services.context import RunContext
from runner.src.errors import (
    CancellationError,
    ConveyorError,
    StepExecutionError,
    StepTimeoutError,
)
from runner.src.models.pipeline import StepSpec
from runner.src.models.result import StepResult, StepStatus
from runner.src.services.credentials import (
    CredentialStore,
    default_credential_store,
    fetch_step_credentials,
)

logger = logging.getLogger(__name__)

BUILTIN_ACTIONS = ("archive", "publish", "clean_ws")

class StepRunner:
    """
    Runs steps synchronously. A watchdog loop runs alongside each process
    and enforces the step timeout and cooperative cancellation.
    """

    def __init__(
        self,
        credential_store: Optional[CredentialStore] = None,
        default_timeout: Optional[int] = None,
        grace_period: Optional[float] = None,
        poll_interval: Optional[float] = None,
        publish_root: Optional[str] = None,
    ):
        settings = get_settings()
        self.credential_store = credential_store or default_credential_store()
        self.default_timeout = default_timeout or settings.default_step_timeout
        self.grace_period = settings.cancel_grace_period if grace_period is None else grace_period
        self.poll_interval = poll_interval or settings.poll_interval
        self.publish_root = publish_root or settings.publish_root

    def run(
        self,
        step: StepSpec,
        context: RunContext,
        extra_env: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        stage: Optional[str] = None,
    ) -> StepResult:
        """
        Run a step and return its result.
        Raises StepExecutionError, StepTimeoutError, CancellationError or
        CredentialError; each carries the recorded StepResult.
        """
        started_at = datetime.utcnow()

        if cancel_event is not None and cancel_event.is_set():
            raise CancellationError(stage=stage, step=step.name, result=StepResult(
                name=step.name, action=step.action, status=StepStatus.ABORTED,
                started_at=started_at, finished_at=started_at, error="run cancelled",
            ))

        try:
            secrets = fetch_step_credentials(step.credentials, self.credential_store, context.redactor)
        except ConveyorError as e:
            e.stage, e.step = stage, step.name
            e.result = StepResult(
                name=step.name, action=step.action, status=StepStatus.FAILED,
                started_at=started_at, finished_at=datetime.utcnow(), error=e.message,
            )
            raise

        env = os.environ.copy()
        env.update(context.base_env())
        env.update(extra_env or {})
        env.update({k: context.expand(v) for k, v in step.env.items()})
        env.update(secrets)

        logger.info(f"Running step {step.name} ({step.action})")

        if step.action in BUILTIN_ACTIONS:
            outcome, exit_code, stdout, stderr = self._run_builtin(step, context, stage)
        else:
            timeout = step.timeout or self.default_timeout
            outcome, exit_code, stdout, stderr = self._run_process(
                self.build_command(step, context), context.workspace, env, timeout, cancel_event
            )

        result = StepResult(
            name=step.name,
            action=step.action,
            status=StepStatus.SUCCESS,
            exit_code=exit_code,
            stdout=context.redactor.redact(stdout),
            stderr=context.redactor.redact(stderr),
            started_at=started_at,
            finished_at=datetime.utcnow(),
        )

        if outcome == "cancelled":
            result.status = StepStatus.ABORTED
            result.error = "run cancelled"
            raise CancellationError(stage=stage, step=step.name, output=result.output, result=result)

        if outcome == "timeout":
            timeout = step.timeout or self.default_timeout
            result.status = StepStatus.TIMEOUT
            result.error = f"timed out after {timeout}s"
            raise StepTimeoutError(timeout, stage=stage, step=step.name, output=result.output, result=result)

        if exit_code != 0:
            result.status = StepStatus.FAILED
            error = StepExecutionError(exit_code, stage=stage, step=step.name, output=result.output)
            if step.action in BUILTIN_ACTIONS and stderr:
                error.message = context.redactor.redact(stderr.strip())
            result.error = error.message
            error.result = result
            raise error

        logger.info(f"Step {step.name} succeeded")
        return result

    def build_command(self, step: StepSpec, context: RunContext) -> List[str]:
        """Argument vector for process-backed actions."""
        if step.action == "sh":
            return ["/bin/sh", "-c", context.expand(step.command)]

        if step.action == "checkout":
            return ["/bin/sh", "-c", checkout_script(step.args, context)]

        raise ValueError(f"Unknown step action: {step.action}")

    def _run_process(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        timeout: float,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[str, int, str, str]:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            threading.Thread(target=_drain, args=(proc.stdout, stdout_chunks), daemon=True),
            threading.Thread(target=_drain, args=(proc.stderr, stderr_chunks), daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = time.monotonic() + timeout
        outcome = "exited"
        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Cancelling process {proc.pid}")
                self._terminate(proc)
                outcome = "cancelled"
                break

            if time.monotonic() >= deadline:
                logger.error(f"Process {proc.pid} timed out after {timeout}s, killing")
                _signal_group(proc, signal.SIGKILL)
                proc.wait()
                outcome = "timeout"
                break

        for reader in readers:
            reader.join(timeout=5)

        return (
            outcome,
            proc.returncode,
            b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )

    def _terminate(self, proc: subprocess.Popen):
        """Ask the process group to stop, then force it after the grace period."""
        _signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
            _signal_group(proc, signal.SIGKILL)
            proc.wait()

    def _run_builtin(self, step: StepSpec, context: RunContext, stage: Optional[str]) -> Tuple[str, int, str, str]:
        if step.action == "archive":
            return ("exited",) + archive_files(step.args, context, stage)
        if step.action == "publish":
            return ("exited",) + publish_files(step.args, context, self.publish_root, stage)
        return ("exited",) + clean_workspace(context)


def checkout_script(args: Dict[str, Optional[str]], context: RunContext) -> str:
    """Shell script that clones the repository into the workspace."""
    url = args.get("url")
    branch = args.get("branch")
    commit = args.get("commit")
    if not url:
        # Checkout the run's own SCM revision
        url = context.scm.get("clone_url")
        branch = branch or context.scm.get("branch") or context.branch
        commit = commit or context.scm.get("commit_sha")

    if not url:
        return "echo 'checkout: no repository url configured' >&2; exit 1"

    clone = ["git", "clone", "--depth", "1"]
    if branch:
        clone += ["--branch", branch]
    clone += [url, "."]
    commands = [" ".join(shlex.quote(a) for a in clone)]

    if commit:
        commands.append(f"git fetch --depth 1 origin {shlex.quote(commit)}")
        commands.append(f"git checkout {shlex.quote(commit)}")

    return " && ".join(commands)


def workspace_matches(pattern: str, context: RunContext) -> List[str]:
    """Files matching a glob pattern that resolve inside the run workspace."""
    root = os.path.realpath(context.workspace)
    matches = []
    for path in sorted(glob.glob(os.path.join(context.workspace, pattern), recursive=True)):
        if not os.path.isfile(path):
            continue
        if os.path.commonpath([root, os.path.realpath(path)]) != root:
            logger.warning(f"Ignoring {path}: outside the workspace")
            continue
        matches.append(path)
    return matches


def archive_files(args: Dict, context: RunContext, stage: Optional[str] = None) -> Tuple[int, str, str]:
    """Collect workspace files matching the patterns as run artifacts."""
    archived = []
    for pattern in args["paths"]:
        for path in workspace_matches(pattern, context):
            archived.append(context.add_artifact(path, stage=stage).name)

    if not archived and not args.get("allow_empty", False):
        return 1, "", f"archive: no files matched {', '.join(args['paths'])}\n"

    return 0, "".join(f"archived {name}\n" for name in archived), ""


def publish_files(
    args: Dict, context: RunContext, publish_root: str, stage: Optional[str] = None
) -> Tuple[int, str, str]:
    """
    Copy matching workspace files to <publish_root>/<pipeline>/<build>/<target>
    and record the copies as run artifacts.
    """
    dest_root = os.path.join(
        publish_root,
        context.pipeline.replace(os.sep, "_"),
        str(context.build_number),
        args.get("target", ""),
    )

    published = []
    for pattern in args["paths"]:
        for path in workspace_matches(pattern, context):
            name = os.path.relpath(path, context.workspace)
            dest = os.path.join(dest_root, name)
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copy2(path, dest)
            context.add_artifact(dest, stage=stage, name=name)
            published.append(dest)

    if not published and not args.get("allow_empty", False):
        return 1, "", f"publish: no files matched {', '.join(args['paths'])}\n"

    return 0, "".join(f"published {dest}\n" for dest in published), ""


def clean_workspace(context: RunContext) -> Tuple[int, str, str]:
    """Remove everything inside the run workspace."""
    removed = 0
    for entry in os.listdir(context.workspace):
        path = os.path.join(context.workspace, entry)
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
        removed += 1
    return 0, f"removed {removed} entries from workspace\n", ""


def _drain(pipe, chunks: List[bytes]):
    try:
        for line in iter(pipe.readline, b""):
            chunks.append(line)
    finally:
        pipe.close()


def _signal_group(proc: subprocess.Popen, sig: int):
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass
