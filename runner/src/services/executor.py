"""
Pipeline executor - runs stages in order and their steps in sequence.
"""

import logging
import os
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple

from runner.src.services.context import RunContext
from runner.src.errors import CancellationError, ConveyorError, ToolResolutionError
from runner.src.models.pipeline import PipelineDefinition, StageSpec
from runner.src.models.result import RunResult, RunStatus, StageResult, StageStatus, StepResult
from runner.src.services.loader import TOOL_REF, execution_order
from runner.src.services.log_collector import write_step_log
from runner.src.services.notifier import PostBuildNotifier
from runner.src.services.status_reporter import NullReporter, RunReporter
from runner.src.services.step_runner import StepRunner
from runner.src.services.tools import ToolResolver, tool_bin_dir

logger = logging.getLogger(__name__)

class PipelineExecutor:
    def __init__(
        self,
        step_runner: Optional[StepRunner] = None,
        tool_resolver: Optional[ToolResolver] = None,
        notifier: Optional[PostBuildNotifier] = None,
        reporter: Optional[RunReporter] = None,
    ):
        self.step_runner = step_runner or StepRunner()
        self.tool_resolver = tool_resolver or ToolResolver()
        self.notifier = notifier or PostBuildNotifier(step_runner=self.step_runner)
        self.reporter = reporter or NullReporter()

    def execute(
        self,
        definition: PipelineDefinition,
        context: RunContext,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        """
        Execute a pipeline run.
        Post-build hooks fire exactly once, whatever the outcome.
        """
        cancel_event = cancel_event or threading.Event()
        stages = execution_order(definition)
        declared = {stage.name: i for i, stage in enumerate(definition.stages)}

        result = RunResult(
            run_id=context.run_id,
            pipeline=definition.name,
            build_number=context.build_number,
            stages=[StageResult(name=s.name, order=declared[s.name]) for s in stages],
            started_at=datetime.utcnow(),
        )

        logger.info(f"Starting pipeline run {context.run_id} ({definition.name}) with {len(stages)} stages")

        halted: Optional[str] = None
        failed = aborted = unstable = False

        try:
            self.reporter.run_started(context.run_id, result.started_at)

            for spec in stages:
                stage_result = result.stage(spec.name)

                if halted is None and cancel_event.is_set():
                    halted = "run cancelled"
                    aborted = True

                if halted is not None:
                    self._skip(context.run_id, stage_result, halted)
                    continue

                unmet = [n for n in spec.needs if result.stage(n).status != StageStatus.SUCCESS]
                if unmet:
                    self._skip(context.run_id, stage_result, f"needs did not succeed: {', '.join(unmet)}")
                    continue

                if spec.when is not None and not spec.when.matches(
                    context.branch, self._guard_env(definition, spec, context)
                ):
                    self._skip(context.run_id, stage_result, "when condition not met")
                    continue

                fatal = self._run_stage(definition, spec, stage_result, context, cancel_event)

                if stage_result.status == StageStatus.ABORTED:
                    halted = "run cancelled"
                    aborted = True
                elif stage_result.status == StageStatus.FAILED:
                    if spec.best_effort and not fatal:
                        logger.warning(f"Best-effort stage {spec.name} failed, continuing")
                        unstable = True
                    else:
                        halted = f"stage '{spec.name}' failed"
                        failed = True
        except BaseException as e:
            # A crash outside a stage (reporter, workspace) still fails the run
            logger.exception(f"Pipeline run {context.run_id} crashed")
            failed = True
            halted = halted or f"run crashed: {e.__class__.__name__}"
            for stage_result in result.stages:
                if stage_result.status == StageStatus.RUNNING:
                    stage_result.status = StageStatus.FAILED
                    stage_result.error = halted
                elif stage_result.status == StageStatus.PENDING:
                    stage_result.status = StageStatus.SKIPPED
                    stage_result.skip_reason = halted
            raise
        finally:
            if aborted:
                result.status = RunStatus.ABORTED
            elif failed or halted is not None:
                result.status = RunStatus.FAILED
            elif unstable:
                result.status = RunStatus.UNSTABLE
            else:
                result.status = RunStatus.SUCCESS

            result.artifacts = list(context.artifacts)
            result.finished_at = datetime.utcnow()
            self.notifier.notify(definition, result, context)
            self.reporter.run_finished(context.run_id, result)

        logger.info(f"Pipeline run {context.run_id} finished with status: {result.status.value}")
        return result

    def _run_stage(
        self,
        definition: PipelineDefinition,
        spec: StageSpec,
        stage_result: StageResult,
        context: RunContext,
        cancel_event: threading.Event,
    ) -> bool:
        """
        Run one stage, recording its status on stage_result.
        Returns True when the failure is non-recoverable for the run.
        """
        fatal = False
        stage_result.status = StageStatus.RUNNING
        stage_result.started_at = datetime.utcnow()
        logger.info(f"Executing stage {stage_result.order}: {spec.name}")

        try:
            self.reporter.stage_started(context.run_id, stage_result)
            env = self._stage_env(definition, spec, context)

            for j, step in enumerate(spec.steps):
                try:
                    step_result = self.step_runner.run(
                        step, context, extra_env=env, cancel_event=cancel_event, stage=spec.name
                    )
                except ConveyorError as e:
                    if e.result is not None:
                        self._record_step(context, stage_result, j, e.result)
                    raise
                self._record_step(context, stage_result, j, step_result)

            stage_result.status = StageStatus.SUCCESS
            logger.info(f"Stage {spec.name} succeeded")

        except CancellationError as e:
            stage_result.status = StageStatus.ABORTED
            stage_result.error = str(e)
            logger.warning(f"Stage {spec.name} aborted")

        except ToolResolutionError as e:
            e.stage = spec.name
            stage_result.status = StageStatus.FAILED
            stage_result.error = str(e)
            fatal = True
            logger.error(f"Stage {spec.name} failed: {e}")

        except ConveyorError as e:
            stage_result.status = StageStatus.FAILED
            stage_result.error = context.redactor.redact(str(e))
            logger.error(f"Stage {spec.name} failed: {stage_result.error}")

        except Exception as e:
            logger.exception(f"Stage {spec.name} failed with exception")
            stage_result.status = StageStatus.FAILED
            stage_result.error = context.redactor.redact(f"{e.__class__.__name__}: {e}")

        finally:
            stage_result.finished_at = datetime.utcnow()
            self.reporter.stage_finished(context.run_id, stage_result)

        return fatal

    def _stage_env(self, definition: PipelineDefinition, spec: StageSpec, context: RunContext) -> Dict[str, str]:
        """Resolve the stage's tools and build its environment overlay."""
        bin_dirs = [
            tool_bin_dir(context.resolve_tool(alias, self.tool_resolver))
            for alias in definition.stage_tools(spec)
        ]

        env = {k: context.expand(v) for k, v in definition.environment.items()}
        env.update({k: context.expand(v) for k, v in spec.environment.items()})

        if bin_dirs:
            path = env.get("PATH") or os.environ.get("PATH", "")
            env["PATH"] = os.pathsep.join(bin_dirs + ([path] if path else []))
        return env

    def _guard_env(self, definition: PipelineDefinition, spec: StageSpec, context: RunContext) -> Dict[str, str]:
        """Environment a `when` guard is evaluated against, with tool references expanded."""
        raw = dict(definition.environment)
        raw.update(spec.environment)

        for alias in sorted(set(TOOL_REF.findall(" ".join(raw.values())))):
            try:
                context.resolve_tool(alias, self.tool_resolver)
            except ToolResolutionError as e:
                # Left unexpanded; the stage itself fails on it if it runs
                logger.warning(f"Guard for stage {spec.name}: {e}")

        env = context.base_env()
        env.update({k: context.expand(v) for k, v in raw.items()})
        return env

    def _record_step(self, context: RunContext, stage_result: StageResult, step_order: int, step_result: StepResult):
        logs = write_step_log(context, stage_result.order, stage_result.name, step_order, step_result)
        stage_result.steps.append(step_result)
        self.reporter.step_finished(context.run_id, stage_result.order, step_order, step_result, logs)

    def _skip(self, run_id: str, stage_result: StageResult, reason: str):
        stage_result.status = StageStatus.SKIPPED
        stage_result.skip_reason = reason
        logger.info(f"Skipping stage {stage_result.name}: {reason}")
        self.reporter.stage_finished(run_id, stage_result)


def run_definition(
    definition: PipelineDefinition,
    context: RunContext,
    cancel_event: Optional[threading.Event] = None,
    executor: Optional[PipelineExecutor] = None,
) -> Tuple[RunResult, int]:
    """Run a definition and map the outcome to a process exit code."""
    executor = executor or PipelineExecutor()
    result = executor.execute(definition, context, cancel_event)
    return result, 0 if result.status == RunStatus.SUCCESS else 1
