"""
Collect step logs into the run's log directory.

Only redacted output is written; StepResult output is already masked by
the step runner, and everything passes through the redactor again here.
"""

import logging
import os
from typing import List, Optional

from runner.src.services.context import RunContext
from runner.src.models.result import StepResult

logger = logging.getLogger(__name__)

def safe_name(name: str, limit: int = 40) -> str:
    """Filesystem-safe, lowercase version of a stage or step name."""
    safe = name.lower().replace(" ", "-").replace("_", "-")
    safe = "".join(c for c in safe if c.isalnum() or c == "-")
    return safe[:limit] or "step"

def step_log_path(context: RunContext, stage_order: int, stage_name: str, step_order: int, step_name: str) -> str:
    stage_dir = os.path.join(context.log_dir, f"{stage_order:02d}-{safe_name(stage_name)}")
    return os.path.join(stage_dir, f"{step_order:02d}-{safe_name(step_name)}.log")

def format_step_log(result: StepResult) -> str:
    lines = [f"$ {result.name} [{result.action}]"]
    if result.stdout:
        lines.append(result.stdout.rstrip("\n"))
    if result.stderr:
        lines.append("--- stderr ---")
        lines.append(result.stderr.rstrip("\n"))
    lines.append(f"--- {result.status.value} (exit code {result.exit_code}) ---")
    if result.error:
        lines.append(f"error: {result.error}")
    return "\n".join(lines) + "\n"

def write_step_log(
    context: RunContext,
    stage_order: int,
    stage_name: str,
    step_order: int,
    result: StepResult,
) -> str:
    """Persist a step's captured output. Returns the log text written."""
    path = step_log_path(context, stage_order, stage_name, step_order, result.name)
    os.makedirs(os.path.dirname(path), exist_ok=True)

    text = context.redactor.redact(format_step_log(result))
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)

    logger.debug(f"Wrote step log {path}")
    return text

def collect_logs(context: RunContext, tail_lines: Optional[int] = 1000) -> str:
    """Concatenate every step log of a run, ordered by stage and step."""
    if not os.path.isdir(context.log_dir):
        return ""

    chunks: List[str] = []
    for stage_dir in sorted(os.listdir(context.log_dir)):
        stage_path = os.path.join(context.log_dir, stage_dir)
        if not os.path.isdir(stage_path):
            continue
        for log_file in sorted(os.listdir(stage_path)):
            with open(os.path.join(stage_path, log_file), "r", encoding="utf-8") as f:
                chunks.append(f"==> {stage_dir}/{log_file}\n{f.read()}")

    text = "".join(chunks)
    if tail_lines is not None:
        text = "\n".join(text.splitlines()[-tail_lines:])
    return text
