"""
Run a pipeline definition locally, without the queue or database.

    conveyor-run .conveyor.yml --branch main --build-number 7
"""

import argparse
import logging
import signal
import sys
import threading
import uuid
from typing import List, Optional

from runner.src.errors import DefinitionError
from runner.src.models.result import RunResult
from runner.src.services.context import RunContext
from runner.src.services.executor import run_definition
from runner.src.services.loader import load_definition

logger = logging.getLogger(__name__)

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="conveyor-run", description="Run a Conveyor pipeline locally")
    p.add_argument("definition", help="Path to the pipeline definition (YAML)")
    p.add_argument("--workspace-root", default=None, help="Directory for run workspaces (default: settings)")
    p.add_argument("--run-id", default=None, help="Run id (default: random)")
    p.add_argument("--build-number", type=int, default=1)
    p.add_argument("--branch", default=None, help="Branch name used by 'when' guards and checkout")
    p.add_argument("--repo-url", default=None, help="Repository used by a checkout step without url")
    p.add_argument("--check", action="store_true", help="Only validate the definition")
    p.add_argument("-v", "--verbose", action="store_true")
    return p

def format_result(result: RunResult) -> str:
    width = max([len(s.name) for s in result.stages] + [5])
    lines = [f"{result.pipeline} #{result.build_number} ({result.run_id})"]
    for stage in result.stages:
        note = stage.error or stage.skip_reason or ""
        lines.append(f"  {stage.name.ljust(width)}  {stage.status.value:<8} {note}".rstrip())
    for artifact in result.artifacts:
        lines.append(f"  artifact: {artifact.name} ({artifact.size} bytes)")
    for error in result.hook_errors:
        lines.append(f"  hook error: {error}")
    lines.append(f"Result: {result.status.value.upper()}")
    return "\n".join(lines)

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    try:
        definition = load_definition(args.definition)
    except DefinitionError as e:
        print(f"Invalid pipeline definition: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"Cannot read {args.definition}: {e}", file=sys.stderr)
        return 2

    if args.check:
        print(f"{definition.name}: {len(definition.stages)} stages OK")
        return 0

    scm = {"clone_url": args.repo_url, "branch": args.branch} if args.repo_url else {}
    context = RunContext.create(
        run_id=args.run_id or uuid.uuid4().hex,
        pipeline=definition.name,
        workspace_root=args.workspace_root,
        build_number=args.build_number,
        branch=args.branch,
        scm=scm,
    )

    cancel_event = threading.Event()

    def _cancel(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling run")
        cancel_event.set()

    previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        result, exit_code = run_definition(definition, context, cancel_event)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    print(format_result(result))
    return exit_code

if __name__ == "__main__":
    sys.exit(main())
