from runner.src.services.executor import PipelineExecutor, run_definition
from runner.src.services.loader import (
    parse_definition,
    parse_definition_dict,
    load_definition,
    execution_order,
)
from runner.src.services.log_collector import collect_logs, write_step_log
from runner.src.services.status_reporter import (
    RunReporter,
    NullReporter,
    StatusReporter,
)

__all__ = [
    "PipelineExecutor",
    "run_definition",
    "parse_definition",
    "parse_definition_dict",
    "load_definition",
    "execution_order",
    "collect_logs",
    "write_step_log",
    "RunReporter",
    "NullReporter",
    "StatusReporter",
]
