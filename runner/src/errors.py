"""
Error kinds raised while loading and running pipelines.
"""

from typing import Any, Optional


class ConveyorError(Exception):
    """
    Base error. Carries the stage/step identity, any captured output and,
    for step failures, the StepResult that was recorded.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        step: Optional[str] = None,
        output: str = "",
        result: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.step = step
        self.output = output
        self.result = result

    def __str__(self) -> str:
        where = "/".join(p for p in (self.stage, self.step) if p)
        return f"[{where}] {self.message}" if where else self.message


class DefinitionError(ConveyorError):
    """Raised when a pipeline definition is malformed or invalid."""

    def __init__(self, location: str, cause: str):
        super().__init__(f"{location}: {cause}" if location else cause)
        self.location = location
        self.cause = cause


class ToolResolutionError(ConveyorError):
    """Raised when a tool alias cannot be resolved to an installation."""

    def __init__(self, alias: str, reason: str = "tool not configured", **kwargs):
        super().__init__(f"{reason}: {alias}", **kwargs)
        self.alias = alias


class StepExecutionError(ConveyorError):
    """Raised when a step exits with a non-zero code."""

    def __init__(self, exit_code: int, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"exited with code {exit_code}", **kwargs)
        self.exit_code = exit_code


class StepTimeoutError(ConveyorError):
    """Raised when a step exceeds its allotted duration."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(f"timed out after {timeout}s", **kwargs)
        self.timeout = timeout


class CredentialError(ConveyorError):
    """Raised when a credential reference is missing or unauthorized."""

    def __init__(self, credential_id: str, reason: str = "credential not found", **kwargs):
        super().__init__(f"{reason}: {credential_id}", **kwargs)
        self.credential_id = credential_id


class CancellationError(ConveyorError):
    """Raised when a run is aborted by an external signal."""

    def __init__(self, message: str = "run cancelled", **kwargs):
        super().__init__(message, **kwargs)
