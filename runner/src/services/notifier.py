"""
Post-build notifier - runs always/success/failure/unstable/aborted hooks.
"""

import logging
import mimetypes
import os
import re
import smtplib
from email.message import EmailMessage
from typing import Callable, List, Optional

import httpx

from runner.src.config import get_settings
from runner.src.services.context import RunContext
from runner.src.models.pipeline import HookSpec, PipelineDefinition, StepSpec
from runner.src.models.result import RunResult

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{(pipeline|build_number|status|run_id|branch)\}")

def render(template: str, result: RunResult, context: RunContext) -> str:
    """
    Fill {pipeline}, {build_number}, {status}, {run_id} and {branch}.

    Any other brace in the template (CSS, JSON, unknown names) is kept as is.
    """
    values = dict(
        pipeline=result.pipeline,
        build_number=result.build_number,
        status=result.status.value.upper() if result.status else "UNKNOWN",
        run_id=result.run_id,
        branch=context.branch or "",
    )
    return PLACEHOLDER.sub(lambda m: str(values[m.group(1)]), template)

class PostBuildNotifier:
    """
    Hooks receive the final RunResult and the run's artifacts. A failing
    hook is logged and recorded on the result; it never changes the
    already-concluded run status.
    """

    def __init__(
        self,
        step_runner=None,
        smtp_factory: Optional[Callable[[], smtplib.SMTP]] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.step_runner = step_runner
        self.smtp_factory = smtp_factory or _default_smtp
        self.http_client = http_client

    def notify(self, definition: PipelineDefinition, result: RunResult, context: RunContext) -> List[str]:
        """Run matching hooks. Returns the hook errors recorded on the result."""
        conditions = ["always"]
        if result.status is not None:
            conditions.append(result.status.post_condition)

        for condition in conditions:
            for index, hook in enumerate(definition.hooks_for(condition)):
                try:
                    self.run_hook(hook, result, context, label=f"post-{condition}-{index}")
                    logger.info(f"Post-build hook {condition}/{hook.action} done")
                except Exception as e:
                    message = f"{condition}/{hook.action}: {context.redactor.redact(str(e))}"
                    logger.error(f"Post-build hook failed: {message}")
                    result.hook_errors.append(message)

        return result.hook_errors

    def run_hook(self, hook: HookSpec, result: RunResult, context: RunContext, label: str = "post"):
        if hook.action == "email":
            self.send_email(hook, result, context)
        elif hook.action == "webhook":
            self.post_webhook(hook, result)
        elif hook.action == "sh":
            self.run_command(hook, result, context, label)
        else:
            raise ValueError(f"Unknown hook action: {hook.action}")

    def send_email(self, hook: HookSpec, result: RunResult, context: RunContext):
        settings = get_settings()
        args = hook.args

        message = EmailMessage()
        message["Subject"] = render(args.get("subject", ""), result, context)
        message["From"] = settings.smtp_sender
        message["To"] = ", ".join(args["to"])

        subtype = args.get("mime_type", "text/plain").split("/")[-1]
        message.set_content(render(args.get("body", ""), result, context), subtype=subtype)

        for name in args.get("attach", []):
            artifact = context.artifact(name)
            if artifact is None:
                logger.warning(f"Attachment {name} is not a run artifact, skipping")
                continue
            if not os.path.isfile(artifact.path):
                logger.warning(f"Attachment {name} no longer exists at {artifact.path}, skipping")
                continue
            content_type = mimetypes.guess_type(artifact.path)[0] or "application/octet-stream"
            maintype, subtype = content_type.split("/", 1)
            with open(artifact.path, "rb") as f:
                message.add_attachment(
                    f.read(),
                    maintype=maintype,
                    subtype=subtype,
                    filename=artifact.name.rsplit("/", 1)[-1],
                )

        with self.smtp_factory() as smtp:
            smtp.send_message(message)
        logger.info(f"Sent build notification to {message['To']}")

    def post_webhook(self, hook: HookSpec, result: RunResult):
        client = self.http_client or httpx.Client(timeout=10.0)
        try:
            response = client.post(
                hook.args["url"],
                json=result.summary(),
                headers=hook.args.get("headers", {}),
            )
            response.raise_for_status()
        finally:
            if self.http_client is None:
                client.close()

    def run_command(self, hook: HookSpec, result: RunResult, context: RunContext, label: str):
        if self.step_runner is None:
            raise RuntimeError("No step runner configured for sh hooks")
        step = StepSpec(name=label, action="sh", args={"command": hook.args["command"]})
        self.step_runner.run(
            step,
            context,
            extra_env={"CONVEYOR_RUN_STATUS": result.status.value if result.status else ""},
            stage="post",
        )

def _default_smtp() -> smtplib.SMTP:
    settings = get_settings()
    smtp = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
    if settings.smtp_use_tls:
        smtp.starttls()
    if settings.smtp_user:
        smtp.login(settings.smtp_user, settings.smtp_password)
    return smtp
