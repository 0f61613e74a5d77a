from gateway.src.services.github import (
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    parse_webhook_payload,
    repo_info_from_url,
    cleanup_repo,
    RepositoryError,
)
from gateway.src.services.queue import (
    enqueue_pipeline_run,
    request_cancel,
    get_run_status,
    get_queue_length,
)
from gateway.src.services.runs import (
    load_repository_definition,
    get_or_create_repository,
    create_pipeline_run,
)

__all__ = [
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "repo_info_from_url",
    "cleanup_repo",
    "RepositoryError",
    "enqueue_pipeline_run",
    "request_cancel",
    "get_run_status",
    "get_queue_length",
    "load_repository_definition",
    "get_or_create_repository",
    "create_pipeline_run",
]
