import pytest

from runner.src.services.context import RunContext
from runner.src.services.credentials import EnvCredentialStore
from runner.src.services.step_runner import StepRunner

SECRETS = {
    "CONVEYOR_CREDENTIAL_DOCKER_TOKEN": "s3cr3t-docker-token",
    "CONVEYOR_CREDENTIAL_SONAR_TOKEN": "sonar-abc-123",
}

@pytest.fixture
def context(tmp_path):
    return RunContext.create(
        run_id="run-1",
        pipeline="test-pipeline",
        workspace_root=str(tmp_path),
        build_number=7,
        branch="main",
    )

@pytest.fixture
def credential_store():
    return EnvCredentialStore(environ=dict(SECRETS))

@pytest.fixture
def step_runner(credential_store, tmp_path):
    return StepRunner(
        credential_store=credential_store,
        default_timeout=30,
        grace_period=1,
        poll_interval=0.05,
        publish_root=str(tmp_path / "published"),
    )

