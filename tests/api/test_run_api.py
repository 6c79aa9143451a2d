import sys

import pytest
from fastapi.testclient import TestClient

from coderunner.api.server import BAD_JSON_MESSAGE, SERVER_ERROR_MESSAGE, create_app
from coderunner.config.environment import EngineSettings
from coderunner.runners.backends import MockBackend, SubprocessBackend
from coderunner.runners.engine import ExecutionEngine
from coderunner.runners.errors import LaunchError
from coderunner.runners.workspace import WorkspaceManager


class _BrokenBackend(MockBackend):
    name = "broken"

    def launch(self, profile, workspace):
        raise LaunchError("docker daemon went away")


def _client(registry, workspace_root, backend, timeout_seconds=10.0) -> TestClient:
    engine = ExecutionEngine(registry, backend, WorkspaceManager(workspace_root))
    settings = EngineSettings(backend=backend.name, timeout_seconds=timeout_seconds)
    return TestClient(create_app(engine=engine, settings=settings))


@pytest.fixture
def client(registry, workspace_root) -> TestClient:
    return _client(registry, workspace_root, MockBackend())


def test_healthcheck(client):
    response = client.get("/v1/healthcheck")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "available"
    assert data["backend"] == "mock"
    assert data["isolated"] is False
    assert data["languages"] == ["javascript", "python", "ruby"]


def test_run_returns_result(client):
    response = client.post("/v1/run", json={"code": "print(1)", "language": "python"})

    assert response.status_code == 200
    result = response.json()["result"]
    assert result["stdout"] == "Mock Output: print(1)"
    assert result["outcome"] == "success"
    assert result["language"] == "python"


def test_run_requires_code(client):
    response = client.post("/v1/run", json={"language": "python"})

    assert response.status_code == 422
    assert response.json() == {"error": {"code": "must be provided"}}


def test_run_rejects_unknown_language(client):
    response = client.post("/v1/run", json={"code": "print(1)", "language": "perl"})

    assert response.status_code == 422
    assert response.json()["error"]["language"] == "must be one of javascript, python, ruby"


def test_run_reports_both_validation_errors(client):
    response = client.post("/v1/run", json={})

    assert response.status_code == 422
    assert set(response.json()["error"]) == {"code", "language"}


def test_engine_failure_is_generic_500(registry, workspace_root):
    client = _client(registry, workspace_root, _BrokenBackend())

    response = client.post("/v1/run", json={"code": "print(1)", "language": "python"})

    assert response.status_code == 500
    assert response.json() == {"error": SERVER_ERROR_MESSAGE}


def test_program_failure_is_still_200(registry, workspace_root):
    backend = SubprocessBackend(executables={"python": sys.executable})
    client = _client(registry, workspace_root, backend)

    response = client.post(
        "/v1/run", json={"code": "import sys\nsys.exit(2)", "language": "python"}
    )

    assert response.status_code == 200
    result = response.json()["result"]
    assert result["outcome"] == "runtime_failure"
    assert result["exit_code"] == 2
    assert result["message"] == "Execution failed: exit status 2"


def test_run_applies_configured_timeout(registry, workspace_root):
    backend = SubprocessBackend(executables={"python": sys.executable})
    client = _client(registry, workspace_root, backend, timeout_seconds=1.0)

    response = client.post(
        "/v1/run", json={"code": "import time\ntime.sleep(30)", "language": "python"}
    )

    assert response.status_code == 200
    result = response.json()["result"]
    assert result["outcome"] == "timed_out"
    assert result["message"] == "Execution timed out"


def test_wrong_field_type_uses_error_envelope(client):
    response = client.post("/v1/run", json={"code": 123, "language": "python"})

    assert response.status_code == 422
    error = response.json()["error"]
    assert set(error) == {"code"}
    assert "string" in error["code"]


def test_malformed_json_is_bad_request(client):
    response = client.post(
        "/v1/run",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": {"body": BAD_JSON_MESSAGE}}
