"""Tests for the command line interface."""

import re

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from jira_sync_operator import cli

runner = CliRunner()

API_URL = "http://operator.test"
JOB_ID = "single-20240301-120000-ab12cd34"


class FakeAPI:
    """Routes CLI requests to canned JSON responses."""

    def __init__(self, routes=None, error=None):
        self.routes = routes or {}
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status, body = self.routes[request.url.path]
        return httpx.Response(status, json=body)


@pytest.fixture
def wide_console(monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def fake_api(monkeypatch, wide_console):
    api = FakeAPI()

    def client(api_url):
        return httpx.Client(base_url=api_url, transport=httpx.MockTransport(api))

    monkeypatch.setattr(cli, "_client", client)
    return api


class TestIdentifiers:
    """new-id and validate-id."""

    def test_new_id(self):
        result = runner.invoke(cli.app, ["new-id"])
        assert result.exit_code == 0
        assert re.match(r"^job-\d{8}-\d{6}-[a-z0-9]{8}$", result.output.strip())

    def test_new_id_with_kind(self):
        result = runner.invoke(cli.app, ["new-id", "batch"])
        assert result.exit_code == 0
        assert result.output.strip().startswith("batch-")

    def test_validate_id(self, wide_console):
        result = runner.invoke(cli.app, ["validate-id", JOB_ID])
        assert result.exit_code == 0
        assert f"{JOB_ID} is valid" in result.output
        assert "kind: single" in result.output
        assert "suffix: ab12cd34" in result.output

    def test_validate_id_valid_but_not_generated(self):
        result = runner.invoke(cli.app, ["validate-id", "my-job"])
        assert result.exit_code == 0
        assert "my-job is valid" in result.output
        assert "kind:" not in result.output

    @pytest.mark.parametrize(
        "job_id,code",
        [
            ("Bad_ID", "JOB_ID_INVALID_CHARS"),
            ("abc", "JOB_ID_TOO_SHORT"),
            ("job--one", "JOB_ID_DOUBLE_DASH"),
            ("-job-one", "JOB_ID_INVALID_EDGES"),
        ],
    )
    def test_validate_id_rejects(self, job_id, code):
        result = runner.invoke(cli.app, ["validate-id", "--", job_id])
        assert result.exit_code == 1
        assert f"[{code}]" in result.output


class TestAPICommands:
    """Commands that read from the operator API."""

    def test_jobs(self, fake_api):
        fake_api.routes["/api/v1/jobs"] = (
            200,
            [
                {
                    "job_id": JOB_ID,
                    "kind": "single",
                    "status": "succeeded",
                    "total_issues": 1,
                    "processed_issues": 1,
                    "message": "Job completed",
                    "error_message": "",
                }
            ],
        )
        result = runner.invoke(
            cli.app, ["jobs", "--kind", "single", "--kind", "batch", "--limit", "5", "--api-url", API_URL]
        )

        assert result.exit_code == 0
        assert JOB_ID in result.output
        assert "succeeded" in result.output
        assert "1/1" in result.output
        params = fake_api.requests[0].url.params
        assert params.get_list("kind") == ["single", "batch"]
        assert params["limit"] == "5"

    def test_no_jobs(self, fake_api):
        fake_api.routes["/api/v1/jobs"] = (200, [])
        result = runner.invoke(cli.app, ["jobs", "--api-url", API_URL])
        assert result.exit_code == 0
        assert "No jobs found" in result.output

    def test_api_error(self, fake_api):
        fake_api.routes["/api/v1/jobs"] = (
            502,
            {"detail": {"error": {"type": "connection", "message": "cluster unreachable"}}},
        )
        result = runner.invoke(cli.app, ["jobs", "--api-url", API_URL])
        assert result.exit_code == 1
        assert "API error 502: cluster unreachable" in result.output

    def test_unreachable_api(self, fake_api):
        fake_api.error = httpx.ConnectError("connection refused")
        result = runner.invoke(cli.app, ["queue", "--api-url", API_URL])
        assert result.exit_code == 1
        assert f"Cannot reach operator API at {API_URL}" in result.output

    def test_queue(self, fake_api):
        fake_api.routes["/api/v1/queue"] = (
            200,
            {"total": 3, "pending": 1, "running": 1, "succeeded": 1, "failed": 0, "unknown": 0},
        )
        result = runner.invoke(cli.app, ["queue", "--api-url", API_URL])
        assert result.exit_code == 0
        assert "Job Queue" in result.output
        assert re.search(r"total\D+3", result.output)

    def test_syncs(self, fake_api):
        fake_api.routes["/api/v1/syncs"] = (
            200,
            [
                {
                    "metadata": {"name": "jirasync-single-1709294400-ab12"},
                    "spec": {"syncType": "single"},
                    "status": {"phase": "Processing", "progress": {"percentage": 40.0}, "retryCount": 1},
                },
                {
                    "metadata": {"name": "jirasync-jql-1709294400-cd34"},
                    "spec": {"syncType": "jql"},
                    "status": {},
                },
            ],
        )
        result = runner.invoke(cli.app, ["syncs", "--api-url", API_URL])
        assert result.exit_code == 0
        assert "jirasync-single-1709294400-ab12" in result.output
        assert "Processing" in result.output
        assert "40%" in result.output
        assert "New" in result.output
