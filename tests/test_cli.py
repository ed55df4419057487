"""
Integration tests for the CLI: run, validate, status and sweep.

Provider endpoints are mocked with pytest-httpx; every command runs against
a temporary SQLite database.
"""

import json
import sqlite3
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from llm_answer_collector import __version__
from llm_answer_collector.cli import (
    EXIT_COMPLETE_FAILURE,
    EXIT_CONFIG_ERROR,
    EXIT_PARTIAL_FAILURE,
    EXIT_SUCCESS,
    app,
)
from llm_answer_collector.storage.db import (
    create_execution,
    init_db_if_needed,
    update_execution_status,
)
from llm_answer_collector.tracking.state import PENDING, RUNNING

P1_URL = "https://p1.test/ask"
P2_URL = "https://p2.test/ask"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cli_runner():
    """Return CliRunner for testing Typer apps."""
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep the CLI from re-pointing root logging at the runner's streams."""
    with patch("llm_answer_collector.cli.setup_logging"):
        yield


@pytest.fixture
def env_keys(monkeypatch):
    monkeypatch.setenv("SERPAPI_KEY_1", "serp-key-cccccccc3333")
    monkeypatch.delenv("COLLECTOR_SWEEP_INTERVAL_SECONDS", raising=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "collector.db")


@pytest.fixture
def config_file(tmp_path, db_path):
    data = {
        "store": {"sqlite_db_path": db_path},
        "batch": {"batch_size": 2, "inter_batch_delay_seconds": 0},
        "sweep": {"enabled": False},
        "key_pools": [{"operation": "serpapi", "env_keys": ["SERPAPI_KEY_1"]}],
        "collectors": [
            {
                "collector_type": "chatgpt",
                "providers": [
                    {
                        "name": "p1",
                        "service": "serpapi",
                        "priority": 1,
                        "endpoint": P1_URL,
                        "retry_count": 0,
                    }
                ],
            },
            {
                "collector_type": "perplexity",
                "providers": [
                    {
                        "name": "p2",
                        "service": "serpapi",
                        "priority": 1,
                        "endpoint": P2_URL,
                        "retry_count": 0,
                    }
                ],
            },
        ],
    }
    path = tmp_path / "collector.config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def queries_file(tmp_path):
    data = {
        "queries": [
            {
                "query_id": "q1",
                "text": "What is the best CRM?",
                "brand_id": "acme",
                "enabled_collector_types": ["chatgpt", "perplexity"],
            }
        ]
    }
    path = tmp_path / "queries.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def _run(cli_runner, config_file, queries_file, *extra):
    return cli_runner.invoke(
        app,
        ["run", "--config", str(config_file), "--queries", str(queries_file), *extra],
    )


# ============================================================================
# run
# ============================================================================


class TestRunCommand:
    """Test the run command exit codes and output."""

    def test_all_completed(self, cli_runner, env_keys, config_file, queries_file, httpx_mock):
        httpx_mock.add_response(url=P1_URL, json={"text": "ChatGPT answer"})
        httpx_mock.add_response(url=P2_URL, json={"text": "Perplexity answer"})

        result = _run(cli_runner, config_file, queries_file, "--format", "json")

        assert result.exit_code == EXIT_SUCCESS
        output = json.loads(result.stdout)
        assert output["succeeded"] == 2
        assert output["failed"] == 0
        assert output["total_executions"] == 2
        assert {row["status"] for row in output["executions"]} == {"completed"}

    def test_partial_failure(self, cli_runner, env_keys, config_file, queries_file, httpx_mock):
        httpx_mock.add_response(url=P1_URL, json={"text": "ChatGPT answer"})
        httpx_mock.add_response(url=P2_URL, status_code=400, json={"error": "bad request"})

        result = _run(cli_runner, config_file, queries_file, "--format", "json")

        assert result.exit_code == EXIT_PARTIAL_FAILURE
        output = json.loads(result.stdout)
        failed = [row for row in output["executions"] if row["status"] == "failed"]
        assert [row["collector_type"] for row in failed] == ["perplexity"]
        assert failed[0]["error"]["error_class"] == "ProviderHardError"

    def test_complete_failure(self, cli_runner, env_keys, config_file, queries_file, httpx_mock):
        httpx_mock.add_response(url=P1_URL, status_code=400)
        httpx_mock.add_response(url=P2_URL, status_code=400)

        result = _run(cli_runner, config_file, queries_file, "--format", "json")

        assert result.exit_code == EXIT_COMPLETE_FAILURE

    def test_human_output(self, cli_runner, env_keys, config_file, queries_file, httpx_mock):
        httpx_mock.add_response(url=P1_URL, json={"text": "ChatGPT answer"})
        httpx_mock.add_response(url=P2_URL, json={"text": "Perplexity answer"})

        result = _run(cli_runner, config_file, queries_file)

        assert result.exit_code == EXIT_SUCCESS
        assert "Run Completed Successfully" in result.stdout

    def test_missing_api_key(self, cli_runner, monkeypatch, config_file, queries_file):
        monkeypatch.delenv("SERPAPI_KEY_1", raising=False)

        result = _run(cli_runner, config_file, queries_file, "--format", "json")

        assert result.exit_code == EXIT_CONFIG_ERROR
        output = json.loads(result.stdout)
        assert output["status"] == "error"
        assert "SERPAPI_KEY_1" in output["error"]

    def test_invalid_queries_file(self, cli_runner, env_keys, config_file, tmp_path):
        bad_queries = tmp_path / "bad.yaml"
        bad_queries.write_text(yaml.safe_dump({"queries": [{"query_id": "q1"}]}))

        result = _run(cli_runner, config_file, bad_queries, "--format", "json")

        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_invalid_format(self, cli_runner, env_keys, config_file, queries_file):
        result = _run(cli_runner, config_file, queries_file, "--format", "xml")

        assert result.exit_code == EXIT_CONFIG_ERROR


# ============================================================================
# validate
# ============================================================================


class TestValidateCommand:
    """Test the validate command."""

    def test_valid_config_json(self, cli_runner, env_keys, config_file):
        result = cli_runner.invoke(
            app, ["validate", "--config", str(config_file), "--format", "json"]
        )

        assert result.exit_code == EXIT_SUCCESS
        output = json.loads(result.stdout)
        assert output["valid"] is True
        assert output["collectors"] == {"chatgpt": ["p1"], "perplexity": ["p2"]}
        assert output["key_pools_count"] == 1

    def test_valid_config_text(self, cli_runner, env_keys, config_file):
        result = cli_runner.invoke(app, ["validate", "--config", str(config_file)])

        assert result.exit_code == EXIT_SUCCESS
        assert "Configuration is valid" in result.stdout

    def test_invalid_yaml(self, cli_runner, env_keys, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("collectors: [unclosed")

        result = cli_runner.invoke(app, ["validate", "--config", str(broken)])

        assert result.exit_code == EXIT_CONFIG_ERROR


# ============================================================================
# status and sweep
# ============================================================================


class TestStatusCommand:
    """Test the status command."""

    def test_known_execution(self, cli_runner, env_keys, config_file, db_path):
        init_db_if_needed(db_path)
        with sqlite3.connect(db_path) as conn:
            execution_id = create_execution(conn, "run-1", "q1", "acme", "chatgpt")
            update_execution_status(conn, execution_id, PENDING, RUNNING, "dispatcher")

        result = cli_runner.invoke(
            app, ["status", execution_id, "--config", str(config_file), "--format", "json"]
        )

        assert result.exit_code == EXIT_SUCCESS
        output = json.loads(result.stdout)
        assert output["status"] == "running"
        assert output["result_id"] is None
        assert [t["to"] for t in output["transitions"]] == ["pending", "running"]

    def test_unknown_execution(self, cli_runner, env_keys, config_file):
        result = cli_runner.invoke(
            app, ["status", "missing", "--config", str(config_file), "--format", "json"]
        )

        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "Execution not found" in json.loads(result.stdout)["error"]


class TestSweepCommand:
    """Test the sweep command."""

    def _stale_execution(self, db_path):
        init_db_if_needed(db_path)
        with sqlite3.connect(db_path) as conn:
            execution_id = create_execution(
                conn, "run-1", "q1", "acme", "chatgpt", timestamp_utc="2020-01-01T00:00:00Z"
            )
            update_execution_status(
                conn,
                execution_id,
                PENDING,
                RUNNING,
                "dispatcher",
                timestamp_utc="2020-01-01T00:00:00Z",
            )
        return execution_id

    def test_sweep_fails_stale_execution(self, cli_runner, env_keys, config_file, db_path):
        self._stale_execution(db_path)

        result = cli_runner.invoke(
            app, ["sweep", "--config", str(config_file), "--format", "json"]
        )

        assert result.exit_code == EXIT_SUCCESS
        stats = json.loads(result.stdout)["stats"]
        assert stats["checked"] == 1
        assert stats["failed"] == 1

    def test_dry_run_changes_nothing(self, cli_runner, env_keys, config_file, db_path):
        self._stale_execution(db_path)

        result = cli_runner.invoke(
            app, ["sweep", "--config", str(config_file), "--dry-run", "--format", "json"]
        )
        again = cli_runner.invoke(
            app, ["sweep", "--config", str(config_file), "--dry-run", "--format", "json"]
        )

        assert result.exit_code == EXIT_SUCCESS
        assert json.loads(result.stdout)["stats"]["total_stuck"] == 1
        assert json.loads(again.stdout)["stats"]["total_stuck"] == 1


class TestVersion:
    """Test --version flag."""

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])

        assert result.exit_code == EXIT_SUCCESS
        assert __version__ in result.stdout
