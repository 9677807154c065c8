"""
Tests for the CLI interface.
"""
import json
import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from ai_gateway.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, POLICY_TEMPLATE, PROVIDER_TEMPLATE, app
from ai_gateway.storage.models import InteractionRecord, utc_timestamp
from ai_gateway.storage.repository import InteractionRepository

runner = CliRunner()


@pytest.fixture
def workspace(monkeypatch):
    """Temporary working directory with a settings file."""
    temp_dir = tempfile.mkdtemp()
    monkeypatch.chdir(temp_dir)
    settings = {
        "paths": {
            "providers": os.path.join(temp_dir, "toknxr.config.json"),
            "policy": os.path.join(temp_dir, "toknxr.policy.json"),
            "interaction_log": os.path.join(temp_dir, "interactions.log"),
        },
    }
    with open(os.path.join(temp_dir, "gateway.yaml"), 'w', encoding='utf-8') as f:
        yaml.dump(settings, f)
    yield temp_dir
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def mock_uvicorn():
    """Mock the server so serve never binds a port."""
    with patch('ai_gateway.cli.main.uvicorn.run') as mock:
        yield mock


def _write_source(directory, name, code):
    path = os.path.join(directory, name)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(code)
    return path


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        """Test the bare command points to --help."""
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_help(self):
        """Test every command is listed."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "stats", "verify", "init"):
            assert command in result.output


class TestInitCommand:
    """Test template generation."""

    def test_creates_templates(self, workspace):
        """Test provider and policy templates are written."""
        result = runner.invoke(app, ["init", "--directory", workspace])

        assert result.exit_code == EXIT_CODE_PASS
        with open(os.path.join(workspace, "toknxr.config.json"), encoding='utf-8') as f:
            assert json.load(f) == PROVIDER_TEMPLATE
        with open(os.path.join(workspace, "toknxr.policy.json"), encoding='utf-8') as f:
            assert json.load(f) == POLICY_TEMPLATE
        assert "Created" in result.output

    def test_existing_files_are_kept(self, workspace):
        """Test init never overwrites configuration."""
        policy = os.path.join(workspace, "toknxr.policy.json")
        with open(policy, 'w', encoding='utf-8') as f:
            f.write('{"monthlyUSD": 5}')

        result = runner.invoke(app, ["init", "--directory", workspace])

        assert result.exit_code == EXIT_CODE_PASS
        assert "skipping" in result.output
        with open(policy, encoding='utf-8') as f:
            assert json.load(f) == {"monthlyUSD": 5}

    def test_templates_are_loadable(self, workspace):
        """Test the generated provider template passes validation."""
        from ai_gateway.config.loader import load_budget_policy, load_provider_config

        runner.invoke(app, ["init", "--directory", workspace])

        routes = load_provider_config(os.path.join(workspace, "toknxr.config.json"))
        assert [route.name for route in routes] == ["gemini", "openai", "anthropic", "ollama"]
        assert load_budget_policy(os.path.join(workspace, "toknxr.policy.json")).monthly_usd == 50.0


class TestVerifyCommand:
    """Test file verification."""

    def test_high_finding_passes(self, workspace):
        """Test non-critical findings are reported with exit code 0."""
        path = _write_source(workspace, "mixing.py", 'count = 5\nlabel = count + "items"\n')
        result = runner.invoke(app, ["verify", path, "--no-execute"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Hallucination Verification: mixing.py" in result.output
        assert "Hallucination rate" in result.output
        assert "Data Type and Structure Issues" in result.output

    def test_critical_finding_fails(self, workspace):
        """Test a critical finding exits with code 1."""
        path = _write_source(workspace, "imports.py", "import numpyy\n")
        result = runner.invoke(app, ["verify", path, "--no-execute"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Critical issue found" in result.output

    def test_clean_file(self, workspace):
        """Test clean code reports no findings."""
        path = _write_source(workspace, "clean.py", "def add(a, b):\n    return a + b\n\n\nprint(add(1, 2))\n")
        result = runner.invoke(app, ["verify", path, "--no-execute"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No likely hallucinations found" in result.output
        assert "Code quality:" in result.output

    def test_threshold_option(self, workspace):
        """Test --threshold drops low-confidence findings."""
        path = _write_source(workspace, "handler.py", 'def handler(event):\n    return event["body"]\n')

        default = runner.invoke(app, ["verify", path, "--no-execute"])
        lowered = runner.invoke(app, ["verify", path, "--no-execute", "--threshold", "0.4"])

        assert "No likely hallucinations found" in default.output
        assert "Findings" in lowered.output

    def test_execution(self, workspace):
        """Test the sandbox run is reported."""
        path = _write_source(workspace, "run.py", 'print("hello")\n')
        result = runner.invoke(app, ["verify", path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Execution:" in result.output

    def test_missing_file(self, workspace):
        """Test a missing file is a usage error."""
        result = runner.invoke(app, ["verify", os.path.join(workspace, "nope.py")])
        assert result.exit_code != EXIT_CODE_PASS

    def test_invalid_settings(self, workspace):
        """Test a broken settings file exits with code 1."""
        with open(os.path.join(workspace, "gateway.yaml"), 'w', encoding='utf-8') as f:
            yaml.dump({"server": {"port": "http"}}, f)
        path = _write_source(workspace, "clean.py", "print(1)\n")

        result = runner.invoke(app, ["verify", path, "--no-execute"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading settings" in result.output


class TestStatsCommand:
    """Test month-to-date stats."""

    def test_no_interactions(self, workspace):
        """Test the empty-log hint."""
        result = runner.invoke(app, ["stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No interactions recorded" in result.output

    def test_spend_table(self, workspace):
        """Test spend per provider is shown with caps."""
        with open(os.path.join(workspace, "toknxr.policy.json"), 'w', encoding='utf-8') as f:
            json.dump({"monthlyUSD": 50, "perProviderMonthlyUSD": {"gemini": 20}}, f)
        repository = InteractionRepository(os.path.join(workspace, "interactions.log"))
        repository.append(InteractionRecord(
            request_id="req-1",
            timestamp=utc_timestamp(datetime.now(timezone.utc)),
            provider="gemini",
            model="gemini-2.5-flash",
            prompt_tokens=1000,
            completion_tokens=1000,
            total_tokens=2000,
            cost_usd=0.75,
            task_type="chat",
        ))

        result = runner.invoke(app, ["stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "gemini" in result.output
        assert "$0.7500" in result.output
        assert "$20.0000" in result.output
        assert "Interactions: 1 (0 coding)" in result.output


class TestServeCommand:
    """Test server startup."""

    def test_missing_provider_config(self, workspace, mock_uvicorn):
        """Test serve refuses to start without provider routes."""
        result = runner.invoke(app, ["serve"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error loading provider config" in result.output
        mock_uvicorn.assert_not_called()

    def test_starts_server(self, workspace, mock_uvicorn):
        """Test serve runs uvicorn with the configured routes."""
        runner.invoke(app, ["init", "--directory", workspace])
        result = runner.invoke(app, ["serve", "--port", "9999"])

        assert result.exit_code == EXIT_CODE_PASS
        mock_uvicorn.assert_called_once()
        args, kwargs = mock_uvicorn.call_args
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["port"] == 9999
        assert "/gemini" in result.output
