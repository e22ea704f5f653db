"""Tests for the command line interface."""

from unittest.mock import patch

import yaml
from typer.testing import CliRunner

from resilio import __version__
from resilio.availability import ProbeResult
from resilio.cli import app
from resilio.classification import ErrorKind

runner = CliRunner()


class TestVersion:
    """Tests for the version command."""

    def test_version(self):
        """version prints the package version."""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestClassify:
    """Tests for the classify command."""

    def test_status(self):
        """A 503 classifies as service_unavailable and is retryable."""
        result = runner.invoke(app, ["classify", "upstream down", "--status", "503"])
        assert result.exit_code == 0
        assert "service_unavailable" in result.stdout
        assert "status_503" in result.stdout
        assert "yes" in result.stdout

    def test_message(self):
        """Message heuristics are applied."""
        result = runner.invoke(app, ["classify", "Invalid login credentials"])
        assert result.exit_code == 0
        assert "invalid_credentials" in result.stdout
        assert "no" in result.stdout


class TestPolicy:
    """Tests for the policy command."""

    def test_lists_every_kind(self):
        """The retry rule table is printed."""
        result = runner.invoke(app, ["policy"])
        assert result.exit_code == 0
        assert "Retry Policy" in result.stdout
        assert ErrorKind.NETWORK.value in result.stdout


class TestConfigCommand:
    """Tests for the config command."""

    def test_valid(self, tmp_path):
        """A valid directory prints the effective settings."""
        (tmp_path / "resilio.yaml").write_text(yaml.safe_dump({"queue": {"max_size": 7}}))

        result = runner.invoke(app, ["config", str(tmp_path)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.stdout

    def test_invalid(self, tmp_path):
        """Invalid configuration exits with code 1."""
        (tmp_path / "resilio.yaml").write_text(yaml.safe_dump({"queue": {"max_size": -1}}))

        result = runner.invoke(app, ["config", str(tmp_path)])
        assert result.exit_code == 1

    def test_missing(self, tmp_path):
        """A missing directory exits with code 1."""
        result = runner.invoke(app, ["config", str(tmp_path / "absent")])
        assert result.exit_code == 1


class TestProbeCommand:
    """Tests for the probe command."""

    def test_available(self):
        """A healthy endpoint exits 0."""

        async def fake_call(self):
            return ProbeResult.success(42)

        with patch("resilio.probes.HttpProbe.__call__", new=fake_call):
            result = runner.invoke(app, ["probe", "http://svc.test/health"])

        assert result.exit_code == 0
        assert "available" in result.stdout

    def test_unavailable(self):
        """An unhealthy endpoint exits 1."""

        async def fake_call(self):
            return ProbeResult.failure(ErrorKind.SERVICE_MAINTENANCE)

        with patch("resilio.probes.HttpProbe.__call__", new=fake_call):
            result = runner.invoke(app, ["probe", "http://svc.test/health", "--json"])

        assert result.exit_code == 1
        assert "maintenance" in result.stdout
