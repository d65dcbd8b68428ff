import json
from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from api_test_synth.cli import EXIT_INPUT, EXIT_OK, EXIT_REPORTED, main
from api_test_synth.errors import UnboundVariableError

FIXTURES = Path(__file__).parent / "fixtures"


class TestCliGenerate:
    def test_generate_spring(self, tmp_path):
        output_file = tmp_path / "out" / "collection.json"
        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(FIXTURES / "spring"),
            "--out", str(output_file),
        ])

        assert result.exit_code == EXIT_OK
        assert output_file.exists()
        collection = json.loads(output_file.read_text())
        assert collection["info"]["name"] == "Generated API Tests"
        assert "Found 6 endpoints" in result.output

    def test_generate_with_config(self, tmp_path):
        config_file = tmp_path / "synth.yaml"
        config_file.write_text("collectionName: Orders\nincludeCleanupFolder: false\n")
        output_file = tmp_path / "orders.json"
        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(FIXTURES / "express"), "--adapter", "express",
            "--out", str(output_file), "--config", str(config_file),
        ])

        assert result.exit_code == EXIT_OK
        collection = json.loads(output_file.read_text())
        assert collection["info"]["name"] == "Orders"
        assert "Cleanup" not in [f["name"] for f in collection["item"]]

    def test_missing_source(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(tmp_path / "missing"), "--adapter", "spring",
            "--out", str(tmp_path / "c.json"),
        ])
        assert result.exit_code == EXIT_INPUT

    def test_invalid_config(self, tmp_path):
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("validationFailureStatus: 200\n")
        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(FIXTURES / "spring"),
            "--out", str(tmp_path / "c.json"), "--config", str(config_file),
        ])
        assert result.exit_code == EXIT_INPUT

    def test_discovery_errors_still_write_output(self, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "app.js").write_text(
            "const express = require('express');\n"
            "const app = express();\n"
            "app.get('/ok', (req, res) => res.json({}));\n"
            "app.get(routes.dynamic, (req, res) => res.json({}));\n"
        )
        output_file = tmp_path / "c.json"
        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(source), "--adapter", "express", "--out", str(output_file),
        ])
        assert result.exit_code == EXIT_REPORTED
        assert output_file.exists()
        assert "DiscoveryError" in result.output

    def test_conflict_exits_reported(self, tmp_path):
        (tmp_path / "app.js").write_text(
            "const express = require('express');\n"
            "const app = express();\n"
            "app.get('/a', (req, res) => res.json({}));\n"
            "app.get('/a', requireAuth, (req, res) => res.json({}));\n"
        )
        output_file = tmp_path / "c.json"
        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(tmp_path), "--adapter", "express", "--out", str(output_file),
        ])
        assert result.exit_code == EXIT_REPORTED
        assert not output_file.exists()
        assert "conflicting endpoint declarations" in result.output


class TestCliListEndpoints:
    def test_list_fastapi(self):
        runner = CliRunner()
        result = runner.invoke(main, ["list-endpoints", "--source", str(FIXTURES / "fastapi")])
        assert result.exit_code == EXIT_OK
        assert "/api/v1/users/{user_id}" in result.output
        assert "role(admin)" in result.output
        assert "Found 7 endpoints." in result.output

    def test_unknown_adapter_rejected(self):
        runner = CliRunner()
        result = runner.invoke(main, ["list-endpoints", "--source", str(FIXTURES / "spring"), "--adapter", "rails"])
        assert result.exit_code != EXIT_OK


class TestCliFatalErrors:
    @patch("api_test_synth.cli.Pipeline")
    def test_unbound_variable_reports_and_skips_output(self, MockPipeline, tmp_path):
        pipeline = MagicMock()
        pipeline.run.side_effect = UnboundVariableError([("[Happy Path] GET /x - returns 200", "ghostId")])
        pipeline.issues = []
        MockPipeline.return_value = pipeline
        output_file = tmp_path / "c.json"

        runner = CliRunner()
        result = runner.invoke(main, [
            "generate", "--source", str(FIXTURES / "spring"), "--adapter", "spring", "--out", str(output_file),
        ])

        assert result.exit_code == EXIT_REPORTED
        assert not output_file.exists()
        assert "{{ghostId}}" in result.output
        pipeline.run.assert_called_once_with(FIXTURES / "spring", "spring")
