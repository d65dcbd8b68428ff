import threading
from pathlib import Path

import pytest

from api_test_synth.config import SynthConfig
from api_test_synth.errors import ConfigError, ConflictError, ScanCancelled, SourceTreeError
from api_test_synth.generator.testcase import Category
from api_test_synth.generator.validator import validate_json
from api_test_synth.parser.base import HttpMethod
from api_test_synth.parser.detect import detect_adapter, get_adapter
from api_test_synth.parser.express import ExpressAdapter
from api_test_synth.pipeline import Pipeline

FIXTURES = Path(__file__).parent / "fixtures"


class TestDetectAdapter:
    def test_fixtures(self):
        assert detect_adapter(FIXTURES / "spring") == "spring"
        assert detect_adapter(FIXTURES / "express") == "express"
        assert detect_adapter(FIXTURES / "fastapi") == "fastapi"

    def test_source_marker(self, tmp_path):
        (tmp_path / "main.py").write_text("from fastapi import FastAPI\n")
        assert detect_adapter(tmp_path) == "fastapi"

    def test_undetectable(self, tmp_path):
        (tmp_path / "README.md").write_text("nothing here")
        with pytest.raises(ConfigError):
            detect_adapter(tmp_path)

    def test_get_adapter(self):
        assert isinstance(get_adapter("express"), ExpressAdapter)
        with pytest.raises(ConfigError):
            get_adapter("django")


class TestPipelineRun:
    @pytest.mark.parametrize("framework", ["spring", "express", "fastapi"])
    def test_fixture_collection_is_valid(self, framework):
        result = Pipeline().run(FIXTURES / framework)
        assert result.adapter == framework
        assert result.descriptors
        assert result.cases
        assert validate_json(result.document.to_json()) == {}
        assert result.discovery_errors == []

    def test_spring_chain_and_cleanup(self):
        result = Pipeline().run(FIXTURES / "spring", "spring")
        chain = [c for c in result.cases if c.category == Category.DATA_INTEGRITY]
        assert [c.order for c in chain] == [1, 2, 3, 4, 5, 6]
        cleanup = [c for c in result.cases if c.category == Category.CLEANUP]
        assert [c.request.path for c in cleanup] == ["/api/users/{{userId}}"]
        assert result.document.folders[-1].name == "Cleanup"

    def test_no_success_expected_after_record_deleted(self):
        result = Pipeline().run(FIXTURES / "spring", "spring")
        deleted = set()
        for case in result.document.cases():
            variables = set(case.request.variables())
            statuses = case.expected.statuses
            expects_success = bool(statuses) and all(200 <= s < 300 for s in statuses)
            if expects_success:
                assert not variables & deleted, case.name
                if case.request.method == HttpMethod.DELETE:
                    deleted |= {v for v in variables if v.endswith("Id")}
            deleted -= {b.variable for b in case.bindings}
        assert "userId" not in deleted

    def test_deterministic_output(self):
        first = Pipeline().run(FIXTURES / "express").document.to_json()
        second = Pipeline().run(FIXTURES / "express").document.to_json()
        assert first == second

    def test_config_is_applied(self):
        config = SynthConfig(collection_name="Orders", validation_failure_status=422)
        result = Pipeline(config).run(FIXTURES / "express")
        assert result.document.to_postman()["info"]["name"] == "Orders"
        required = [c for c in result.cases if c.category == Category.REQUIRED_FIELDS]
        assert required and all(c.expected.statuses == (422,) for c in required)


class TestPipelineErrors:
    def test_missing_source(self, tmp_path):
        with pytest.raises(SourceTreeError):
            Pipeline().describe(tmp_path / "missing", "spring")

    def test_cancel(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ScanCancelled):
            Pipeline().describe(FIXTURES / "express", "express", cancel)

    def test_discovery_errors_are_kept(self, tmp_path):
        (tmp_path / "app.js").write_text(
            "const express = require('express');\n"
            "const app = express();\n"
            "app.get('/ok', (req, res) => res.json({}));\n"
            "app.get(PATHS.dynamic, (req, res) => res.json({}));\n"
        )
        result = Pipeline().run(tmp_path, "express")
        assert [d.label for d in result.descriptors] == ["GET /ok"]
        assert len(result.discovery_errors) == 1

    def test_conflict(self, tmp_path):
        (tmp_path / "app.js").write_text(
            "const express = require('express');\n"
            "const app = express();\n"
            "app.get('/a', (req, res) => res.json({}));\n"
            "app.get('/a', (req, res) => res.status(404).json({}));\n"
        )
        pipeline = Pipeline()
        with pytest.raises(ConflictError) as exc:
            pipeline.run(tmp_path, "express")
        assert len(exc.value.conflicts) == 1
