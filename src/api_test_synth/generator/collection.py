"""Collection emitter: groups test case specs into a Postman v2.1 collection."""

import json
import logging
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict

from api_test_synth.config import SynthConfig
from api_test_synth.errors import UnboundVariableError
from api_test_synth.generator.testcase import (
    CATEGORY_ORDER,
    AssertionKind,
    BodyAssertion,
    Category,
    TestCaseSpec,
    declared_variables,
)
from api_test_synth.parser.base import EndpointDescriptor

logger = logging.getLogger(__name__)

SCHEMA_URL = "https://schema.getpostman.com/json/collection/v2.1.0/collection.json"
CLEANUP_FOLDER = "Cleanup"


class Folder(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    folders: tuple["Folder", ...] = ()
    cases: tuple[TestCaseSpec, ...] = ()


class CollectionDocument(BaseModel):
    """The terminal artifact: resource -> category -> cases, Cleanup last."""

    model_config = ConfigDict(frozen=True)

    name: str
    base_url_variable: str = "baseUrl"
    variables: tuple[tuple[str, str], ...] = ()
    folders: tuple[Folder, ...] = ()

    def cases(self) -> list[TestCaseSpec]:
        """Every case in execution order."""
        result = []
        for resource in self.folders:
            result.extend(resource.cases)
            for category in resource.folders:
                result.extend(category.cases)
        return result

    def to_postman(self) -> dict:
        """Render the v2.1 collection dict."""
        return {
            "info": {
                "_postman_id": str(uuid.uuid5(uuid.NAMESPACE_URL, self.name)),
                "name": self.name,
                "schema": SCHEMA_URL,
            },
            "item": [self._render_folder(f) for f in self.folders],
            "variable": [{"key": k, "value": v, "type": "string"} for k, v in self.variables],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_postman(), indent=2, ensure_ascii=False) + "\n"

    def _render_folder(self, folder: Folder) -> dict:
        items = [self._render_folder(f) for f in folder.folders]
        items += [self._render_case(c) for c in folder.cases]
        return {"name": folder.name, "item": items}

    def _render_case(self, case: TestCaseSpec) -> dict:
        request = case.request
        segments = [s for s in request.path.split("/") if s]
        raw = "{{" + self.base_url_variable + "}}" + request.path
        if request.query:
            raw += "?" + "&".join(f"{k}={v}" for k, v in request.query)
        url: dict[str, Any] = {"raw": raw, "host": ["{{" + self.base_url_variable + "}}"], "path": segments}
        if request.query:
            url["query"] = [{"key": k, "value": v} for k, v in request.query]

        rendered: dict[str, Any] = {
            "method": request.method.value,
            "header": [{"key": k, "value": v} for k, v in request.headers],
            "url": url,
        }
        if request.body is not None:
            content_type = dict(request.headers).get("Content-Type", "application/json")
            rendered["body"] = {
                "mode": "raw",
                "raw": json.dumps(request.body, indent=2, ensure_ascii=False),
                "options": {"raw": {"language": "json" if content_type.endswith("json") else "text"}},
            }
        return {
            "name": case.name,
            "event": [{"listen": "test", "script": {"type": "text/javascript", "exec": render_script(case)}}],
            "request": rendered,
        }


Folder.model_rebuild()


def _js(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _render_assertion(assertion: BodyAssertion) -> list[str]:
    target = f"pm.response.json()[{_js(assertion.field)}]"
    if assertion.kind == AssertionKind.EQUALS:
        title, check = f"{assertion.field} equals {_js(assertion.value)}", f"pm.expect({target}).to.eql({_js(assertion.value)});"
    elif assertion.kind == AssertionKind.NOT_EQUALS:
        title, check = f"{assertion.field} changed from {_js(assertion.value)}", f"pm.expect({target}).to.not.eql({_js(assertion.value)});"
    elif assertion.kind == AssertionKind.TYPE:
        article = "an" if str(assertion.value)[:1] in "aeiou" else "a"
        title, check = f"{assertion.field} is {article} {assertion.value}", f"pm.expect({target}).to.be.{article}({_js(assertion.value)});"
    elif assertion.kind == AssertionKind.LENGTH:
        title, check = f"{assertion.field} has {assertion.value} entries", f"pm.expect({target}).to.have.lengthOf({_js(assertion.value)});"
    else:
        title, check = f"{assertion.field} has at most {assertion.value} entries", f"pm.expect({target}.length).to.be.at.most({_js(assertion.value)});"
    return [f"pm.test({_js(title)}, function () {{", f"    {check}", "});"]


def render_script(case: TestCaseSpec) -> list[str]:
    """The post-response script: status check, body assertions, variable bindings."""
    if case.skip_reason is not None:
        return [f"pm.test.skip({_js(case.name + ' (unverifiable: ' + case.skip_reason + ')')}, function () {{}});"]
    lines = []
    expected = case.expected
    if expected.statuses:
        lines += [
            f"pm.test({_js('status is ' + ' or '.join(str(s) for s in expected.statuses))}, function () {{",
            f"    pm.expect(pm.response.code).to.be.oneOf({_js(list(expected.statuses))});",
            "});",
        ]
    if expected.never_5xx:
        lines += [
            'pm.test("no server error", function () {',
            "    pm.expect(pm.response.code).to.be.below(500);",
            "});",
        ]
    for assertion in expected.assertions:
        lines += _render_assertion(assertion)
    for binding in case.bindings:
        lines += [
            f"if ({_js(list(binding.statuses))}.includes(pm.response.code)) {{",
            f"    pm.collectionVariables.set({_js(binding.variable)}, pm.response.json()[{_js(binding.source)}]);",
            "}",
        ]
    return lines


class CollectionEmitter:
    """Builds the CollectionDocument from descriptors and synthesized cases."""

    def __init__(self, config: SynthConfig):
        self.config = config

    def emit(self, descriptors: list[EndpointDescriptor], cases: list[TestCaseSpec]) -> CollectionDocument:
        """Group cases by resource then category; append Cleanup last.

        Raises UnboundVariableError listing every reference to a variable
        that is neither declared nor bound by an earlier case.
        """
        variables = declared_variables(descriptors, self.config)

        grouped: dict[str, dict[Category, list[TestCaseSpec]]] = {}
        cleanup = []
        for case in cases:
            if case.category == Category.CLEANUP:
                cleanup.append(case)
                continue
            grouped.setdefault(case.resource, {}).setdefault(case.category, []).append(case)

        folders = []
        for resource, categories in grouped.items():
            folders.append(Folder(
                name=resource,
                folders=tuple(
                    Folder(name=category.value, cases=tuple(categories[category]))
                    for category in sorted(categories, key=CATEGORY_ORDER.get)
                ),
            ))
        if self.config.include_cleanup_folder and cleanup:
            folders.append(Folder(name=CLEANUP_FOLDER, cases=tuple(cleanup)))

        document = CollectionDocument(
            name=self.config.collection_name,
            base_url_variable=self.config.base_url_variable_name,
            variables=tuple(variables.items()),
            folders=tuple(folders),
        )
        self._check_bindings(document, set(variables))
        logger.info("emitted %d cases in %d folders", len(document.cases()), len(folders))
        return document

    @staticmethod
    def _check_bindings(document: CollectionDocument, declared: set[str]) -> None:
        available = set(declared)
        unbound = []
        for case in document.cases():
            for variable in case.request.variables():
                if variable not in available:
                    unbound.append((case.name, variable))
            available.update(b.variable for b in case.bindings)
        if unbound:
            raise UnboundVariableError(unbound)
