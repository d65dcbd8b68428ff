import json
import uuid

import pytest

from api_test_synth.config import SynthConfig
from api_test_synth.errors import UnboundVariableError
from api_test_synth.generator.collection import SCHEMA_URL, CollectionEmitter, render_script
from api_test_synth.generator.testcase import (
    AssertionKind,
    BodyAssertion,
    Category,
    ExpectedOutcome,
    RequestSpec,
    TestCaseSpec,
    TestCaseSynthesizer,
    VariableBinding,
)
from api_test_synth.parser.base import (
    AuthRequirement,
    Constraint,
    EndpointDescriptor,
    Field,
    FieldSet,
    FieldType,
    HttpMethod,
    PathParam,
)

SCHEMA = FieldSet(fields=(Field(name="title", type=FieldType.STRING, constraints=(Constraint.required(),)),))
ID = (PathParam(name="id", type=FieldType.NUMBER),)


def _descriptors():
    return [
        EndpointDescriptor(method=HttpMethod.POST, path_template="/api/books", request_schema=SCHEMA,
                           response_schemas={201: SCHEMA}, declared_status_codes=(201,)),
        EndpointDescriptor(method=HttpMethod.GET, path_template="/api/books/{id}", path_params=ID,
                           response_schemas={200: SCHEMA}, declared_status_codes=(200, 404)),
        EndpointDescriptor(method=HttpMethod.DELETE, path_template="/api/books/{id}", path_params=ID,
                           declared_status_codes=(204,), auth=AuthRequirement.authenticated()),
        EndpointDescriptor(method=HttpMethod.GET, path_template="/health"),
    ]


def _all_cases(config, descriptors):
    synth = TestCaseSynthesizer(config, descriptors)
    cases = []
    for d in descriptors:
        cases.extend(synth.synthesize(d))
    cases.extend(synth.synthesize_chains(descriptors))
    cases.extend(synth.synthesize_cleanup(descriptors))
    return cases


def _case(path="/x", bindings=(), **expected) -> TestCaseSpec:
    return TestCaseSpec(
        name="[Happy Path] GET /x - returns 200",
        category=Category.HAPPY_PATH,
        resource="x",
        request=RequestSpec(method=HttpMethod.GET, path=path),
        expected=ExpectedOutcome(**expected),
        bindings=bindings,
        source=("GET", "/x"),
    )


class TestCollectionEmitter:
    def setup_method(self):
        self.config = SynthConfig(collection_name="Books API")
        self.descriptors = _descriptors()
        self.document = CollectionEmitter(self.config).emit(self.descriptors, _all_cases(self.config, self.descriptors))
        self.rendered = self.document.to_postman()

    def test_info(self):
        info = self.rendered["info"]
        assert info["name"] == "Books API"
        assert info["schema"] == SCHEMA_URL
        assert info["_postman_id"] == str(uuid.uuid5(uuid.NAMESPACE_URL, "Books API"))

    def test_folders_by_resource_then_category(self):
        names = [f["name"] for f in self.rendered["item"]]
        assert names == ["books", "health", "Cleanup"]
        books = [f["name"] for f in self.rendered["item"][0]["item"]]
        assert books[0] == "Happy Path"
        assert books.index("Auth") < books.index("Required Fields") < books.index("Data Integrity")

    def test_cleanup_last_and_optional(self):
        cleanup = self.rendered["item"][-1]["item"]
        assert [c["request"]["method"] for c in cleanup] == ["DELETE"]
        config = SynthConfig(include_cleanup_folder=False)
        document = CollectionEmitter(config).emit(self.descriptors, _all_cases(config, self.descriptors))
        assert "Cleanup" not in [f.name for f in document.folders]

    def test_variables(self):
        variables = {v["key"]: v["value"] for v in self.rendered["variable"]}
        assert variables == {"baseUrl": "http://localhost:8080", "authToken": ""}

    def test_request_rendering(self):
        happy = self.rendered["item"][0]["item"][0]["item"][0]
        request = happy["request"]
        assert request["method"] == "POST"
        assert request["url"]["raw"] == "{{baseUrl}}/api/books"
        assert request["url"]["path"] == ["api", "books"]
        assert json.loads(request["body"]["raw"]) == {"title": "sample-title"}
        assert request["body"]["options"]["raw"]["language"] == "json"
        assert happy["event"][0]["listen"] == "test"

    def test_serialization_is_stable(self):
        again = CollectionEmitter(self.config).emit(self.descriptors, _all_cases(self.config, self.descriptors))
        assert again.to_json() == self.document.to_json()
        assert self.document.to_json().endswith("}\n")

    def test_cases_in_execution_order(self):
        cases = self.document.cases()
        assert cases[0].category == Category.HAPPY_PATH
        assert cases[-1].category == Category.CLEANUP

    def test_unbound_variable(self):
        cases = [_case(path="/books/{{ghostId}}"), _case(path="/other/{{ghostId}}")]
        with pytest.raises(UnboundVariableError) as exc:
            CollectionEmitter(SynthConfig()).emit([], cases)
        assert [var for _, var in exc.value.references] == ["ghostId", "ghostId"]

    def test_read_ordered_before_create_is_unbound(self):
        synth = TestCaseSynthesizer(self.config, self.descriptors)
        cases = synth.synthesize(self.descriptors[1]) + synth.synthesize(self.descriptors[0])
        with pytest.raises(UnboundVariableError) as exc:
            CollectionEmitter(self.config).emit(self.descriptors, cases)
        assert exc.value.references[0] == ("[Happy Path] GET /api/books/{id} - returns 200", "bookId")

    def test_binding_before_use(self):
        binding = VariableBinding(variable="tokenId", source="id", statuses=(201,))
        cases = [_case(bindings=(binding,)), _case(path="/x/{{tokenId}}")]
        document = CollectionEmitter(SynthConfig()).emit([], cases)
        assert len(document.cases()) == 2


class TestRenderScript:
    def test_status(self):
        lines = render_script(_case(statuses=(201,)))
        assert "pm.expect(pm.response.code).to.be.oneOf([201]);" in "\n".join(lines)

    def test_never_5xx(self):
        script = "\n".join(render_script(_case(never_5xx=True)))
        assert "to.be.below(500)" in script
        assert "oneOf" not in script

    def test_assertions(self):
        case = _case(statuses=(200,), assertions=(
            BodyAssertion(kind=AssertionKind.EQUALS, field="name", value="Ann"),
            BodyAssertion(kind=AssertionKind.NOT_EQUALS, field="age", value=30),
            BodyAssertion(kind=AssertionKind.TYPE, field="content", value="array"),
            BodyAssertion(kind=AssertionKind.LENGTH, field="content", value=0),
            BodyAssertion(kind=AssertionKind.MAX_LENGTH, field="content", value=20),
        ))
        script = "\n".join(render_script(case))
        assert 'pm.expect(pm.response.json()["name"]).to.eql("Ann");' in script
        assert 'pm.expect(pm.response.json()["age"]).to.not.eql(30);' in script
        assert 'pm.expect(pm.response.json()["content"]).to.be.an("array");' in script
        assert 'pm.expect(pm.response.json()["content"]).to.have.lengthOf(0);' in script
        assert 'pm.expect(pm.response.json()["content"].length).to.be.at.most(20);' in script

    def test_binding(self):
        binding = VariableBinding(variable="bookId", source="id", statuses=(201,))
        script = "\n".join(render_script(_case(statuses=(201,), bindings=(binding,))))
        assert "if ([201].includes(pm.response.code)) {" in script
        assert 'pm.collectionVariables.set("bookId", pm.response.json()["id"]);' in script

    def test_skipped(self):
        case = _case(statuses=(400,)).model_copy(update={"skip_reason": "no value fits"})
        lines = render_script(case)
        assert len(lines) == 1
        assert lines[0].startswith("pm.test.skip(")
