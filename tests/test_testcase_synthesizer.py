from pathlib import Path

from api_test_synth.config import SynthConfig
from api_test_synth.errors import UnverifiableBoundaryError
from api_test_synth.generator.testcase import (
    AssertionKind,
    Category,
    TestCaseSpec,
    TestCaseSynthesizer,
    camel,
    collection_path,
    declared_variables,
    resource_name,
    variable_stem,
)
from api_test_synth.parser.base import (
    EMAIL_PATTERN,
    AuthRequirement,
    Constraint,
    EndpointDescriptor,
    Field,
    FieldSet,
    FieldType,
    HttpMethod,
    PathParam,
    QueryParam,
)
from api_test_synth.pipeline import Pipeline

FIXTURES = Path(__file__).parent / "fixtures"

CREATE_USER = FieldSet(fields=(
    Field(name="name", type=FieldType.STRING,
          constraints=(Constraint.required(), Constraint.min_length(2), Constraint.max_length(50))),
    Field(name="email", type=FieldType.STRING, constraints=(Constraint.required(), Constraint.pattern(EMAIL_PATTERN))),
    Field(name="age", type=FieldType.NUMBER, constraints=(Constraint.min(18), Constraint.max(120))),
))
USER_RESPONSE = FieldSet(fields=(
    Field(name="id", type=FieldType.NUMBER),
    Field(name="name", type=FieldType.STRING),
    Field(name="email", type=FieldType.STRING),
    Field(name="age", type=FieldType.NUMBER),
))
ID = (PathParam(name="id", type=FieldType.NUMBER),)
PAGE_PARAMS = (
    QueryParam(name="page", type=FieldType.NUMBER, default=0, constraints=(Constraint.positive_or_zero(),)),
    QueryParam(name="size", type=FieldType.NUMBER, default=20, constraints=(Constraint.positive(),)),
    QueryParam(name="sort", type=FieldType.STRING),
)


def _create(**kwargs) -> EndpointDescriptor:
    defaults = dict(method=HttpMethod.POST, path_template="/api/users", request_schema=CREATE_USER,
                    response_schemas={201: USER_RESPONSE}, declared_status_codes=(201,))
    defaults.update(kwargs)
    return EndpointDescriptor(**defaults)


def _read() -> EndpointDescriptor:
    return EndpointDescriptor(method=HttpMethod.GET, path_template="/api/users/{id}", path_params=ID,
                              response_schemas={200: USER_RESPONSE}, declared_status_codes=(200, 404),
                              auth=AuthRequirement.authenticated())


def _update() -> EndpointDescriptor:
    return EndpointDescriptor(method=HttpMethod.PUT, path_template="/api/users/{id}", path_params=ID,
                              request_schema=CREATE_USER, response_schemas={200: USER_RESPONSE},
                              auth=AuthRequirement.role("ADMIN"))


def _delete() -> EndpointDescriptor:
    return EndpointDescriptor(method=HttpMethod.DELETE, path_template="/api/users/{id}", path_params=ID,
                              declared_status_codes=(204,), auth=AuthRequirement.role("ADMIN"))


def _listing() -> EndpointDescriptor:
    return EndpointDescriptor(method=HttpMethod.GET, path_template="/api/users", query_params=PAGE_PARAMS,
                              response_schemas={200: USER_RESPONSE}, paginated=True,
                              auth=AuthRequirement.authenticated())


def _by_category(cases):
    result = {}
    for case in cases:
        result.setdefault(case.category, []).append(case)
    return result


class TestNaming:
    def test_resource_name(self):
        assert resource_name("/api/v1/users/{id}") == "users"
        assert resource_name("/rest/orders") == "orders"
        assert resource_name("/health") == "health"
        assert resource_name("/") == "root"

    def test_variable_stem(self):
        assert variable_stem("users") == "user"
        assert variable_stem("order-items") == "orderItem"
        assert variable_stem("categories") == "category"
        assert variable_stem("address") == "address"

    def test_camel(self):
        assert camel("user_id") == "userId"
        assert camel("id") == "id"

    def test_collection_path(self):
        assert collection_path("/api/users/{id}") == "/api/users"
        assert collection_path("/api/users") == "/api/users"

    def test_generator_classes_are_not_collected_as_tests(self):
        assert TestCaseSpec.__test__ is False
        assert TestCaseSynthesizer.__test__ is False


class TestCreateScenario:
    def setup_method(self):
        self.synth = TestCaseSynthesizer(SynthConfig(), [_create()])
        self.cases = self.synth.synthesize(_create())
        self.by_category = _by_category(self.cases)

    def test_category_counts(self):
        counts = {c: len(v) for c, v in self.by_category.items()}
        assert counts == {
            Category.HAPPY_PATH: 1,
            Category.REQUIRED_FIELDS: 6,
            Category.TYPE_VALIDATION: 4,
            Category.BOUNDARY: 8,
            Category.INJECTION: 8,
            Category.METHOD_CONTENT_TYPE: 5,
        }
        assert len(self.by_category[Category.REQUIRED_FIELDS]) + len(self.by_category[Category.TYPE_VALIDATION]) >= 10

    def test_happy_path_binds_id(self):
        happy = self.by_category[Category.HAPPY_PATH][0]
        assert happy.expected.statuses == (201,)
        assert happy.request.body == {"name": "sample-namesample-namesamp", "email": "user@example.com", "age": 69}
        assert happy.request.headers == (("Content-Type", "application/json"),)
        binding = happy.bindings[0]
        assert (binding.variable, binding.source, binding.statuses) == ("userId", "id", (201,))

    def test_required_fields(self):
        bodies = {c.name.rsplit(" - ", 1)[1]: c.request.body for c in self.by_category[Category.REQUIRED_FIELDS]}
        assert "name" not in bodies["name omitted"]
        assert bodies["name null"]["name"] is None
        assert bodies["email empty string"]["email"] == ""
        assert all(c.expected.statuses == (400,) for c in self.by_category[Category.REQUIRED_FIELDS])

    def test_type_validation(self):
        names = [c.name.rsplit(" - ", 1)[1] for c in self.by_category[Category.TYPE_VALIDATION]]
        assert names == ["name wrong type", "email wrong type", "email pattern mismatch", "age wrong type"]
        age = self.by_category[Category.TYPE_VALIDATION][-1]
        assert age.request.body["age"] == "123"

    def test_boundaries(self):
        by_name = {c.name.rsplit(" - ", 1)[1]: c for c in self.by_category[Category.BOUNDARY]}
        assert by_name["age max 120"].request.body["age"] == 120
        assert by_name["age max 120"].expected.statuses == (201,)
        assert by_name["age above max 120"].request.body["age"] == 121
        assert by_name["age above max 120"].expected.statuses == (400,)
        assert len(by_name["name above maxLength 50"].request.body["name"]) == 51

    def test_injection_never_5xx(self):
        for case in self.by_category[Category.INJECTION]:
            assert case.expected.never_5xx
            assert case.expected.statuses == ()
        payloads = [c.request.body["name"] for c in self.by_category[Category.INJECTION][:4]]
        assert "' OR '1'='1" in payloads
        assert "<script>alert(1)</script>" in payloads

    def test_method_and_content_type(self):
        cases = self.by_category[Category.METHOD_CONTENT_TYPE]
        not_allowed = [c for c in cases if c.expected.statuses == (405,)]
        assert [c.request.method for c in not_allowed] == [HttpMethod.GET, HttpMethod.PUT, HttpMethod.PATCH,
                                                           HttpMethod.DELETE]
        assert all(c.request.body is None for c in not_allowed)
        unsupported = cases[-1]
        assert unsupported.expected.statuses == (415,)
        assert ("Content-Type", "text/plain") in unsupported.request.headers

    def test_names_and_source(self):
        case = self.cases[0]
        assert case.name == "[Happy Path] POST /api/users - returns 201"
        assert case.source == ("POST", "/api/users")
        assert case.resource == "users"

    def test_deterministic(self):
        again = TestCaseSynthesizer(SynthConfig(), [_create()]).synthesize(_create())
        assert again == self.cases

    def test_leniency_changes_numeric_mismatch(self):
        synth = TestCaseSynthesizer(SynthConfig(leniency_for_numeric_strings=True), [_create()])
        cases = _by_category(synth.synthesize(_create()))[Category.TYPE_VALIDATION]
        assert cases[-1].request.body["age"] == "not-a-number"

    def test_configured_failure_status(self):
        synth = TestCaseSynthesizer(SynthConfig(validation_failure_status=422), [_create()])
        cases = _by_category(synth.synthesize(_create()))[Category.REQUIRED_FIELDS]
        assert all(c.expected.statuses == (422,) for c in cases)


class TestAuthCases:
    def test_authenticated(self):
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [_read()]).synthesize(_read()))[Category.AUTH]
        assert [c.expected.statuses for c in cases] == [(401,), (401,)]
        assert all(h[0] != "Authorization" for h in cases[0].request.headers)
        assert ("Authorization", "Bearer invalid-token") in cases[1].request.headers

    def test_role(self):
        d = _delete()
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [d]).synthesize(d))[Category.AUTH]
        assert [c.expected.statuses for c in cases] == [(401,), (401,), (403,), (204,)]
        assert ("Authorization", "Bearer {{lowPrivilegeToken}}") in cases[2].request.headers
        assert ("Authorization", "Bearer {{roleToken_ADMIN}}") in cases[3].request.headers

    def test_public_endpoint_has_no_auth_cases(self):
        cases = TestCaseSynthesizer(SynthConfig(), [_create()]).synthesize(_create())
        assert not any(c.category == Category.AUTH for c in cases)


class TestPathAndQueryParams:
    def test_path_params(self):
        synth = TestCaseSynthesizer(SynthConfig(), [_create(), _read()])
        cases = _by_category(synth.synthesize(_read()))[Category.PATH_PARAMS]
        assert [(c.request.path, c.expected.statuses) for c in cases] == [
            ("/api/users/{{userId}}", (200,)),
            ("/api/users/999999999", (404,)),
            ("/api/users/not-a-number", (400,)),
        ]

    def test_uncreated_path_variable(self):
        d = EndpointDescriptor(method=HttpMethod.GET, path_template="/items/{item_id}",
                               path_params=(PathParam(name="item_id"),))
        synth = TestCaseSynthesizer(SynthConfig(), [d])
        cases = _by_category(synth.synthesize(d))[Category.PATH_PARAMS]
        assert cases[0].request.path == "/items/{{itemId}}"
        assert len(cases) == 2

    def test_required_and_optional(self):
        d = EndpointDescriptor(method=HttpMethod.GET, path_template="/api/users/search", query_params=(
            QueryParam(name="q", required=True, constraints=(Constraint.required(),)),
            QueryParam(name="max", type=FieldType.NUMBER, default=10, constraints=(Constraint.max(50),)),
        ))
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [d]).synthesize(d))[Category.QUERY_PARAMS]
        assert [(c.request.query, c.expected.statuses) for c in cases] == [
            ((), (400,)),
            ((("q", "sample"),), (200,)),
        ]

    def test_pagination_bounds(self):
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [_listing()]).synthesize(_listing()))
        query = {c.name.rsplit(" - ", 1)[1]: c for c in cases[Category.QUERY_PARAMS]}
        assert query["valid pagination bounds"].request.query == (("page", "0"), ("size", "1"))
        assert query["page out of range"].request.query == (("page", "-1"),)
        assert query["page out of range"].expected.statuses == (400,)
        assert query["unknown sort field"].request.query == (("sort", "unknownField"),)

    def test_omitted_size_applies_default_page_size(self):
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [_listing()]).synthesize(_listing()))
        query = {c.name.rsplit(" - ", 1)[1]: c for c in cases[Category.QUERY_PARAMS]}
        size = query["optional size omitted uses default"]
        assert size.request.query == ()
        assert [(a.kind, a.field, a.value) for a in size.expected.assertions] == [
            (AssertionKind.MAX_LENGTH, "content", 20),
        ]
        assert query["optional sort omitted uses default"].expected.assertions == ()

    def test_omitted_param_echoed_in_response(self):
        report = FieldSet(fields=(Field(name="currency", type=FieldType.STRING),))
        d = EndpointDescriptor(method=HttpMethod.GET, path_template="/api/reports/summary",
                               response_schemas={200: report},
                               query_params=(QueryParam(name="currency", default="EUR"),))
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [d]).synthesize(d))[Category.QUERY_PARAMS]
        assertions = cases[0].expected.assertions
        assert [(a.kind, a.field, a.value) for a in assertions] == [(AssertionKind.EQUALS, "currency", "EUR")]

    def test_unconstrained_page_only_checks_5xx(self):
        d = EndpointDescriptor(method=HttpMethod.GET, path_template="/orders", paginated=True,
                               query_params=(QueryParam(name="page", type=FieldType.NUMBER, default=0),))
        cases = _by_category(TestCaseSynthesizer(SynthConfig(), [d]).synthesize(d))[Category.QUERY_PARAMS]
        out_of_range = next(c for c in cases if c.name.endswith("page out of range"))
        assert out_of_range.expected.statuses == ()
        assert out_of_range.expected.never_5xx


class TestListing:
    def setup_method(self):
        cases = TestCaseSynthesizer(SynthConfig(), [_listing()]).synthesize(_listing())
        self.listing = _by_category(cases)[Category.LISTING]

    def test_cases(self):
        names = [c.name.rsplit(" - ", 1)[1] for c in self.listing]
        assert names == [
            "empty collection shape",
            "default pagination",
            "out-of-range page returns empty content",
            "sort ascending",
            "sort descending",
        ]
        assert all(c.expected.statuses == (200,) for c in self.listing)

    def test_shape_assertions(self):
        shape = self.listing[0].expected.assertions
        assert [(a.kind, a.field, a.value) for a in shape] == [
            (AssertionKind.TYPE, "content", "array"),
            (AssertionKind.TYPE, "totalElements", "number"),
        ]
        page_size = self.listing[1].expected.assertions[-1]
        assert (page_size.kind, page_size.value) == (AssertionKind.MAX_LENGTH, 20)

    def test_out_of_range_page(self):
        case = self.listing[2]
        assert case.request.query == (("page", "999999"),)
        assert case.expected.assertions[-1].kind == AssertionKind.LENGTH
        assert case.expected.assertions[-1].value == 0

    def test_sort(self):
        assert self.listing[3].request.query == (("sort", "id,asc"),)
        assert self.listing[4].request.query == (("sort", "id,desc"),)

    def test_custom_listing_fields(self):
        config = SynthConfig(listing_content_field="items", listing_total_field="total")
        cases = TestCaseSynthesizer(config, [_listing()]).synthesize(_listing())
        shape = _by_category(cases)[Category.LISTING][0].expected.assertions
        assert [a.field for a in shape] == ["items", "total"]


class TestUnverifiableBoundary:
    def test_recorded_and_skipped(self):
        schema = FieldSet(fields=(Field(name="zip", type=FieldType.STRING,
                                        constraints=(Constraint.max_length(5), Constraint.pattern(r"^[0-9]{5}$"))),))
        d = _create(request_schema=schema)
        synth = TestCaseSynthesizer(SynthConfig(), [d])
        cases = _by_category(synth.synthesize(d))[Category.BOUNDARY]
        assert cases[0].skip_reason is None
        assert cases[1].skip_reason is not None
        assert len(synth.issues) == 1
        assert isinstance(synth.issues[0], UnverifiableBoundaryError)


class TestChains:
    def setup_method(self):
        self.descriptors = [_create(), _read(), _update(), _delete()]
        self.synth = TestCaseSynthesizer(SynthConfig(), self.descriptors)
        self.chain = self.synth.synthesize_chains(self.descriptors)

    def test_steps(self):
        assert [c.order for c in self.chain] == [1, 2, 3, 4, 5, 6]
        assert [c.request.method for c in self.chain] == [
            HttpMethod.POST, HttpMethod.GET, HttpMethod.PUT, HttpMethod.GET, HttpMethod.DELETE, HttpMethod.GET,
        ]
        assert all(c.category == Category.DATA_INTEGRITY for c in self.chain)
        assert self.chain[-1].expected.statuses == (404,)

    def test_chain_variable(self):
        create = self.chain[0]
        assert create.bindings[0].variable == "userChainId"
        assert all(c.request.path == "/api/users/{{userChainId}}" for c in self.chain[1:])

    def test_read_back_equals_sent(self):
        sent = self.chain[0].request.body
        assertions = self.chain[1].expected.assertions
        assert [(a.kind, a.field, a.value) for a in assertions] == [
            (AssertionKind.EQUALS, k, sent[k]) for k in ("name", "email", "age")
        ]

    def test_update_changes_one_field(self):
        sent = self.chain[0].request.body
        update = self.chain[2].request.body
        assert update["name"] != sent["name"]
        assert update["email"] == sent["email"]
        kinds = {(a.kind, a.field) for a in self.chain[3].expected.assertions}
        assert (AssertionKind.NOT_EQUALS, "name") in kinds
        assert (AssertionKind.EQUALS, "email") in kinds

    def test_no_chain_without_delete(self):
        descriptors = [_create(), _read()]
        assert TestCaseSynthesizer(SynthConfig(), descriptors).synthesize_chains(descriptors) == []


class TestCleanup:
    def test_delete_tolerates_404(self):
        descriptors = [_create(), _read(), _delete()]
        cases = TestCaseSynthesizer(SynthConfig(), descriptors).synthesize_cleanup(descriptors)
        assert len(cases) == 1
        assert cases[0].category == Category.CLEANUP
        assert cases[0].request.path == "/api/users/{{userId}}"
        assert cases[0].expected.statuses == (204, 404)


class TestDeclaredVariables:
    def test_table(self):
        descriptors = [_create(), _read(), _delete()]
        table = declared_variables(descriptors, SynthConfig())
        assert table == {
            "baseUrl": "http://localhost:8080",
            "authToken": "",
            "roleToken_ADMIN": "",
            "lowPrivilegeToken": "",
        }

    def test_uncreated_variable_has_default(self):
        d = EndpointDescriptor(method=HttpMethod.GET, path_template="/items/{item_id}",
                               path_params=(PathParam(name="item_id"),))
        table = declared_variables([_create(), d], SynthConfig())
        assert table["itemId"] == "1"
        assert "userId" not in table


class TestDeleteIsolation:
    def setup_method(self):
        self.descriptors = [_create(), _read(), _delete()]
        self.synth = TestCaseSynthesizer(SynthConfig(), self.descriptors)
        self.by_category = _by_category(self.synth.synthesize(_delete()))

    def test_happy_path_deletes_its_own_record(self):
        setup, delete = self.by_category[Category.HAPPY_PATH]
        assert (setup.request.method, setup.request.path) == (HttpMethod.POST, "/api/users")
        assert setup.request.body == self.synth.synthesize(_create())[0].request.body
        assert setup.expected.statuses == (201,)
        binding = setup.bindings[0]
        assert (binding.variable, binding.source, binding.statuses) == ("userDeleteId", "id", (201,))
        assert delete.request.path == "/api/users/{{userDeleteId}}"
        assert delete.expected.statuses == (204,)

    def test_every_successful_deletion_gets_a_record(self):
        auth = self.by_category[Category.AUTH]
        assert [c.request.method for c in auth] == [
            HttpMethod.DELETE, HttpMethod.DELETE, HttpMethod.DELETE, HttpMethod.POST, HttpMethod.DELETE,
        ]
        assert [c.request.path for c in auth[:3]] == ["/api/users/{{userId}}"] * 3
        assert auth[-1].request.path == "/api/users/{{userDeleteId}}"
        path_params = self.by_category[Category.PATH_PARAMS]
        assert [(c.request.method, c.request.path) for c in path_params] == [
            (HttpMethod.POST, "/api/users"),
            (HttpMethod.DELETE, "/api/users/{{userDeleteId}}"),
            (HttpMethod.DELETE, "/api/users/999999999"),
            (HttpMethod.DELETE, "/api/users/not-a-number"),
        ]

    def test_without_create_nothing_changes(self):
        cases = TestCaseSynthesizer(SynthConfig(), [_delete()]).synthesize(_delete())
        assert not any(c.bindings for c in cases)
        assert all("DeleteId" not in c.request.path for c in cases)


class TestFixtureScenario:
    def test_every_authenticated_endpoint_gets_401_cases(self):
        result = Pipeline().describe(FIXTURES / "spring", "spring")
        synth = TestCaseSynthesizer(SynthConfig(), result.descriptors)
        for d in result.descriptors:
            auth_cases = [c for c in synth.synthesize(d) if c.category == Category.AUTH]
            if d.auth.kind.value == "none":
                assert auth_cases == []
            else:
                assert [c.expected.statuses for c in auth_cases[:2]] == [(401,), (401,)]
