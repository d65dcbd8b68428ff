"""Test case synthesizer: turns endpoint descriptors into ordered test case specs."""

import logging
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from api_test_synth.config import SynthConfig
from api_test_synth.errors import UnverifiableBoundaryError
from api_test_synth.generator import values
from api_test_synth.parser.base import (
    METHOD_ORDER,
    AuthKind,
    ConstraintKind,
    EndpointDescriptor,
    Field,
    FieldSet,
    FieldType,
    HttpMethod,
    QueryParam,
)
from api_test_synth.parser.builder import PAGINATION_PARAM_NAMES

logger = logging.getLogger(__name__)

BODY_METHODS = {HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH}
PAGE_PARAM_NAMES = ("page", "offset")
SIZE_PARAM_NAMES = ("size", "limit", "page_size", "per_page", "pagesize")
SORT_PARAM_NAMES = ("sort", "sortBy", "sort_by", "orderBy", "order_by")
DIRECTION_PARAM_NAMES = ("order", "direction", "sortOrder", "sort_order", "dir")
VERSION_SEGMENT_RE = re.compile(r"^v\d+$")
VARIABLE_RE = re.compile(r"\{\{([^{}]+)\}\}")

AUTH_TOKEN = "authToken"
LOW_PRIVILEGE_TOKEN = "lowPrivilegeToken"
INVALID_TOKEN = "invalid-token"
OUT_OF_RANGE_PAGE = 999999
DEFAULT_PAGE_SIZE = 20


class Category(str, Enum):
    HAPPY_PATH = "Happy Path"
    AUTH = "Auth"
    REQUIRED_FIELDS = "Required Fields"
    TYPE_VALIDATION = "Type & Format Validation"
    BOUNDARY = "Boundary Values"
    INJECTION = "Injection"
    PATH_PARAMS = "Path Params"
    QUERY_PARAMS = "Query Params"
    METHOD_CONTENT_TYPE = "Method & Content-Type"
    DATA_INTEGRITY = "Data Integrity"
    LISTING = "Listing"
    CLEANUP = "Cleanup"


CATEGORY_ORDER = {c: i for i, c in enumerate(Category)}


class AssertionKind(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    TYPE = "type"
    LENGTH = "length"
    MAX_LENGTH = "maxLength"


class BodyAssertion(BaseModel):
    """A check against one field of the JSON response body."""

    model_config = ConfigDict(frozen=True)

    kind: AssertionKind
    field: str
    value: Any = None


class RequestSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: HttpMethod
    path: str  # placeholders already replaced with {{variables}} or literals
    headers: tuple[tuple[str, str], ...] = ()
    body: Any = None
    query: tuple[tuple[str, str], ...] = ()

    def variables(self) -> list[str]:
        """Every {{variable}} this request references, in order of appearance."""
        text = [self.path] + [v for _, v in self.headers] + [v for _, v in self.query]
        found = []
        for chunk in text:
            for name in VARIABLE_RE.findall(chunk):
                if name not in found:
                    found.append(name)
        return found


class ExpectedOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    statuses: tuple[int, ...] = ()
    never_5xx: bool = False
    assertions: tuple[BodyAssertion, ...] = ()


class VariableBinding(BaseModel):
    """If the response status is in statuses, store response.<source> as variable."""

    model_config = ConfigDict(frozen=True)

    variable: str
    source: str
    statuses: tuple[int, ...]


class TestCaseSpec(BaseModel):
    __test__ = False

    model_config = ConfigDict(frozen=True)

    name: str
    category: Category
    resource: str
    request: RequestSpec
    expected: ExpectedOutcome
    bindings: tuple[VariableBinding, ...] = ()
    order: int = 0
    source: tuple[str, str]
    skip_reason: str | None = None


def resource_name(path_template: str, ignored_prefixes=("api", "rest")) -> str:
    """First static path segment after ignored prefixes and version segments."""
    for segment in path_template.strip("/").split("/"):
        if not segment or segment.startswith("{"):
            continue
        if segment.lower() in ignored_prefixes or VERSION_SEGMENT_RE.match(segment):
            continue
        return segment
    return "root"


def variable_stem(resource: str) -> str:
    """users -> user, order-items -> orderItem."""
    parts = [p for p in re.split(r"[-_ ]+", resource) if p]
    if not parts:
        return "resource"
    last = parts[-1]
    if last.endswith("ies") and len(last) > 4:
        last = last[:-3] + "y"
    elif last.endswith("s") and not last.endswith("ss") and len(last) > 3:
        last = last[:-1]
    parts[-1] = last
    return parts[0][0].lower() + parts[0][1:] + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def camel(name: str) -> str:
    parts = [p for p in re.split(r"[-_]+", name) if p]
    if not parts:
        return name
    return parts[0] + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def role_token(role: str) -> str:
    return f"roleToken_{re.sub(r'[^A-Za-z0-9_]', '_', role)}"


def collection_path(path_template: str) -> str:
    """Strip a trailing placeholder: /api/users/{id} -> /api/users."""
    return re.sub(r"/\{[^}/]+\}$", "", path_template)


def is_creating(descriptor: EndpointDescriptor) -> bool:
    return descriptor.method == HttpMethod.POST and not descriptor.path_template.endswith("}")


def id_field(descriptor: EndpointDescriptor) -> str:
    """The response field holding the created identifier."""
    schema = descriptor.response_schemas.get(descriptor.primary_success)
    if schema is not None:
        if schema.get("id") is not None:
            return "id"
        for name in schema.names:
            if name.endswith("Id") or name.endswith("_id"):
                return name
    return "id"


def declared_variables(descriptors: list[EndpointDescriptor], config: SynthConfig) -> dict[str, str]:
    """The collection variable table: base URL, tokens (empty) and path variable defaults.

    Id variables bound by a creating endpoint get no default, so a reference
    that runs before the create is reported as unbound.
    """
    table = {config.base_url_variable_name: config.base_url}
    if any(d.auth.kind != AuthKind.NONE for d in descriptors):
        table[AUTH_TOKEN] = ""
    roles = sorted({r for d in descriptors if d.auth.kind == AuthKind.ROLE for r in d.auth.roles})
    for role in roles:
        table[role_token(role)] = ""
    if roles:
        table[LOW_PRIVILEGE_TOKEN] = ""
    synthesizer = TestCaseSynthesizer(config, descriptors)
    for d in descriptors:
        created = synthesizer.created_variables(d)
        for name in synthesizer.path_variables(d).values():
            if name not in created:
                table.setdefault(name, "1")
    return table


class TestCaseSynthesizer:
    """Enumerates the fixed test taxonomy for each endpoint descriptor."""

    __test__ = False

    def __init__(self, config: SynthConfig, descriptors: list[EndpointDescriptor] | None = None):
        self.config = config
        self.descriptors = list(descriptors or [])
        self.issues: list[UnverifiableBoundaryError] = []
        self._creating = {collection_path(d.path_template) for d in self.descriptors if is_creating(d)}
        self._methods_by_path: dict[str, list[HttpMethod]] = {}
        for d in self.descriptors:
            self._methods_by_path.setdefault(d.path_template, []).append(d.method)

    # -- helpers --------------------------------------------------------------

    def resource(self, descriptor: EndpointDescriptor) -> str:
        return resource_name(descriptor.path_template, self.config.ignored_path_prefixes)

    @staticmethod
    def id_variable(descriptor: EndpointDescriptor) -> str:
        """userId for /api/users and /api/users/{id}; orderId for /users/{id}/orders."""
        return f"{variable_stem(collection_path(descriptor.path_template).rsplit('/', 1)[-1])}Id"

    def path_variables(self, descriptor: EndpointDescriptor, id_variable: str | None = None) -> dict[str, str]:
        """Map each path placeholder to the collection variable that fills it."""
        mapping = {}
        for param in descriptor.path_params:
            prefix = self._collection_before(descriptor, param.name)
            if prefix in self._creating:
                stem = variable_stem(prefix.rsplit("/", 1)[-1])
                own = prefix == collection_path(descriptor.path_template)
                mapping[param.name] = id_variable if id_variable and own else f"{stem}Id"
            else:
                mapping[param.name] = camel(param.name)
        return mapping

    @staticmethod
    def _collection_before(descriptor: EndpointDescriptor, param_name: str) -> str:
        return descriptor.path_template.split("{" + param_name + "}", 1)[0].rstrip("/")

    def created_variables(self, descriptor: EndpointDescriptor) -> set[str]:
        """Path variables of descriptor that a creating endpoint binds."""
        mapping = self.path_variables(descriptor)
        return {mapping[p.name] for p in descriptor.path_params
                if self._collection_before(descriptor, p.name) in self._creating}

    def _path(self, descriptor: EndpointDescriptor, overrides: dict[str, str] | None = None,
              id_variable: str | None = None) -> str:
        path = descriptor.path_template
        mapping = self.path_variables(descriptor, id_variable)
        for name, variable in mapping.items():
            value = (overrides or {}).get(name, "{{" + variable + "}}")
            path = path.replace("{" + name + "}", value)
        return path

    def _headers(self, descriptor: EndpointDescriptor, token: str | None = "default",
                 content_type: str | None = None) -> tuple[tuple[str, str], ...]:
        headers = []
        if descriptor.method in BODY_METHODS and descriptor.request_schema is not None:
            headers.append(("Content-Type", content_type or descriptor.content_type))
        if token == "default":
            token = self._token(descriptor)
        if token is not None:
            headers.append(("Authorization", f"Bearer {token}"))
        return tuple(headers)

    @staticmethod
    def _token(descriptor: EndpointDescriptor) -> str | None:
        if descriptor.auth.kind == AuthKind.NONE:
            return None
        if descriptor.auth.kind == AuthKind.ROLE and descriptor.auth.roles:
            return "{{" + role_token(descriptor.auth.roles[0]) + "}}"
        return "{{" + AUTH_TOKEN + "}}"

    def _base_query(self, descriptor: EndpointDescriptor) -> list[tuple[str, str]]:
        return [(q.name, self._query_value(q)) for q in descriptor.query_params if q.required]

    @staticmethod
    def _query_value(param: QueryParam) -> str:
        if param.default is not None:
            return values.render_query_value(param.default)
        return values.render_query_value(values.sample_query_value(param.name, param.type, param.constraints))

    def _body(self, descriptor: EndpointDescriptor) -> dict | None:
        if descriptor.method not in BODY_METHODS or descriptor.request_schema is None:
            return None
        return values.sample_body(descriptor.request_schema)

    def _case(self, descriptor: EndpointDescriptor, category: Category, name: str, *,
              statuses=(), never_5xx=False, body="default", path=None, headers=None, query=None,
              method=None, assertions=(), bindings=(), order=0, skip_reason=None) -> TestCaseSpec:
        return TestCaseSpec(
            name=f"[{category.value}] {descriptor.label} - {name}",
            category=category,
            resource=self.resource(descriptor),
            request=RequestSpec(
                method=method or descriptor.method,
                path=path if path is not None else self._path(descriptor),
                headers=headers if headers is not None else self._headers(descriptor),
                body=self._body(descriptor) if body == "default" else body,
                query=tuple(query if query is not None else self._base_query(descriptor)),
            ),
            expected=ExpectedOutcome(statuses=tuple(statuses), never_5xx=never_5xx, assertions=tuple(assertions)),
            bindings=tuple(bindings),
            order=order,
            source=descriptor.identity,
            skip_reason=skip_reason,
        )

    # -- per-descriptor taxonomy ----------------------------------------------

    def synthesize(self, descriptor: EndpointDescriptor) -> list[TestCaseSpec]:
        """All cases for one descriptor, in taxonomy order."""
        cases = []
        cases += self._happy_path(descriptor)
        cases += self._auth(descriptor)
        cases += self._required_fields(descriptor)
        cases += self._type_validation(descriptor)
        cases += self._boundaries(descriptor)
        cases += self._injection(descriptor)
        cases += self._path_params(descriptor)
        cases += self._query_params(descriptor)
        cases += self._method_content_type(descriptor)
        if descriptor.paginated:
            cases += self._listing(descriptor)
        if descriptor.method == HttpMethod.DELETE:
            cases = self._isolate_deletions(descriptor, cases)
        logger.debug("synthesized %d cases for %s", len(cases), descriptor.label)
        return cases

    def _happy_path(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        cases = []
        for i, status in enumerate(d.success_statuses):
            bindings = ()
            if i == 0 and is_creating(d):
                bindings = (VariableBinding(variable=self.id_variable(d), source=id_field(d), statuses=(status,)),)
            cases.append(self._case(d, Category.HAPPY_PATH, f"returns {status}", statuses=(status,), bindings=bindings))
        return cases

    def _auth(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        if d.auth.kind == AuthKind.NONE:
            return []
        cases = [
            self._case(d, Category.AUTH, "missing credentials returns 401", statuses=(401,),
                       headers=self._headers(d, token=None)),
            self._case(d, Category.AUTH, "invalid credentials returns 401", statuses=(401,),
                       headers=self._headers(d, token=INVALID_TOKEN)),
        ]
        if d.auth.kind == AuthKind.ROLE:
            cases.append(self._case(d, Category.AUTH, "insufficient role returns 403", statuses=(403,),
                                    headers=self._headers(d, token="{{" + LOW_PRIVILEGE_TOKEN + "}}")))
            cases.append(self._case(d, Category.AUTH, f"role {d.auth.roles[0] if d.auth.roles else ''} succeeds",
                                    statuses=(d.primary_success,)))
        return cases

    def _fields(self, d: EndpointDescriptor) -> tuple[Field, ...]:
        if d.method not in BODY_METHODS or d.request_schema is None:
            return ()
        return tuple(f for f in d.request_schema.fields if not f.truncated)

    def _with(self, d: EndpointDescriptor, name: str, value: Any, omit: bool = False) -> dict:
        body = dict(self._body(d) or {})
        if omit:
            body.pop(name, None)
        else:
            body[name] = value
        return body

    def _required_fields(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        failure = (self.config.validation_failure_status,)
        cases = []
        for f in self._fields(d):
            if not f.required:
                continue
            cases.append(self._case(d, Category.REQUIRED_FIELDS, f"{f.name} omitted", statuses=failure,
                                    body=self._with(d, f.name, None, omit=True)))
            cases.append(self._case(d, Category.REQUIRED_FIELDS, f"{f.name} null", statuses=failure,
                                    body=self._with(d, f.name, None)))
            empty = values.empty_value(f)
            label = "empty array" if empty == [] else "empty string"
            cases.append(self._case(d, Category.REQUIRED_FIELDS, f"{f.name} {label}", statuses=failure,
                                    body=self._with(d, f.name, empty)))
        return cases

    def _type_validation(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        failure = (self.config.validation_failure_status,)
        cases = []
        for f in self._fields(d):
            wrong = values.mismatch_value(f, self.config.leniency_for_numeric_strings)
            cases.append(self._case(d, Category.TYPE_VALIDATION, f"{f.name} wrong type", statuses=failure,
                                    body=self._with(d, f.name, wrong)))
            violation = values.pattern_violation(f)
            if violation is not None:
                cases.append(self._case(d, Category.TYPE_VALIDATION, f"{f.name} pattern mismatch", statuses=failure,
                                        body=self._with(d, f.name, violation)))
            outside = values.enum_violation(f)
            if outside is not None:
                cases.append(self._case(d, Category.TYPE_VALIDATION, f"{f.name} not an allowed value",
                                        statuses=failure, body=self._with(d, f.name, outside)))
        return cases

    def _boundaries(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        cases = []
        for f in self._fields(d):
            for label, value, expect_success, skip_reason in values.boundary_values(f):
                status = d.primary_success if expect_success else self.config.validation_failure_status
                if skip_reason is not None:
                    issue = UnverifiableBoundaryError(f"{d.label} {f.name} {label}: {skip_reason}", d.site)
                    logger.warning("boundary: %s", issue)
                    self.issues.append(issue)
                cases.append(self._case(d, Category.BOUNDARY, f"{f.name} {label}", statuses=(status,),
                                        body=self._with(d, f.name, value), skip_reason=skip_reason))
        return cases

    def _injection(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        cases = []
        for f in self._fields(d):
            if f.type != FieldType.STRING:
                continue
            for label, payload in values.INJECTION_PAYLOADS:
                cases.append(self._case(d, Category.INJECTION, f"{f.name} {label}", never_5xx=True,
                                        body=self._with(d, f.name, payload)))
        return cases

    def _path_params(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        if not d.path_params:
            return []
        cases = [self._case(d, Category.PATH_PARAMS, "valid reference", statuses=(d.primary_success,))]
        for param in d.path_params:
            missing = values.nonexistent_path_value(param.type)
            cases.append(self._case(d, Category.PATH_PARAMS, f"non-existent {param.name} returns 404", statuses=(404,),
                                    path=self._path(d, overrides={param.name: missing})))
        for param in d.path_params:
            if param.type == FieldType.STRING:
                continue
            malformed = values.malformed_path_value(param.type)
            if malformed is None:
                continue
            cases.append(self._case(d, Category.PATH_PARAMS, f"malformed {param.name}",
                                    statuses=(self.config.validation_failure_status,),
                                    path=self._path(d, overrides={param.name: malformed})))
        return cases

    def _query_params(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        if not d.query_params:
            return []
        failure = (self.config.validation_failure_status,)
        base = self._base_query(d)
        cases = []

        paging = [q for q in d.query_params if q.name.lower() in PAGINATION_PARAM_NAMES]
        if paging:
            lower = [(q.name, values.render_query_value(self._lower_bound(q))) for q in paging]
            cases.append(self._case(d, Category.QUERY_PARAMS, "valid pagination bounds", statuses=(d.primary_success,),
                                    query=_merge(base, lower)))
            for q in paging:
                constrained = any(q.get(k) is not None for k in
                                  (ConstraintKind.MIN, ConstraintKind.POSITIVE, ConstraintKind.POSITIVE_OR_ZERO))
                cases.append(self._case(d, Category.QUERY_PARAMS, f"{q.name} out of range",
                                        statuses=failure if constrained else (), never_5xx=not constrained,
                                        query=_merge(base, [(q.name, "-1")])))

        sort = next((q for q in d.query_params if q.name in SORT_PARAM_NAMES), None)
        if sort is not None:
            cases.append(self._case(d, Category.QUERY_PARAMS, "unknown sort field", statuses=failure,
                                    query=_merge(base, [(sort.name, "unknownField")])))

        for q in d.query_params:
            if q.required:
                omitted = [(k, v) for k, v in base if k != q.name]
                cases.append(self._case(d, Category.QUERY_PARAMS, f"required {q.name} omitted", statuses=failure,
                                        query=omitted))
            else:
                cases.append(self._case(d, Category.QUERY_PARAMS, f"optional {q.name} omitted uses default",
                                        statuses=(d.primary_success,), query=base,
                                        assertions=self._default_applied(d, q)))
        return cases

    def _default_applied(self, d: EndpointDescriptor, q: QueryParam) -> tuple[BodyAssertion, ...]:
        """Observable effects of a query param's known default: an echoed field, or the page size."""
        if q.default is None:
            return ()
        schema = d.response_schemas.get(d.primary_success)
        if not d.paginated and schema is not None and schema.get(q.name) is not None:
            return (BodyAssertion(kind=AssertionKind.EQUALS, field=q.name, value=q.default),)
        is_count = isinstance(q.default, int) and not isinstance(q.default, bool)
        if d.paginated and q.name.lower() in SIZE_PARAM_NAMES and is_count:
            return (BodyAssertion(kind=AssertionKind.MAX_LENGTH, field=self.config.listing_content_field,
                                  value=q.default),)
        return ()

    @staticmethod
    def _lower_bound(q: QueryParam):
        low = q.get(ConstraintKind.MIN)
        if low is not None:
            return low.value
        if q.get(ConstraintKind.POSITIVE) is not None:
            return 1
        return 0 if q.name.lower() in PAGE_PARAM_NAMES else 1

    def _method_content_type(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        cases = []
        declared = self._methods_by_path.get(d.path_template, [d.method])
        if min(declared, key=METHOD_ORDER.get) == d.method:
            for method in HttpMethod:
                if method in declared:
                    continue
                cases.append(self._case(d, Category.METHOD_CONTENT_TYPE, f"{method.value} not allowed returns 405",
                                        statuses=(405,), method=method, body=None,
                                        headers=tuple(h for h in self._headers(d) if h[0] != "Content-Type")))
        if d.method in BODY_METHODS and d.request_schema is not None:
            cases.append(self._case(d, Category.METHOD_CONTENT_TYPE, "text/plain body returns 415", statuses=(415,),
                                    headers=self._headers(d, content_type="text/plain")))
        return cases

    def _listing(self, d: EndpointDescriptor) -> list[TestCaseSpec]:
        content = self.config.listing_content_field
        total = self.config.listing_total_field
        shape = (
            BodyAssertion(kind=AssertionKind.TYPE, field=content, value="array"),
            BodyAssertion(kind=AssertionKind.TYPE, field=total, value="number"),
        )
        base = self._base_query(d)
        names = {q.name for q in d.query_params}
        page = next((n for n in PAGE_PARAM_NAMES if n in names), "page")
        size_param = next((q for q in d.query_params if q.name.lower() in SIZE_PARAM_NAMES), None)
        page_size = size_param.default if size_param is not None and isinstance(size_param.default, int) else DEFAULT_PAGE_SIZE

        cases = [
            self._case(d, Category.LISTING, "empty collection shape", statuses=(200,), assertions=shape),
            self._case(d, Category.LISTING, "default pagination", statuses=(200,),
                       assertions=shape + (BodyAssertion(kind=AssertionKind.MAX_LENGTH, field=content, value=page_size),)),
            self._case(d, Category.LISTING, "out-of-range page returns empty content", statuses=(200,),
                       query=_merge(base, [(page, str(OUT_OF_RANGE_PAGE))]),
                       assertions=(
                           BodyAssertion(kind=AssertionKind.TYPE, field=content, value="array"),
                           BodyAssertion(kind=AssertionKind.LENGTH, field=content, value=0),
                       )),
        ]

        sort_field = self._sort_field(d)
        sort = next((q.name for q in d.query_params if q.name in SORT_PARAM_NAMES), "sort")
        direction = next((q.name for q in d.query_params if q.name in DIRECTION_PARAM_NAMES), None)
        for order in ("asc", "desc"):
            if direction is not None:
                query = _merge(base, [(sort, sort_field), (direction, order)])
            else:
                query = _merge(base, [(sort, f"{sort_field},{order}")])
            cases.append(self._case(d, Category.LISTING, f"sort {order}ending", statuses=(200,), query=query,
                                    assertions=shape[:1]))
        return cases

    def _creator(self, d: EndpointDescriptor) -> EndpointDescriptor | None:
        """The creating endpoint for the collection an item path belongs to."""
        if not d.path_template.endswith("}"):
            return None
        target = collection_path(d.path_template)
        return next((c for c in self.descriptors if is_creating(c) and c.path_template == target), None)

    def _isolate_deletions(self, d: EndpointDescriptor, cases: list[TestCaseSpec]) -> list[TestCaseSpec]:
        """Point every successful deletion at a record created just before it.

        Later cases of the resource keep using <resource>Id, which must still exist.
        """
        create = self._creator(d)
        if create is None:
            return cases
        variable = self.id_variable(d)[:-2] + "DeleteId"
        path = self._path(d, id_variable=variable)
        result = []
        for case in cases:
            statuses = case.expected.statuses
            if case.request.method != HttpMethod.DELETE or not statuses or not all(200 <= s < 300 for s in statuses):
                result.append(case)
                continue
            binding = VariableBinding(variable=variable, source=id_field(create), statuses=tuple(create.success_statuses))
            result.append(self._case(create, case.category, f"create record for {d.label}",
                                     statuses=(create.primary_success,), bindings=(binding,)))
            result.append(case.model_copy(update={"request": case.request.model_copy(update={"path": path})}))
        return result

    @staticmethod
    def _sort_field(d: EndpointDescriptor) -> str:
        schema = d.response_schemas.get(d.primary_success)
        if schema is None or not schema.fields:
            return "id"
        return "id" if schema.get("id") is not None else schema.fields[0].name

    # -- cross-descriptor flows -----------------------------------------------

    def _resource_endpoints(self, descriptors: list[EndpointDescriptor]):
        """Yield (create, item endpoints by method) per creating collection path."""
        for create in descriptors:
            if not is_creating(create):
                continue
            items: dict[str, dict[HttpMethod, EndpointDescriptor]] = {}
            for d in descriptors:
                if d.path_template != create.path_template and collection_path(d.path_template) == create.path_template:
                    items.setdefault(d.path_template, {})[d.method] = d
            if items:
                yield create, items[sorted(items)[0]]

    def synthesize_chains(self, descriptors: list[EndpointDescriptor]) -> list[TestCaseSpec]:
        """CRUD chains: create, read back, update, read back, delete, read back.

        A chain is built for every collection path that has a creating
        endpoint plus read and delete endpoints on its items.
        """
        cases = []
        for create, items in self._resource_endpoints(descriptors):
            read = items.get(HttpMethod.GET)
            delete = items.get(HttpMethod.DELETE)
            if read is None or delete is None or create.request_schema is None:
                continue
            update = items.get(HttpMethod.PUT) or items.get(HttpMethod.PATCH)
            cases.extend(self._chain(create, read, update, delete))
        return cases

    def _chain(self, create, read, update, delete) -> list[TestCaseSpec]:
        variable = self.id_variable(create)[:-2] + "ChainId"
        sent = values.sample_body(create.request_schema)
        checked = self._echoed(read, create.request_schema, sent)
        order = 0

        def step(d, name, statuses, body=None, assertions=(), bindings=()):
            nonlocal order
            order += 1
            return self._case(d, Category.DATA_INTEGRITY, f"chain {order}: {name}", statuses=statuses,
                              body=body, path=self._path(d, id_variable=variable),
                              assertions=assertions, bindings=bindings, order=order)

        steps = [
            step(create, "create", (create.primary_success,), body=sent,
                 bindings=(VariableBinding(variable=variable, source=id_field(create),
                                           statuses=tuple(create.success_statuses)),)),
            step(read, "read back created fields", (read.primary_success,),
                 assertions=[BodyAssertion(kind=AssertionKind.EQUALS, field=k, value=sent[k]) for k in checked]),
        ]

        if update is not None and update.request_schema is not None:
            changed = {}
            for f in update.request_schema.fields:
                if f.name in checked and f.name in sent:
                    new = values.alternate_value(f, sent[f.name])
                    if new is not None:
                        changed[f.name] = new
                        break
            if update.method == HttpMethod.PATCH:
                body = dict(changed)
            else:
                kept = {k: v for k, v in sent.items() if update.request_schema.get(k) is not None}
                body = {**values.sample_body(update.request_schema), **kept, **changed}
            assertions = []
            for k in checked:
                if k in changed:
                    assertions.append(BodyAssertion(kind=AssertionKind.EQUALS, field=k, value=changed[k]))
                    assertions.append(BodyAssertion(kind=AssertionKind.NOT_EQUALS, field=k, value=sent[k]))
                else:
                    assertions.append(BodyAssertion(kind=AssertionKind.EQUALS, field=k, value=sent[k]))
            steps.append(step(update, "update", (update.primary_success,), body=body))
            steps.append(step(read, "read back updated fields", (read.primary_success,), assertions=assertions))

        steps.append(step(delete, "delete", tuple(delete.success_statuses)))
        steps.append(step(read, "read back after delete returns 404", (404,)))
        return steps

    @staticmethod
    def _echoed(read: EndpointDescriptor, request_schema: FieldSet, sent: dict) -> list[str]:
        """Scalar request fields the read endpoint is expected to return."""
        response = read.response_schemas.get(read.primary_success)
        names = []
        for f in request_schema.fields:
            if f.name not in sent or f.type in (FieldType.ARRAY, FieldType.OBJECT):
                continue
            if response is not None and response.get(f.name) is None:
                continue
            names.append(f.name)
        return names

    def synthesize_cleanup(self, descriptors: list[EndpointDescriptor]) -> list[TestCaseSpec]:
        """One deletion per resource that has a create+delete pair; 404 means already gone."""
        cases = []
        for create, items in self._resource_endpoints(descriptors):
            delete = items.get(HttpMethod.DELETE)
            if delete is None:
                continue
            statuses = tuple(sorted(set(delete.success_statuses) | {404}))
            cases.append(self._case(delete, Category.CLEANUP, f"delete {self.id_variable(delete)}",
                                    statuses=statuses, body=None))
        return cases


def _merge(base: list[tuple[str, str]], extra: list[tuple[str, str]]) -> list[tuple[str, str]]:
    keys = {k for k, _ in extra}
    return [(k, v) for k, v in base if k not in keys] + list(extra)
