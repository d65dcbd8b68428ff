"""FastAPI adapter.

Reads Python sources with :mod:`ast`: ``FastAPI``/``APIRouter`` instances,
``include_router`` prefixes, route decorators, dependency-based auth and
pydantic request/response models.
"""

import ast
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator

from api_test_synth.errors import DiscoveryError, SourceSite
from api_test_synth.parser.base import (
    EMAIL_PATTERN,
    AuthMetadata,
    AuthRequirement,
    Constraint,
    FieldType,
    FrameworkAdapter,
    HttpMethod,
    PathParam,
    QueryParam,
    RawAnnotation,
    RawEndpoint,
    RawField,
    RawType,
    SourceFile,
    SourceTree,
    TypeRef,
    join_paths,
)

logger = logging.getLogger(__name__)

ROUTE_METHODS = {"get", "post", "put", "patch", "delete"}
AUTH_DEPENDENCIES = {
    "get_current_user", "get_current_active_user", "verify_token", "require_auth", "authenticate",
    "oauth2_scheme", "get_token", "verify_api_key", "api_key_auth", "current_user",
}
ROLE_DEPENDENCIES = {"require_role", "require_roles", "has_role", "role_required", "RoleChecker", "require_scopes"}
SKIPPED_PARAM_TYPES = {"Request", "Response", "BackgroundTasks", "Session", "AsyncSession", "WebSocket"}

PY_TYPES = {
    "str": FieldType.STRING, "UUID": FieldType.STRING, "EmailStr": FieldType.STRING,
    "HttpUrl": FieldType.STRING, "AnyUrl": FieldType.STRING, "SecretStr": FieldType.STRING,
    "int": FieldType.NUMBER, "float": FieldType.NUMBER, "Decimal": FieldType.NUMBER,
    "bool": FieldType.BOOLEAN,
    "date": FieldType.DATE, "datetime": FieldType.DATE,
    "dict": FieldType.OBJECT, "Dict": FieldType.OBJECT, "Any": FieldType.OBJECT,
}
SEQUENCE_TYPES = {"list", "List", "set", "Set", "Sequence", "tuple", "Tuple", "frozenset", "conlist"}
CONSTRAINED_TYPES = {"constr": FieldType.STRING, "conint": FieldType.NUMBER, "confloat": FieldType.NUMBER,
                     "condecimal": FieldType.NUMBER}
FIELD_META = {"default", "default_factory", "description", "title", "example", "examples", "alias",
              "json_schema_extra", "deprecated", "frozen", "exclude", "repr", "validation_alias",
              "serialization_alias", "discriminator", "strict"}


def _value(args: dict) -> Any:
    return args.get("value")


def _greater_than(args: dict, field_type: FieldType) -> list[Constraint]:
    v = _value(args)
    if not isinstance(v, (int, float)):
        return []
    if v == 0:
        return [Constraint.positive()]
    return [Constraint.min(v + 1 if isinstance(v, int) else v)]


def _less_than(args: dict, field_type: FieldType) -> list[Constraint]:
    v = _value(args)
    if not isinstance(v, (int, float)):
        return []
    return [Constraint.max(v - 1 if isinstance(v, int) else v)]


def _at_least(args: dict, field_type: FieldType) -> list[Constraint]:
    v = _value(args)
    if not isinstance(v, (int, float)):
        return []
    return [Constraint.positive_or_zero()] if v == 0 else [Constraint.min(v)]


def _typed(factory):
    def translate(args: dict, field_type: FieldType) -> list[Constraint]:
        v = _value(args)
        return [factory(v)] if isinstance(v, (int, float, str)) and not isinstance(v, bool) else []
    return translate


@dataclass
class FastAPIContext:
    constants: dict[str, dict[str, str]] = field(default_factory=dict)
    prefixes: dict[tuple[str, str], str] = field(default_factory=dict)
    router_auth: dict[tuple[str, str], AuthRequirement] = field(default_factory=dict)
    unresolved: dict[tuple[str, str], str] = field(default_factory=dict)
    models: set[str] = field(default_factory=set)


@dataclass
class _Module:
    source: SourceFile
    tree: ast.Module
    name: str
    apps: dict[str, ast.Call]
    routers: dict[str, ast.Call]
    imports: dict[str, tuple[str, str | None]]
    constants: dict[str, str]


def _call_name(node: ast.AST) -> str:
    if isinstance(node, ast.Call):
        node = node.func
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return ""


def _kwarg(call: ast.Call, name: str) -> ast.AST | None:
    for kw in call.keywords:
        if kw.arg == name:
            return kw.value
    return None


def _literal(node: ast.AST | None) -> Any:
    if node is None:
        return None
    try:
        return ast.literal_eval(node)
    except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
        return None


def _status_code(node: ast.AST | None) -> int | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, int):
        return node.value
    if isinstance(node, ast.Attribute):
        match = re.match(r"HTTP_(\d{3})", node.attr)
        if match:
            return int(match.group(1))
    return None


class FastAPIAdapter(FrameworkAdapter):
    """Discovers endpoints declared with FastAPI route decorators."""

    name = "fastapi"
    suffixes = (".py",)
    constraint_table = {
        "required": lambda args, t: [Constraint.required()],
        "min_length": _typed(Constraint.min_length),
        "min_items": _typed(Constraint.min_length),
        "max_length": _typed(Constraint.max_length),
        "max_items": _typed(Constraint.max_length),
        "ge": _at_least,
        "gt": _greater_than,
        "le": _typed(Constraint.max),
        "lt": _less_than,
        "pattern": _typed(Constraint.pattern),
        "regex": _typed(Constraint.pattern),
        "EmailStr": lambda args, t: [Constraint.pattern(EMAIL_PATTERN)],
        "Literal": lambda args, t: [Constraint.enum(args.get("values", ()))],
    }
    ignored_annotations = frozenset(FIELD_META)

    # -- module index ---------------------------------------------------------

    def _modules(self, tree: SourceTree) -> dict[str, _Module]:
        modules = {}
        for source in tree.files(self.suffixes):
            try:
                module = ast.parse(source.text, filename=source.path)
            except SyntaxError as e:
                logger.warning("skipping %s: %s", source.path, e)
                continue
            name = source.path[:-3].replace("/", ".")
            if name.endswith(".__init__"):
                name = name[: -len(".__init__")]
            modules[source.path] = self._index(source, module, name)
        return modules

    @staticmethod
    def _index(source: SourceFile, module: ast.Module, name: str) -> _Module:
        apps, routers, imports, constants = {}, {}, {}, {}
        package = name.rsplit(".", 1)[0] if "." in name else ""
        if source.path.endswith("__init__.py"):
            package = name
        for node in module.body:
            if isinstance(node, ast.Assign) and len(node.targets) == 1 and isinstance(node.targets[0], ast.Name):
                target = node.targets[0].id
                if isinstance(node.value, ast.Call) and _call_name(node.value) == "FastAPI":
                    apps[target] = node.value
                elif isinstance(node.value, ast.Call) and _call_name(node.value) == "APIRouter":
                    routers[target] = node.value
                elif isinstance(node.value, ast.Constant) and isinstance(node.value.value, str):
                    constants[target] = node.value.value
            elif isinstance(node, ast.ImportFrom):
                base = node.module or ""
                if node.level:
                    parts = package.split(".") if package else []
                    parts = parts[: len(parts) - (node.level - 1)] if node.level > 1 else parts
                    base = ".".join(p for p in parts + ([node.module] if node.module else []) if p)
                for alias in node.names:
                    imports[alias.asname or alias.name] = (base, alias.name)
            elif isinstance(node, ast.Import):
                for alias in node.names:
                    imports[alias.asname or alias.name] = (alias.name, None)
        return _Module(source, module, name, apps, routers, imports, constants)

    @staticmethod
    def _find_module(modules: dict[str, _Module], dotted: str) -> _Module | None:
        for module in modules.values():
            if module.name == dotted or module.name.endswith("." + dotted) or dotted.endswith("." + module.name):
                return module
        return None

    def _router_key(self, modules, module: _Module, node: ast.AST) -> tuple[str, str] | None:
        """Resolve the router argument of include_router() to a (file, variable) key."""
        if isinstance(node, ast.Name):
            if node.id in module.routers:
                return module.source.path, node.id
            imported = module.imports.get(node.id)
            if imported is None:
                return None
            base, attr = imported
            target = self._find_module(modules, base)
            if target is not None and attr in target.routers:
                return target.source.path, attr
            target = self._find_module(modules, f"{base}.{attr}" if base else attr)
            if target is not None and "router" in target.routers:
                return target.source.path, "router"
            return None
        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
            imported = module.imports.get(node.value.id)
            if imported is None:
                return None
            base, attr = imported
            dotted = f"{base}.{attr}" if attr else base
            target = self._find_module(modules, dotted)
            if target is not None and node.attr in target.routers:
                return target.source.path, node.attr
        return None

    def _string(self, node: ast.AST | None, constants: dict[str, str]) -> str | None:
        if node is None:
            return ""
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            return node.value
        if isinstance(node, ast.Name):
            return constants.get(node.id)
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Add):
            left, right = self._string(node.left, constants), self._string(node.right, constants)
            return left + right if left is not None and right is not None else None
        return None

    # -- discovery ------------------------------------------------------------

    def prepare(self, tree: SourceTree) -> FastAPIContext:
        modules = self._modules(tree)
        types = self.collect_types(tree)
        context = FastAPIContext(models={name for name, raw in types.items() if raw.enum_values is None})
        parents: dict[tuple[str, str], tuple[str, str]] = {}
        include_prefix: dict[tuple[str, str], str] = {}

        for module in modules.values():
            context.constants[module.source.path] = module.constants
            for name, call in module.routers.items():
                key = (module.source.path, name)
                prefix = self._string(_kwarg(call, "prefix"), module.constants)
                if prefix is None:
                    context.unresolved[key] = f"APIRouter prefix of '{name}' is not a static string"
                include_prefix.setdefault(key, "")
                context.prefixes[key] = prefix or ""
                auth = self._dependencies_auth(_kwarg(call, "dependencies"))
                if auth is not None:
                    context.router_auth[key] = auth

            for node in ast.walk(module.tree):
                if not (isinstance(node, ast.Call) and _call_name(node) == "include_router" and node.args):
                    continue
                child = self._router_key(modules, module, node.args[0])
                if child is None:
                    continue
                prefix = self._string(_kwarg(node, "prefix"), module.constants)
                if prefix is None:
                    context.unresolved[child] = "include_router prefix is not a static string"
                    continue
                include_prefix[child] = prefix
                auth = self._dependencies_auth(_kwarg(node, "dependencies"))
                if auth is not None and child not in context.router_auth:
                    context.router_auth[child] = auth
                receiver = node.func.value if isinstance(node.func, ast.Attribute) else None
                if isinstance(receiver, ast.Name) and receiver.id in module.routers:
                    parents[child] = (module.source.path, receiver.id)

        resolved = {}
        for key in context.prefixes:
            chain = []
            seen = set()
            current = key
            while current is not None and current not in seen:
                seen.add(current)
                chain.append(join_paths(include_prefix.get(current, ""), context.prefixes.get(current, "")))
                current = parents.get(current)
            resolved[key] = join_paths(*reversed(chain))
        context.prefixes = resolved
        return context

    def scan(self, source: SourceFile, context: FastAPIContext) -> Iterator[RawEndpoint | DiscoveryError]:
        try:
            module_ast = ast.parse(source.text, filename=source.path)
        except SyntaxError:
            return
        name = source.path[:-3].replace("/", ".")
        module = self._index(source, module_ast, name)
        receivers = set(module.apps) | set(module.routers)
        constants = context.constants.get(source.path, module.constants)

        for node in ast.walk(module_ast):
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            for decorator in node.decorator_list:
                if not (isinstance(decorator, ast.Call) and isinstance(decorator.func, ast.Attribute)):
                    continue
                recv = decorator.func.value
                if not (isinstance(recv, ast.Name) and recv.id in receivers):
                    continue
                verb = decorator.func.attr
                if verb == "api_route":
                    methods = [m.upper() for m in (_literal(_kwarg(decorator, "methods")) or ["GET"])]
                elif verb in ROUTE_METHODS:
                    methods = [verb.upper()]
                else:
                    continue
                site = SourceSite(source.path, decorator.lineno)
                key = (source.path, recv.id)
                yield from self._endpoints(node, decorator, methods, key, site, context, constants)

    def _endpoints(self, func, decorator, methods, key, site, context, constants):
        handler = f"{key[0]}:{func.name}"
        path_node = decorator.args[0] if decorator.args else _kwarg(decorator, "path")
        path = self._string(path_node, constants)
        if path is None or isinstance(path_node, ast.JoinedStr):
            yield DiscoveryError(f"route path of {func.name} is not a static string", site)
            return
        if key in context.unresolved:
            yield DiscoveryError(context.unresolved[key], site)
            return

        placeholders = re.findall(r"\{([^}:]+)(?::[^}]*)?\}", path)
        path = re.sub(r"\{([^}:]+):[^}]*\}", r"{\1}", path)
        path_params, query_params, body_ref, content_type, param_auth = self._params(func, placeholders, context)

        statuses = set()
        code = _status_code(_kwarg(decorator, "status_code"))
        if code is not None:
            statuses.add(code)
        responses = _kwarg(decorator, "responses")
        if isinstance(responses, ast.Dict):
            statuses.update(k.value for k in responses.keys if isinstance(k, ast.Constant) and isinstance(k.value, int))
        for node in ast.walk(func):
            if isinstance(node, ast.Call) and _call_name(node) == "HTTPException":
                raised = _status_code(_kwarg(node, "status_code") or (node.args[0] if node.args else None))
                if raised is not None:
                    statuses.add(raised)

        response_ref, is_page = self._response(_kwarg(decorator, "response_model") or func.returns)
        method_auth = self._dependencies_auth(_kwarg(decorator, "dependencies")) or param_auth

        for method in methods:
            if method not in HttpMethod.__members__:
                continue
            yield RawEndpoint(
                method=HttpMethod(method),
                path_template=join_paths(context.prefixes.get(key, ""), path),
                handler=handler,
                site=site,
                method_auth=method_auth,
                class_auth=context.router_auth.get(key),
                request_schema_ref=body_ref,
                response_schema_ref=response_ref,
                response_is_page=is_page,
                path_params=tuple(path_params),
                query_params=tuple(query_params),
                status_codes=tuple(sorted(statuses)),
                content_type=content_type,
            )

    def _params(self, func, placeholders: list[str], context: FastAPIContext):
        path_params, query_params = [], []
        body_ref = None
        content_type = "application/json"
        auth = None
        args = func.args.args + func.args.kwonlyargs
        defaults = [None] * (len(func.args.args) - len(func.args.defaults)) + list(func.args.defaults)
        defaults += list(func.args.kw_defaults)

        for arg, default in zip(args, defaults):
            if arg.arg in ("self", "cls"):
                continue
            annotation, metadata = self._unwrap_annotated(arg.annotation)
            marker = default if isinstance(default, ast.Call) else metadata
            marker_name = _call_name(marker) if marker is not None else ""
            type_name = _call_name(annotation) if annotation is not None else ""

            if marker_name in ("Depends", "Security"):
                found = self._dependency_auth(marker)
                if found is not None:
                    auth = found
                continue
            if type_name in SKIPPED_PARAM_TYPES:
                continue
            if type_name == "UploadFile" or marker_name == "File":
                content_type = "multipart/form-data"
                continue
            if marker_name == "Form":
                content_type = "application/x-www-form-urlencoded"
                continue

            ref, optional = self._type_ref(annotation)
            if arg.arg in placeholders:
                path_params.append(PathParam(name=arg.arg, type=ref.kind or FieldType.STRING))
            elif marker_name == "Body" or (ref.name and ref.name in context.models):
                body_ref = ref.name or body_ref
            else:
                query_params.append(self._query_param(arg.arg, ref, optional, default, marker))
        return path_params, query_params, body_ref, content_type, auth

    def _query_param(self, name: str, ref: TypeRef, optional: bool, default, marker) -> QueryParam:
        kind = ref.kind if ref.kind not in (None, FieldType.OBJECT) else FieldType.STRING
        constraints = []
        value = None
        has_default = default is not None and not (isinstance(default, ast.Call) and _call_name(default) == "Query")
        if has_default:
            value = _literal(default)
        if marker is not None and _call_name(marker) == "Query":
            first = marker.args[0] if marker.args else _kwarg(marker, "default")
            if first is not None and not (isinstance(first, ast.Constant) and first.value is Ellipsis):
                has_default = True
                value = _literal(first)
            alias = _literal(_kwarg(marker, "alias"))
            if isinstance(alias, str):
                name = alias
            for kw in marker.keywords:
                if kw.arg in self.constraint_table:
                    for c in self.translate(RawAnnotation(name=kw.arg, args={"value": _literal(kw.value)}), kind) or []:
                        if c.applies_to(kind) and c not in constraints:
                            constraints.append(c)
        required = not has_default and not optional
        if required:
            constraints.insert(0, Constraint.required())
        return QueryParam(name=name, type=kind, required=required,
                          default=value if isinstance(value, (str, int, float, bool)) else None,
                          constraints=tuple(constraints))

    @staticmethod
    def _unwrap_annotated(node: ast.AST | None) -> tuple[ast.AST | None, ast.Call | None]:
        """Split Annotated[X, Query(...)] into (X, Query(...))."""
        if isinstance(node, ast.Subscript) and _call_name(node.value) == "Annotated":
            elts = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
            metadata = next((e for e in elts[1:] if isinstance(e, ast.Call)), None)
            return elts[0], metadata
        return node, None

    def _type_ref(self, node: ast.AST | None) -> tuple[TypeRef, bool]:
        """Map an annotation to (TypeRef, optional)."""
        if node is None:
            return TypeRef(kind=FieldType.STRING), False
        if isinstance(node, ast.Constant) and node.value is None:
            return TypeRef(kind=FieldType.OBJECT), True
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            return TypeRef(name=node.value), False
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
            members = [node.left, node.right]
            real = [m for m in members if not (isinstance(m, ast.Constant) and m.value is None)]
            ref, _ = self._type_ref(real[0]) if real else (TypeRef(kind=FieldType.OBJECT), True)
            return ref, len(real) < len(members)
        if isinstance(node, ast.Subscript):
            outer = _call_name(node.value)
            elts = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
            if outer == "Optional":
                return self._type_ref(elts[0])[0], True
            if outer == "Union":
                real = [e for e in elts if not (isinstance(e, ast.Constant) and e.value is None)]
                return self._type_ref(real[0])[0], len(real) < len(elts)
            if outer == "Annotated":
                return self._type_ref(elts[0])
            if outer in SEQUENCE_TYPES:
                return TypeRef(kind=FieldType.ARRAY, item=self._type_ref(elts[0])[0]), False
            if outer == "Literal":
                values = [_literal(e) for e in elts]
                kind = FieldType.NUMBER if values and all(isinstance(v, (int, float)) for v in values) else FieldType.STRING
                return TypeRef(kind=kind), False
            if outer in ("dict", "Dict"):
                return TypeRef(kind=FieldType.OBJECT), False
            return TypeRef(name=outer), False
        if isinstance(node, ast.Call) and _call_name(node) in CONSTRAINED_TYPES:
            return TypeRef(kind=CONSTRAINED_TYPES[_call_name(node)]), False
        if isinstance(node, ast.Call) and _call_name(node) == "conlist":
            item = self._type_ref(node.args[0])[0] if node.args else None
            return TypeRef(kind=FieldType.ARRAY, item=item), False
        name = _call_name(node)
        if name in PY_TYPES:
            return TypeRef(kind=PY_TYPES[name]), False
        return TypeRef(name=name), False

    def _response(self, node: ast.AST | None) -> tuple[str | None, bool]:
        if node is None:
            return None, False
        if isinstance(node, ast.Subscript) and _call_name(node.value) in ("Page", "LimitOffsetPage", "Paginated"):
            elts = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
            return self._type_ref(elts[0])[0].name or None, True
        ref, _ = self._type_ref(node)
        if ref.kind == FieldType.ARRAY and ref.item is not None:
            ref = ref.item
        return ref.name or None, False

    # -- auth -----------------------------------------------------------------

    def _dependency_auth(self, marker: ast.Call) -> AuthRequirement | None:
        """Classify Depends(x) / Security(x, scopes=[...])."""
        if _call_name(marker) == "Security":
            scopes = _literal(_kwarg(marker, "scopes"))
            if scopes:
                return AuthRequirement.role(*scopes)
        target = marker.args[0] if marker.args else _kwarg(marker, "dependency")
        if target is None:
            return None
        name = _call_name(target)
        if isinstance(target, ast.Call) and name in ROLE_DEPENDENCIES:
            roles = []
            for a in target.args:
                value = _literal(a)
                if isinstance(value, str):
                    roles.append(value)
                elif isinstance(value, (list, tuple, set)):
                    roles.extend(str(v) for v in value)
            return AuthRequirement.role(*roles) if roles else AuthRequirement.authenticated()
        if name in AUTH_DEPENDENCIES or "current_user" in name or "auth" in name.lower():
            return AuthRequirement.authenticated()
        return None

    def _dependencies_auth(self, node: ast.AST | None) -> AuthRequirement | None:
        if not isinstance(node, (ast.List, ast.Tuple)):
            return None
        found = None
        for element in node.elts:
            if isinstance(element, ast.Call) and _call_name(element) in ("Depends", "Security"):
                auth = self._dependency_auth(element)
                if auth is not None and (found is None or auth.roles):
                    found = auth
        return found

    def collect_auth(self, tree: SourceTree) -> AuthMetadata:
        for module in self._modules(tree).values():
            for call in module.apps.values():
                auth = self._dependencies_auth(_kwarg(call, "dependencies"))
                if auth is not None:
                    return AuthMetadata(global_default=auth)
        return AuthMetadata()

    # -- pydantic models ------------------------------------------------------

    def collect_types(self, tree: SourceTree) -> dict[str, RawType]:
        classes: dict[str, tuple[ast.ClassDef, SourceFile]] = {}
        for module in self._modules(tree).values():
            for node in ast.walk(module.tree):
                if isinstance(node, ast.ClassDef) and node.name not in classes:
                    classes[node.name] = (node, module.source)

        models = {"BaseModel"}
        enums = {"Enum", "IntEnum", "StrEnum"}
        changed = True
        while changed:
            changed = False
            for name, (node, _) in classes.items():
                bases = {_call_name(b) for b in node.bases}
                if name not in models and bases & models:
                    models.add(name)
                    changed = True
                elif name not in enums and bases & enums:
                    enums.add(name)
                    changed = True

        types: dict[str, RawType] = {}
        for name, (node, source) in sorted(classes.items()):
            site = SourceSite(source.path, node.lineno)
            if name in enums:
                values = [_literal(s.value) for s in node.body if isinstance(s, ast.Assign)]
                types[name] = RawType(name=name, enum_values=tuple(str(v) for v in values if v is not None), site=site)
            elif name in models:
                types[name] = RawType(name=name, fields=tuple(self._model_fields(node, classes, source)), site=site)
        return types

    def _model_fields(self, node: ast.ClassDef, classes, source: SourceFile, seen=None) -> list[RawField]:
        seen = (seen or set()) | {node.name}
        fields: list[RawField] = []
        for base in node.bases:
            parent = classes.get(_call_name(base))
            if parent is not None and parent[0].name not in seen:
                fields.extend(self._model_fields(parent[0], classes, parent[1], seen))
        for stmt in node.body:
            if not (isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name)):
                continue
            if stmt.target.id == "model_config" or _call_name(stmt.annotation) == "ClassVar":
                continue
            raw_field = self._model_field(stmt, SourceSite(source.path, stmt.lineno))
            fields = [f for f in fields if f.name != raw_field.name] + [raw_field]
        return fields

    def _model_field(self, stmt: ast.AnnAssign, site: SourceSite) -> RawField:
        annotation, metadata = self._unwrap_annotated(stmt.annotation)
        type_ref, _ = self._type_ref(annotation)
        annotations: list[RawAnnotation] = []
        name = stmt.target.id

        field_call = stmt.value if isinstance(stmt.value, ast.Call) and _call_name(stmt.value) == "Field" else None
        if metadata is not None and _call_name(metadata) == "Field":
            field_call = metadata
        required = stmt.value is None
        if field_call is not None:
            first = field_call.args[0] if field_call.args else _kwarg(field_call, "default")
            has_factory = _kwarg(field_call, "default_factory") is not None
            if field_call is stmt.value:
                required = (first is None and not has_factory) or (isinstance(first, ast.Constant) and first.value is Ellipsis)
            for kw in field_call.keywords:
                if kw.arg == "alias":
                    name = _literal(kw.value) or name
                if kw.arg not in FIELD_META:
                    annotations.append(RawAnnotation(name=kw.arg, args={"value": _literal(kw.value)}))
        if required:
            annotations.insert(0, RawAnnotation(name="required"))

        base = annotation
        while isinstance(base, ast.Subscript) and _call_name(base.value) in ("Optional", "Annotated"):
            base = base.slice.elts[0] if isinstance(base.slice, ast.Tuple) else base.slice
        if isinstance(base, ast.BinOp):
            base = base.left if not (isinstance(base.left, ast.Constant) and base.left.value is None) else base.right
        if _call_name(base) == "EmailStr":
            annotations.append(RawAnnotation(name="EmailStr"))
        elif isinstance(base, ast.Subscript) and _call_name(base.value) == "Literal":
            elts = base.slice.elts if isinstance(base.slice, ast.Tuple) else [base.slice]
            annotations.append(RawAnnotation(name="Literal", args={"values": [_literal(e) for e in elts]}))
        elif isinstance(base, ast.Call) and _call_name(base) in CONSTRAINED_TYPES | {"conlist": None}:
            for kw in base.keywords:
                annotations.append(RawAnnotation(name=kw.arg, args={"value": _literal(kw.value)}))

        return RawField(name=name, type_ref=type_ref, annotations=tuple(annotations), site=site)
