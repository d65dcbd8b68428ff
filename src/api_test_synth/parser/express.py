"""Express.js adapter.

Reads JavaScript/TypeScript sources: ``app``/``Router`` route registrations,
mount prefixes from ``app.use('/prefix', router)`` across files, auth and
role middleware, and Joi validation schemas.
"""

import posixpath
import re
from dataclasses import dataclass, field
from typing import Iterator

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
from api_test_synth.parser.builder import PAGINATION_PARAM_NAMES
from api_test_synth.parser.lexing import (
    blank_comments,
    find_closing,
    line_of,
    parse_number,
    parse_regex_literal,
    split_top_level,
    unquote,
)

AUTH_MIDDLEWARE = {
    "authenticate", "auth", "requireAuth", "isAuthenticated", "verifyToken", "protect",
    "ensureAuthenticated", "authMiddleware", "jwtAuth", "checkJwt", "requireLogin",
}
ROLE_MIDDLEWARE = {"authorize", "requireRole", "requireRoles", "hasRole", "checkRole", "restrictTo", "permit"}
VALIDATE_MIDDLEWARE = {"validate", "validateBody", "validateRequest", "validator"}

JOI_TYPES = {
    "string": FieldType.STRING,
    "number": FieldType.NUMBER,
    "boolean": FieldType.BOOLEAN,
    "date": FieldType.DATE,
    "array": FieldType.ARRAY,
    "object": FieldType.OBJECT,
}

_METHODS = "get|post|put|patch|delete"
_ROUTE_RE = re.compile(rf"\b([A-Za-z_$][\w$]*)\s*\.\s*({_METHODS})\s*\(")
_CHAIN_ROUTE_RE = re.compile(r"\b([A-Za-z_$][\w$]*)\s*\.\s*route\s*\(")
_USE_RE = re.compile(r"\b([A-Za-z_$][\w$]*)\s*\.\s*use\s*\(")
_APP_RE = re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=\s*express\s*\(\s*\)")
_ROUTER_RE = re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=\s*(?:express\s*\.\s*)?Router\s*\(")
_REQUIRE_RE = re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=\s*require\s*\(\s*['\"]([^'\"]+)['\"]\s*\)")
_IMPORT_RE = re.compile(r"\bimport\s+([A-Za-z_$][\w$]*)\s+from\s+['\"]([^'\"]+)['\"]")
_EXPORT_RE = re.compile(r"(?:module\.exports\s*=|export\s+default)\s*([A-Za-z_$][\w$]*)")
_SCHEMA_RE = re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=\s*Joi\s*\.")
_PARAM_RE = re.compile(r":([A-Za-z_]\w*)(\([^)]*\))?\??")
_STATUS_RE = re.compile(r"\.(?:status|sendStatus)\s*\(\s*(\d{3})\s*\)")
_QUERY_FIELD_RE = re.compile(r"\breq\.query\.([A-Za-z_]\w*)")
_QUERY_DESTRUCTURE_RE = re.compile(r"\{([^{}]*)\}\s*=\s*req\.query\b")


def _joi_bound(length_kind, value_kind):
    def translate(args: dict, field_type: FieldType) -> list[Constraint]:
        values = args.get("args", [])
        n = parse_number(values[0]) if values else None
        if n is None:
            return []
        if field_type == FieldType.NUMBER:
            return [value_kind(n)]
        return [length_kind(n)]
    return translate


def _joi_length(args: dict, field_type: FieldType) -> list[Constraint]:
    values = args.get("args", [])
    n = parse_number(values[0]) if values else None
    if n is None:
        return []
    return [Constraint.min_length(n), Constraint.max_length(n)]


def _joi_pattern(args: dict, field_type: FieldType) -> list[Constraint]:
    values = args.get("args", [])
    regex = (parse_regex_literal(values[0]) or unquote(values[0])) if values else None
    return [Constraint.pattern(regex)] if regex else []


def _joi_valid(args: dict, field_type: FieldType) -> list[Constraint]:
    items = []
    for raw in args.get("args", []):
        raw = raw.strip()
        if raw.startswith("[") and raw.endswith("]"):
            items.extend(split_top_level(raw[1:-1]))
        else:
            items.append(raw)
    values = []
    for item in items:
        value = unquote(item)
        if value is None:
            value = parse_number(item)
        if value is not None:
            values.append(value)
    return [Constraint.enum(values)] if values else []


@dataclass
class ExpressContext:
    """Cross-file state: where each router is mounted and with which middleware."""

    prefixes: dict[tuple[str, str], str] = field(default_factory=dict)
    mount_auth: dict[tuple[str, str], AuthRequirement] = field(default_factory=dict)
    unresolved: dict[tuple[str, str], str] = field(default_factory=dict)
    schemas: dict[str, RawType] = field(default_factory=dict)


@dataclass
class _FileInfo:
    source: SourceFile
    text: str
    apps: set[str]
    routers: set[str]
    imports: dict[str, str]
    export: str | None


class ExpressAdapter(FrameworkAdapter):
    """Discovers endpoints registered on Express apps and routers."""

    name = "express"
    suffixes = (".js", ".ts", ".mjs", ".cjs")
    constraint_table = {
        "required": lambda args, t: [Constraint.required()],
        "min": _joi_bound(Constraint.min_length, Constraint.min),
        "max": _joi_bound(Constraint.max_length, Constraint.max),
        "length": _joi_length,
        "pattern": _joi_pattern,
        "regex": _joi_pattern,
        "email": lambda args, t: [Constraint.pattern(EMAIL_PATTERN)],
        "alphanum": lambda args, t: [Constraint.pattern(r"^[A-Za-z0-9]+$")],
        "uuid": lambda args, t: [Constraint.pattern(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")],
        "guid": lambda args, t: [Constraint.pattern(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")],
        "valid": _joi_valid,
        "positive": lambda args, t: [Constraint.positive()],
    }
    ignored_annotations = frozenset({
        "optional", "trim", "lowercase", "uppercase", "integer", "label", "description", "default",
        "strip", "allow", "empty", "messages", "message", "example", "unknown", "iso", "options", "meta",
    })

    # -- cross-file context ---------------------------------------------------

    def prepare(self, tree: SourceTree) -> ExpressContext:
        files = {s.path: self._file_info(s) for s in tree.files(self.suffixes)}
        context = ExpressContext(schemas=self.collect_types(tree))
        edges = []  # (parent key, prefix or None, child key, auth, raw prefix)
        for info in files.values():
            for match in _USE_RE.finditer(info.text):
                recv = match.group(1)
                if recv not in info.apps | info.routers:
                    continue
                close = find_closing(info.text, match.end() - 1, js_regex=True)
                args = split_top_level(info.text[match.end():close], js_regex=True)
                if len(args) < 2:
                    continue
                child = self._mounted(info, files, args[-1])
                if child is None:
                    continue
                prefix = unquote(args[0])
                auth = self._middleware_auth(args[1:-1])
                edges.append(((info.source.path, recv), prefix, child, auth, args[0]))

        for (parent, prefix, child, auth, raw) in edges:
            if prefix is None:
                context.unresolved[child] = f"mount prefix {raw} is not a static string"
            else:
                context.prefixes[child] = prefix
                context.mount_auth[child] = auth
                context.prefixes.setdefault(parent, "")
        parents = {child: parent for parent, _, child, _, _ in edges}
        resolved = {}
        for key in context.prefixes:
            resolved[key] = self._full_prefix(key, context.prefixes, parents)
        context.prefixes = resolved
        for child, parent in parents.items():
            if parent in context.unresolved and child not in context.unresolved:
                context.unresolved[child] = context.unresolved[parent]
        return context

    @staticmethod
    def _full_prefix(key, prefixes, parents) -> str:
        chain = []
        seen = set()
        while key is not None and key not in seen:
            seen.add(key)
            chain.append(prefixes.get(key, ""))
            key = parents.get(key)
        return join_paths(*reversed(chain)) if any(chain) else ""

    def _file_info(self, source: SourceFile) -> _FileInfo:
        text = blank_comments(source.text, js_regex=True)
        imports = {}
        base_dir = posixpath.dirname(source.path)
        for regex in (_REQUIRE_RE, _IMPORT_RE):
            for match in regex.finditer(text):
                if match.group(2).startswith("."):
                    imports[match.group(1)] = posixpath.normpath(posixpath.join(base_dir, match.group(2)))
        export = _EXPORT_RE.search(text)
        return _FileInfo(
            source=source,
            text=text,
            apps=set(_APP_RE.findall(text)),
            routers=set(_ROUTER_RE.findall(text)),
            imports=imports,
            export=export.group(1) if export else None,
        )

    @staticmethod
    def _mounted(info: _FileInfo, files: dict[str, _FileInfo], arg: str) -> tuple[str, str] | None:
        """Resolve the router argument of app.use() to a (file, receiver) key."""
        arg = arg.strip()
        if arg in info.routers:
            return info.source.path, arg
        target = info.imports.get(arg)
        if target is None:
            return None
        for candidate in (target, target + ".js", target + ".ts", target + "/index.js", target + "/index.ts"):
            child = files.get(candidate)
            if child is None:
                continue
            recv = child.export if child.export in child.routers else next(iter(sorted(child.routers)), None)
            return (candidate, recv) if recv else None
        return None

    # -- discovery ------------------------------------------------------------

    def scan(self, source: SourceFile, context: ExpressContext) -> Iterator[RawEndpoint | DiscoveryError]:
        info = self._file_info(source)
        receivers = info.apps | info.routers
        router_auth = self._router_auth(info)

        for match in _ROUTE_RE.finditer(info.text):
            recv = match.group(1)
            if recv not in receivers:
                continue
            close = find_closing(info.text, match.end() - 1, js_regex=True)
            if close == -1:
                continue
            args = split_top_level(info.text[match.end():close], js_regex=True)
            if len(args) < 2:
                continue
            site = SourceSite(source.path, line_of(info.text, match.start()))
            span = info.text[match.start():close]
            yield self._endpoint(HttpMethod(match.group(2).upper()), recv, args, span, site, info, context, router_auth)

        for match in _CHAIN_ROUTE_RE.finditer(info.text):
            recv = match.group(1)
            if recv not in receivers:
                continue
            close = find_closing(info.text, match.end() - 1, js_regex=True)
            path_arg = info.text[match.end():close]
            pos = close + 1
            while True:
                chained = re.match(rf"\s*\.\s*({_METHODS})\s*\(", info.text[pos:])
                if not chained:
                    break
                open_paren = pos + chained.end() - 1
                end = find_closing(info.text, open_paren, js_regex=True)
                if end == -1:
                    break
                args = [path_arg] + split_top_level(info.text[open_paren + 1:end], js_regex=True)
                site = SourceSite(source.path, line_of(info.text, pos))
                yield self._endpoint(HttpMethod(chained.group(1).upper()), recv, args,
                                     info.text[open_paren:end], site, info, context, router_auth)
                pos = end + 1

    def _endpoint(self, method, recv, args, span, site, info, context, router_auth) -> RawEndpoint | DiscoveryError:
        key = (info.source.path, recv)
        if not args:
            return DiscoveryError(f"{recv}.{method.value.lower()}() has no arguments", site)
        path = unquote(args[0])
        if path is None:
            return DiscoveryError(f"route path {args[0]} is not a static string", site)
        if key in context.unresolved:
            return DiscoveryError(context.unresolved[key], site)

        template, path_params = self._template(path)
        middlewares = args[1:-1]
        request_ref, query_ref = self._validation_refs(middlewares)
        query_params = self._query_params(span, context.schemas.get(query_ref) if query_ref else None)

        class_auth = router_auth.get(recv)
        if class_auth is None:
            class_auth = context.mount_auth.get(key)

        return RawEndpoint(
            method=method,
            path_template=join_paths(context.prefixes.get(key, ""), template),
            handler=f"{info.source.path}:{recv}.{method.value.lower()}",
            site=site,
            method_auth=self._middleware_auth(middlewares),
            class_auth=class_auth,
            request_schema_ref=request_ref,
            path_params=tuple(path_params),
            query_params=tuple(query_params),
            status_codes=tuple(sorted({int(c) for c in _STATUS_RE.findall(span)})),
        )

    @staticmethod
    def _template(path: str) -> tuple[str, list[PathParam]]:
        params = []

        def replace(match: re.Match) -> str:
            regex = match.group(2) or ""
            kind = FieldType.NUMBER if "\\d" in regex or "[0-9]" in regex else FieldType.STRING
            params.append(PathParam(name=match.group(1), type=kind))
            return "{" + match.group(1) + "}"

        return _PARAM_RE.sub(replace, path), params

    def _middleware_auth(self, middlewares: list[str]) -> AuthRequirement | None:
        roles: list[str] = []
        authenticated = False
        for mw in middlewares:
            mw = mw.strip()
            call = re.match(r"^([A-Za-z_$][\w$.]*)\s*\((.*)\)$", mw, re.DOTALL)
            name = call.group(1) if call else mw
            if name in AUTH_MIDDLEWARE or name == "passport.authenticate":
                authenticated = True
            elif call and name in ROLE_MIDDLEWARE:
                for arg in split_top_level(call.group(2)):
                    arg = arg.strip()
                    items = split_top_level(arg[1:-1]) if arg.startswith("[") else [arg]
                    roles.extend(v for v in (unquote(i) for i in items) if v)
        if roles:
            return AuthRequirement.role(*roles)
        if authenticated:
            return AuthRequirement.authenticated()
        return None

    def _router_auth(self, info: _FileInfo) -> dict[str, AuthRequirement]:
        """Auth added with router.use(mw) applies to every route on that router."""
        result = {}
        for match in _USE_RE.finditer(info.text):
            recv = match.group(1)
            if recv not in info.routers:
                continue
            close = find_closing(info.text, match.end() - 1, js_regex=True)
            args = split_top_level(info.text[match.end():close], js_regex=True)
            if args and unquote(args[0]) is None:
                auth = self._middleware_auth(args)
                if auth is not None:
                    result[recv] = auth
        return result

    @staticmethod
    def _validation_refs(middlewares: list[str]) -> tuple[str | None, str | None]:
        body_ref = query_ref = None
        for mw in middlewares:
            call = re.match(r"^([A-Za-z_$][\w$]*)\s*\((.*)\)$", mw.strip(), re.DOTALL)
            if not call:
                continue
            args = split_top_level(call.group(2))
            if call.group(1) in VALIDATE_MIDDLEWARE and args:
                target = unquote(args[1]) if len(args) > 1 else "body"
                if target == "query":
                    query_ref = args[0]
                else:
                    body_ref = args[0]
            elif call.group(1) == "celebrate" and args and args[0].startswith("{"):
                for entry in split_top_level(args[0][1:-1]):
                    key, _, value = entry.partition(":")
                    key = key.strip().strip("[]").rsplit(".", 1)[-1].lower()
                    if key == "body":
                        body_ref = value.strip()
                    elif key == "query":
                        query_ref = value.strip()
        return body_ref, query_ref

    def _query_params(self, span: str, schema: RawType | None) -> list[QueryParam]:
        params: dict[str, QueryParam] = {}
        if schema is not None:
            for raw_field in schema.fields:
                kind = raw_field.type_ref.kind or FieldType.STRING
                constraints = []
                default = None
                for ann in raw_field.annotations:
                    if ann.name == "default" and ann.args.get("args"):
                        raw_default = ann.args["args"][0]
                        default = unquote(raw_default)
                        if default is None:
                            default = parse_number(raw_default)
                    for c in self.translate(ann, kind) or []:
                        if c.applies_to(kind) and c not in constraints:
                            constraints.append(c)
                params[raw_field.name] = QueryParam(
                    name=raw_field.name,
                    type=kind,
                    required=any(c == Constraint.required() for c in constraints),
                    default=default,
                    constraints=tuple(constraints),
                )

        names = _QUERY_FIELD_RE.findall(span)
        defaults = {}
        for group in _QUERY_DESTRUCTURE_RE.findall(span):
            for entry in split_top_level(group):
                name, _, default = entry.partition("=")
                name = name.split(":")[0].strip()
                if name:
                    names.append(name)
                    defaults[name] = parse_number(default) if default.strip() else None
        for name in names:
            if name in params:
                continue
            numeric = name.lower() in PAGINATION_PARAM_NAMES or isinstance(defaults.get(name), (int, float))
            params[name] = QueryParam(
                name=name,
                type=FieldType.NUMBER if numeric else FieldType.STRING,
                default=defaults.get(name),
            )
        return list(params.values())

    def collect_auth(self, tree: SourceTree) -> AuthMetadata:
        for source in tree.files(self.suffixes):
            info = self._file_info(source)
            for match in _USE_RE.finditer(info.text):
                if match.group(1) not in info.apps:
                    continue
                close = find_closing(info.text, match.end() - 1, js_regex=True)
                args = split_top_level(info.text[match.end():close], js_regex=True)
                if args and unquote(args[0]) is None and self._middleware_auth(args) is not None:
                    return AuthMetadata(global_default=self._middleware_auth(args))
        return AuthMetadata()

    # -- Joi schemas ----------------------------------------------------------

    def collect_types(self, tree: SourceTree) -> dict[str, RawType]:
        types: dict[str, RawType] = {}
        for source in tree.files(self.suffixes):
            text = blank_comments(source.text, js_regex=True)
            for match in _SCHEMA_RE.finditer(text):
                name = match.group(1)
                start = match.start() + match.group(0).rindex("Joi")
                site = SourceSite(source.path, line_of(text, match.start()))
                self._register_object(name, text, start, site, types)
        return types

    def _register_object(self, name: str, text: str, start: int, site: SourceSite, types: dict[str, RawType]) -> None:
        base, calls = self._chain(text, start)
        if base != "object":
            return
        body = None
        for method, args in calls:
            if method in ("object", "keys") and args and args[0].strip().startswith("{"):
                body = args[0].strip()
        if body is None:
            types.setdefault(name, RawType(name=name, site=site))
            return
        fields = []
        for entry in split_top_level(body[1:-1], js_regex=True):
            key, sep, expr = entry.partition(":")
            if not sep:
                continue
            key = unquote(key.strip()) or key.strip()
            fields.append(self._field(name, key, expr.strip(), site, types))
        types.setdefault(name, RawType(name=name, fields=tuple(fields), site=site))

    def _field(self, owner: str, key: str, expr: str, site: SourceSite, types: dict[str, RawType]) -> RawField:
        type_ref, annotations = self._describe_expr(f"{owner}.{key}", expr, site, types)
        return RawField(name=key, type_ref=type_ref, annotations=tuple(annotations), site=site)

    def _describe_expr(self, name: str, expr: str, site: SourceSite, types: dict[str, RawType]):
        """Return (TypeRef, annotations) for a Joi chain or a schema reference."""
        if expr.startswith("Joi"):
            base, calls = self._chain(expr, 0)
        else:
            ident = re.match(r"^([A-Za-z_$][\w$]*)", expr)
            if not ident:
                return TypeRef(kind=FieldType.OBJECT), []
            _, calls = self._chain(expr, 0)
            return TypeRef(name=ident.group(1)), self._annotations(calls)

        kind = JOI_TYPES.get(base, FieldType.STRING)
        if kind == FieldType.OBJECT:
            if any(m in ("object", "keys") and a for m, a in calls):
                self._register_object(name, expr, 0, site, types)
                return TypeRef(name=name), self._annotations(calls[1:])
            return TypeRef(kind=FieldType.OBJECT), self._annotations(calls[1:])
        if kind == FieldType.ARRAY:
            item = None
            for method, args in calls:
                if method == "items" and args:
                    item, _ = self._describe_expr(name + "[]", args[0].strip(), site, types)
            return TypeRef(kind=FieldType.ARRAY, item=item), self._annotations(
                [c for c in calls[1:] if c[0] != "items"])
        return TypeRef(kind=kind), self._annotations(calls[1:])

    @staticmethod
    def _annotations(calls: list[tuple[str, list[str]]]) -> list[RawAnnotation]:
        return [RawAnnotation(name=method, args={"args": args}) for method, args in calls if method != "keys"]

    @staticmethod
    def _chain(text: str, start: int) -> tuple[str, list[tuple[str, list[str]]]]:
        """Parse 'Joi.string().min(2).required()' into ('string', [(method, args), ...])."""
        pos = start
        ident = re.match(r"[A-Za-z_$][\w$]*", text[pos:])
        if not ident:
            return "", []
        pos += ident.end()
        calls = []
        while True:
            step = re.match(r"\s*\.\s*([A-Za-z_$][\w$]*)\s*\(", text[pos:])
            if not step:
                break
            open_paren = pos + step.end() - 1
            close = find_closing(text, open_paren, js_regex=True)
            if close == -1:
                break
            calls.append((step.group(1), split_top_level(text[open_paren + 1:close], js_regex=True)))
            pos = close + 1
        base = calls[0][0] if calls and ident.group(0) == "Joi" else ident.group(0)
        return base, calls
