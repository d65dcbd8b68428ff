"""Spring MVC / Spring Boot adapter.

Reads Java sources: ``@RestController`` classes and their mapping
annotations, DTO classes/records/enums with Bean Validation annotations, and
the security configuration's default rule.
"""

import re
from dataclasses import dataclass
from http import HTTPStatus
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
from api_test_synth.parser.lexing import (
    blank_comments,
    find_closing,
    line_of,
    parse_number,
    skip_string,
    split_top_level,
    unquote,
)

MAPPINGS = {
    "GetMapping": HttpMethod.GET,
    "PostMapping": HttpMethod.POST,
    "PutMapping": HttpMethod.PUT,
    "PatchMapping": HttpMethod.PATCH,
    "DeleteMapping": HttpMethod.DELETE,
    "RequestMapping": None,
}

MODIFIERS = {"public", "private", "protected", "static", "final", "abstract", "default", "synchronized", "transient"}

_ANNOTATION_RE = re.compile(r"@(?!interface\b)([A-Za-z_][\w.]*)")
_CLASS_RE = re.compile(r"\b(class|record|enum|interface)\s+([A-Za-z_]\w*)")
_CONSTANT_RE = re.compile(r"\bstatic\s+final\s+String\s+([A-Za-z_]\w*)\s*=\s*([^;]+);")
_HTTP_STATUS_RE = re.compile(r"HttpStatus\.([A-Z_]+)")
_STATUS_CALL_RE = re.compile(r"\.status\(\s*(\d{3})\s*\)")

NUMBER_TYPES = {"int", "long", "short", "byte", "double", "float", "Integer", "Long", "Short", "Byte",
                "Double", "Float", "BigDecimal", "BigInteger", "Number"}
DATE_TYPES = {"LocalDate", "LocalDateTime", "Instant", "Date", "OffsetDateTime", "ZonedDateTime"}
STRING_TYPES = {"String", "UUID", "char", "Character", "CharSequence"}
COLLECTION_TYPES = {"List", "Set", "Collection", "Iterable", "ArrayList", "HashSet", "LinkedList"}
WRAPPER_TYPES = {"ResponseEntity", "Mono", "Optional", "CompletableFuture", "HttpEntity", "Flux"}


@dataclass
class _Annotation:
    name: str
    args: dict[str, str]
    start: int
    end: int


def _num(args: dict, *keys: str) -> int | float | None:
    for key in keys:
        if key in args:
            return parse_number(args[key])
    return None


def _text(args: dict, *keys: str) -> str | None:
    for key in keys:
        if key in args:
            return unquote(args[key])
    return None


def _not_empty(args: dict, field_type: FieldType) -> list[Constraint]:
    if field_type in (FieldType.STRING, FieldType.ARRAY):
        return [Constraint.required(), Constraint.min_length(1)]
    return [Constraint.required()]


def _size(args: dict, field_type: FieldType) -> list[Constraint]:
    result = []
    low, high = _num(args, "min"), _num(args, "max")
    if low is not None:
        result.append(Constraint.min_length(low))
    if high is not None:
        result.append(Constraint.max_length(high))
    return result


def _bound(factory):
    def translate(args: dict, field_type: FieldType) -> list[Constraint]:
        value = _num(args, "value")
        if value is None:
            value = parse_number(_text(args, "value") or "")
        return [factory(value)] if value is not None else []
    return translate


def _pattern(args: dict, field_type: FieldType) -> list[Constraint]:
    regex = _text(args, "regexp", "value")
    return [Constraint.pattern(regex)] if regex else []


def _email(args: dict, field_type: FieldType) -> list[Constraint]:
    return [Constraint.pattern(_text(args, "regexp") or EMAIL_PATTERN)]


def _parse_args(args_text: str) -> dict[str, str]:
    args = {}
    for i, part in enumerate(split_top_level(args_text)):
        match = re.match(r"^([A-Za-z_]\w*)\s*=(?!=)\s*(.*)$", part, re.DOTALL)
        if match:
            args[match.group(1)] = match.group(2).strip()
        elif i == 0:
            args["value"] = part
    return args


def _read_annotations(text: str, start: int = 0, end: int | None = None) -> list[_Annotation]:
    """Every annotation in text[start:end], skipping those nested in annotation arguments."""
    end = len(text) if end is None else end
    result = []
    pos = start
    while True:
        match = _ANNOTATION_RE.search(text, pos, end)
        if not match:
            return result
        name = match.group(1).rsplit(".", 1)[-1]
        cursor = match.end()
        while cursor < end and text[cursor] in " \t\r\n":
            cursor += 1
        args: dict[str, str] = {}
        if cursor < end and text[cursor] == "(":
            close = find_closing(text, cursor)
            if close == -1:
                return result
            args = _parse_args(text[cursor + 1:close])
            ann_end = close + 1
        else:
            ann_end = match.end()
        result.append(_Annotation(name, args, match.start(), ann_end))
        pos = ann_end


def _annotation_runs(text: str, annotations: list[_Annotation]) -> list[list[_Annotation]]:
    """Group annotations that stack on the same declaration."""
    runs: list[list[_Annotation]] = []
    for ann in annotations:
        if runs:
            gap = text[runs[-1][-1].end:ann.start].split()
            if all(word in MODIFIERS for word in gap):
                runs[-1].append(ann)
                continue
        runs.append([ann])
    return runs


def _strip_generics(type_text: str) -> tuple[str, list[str]]:
    """Split 'Map<K, List<V>>' into ('Map', ['K', 'List<V>'])."""
    type_text = re.sub(r"@\w+(\([^)]*\))?", "", type_text).strip()
    if "<" not in type_text:
        return type_text.rsplit(".", 1)[-1], []
    outer = type_text[:type_text.index("<")].strip()
    inner = type_text[type_text.index("<") + 1:type_text.rindex(">")]
    return outer.rsplit(".", 1)[-1], split_top_level(inner.replace("<", "(").replace(">", ")"))


def _restore(arg: str) -> str:
    return arg.replace("(", "<").replace(")", ">")


def java_type_ref(type_text: str) -> TypeRef:
    """Map a Java type expression to a TypeRef."""
    type_text = type_text.strip()
    if type_text.endswith("[]"):
        return TypeRef(kind=FieldType.ARRAY, item=java_type_ref(type_text[:-2]))
    outer, args = _strip_generics(type_text)
    if outer in COLLECTION_TYPES:
        item = java_type_ref(_restore(args[0])) if args else None
        return TypeRef(kind=FieldType.ARRAY, item=item)
    if outer == "Optional" and args:
        return java_type_ref(_restore(args[0]))
    if outer in STRING_TYPES:
        return TypeRef(kind=FieldType.STRING)
    if outer in NUMBER_TYPES:
        return TypeRef(kind=FieldType.NUMBER)
    if outer in ("boolean", "Boolean"):
        return TypeRef(kind=FieldType.BOOLEAN)
    if outer in DATE_TYPES:
        return TypeRef(kind=FieldType.DATE)
    if outer in ("Map", "HashMap", "Object", "JsonNode"):
        return TypeRef(kind=FieldType.OBJECT)
    return TypeRef(name=outer)


def _simple_kind(type_text: str) -> FieldType:
    ref = java_type_ref(type_text)
    return ref.kind or FieldType.STRING


def _split_declaration(decl: str) -> tuple[str, str] | None:
    """Split 'final List<String> tags' into ('List<String>', 'tags')."""
    decl = decl.split("=", 1)[0].strip()
    match = re.match(r"^(.*?)([A-Za-z_]\w*)\s*$", decl, re.DOTALL)
    if not match or not match.group(1).strip():
        return None
    words = [w for w in match.group(1).split() if w not in MODIFIERS]
    return " ".join(words), match.group(2)


def _statements(body: str) -> Iterator[tuple[int, str, str]]:
    """Yield (offset, text, terminator) for each top-level member of a class body."""
    pos = 0
    depth = 0
    start = 0
    while pos < len(body):
        ch = body[pos]
        if ch in "\"'":
            pos = skip_string(body, pos)
            continue
        if ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif depth == 0 and ch == ";":
            yield start, body[start:pos], ";"
            start = pos + 1
        elif depth == 0 and ch == "{":
            close = find_closing(body, pos)
            if close == -1:
                return
            yield start, body[start:pos], "{"
            pos = close + 1
            start = pos
            continue
        pos += 1


class SpringAdapter(FrameworkAdapter):
    """Discovers endpoints declared with Spring Web annotations."""

    name = "spring"
    suffixes = (".java",)
    constraint_table = {
        "NotNull": lambda args, t: [Constraint.required()],
        "NotBlank": lambda args, t: [Constraint.required(), Constraint.min_length(1)],
        "NotEmpty": _not_empty,
        "Size": _size,
        "Length": _size,
        "Min": _bound(Constraint.min),
        "DecimalMin": _bound(Constraint.min),
        "Max": _bound(Constraint.max),
        "DecimalMax": _bound(Constraint.max),
        "Pattern": _pattern,
        "Email": _email,
        "Positive": lambda args, t: [Constraint.positive()],
        "PositiveOrZero": lambda args, t: [Constraint.positive_or_zero()],
    }
    ignored_annotations = frozenset({
        "Valid", "Validated", "JsonProperty", "JsonIgnore", "JsonFormat", "JsonInclude", "Schema",
        "ApiModelProperty", "Column", "Id", "GeneratedValue", "Deprecated", "Nullable", "Getter",
        "Setter", "Default", "Transient", "Lob", "Enumerated", "ManyToOne", "OneToMany", "JoinColumn",
    })

    # -- discovery ------------------------------------------------------------

    def prepare(self, tree: SourceTree) -> dict[str, str]:
        """Collect 'static final String' constants usable in mapping paths."""
        constants: dict[str, str] = {}
        for source in tree.files(self.suffixes):
            text = blank_comments(source.text)
            for match in _CONSTANT_RE.finditer(text):
                value = self._string_expr(match.group(2), constants)
                if value is not None:
                    constants[match.group(1)] = value
        return constants

    def scan(self, source: SourceFile, context: dict[str, str]) -> Iterator[RawEndpoint | DiscoveryError]:
        text = blank_comments(source.text)
        annotations = _read_annotations(text)
        runs = _annotation_runs(text, annotations)

        for match in _CLASS_RE.finditer(text):
            if match.group(1) != "class":
                continue
            class_run = self._run_before(runs, text, match.start())
            names = {a.name for a in class_run}
            if not names & {"RestController", "Controller"}:
                continue
            open_brace = text.find("{", match.end())
            close_brace = find_closing(text, open_brace) if open_brace != -1 else -1
            if close_brace == -1:
                continue
            yield from self._scan_controller(source, text, match.group(2), class_run,
                                             runs, open_brace, close_brace, context)

    def _scan_controller(self, source, text, class_name, class_run, runs, body_start, body_end, constants):
        class_site = SourceSite(source.path, line_of(text, body_start))
        class_auth = self._auth(class_run)
        prefixes = [""]
        mapping = next((a for a in class_run if a.name == "RequestMapping"), None)
        prefix_error = None
        if mapping is not None:
            resolved = self._paths(mapping.args, constants)
            if resolved is None:
                prefix_error = f"class-level @RequestMapping on {class_name} is not a static string"
            else:
                prefixes = resolved

        for run in runs:
            if not (body_start < run[0].start < body_end):
                continue
            mapping = next((a for a in run if a.name in MAPPINGS), None)
            if mapping is None:
                continue
            site = SourceSite(source.path, line_of(text, mapping.start))
            signature = self._signature(text, run[-1].end)
            if signature is None:
                continue
            return_type, method_name, params_text, body = signature
            handler = f"{class_name}.{method_name}"
            if prefix_error:
                yield DiscoveryError(prefix_error, site)
                continue

            paths = self._paths(mapping.args, constants)
            if paths is None:
                yield DiscoveryError(f"route of {handler} is not a static string: {mapping.args.get('value') or mapping.args.get('path')}", site)
                continue

            methods = self._methods(mapping)
            if not methods:
                yield DiscoveryError(f"{handler} maps no HTTP method", site)
                continue

            path_params, query_params, body_ref, pageable = self._params(params_text)
            response_ref, is_page = self._response(return_type)
            statuses = self._statuses(run, body)
            method_auth = self._auth(run)

            for prefix in prefixes:
                for path in paths:
                    for method in methods:
                        yield RawEndpoint(
                            method=method,
                            path_template=join_paths(prefix, path),
                            handler=handler,
                            site=site,
                            method_auth=method_auth,
                            class_auth=class_auth,
                            request_schema_ref=body_ref if method != HttpMethod.GET else None,
                            response_schema_ref=response_ref,
                            response_is_page=is_page or pageable,
                            path_params=tuple(path_params),
                            query_params=tuple(query_params),
                            status_codes=tuple(statuses),
                        )

    @staticmethod
    def _run_before(runs: list[list[_Annotation]], text: str, pos: int) -> list[_Annotation]:
        for run in runs:
            if run[-1].end <= pos and all(w in MODIFIERS for w in text[run[-1].end:pos].split()):
                return run
        return []

    @staticmethod
    def _signature(text: str, pos: int) -> tuple[str, str, str, str] | None:
        """Parse 'ReturnType name(params) [throws X] {body}' starting at pos."""
        open_paren = text.find("(", pos)
        if open_paren == -1:
            return None
        head = text[pos:open_paren].split()
        head = [w for w in head if w not in MODIFIERS]
        if len(head) < 2:
            return None
        method_name = head[-1]
        return_type = " ".join(head[:-1])
        close_paren = find_closing(text, open_paren)
        if close_paren == -1:
            return None
        brace = text.find("{", close_paren)
        semi = text.find(";", close_paren)
        body = ""
        if brace != -1 and (semi == -1 or brace < semi):
            end = find_closing(text, brace)
            body = text[brace:end + 1] if end != -1 else ""
        return return_type, method_name, text[open_paren + 1:close_paren], body

    def _string_expr(self, expr: str, constants: dict[str, str]) -> str | None:
        values = []
        for piece in split_top_level(expr, "+"):
            literal = unquote(piece)
            if literal is None:
                literal = constants.get(piece.strip().rsplit(".", 1)[-1])
            if literal is None:
                return None
            values.append(literal)
        return "".join(values) if values else None

    def _paths(self, args: dict[str, str], constants: dict[str, str]) -> list[str] | None:
        raw = args.get("value", args.get("path"))
        if raw is None:
            return [""]
        raw = raw.strip()
        if raw.startswith("{") and raw.endswith("}"):
            items = split_top_level(raw[1:-1])
        else:
            items = [raw]
        paths = [self._string_expr(item, constants) for item in items]
        if not paths or any(p is None for p in paths):
            return None
        return paths

    @staticmethod
    def _methods(mapping: _Annotation) -> list[HttpMethod]:
        fixed = MAPPINGS[mapping.name]
        if fixed is not None:
            return [fixed]
        declared = re.findall(r"RequestMethod\.([A-Z]+)", mapping.args.get("method", ""))
        return [HttpMethod(m) for m in declared if m in HttpMethod.__members__]

    def _params(self, params_text: str):
        path_params: list[PathParam] = []
        query_params: list[QueryParam] = []
        body_ref = None
        pageable = False
        for param in split_top_level(params_text):
            anns = _read_annotations(param)
            rest = param[anns[-1].end:] if anns else param
            decl = _split_declaration(rest)
            if decl is None:
                continue
            type_text, ident = decl
            names = {a.name: a for a in anns}
            if "PathVariable" in names:
                args = names["PathVariable"].args
                path_params.append(PathParam(name=_text(args, "value", "name") or ident,
                                             type=_simple_kind(type_text)))
            elif "RequestParam" in names:
                args = names["RequestParam"].args
                default = _text(args, "defaultValue")
                kind = _simple_kind(type_text)
                constraints = []
                for a in anns:
                    translated = self.translate(RawAnnotation(name=a.name, args=a.args), kind) or []
                    constraints.extend(c for c in translated if c.applies_to(kind) and c not in constraints)
                query_params.append(QueryParam(
                    name=_text(args, "value", "name") or ident,
                    type=kind,
                    required=args.get("required", "true").strip() != "false" and default is None,
                    default=_coerce_default(default, kind),
                    constraints=tuple(constraints),
                ))
            elif "RequestBody" in names:
                ref = java_type_ref(type_text)
                body_ref = ref.name or (ref.item.name if ref.item else None)
            elif _strip_generics(type_text)[0] == "Pageable":
                pageable = True
                query_params.extend([
                    QueryParam(name="page", type=FieldType.NUMBER, default=0,
                               constraints=(Constraint.positive_or_zero(),)),
                    QueryParam(name="size", type=FieldType.NUMBER, default=20,
                               constraints=(Constraint.positive(),)),
                    QueryParam(name="sort", type=FieldType.STRING),
                ])
        return path_params, query_params, body_ref, pageable

    @staticmethod
    def _response(return_type: str) -> tuple[str | None, bool]:
        type_text = return_type
        while True:
            outer, args = _strip_generics(type_text)
            if outer in WRAPPER_TYPES and args:
                type_text = _restore(args[0])
                continue
            break
        if outer in ("void", "Void", "ResponseEntity"):
            return None, False
        if outer == "Page" and args:
            return _strip_generics(_restore(args[0]))[0], True
        ref = java_type_ref(type_text)
        if ref.kind == FieldType.ARRAY:
            ref = ref.item or TypeRef()
        return (ref.name if re.match(r"^[A-Za-z_]\w*$", ref.name) else None), False

    @staticmethod
    def _statuses(run: list[_Annotation], body: str) -> list[int]:
        codes: set[int] = set()
        for ann in run:
            if ann.name == "ResponseStatus":
                raw = ann.args.get("value", ann.args.get("code", ""))
                codes.update(_status_names(raw))
        codes.update(_status_names(body))
        codes.update(int(c) for c in _STATUS_CALL_RE.findall(body))
        if "ResponseEntity.ok(" in body or ".ok()" in body:
            codes.add(200)
        if "ResponseEntity.created(" in body:
            codes.add(201)
        if ".noContent()" in body:
            codes.add(204)
        if ".notFound()" in body:
            codes.add(404)
        return sorted(codes)

    @staticmethod
    def _auth(run: list[_Annotation]) -> AuthRequirement | None:
        for ann in run:
            if ann.name == "PermitAll":
                return AuthRequirement.none()
            if ann.name in ("Secured", "RolesAllowed"):
                raw = ann.args.get("value", "")
                items = split_top_level(raw.strip()[1:-1]) if raw.strip().startswith("{") else [raw]
                roles = [_role_name(unquote(i) or "") for i in items]
                roles = [r for r in roles if r]
                return AuthRequirement.role(*roles) if roles else AuthRequirement.authenticated()
            if ann.name == "PreAuthorize":
                expr = _text(ann.args, "value") or ""
                roles = re.findall(r"has(?:Any)?(?:Role|Authority)\(([^)]*)\)", expr)
                names = [_role_name(unquote(r) or "") for group in roles for r in split_top_level(group)]
                names = [n for n in names if n]
                if names:
                    return AuthRequirement.role(*names)
                if "permitAll" in expr:
                    return AuthRequirement.none()
                return AuthRequirement.authenticated()
        return None

    def collect_auth(self, tree: SourceTree) -> AuthMetadata:
        for source in tree.files(self.suffixes):
            text = blank_comments(source.text)
            if "SecurityFilterChain" not in text and "WebSecurityConfigurerAdapter" not in text:
                continue
            if re.search(r"anyRequest\(\)\s*\.\s*authenticated\(\)", text):
                return AuthMetadata(global_default=AuthRequirement.authenticated())
        return AuthMetadata()

    # -- types ----------------------------------------------------------------

    def collect_types(self, tree: SourceTree) -> dict[str, RawType]:
        types: dict[str, RawType] = {}
        for source in tree.files(self.suffixes):
            text = blank_comments(source.text)
            for match in _CLASS_RE.finditer(text):
                kind, name = match.group(1), match.group(2)
                site = SourceSite(source.path, line_of(text, match.start()))
                if kind == "enum":
                    raw = self._enum(text, match.end(), name, site)
                elif kind == "record":
                    raw = self._record(source, text, match.end(), name, site)
                elif kind == "class":
                    raw = self._class(source, text, match.end(), name, site)
                else:
                    raw = None
                if raw is not None and name not in types:
                    types[name] = raw
        return types

    @staticmethod
    def _enum(text: str, pos: int, name: str, site: SourceSite) -> RawType | None:
        brace = text.find("{", pos)
        end = find_closing(text, brace) if brace != -1 else -1
        if end == -1:
            return None
        body = text[brace + 1:end].split(";", 1)[0]
        values = []
        for item in split_top_level(body):
            ident = re.match(r"^\s*(?:@\w+\s*)*([A-Za-z_]\w*)", item)
            if ident:
                values.append(ident.group(1))
        return RawType(name=name, enum_values=tuple(values), site=site)

    def _record(self, source: SourceFile, text: str, pos: int, name: str, site: SourceSite) -> RawType | None:
        open_paren = text.find("(", pos)
        if open_paren == -1 or text[pos:open_paren].strip():
            return None
        close = find_closing(text, open_paren)
        if close == -1:
            return None
        fields = []
        for component in split_top_level(text[open_paren + 1:close]):
            raw_field = self._field(component, SourceSite(source.path, line_of(text, open_paren)))
            if raw_field is not None:
                fields.append(raw_field)
        return RawType(name=name, fields=tuple(fields), site=site)

    def _class(self, source: SourceFile, text: str, pos: int, name: str, site: SourceSite) -> RawType | None:
        brace = text.find("{", pos)
        end = find_closing(text, brace) if brace != -1 else -1
        if end == -1:
            return None
        body = text[brace + 1:end]
        fields = []
        for offset, statement, terminator in _statements(body):
            anns = _read_annotations(statement)
            rest = statement[anns[-1].end:] if anns else statement
            if terminator != ";" or "(" in rest.split("=", 1)[0] or re.search(r"\bstatic\b", rest):
                continue
            raw_field = self._field(statement, SourceSite(source.path, line_of(text, brace + 1 + offset)))
            if raw_field is not None:
                fields.append(raw_field)
        return RawType(name=name, fields=tuple(fields), site=site)

    @staticmethod
    def _field(declaration: str, site: SourceSite) -> RawField | None:
        anns = _read_annotations(declaration)
        rest = declaration[anns[-1].end:] if anns else declaration
        decl = _split_declaration(rest)
        if decl is None:
            return None
        type_text, ident = decl
        json_name = next((_text(a.args, "value") for a in anns if a.name == "JsonProperty"), None)
        return RawField(
            name=json_name or ident,
            type_ref=java_type_ref(type_text),
            annotations=tuple(RawAnnotation(name=a.name, args=a.args) for a in anns),
            site=site,
        )


def _status_names(text: str) -> set[int]:
    codes = set()
    for name in _HTTP_STATUS_RE.findall(text):
        try:
            codes.add(HTTPStatus[name].value)
        except KeyError:
            continue
    return codes


def _role_name(role: str) -> str:
    return role[5:] if role.startswith("ROLE_") else role


def _coerce_default(value: str | None, kind: FieldType) -> str | int | float | bool | None:
    if value is None:
        return None
    if kind == FieldType.NUMBER:
        number = parse_number(value)
        return number if number is not None else value
    if kind == FieldType.BOOLEAN:
        return value.lower() == "true"
    return value
