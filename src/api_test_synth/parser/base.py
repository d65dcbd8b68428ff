"""Unified data models for discovered endpoints and their payload schemas.

All framework adapters convert source code into these standard models for
downstream processing, and every model is frozen once built.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator

from pydantic import BaseModel, ConfigDict, model_validator

from api_test_synth.errors import DiscoveryError, ScanCancelled, SourceSite, SourceTreeError

logger = logging.getLogger(__name__)


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


METHOD_ORDER = {m: i for i, m in enumerate(HttpMethod)}


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    DATE = "date"


class ConstraintKind(str, Enum):
    REQUIRED = "required"
    MIN_LENGTH = "minLength"
    MAX_LENGTH = "maxLength"
    MIN = "min"
    MAX = "max"
    PATTERN = "pattern"
    ENUM = "enum"
    POSITIVE = "positive"
    POSITIVE_OR_ZERO = "positiveOrZero"


_ALL_TYPES = frozenset(FieldType)
_APPLICABLE_TYPES: dict[ConstraintKind, frozenset[FieldType]] = {
    ConstraintKind.REQUIRED: _ALL_TYPES,
    ConstraintKind.MIN_LENGTH: frozenset({FieldType.STRING, FieldType.ARRAY}),
    ConstraintKind.MAX_LENGTH: frozenset({FieldType.STRING, FieldType.ARRAY}),
    ConstraintKind.MIN: frozenset({FieldType.NUMBER}),
    ConstraintKind.MAX: frozenset({FieldType.NUMBER}),
    ConstraintKind.PATTERN: frozenset({FieldType.STRING}),
    ConstraintKind.ENUM: frozenset({FieldType.STRING, FieldType.NUMBER}),
    ConstraintKind.POSITIVE: frozenset({FieldType.NUMBER}),
    ConstraintKind.POSITIVE_OR_ZERO: frozenset({FieldType.NUMBER}),
}

EMAIL_PATTERN = r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$"


class Constraint(BaseModel):
    """A single validation rule attached to a field."""

    model_config = ConfigDict(frozen=True)

    kind: ConstraintKind
    value: int | float | str | tuple[str | int | float, ...] | None = None

    def applies_to(self, field_type: FieldType) -> bool:
        return field_type in _APPLICABLE_TYPES[self.kind]

    @classmethod
    def required(cls) -> "Constraint":
        return cls(kind=ConstraintKind.REQUIRED)

    @classmethod
    def min_length(cls, n: int) -> "Constraint":
        return cls(kind=ConstraintKind.MIN_LENGTH, value=int(n))

    @classmethod
    def max_length(cls, n: int) -> "Constraint":
        return cls(kind=ConstraintKind.MAX_LENGTH, value=int(n))

    @classmethod
    def min(cls, n: int | float) -> "Constraint":
        return cls(kind=ConstraintKind.MIN, value=n)

    @classmethod
    def max(cls, n: int | float) -> "Constraint":
        return cls(kind=ConstraintKind.MAX, value=n)

    @classmethod
    def pattern(cls, regex: str) -> "Constraint":
        return cls(kind=ConstraintKind.PATTERN, value=regex)

    @classmethod
    def enum(cls, values) -> "Constraint":
        return cls(kind=ConstraintKind.ENUM, value=tuple(values))

    @classmethod
    def positive(cls) -> "Constraint":
        return cls(kind=ConstraintKind.POSITIVE)

    @classmethod
    def positive_or_zero(cls) -> "Constraint":
        return cls(kind=ConstraintKind.POSITIVE_OR_ZERO)


class Field(BaseModel):
    """One payload field with its type and validation constraints."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType
    constraints: tuple[Constraint, ...] = ()
    nested: "FieldSet | None" = None  # object fields, or object items of an array
    item_type: FieldType | None = None  # array fields only
    truncated: bool = False

    @model_validator(mode="after")
    def _check_constraints(self) -> "Field":
        for c in self.constraints:
            if not c.applies_to(self.type):
                raise ValueError(f"{c.kind.value} does not apply to {self.type.value} field '{self.name}'")
        return self

    def get(self, kind: ConstraintKind) -> Constraint | None:
        for c in self.constraints:
            if c.kind == kind:
                return c
        return None

    @property
    def required(self) -> bool:
        return self.get(ConstraintKind.REQUIRED) is not None


class FieldSet(BaseModel):
    """Ordered field list describing a request or response payload."""

    model_config = ConfigDict(frozen=True)

    fields: tuple[Field, ...] = ()

    def get(self, name: str) -> Field | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.fields]


Field.model_rebuild()


class AuthKind(str, Enum):
    NONE = "none"
    AUTHENTICATED = "authenticated"
    ROLE = "role"


class AuthRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: AuthKind = AuthKind.NONE
    roles: tuple[str, ...] = ()

    @classmethod
    def none(cls) -> "AuthRequirement":
        return cls(kind=AuthKind.NONE)

    @classmethod
    def authenticated(cls) -> "AuthRequirement":
        return cls(kind=AuthKind.AUTHENTICATED)

    @classmethod
    def role(cls, *roles: str) -> "AuthRequirement":
        return cls(kind=AuthKind.ROLE, roles=tuple(sorted(set(roles))))

    def __str__(self) -> str:
        if self.kind == AuthKind.ROLE:
            return f"role({', '.join(self.roles)})"
        return self.kind.value


class PathParam(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType = FieldType.STRING


class QueryParam(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType = FieldType.STRING
    required: bool = False
    default: str | int | float | bool | None = None
    constraints: tuple[Constraint, ...] = ()

    def get(self, kind: ConstraintKind) -> Constraint | None:
        for c in self.constraints:
            if c.kind == kind:
                return c
        return None


class RawEndpoint(BaseModel):
    """An endpoint as declared in source, before schemas and auth are resolved."""

    model_config = ConfigDict(frozen=True)

    method: HttpMethod
    path_template: str
    handler: str
    site: SourceSite
    method_auth: AuthRequirement | None = None
    class_auth: AuthRequirement | None = None
    request_schema_ref: str | None = None
    response_schema_ref: str | None = None
    response_is_page: bool = False
    path_params: tuple[PathParam, ...] = ()
    query_params: tuple[QueryParam, ...] = ()
    status_codes: tuple[int, ...] = ()
    content_type: str = "application/json"


class EndpointDescriptor(BaseModel):
    """Normalized, deduplicated description of one reachable API operation."""

    model_config = ConfigDict(frozen=True)

    method: HttpMethod
    path_template: str
    path_params: tuple[PathParam, ...] = ()
    query_params: tuple[QueryParam, ...] = ()
    request_schema: FieldSet | None = None
    response_schemas: dict[int, FieldSet] = {}
    auth: AuthRequirement = AuthRequirement()
    declared_status_codes: tuple[int, ...] = (200,)
    content_type: str = "application/json"
    paginated: bool = False
    handler: str = ""
    site: SourceSite = SourceSite("<unknown>")

    @property
    def identity(self) -> tuple[str, str]:
        return (self.method.value, self.path_template)

    @property
    def label(self) -> str:
        return f"{self.method.value} {self.path_template}"

    @property
    def success_statuses(self) -> list[int]:
        return sorted(s for s in self.declared_status_codes if 200 <= s < 300) or [200]

    @property
    def primary_success(self) -> int:
        return self.success_statuses[0]


# -- raw type registry --------------------------------------------------------


class TypeRef(BaseModel):
    """A field's declared type: a primitive kind, or a name to look up."""

    model_config = ConfigDict(frozen=True)

    kind: FieldType | None = None
    name: str = ""
    item: "TypeRef | None" = None


class RawAnnotation(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    args: dict[str, Any] = {}


class RawField(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type_ref: TypeRef
    annotations: tuple[RawAnnotation, ...] = ()
    site: SourceSite = SourceSite("<unknown>")


class RawType(BaseModel):
    """A model/DTO/schema declaration found in source."""

    model_config = ConfigDict(frozen=True)

    name: str
    fields: tuple[RawField, ...] = ()
    enum_values: tuple[str, ...] | None = None
    site: SourceSite = SourceSite("<unknown>")


class AuthMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    global_default: AuthRequirement = AuthRequirement()


# -- source tree --------------------------------------------------------------

SKIPPED_DIRS = {".git", "node_modules", "target", "build", "dist", "venv", ".venv", "__pycache__", ".idea"}


@dataclass(frozen=True)
class SourceFile:
    path: str  # relative to the tree root, with forward slashes
    text: str


class SourceTree:
    """Read-only view of the scanned source tree."""

    def __init__(self, root: Path):
        self.root = root
        if not root.is_dir():
            raise SourceTreeError(f"source tree {root} does not exist or is not a directory")
        self._cache: dict[str, SourceFile] = {}

    def files(self, suffixes: tuple[str, ...]) -> list[SourceFile]:
        """All files with one of the given suffixes, sorted by relative path."""
        result = []
        try:
            paths = sorted(
                p for p in self.root.rglob("*")
                if p.is_file() and p.suffix in suffixes
                and not any(part in SKIPPED_DIRS for part in p.relative_to(self.root).parts)
            )
        except OSError as e:
            raise SourceTreeError(f"cannot list source tree {self.root}: {e}") from e
        for path in paths:
            result.append(self._read(path))
        return result

    def _read(self, path: Path) -> SourceFile:
        rel = path.relative_to(self.root).as_posix()
        if rel not in self._cache:
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                raise SourceTreeError(f"cannot read {path}: {e}") from e
            self._cache[rel] = SourceFile(path=rel, text=text)
        return self._cache[rel]


@dataclass
class DiscoveryResult:
    endpoints: list[RawEndpoint] = field(default_factory=list)
    issues: list[DiscoveryError] = field(default_factory=list)


Translator = Callable[[dict, FieldType], list[Constraint]]


class FrameworkAdapter(ABC):
    """Extracts raw endpoint declarations for one web framework family."""

    name: str = ""
    suffixes: tuple[str, ...] = ()
    constraint_table: dict[str, Translator] = {}
    ignored_annotations: frozenset[str] = frozenset()

    def discover(self, tree: SourceTree, cancel: threading.Event | None = None) -> DiscoveryResult:
        """Scan the tree for route registrations.

        Unresolvable routes are recorded and the scan continues. The cancel
        signal is checked once per endpoint; cancelling discards everything.
        """
        result = DiscoveryResult()
        context = self.prepare(tree)
        for source in tree.files(self.suffixes):
            for found in self.scan(source, context):
                if cancel is not None and cancel.is_set():
                    raise ScanCancelled("scan cancelled")
                if isinstance(found, DiscoveryError):
                    logger.warning("discovery: %s", found)
                    result.issues.append(found)
                else:
                    logger.debug("discovered %s %s at %s", found.method.value, found.path_template, found.site)
                    result.endpoints.append(found)
        return result

    def prepare(self, tree: SourceTree) -> Any:
        """Hook for cross-file state (mount prefixes, constants) needed by scan()."""
        return None

    @abstractmethod
    def scan(self, source: SourceFile, context: Any) -> Iterator[RawEndpoint | DiscoveryError]:
        """Yield every endpoint (or resolution failure) declared in one file."""

    @abstractmethod
    def collect_types(self, tree: SourceTree) -> dict[str, RawType]:
        """Return the model/DTO/schema declarations keyed by name."""

    def collect_auth(self, tree: SourceTree) -> AuthMetadata:
        return AuthMetadata()

    def translate(self, annotation: RawAnnotation, field_type: FieldType) -> list[Constraint] | None:
        """Map one annotation to constraints; None when it is not understood."""
        if annotation.name in self.ignored_annotations:
            return []
        translator = self.constraint_table.get(annotation.name)
        if translator is None:
            return None
        return translator(annotation.args, field_type)


def join_paths(*fragments: str) -> str:
    """Concatenate route fragments into one normalized path template."""
    parts = []
    for frag in fragments:
        parts.extend(p for p in frag.split("/") if p)
    return "/" + "/".join(parts)
