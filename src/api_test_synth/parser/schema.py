"""Schema extractor: resolves payload type references into FieldSets.

Constraint coverage is best-effort. Anything the adapter's translation
table does not understand is recorded as a warning and skipped.
"""

import logging

from api_test_synth.errors import SchemaResolutionWarning, SourceSite
from api_test_synth.parser.base import (
    Constraint,
    ConstraintKind,
    Field,
    FieldSet,
    FieldType,
    FrameworkAdapter,
    RawField,
    RawType,
    TypeRef,
)

logger = logging.getLogger(__name__)

_KIND_ORDER = {k: i for i, k in enumerate(ConstraintKind)}


class SchemaExtractor:
    """Resolves type references against one adapter's raw type registry."""

    def __init__(self, adapter: FrameworkAdapter, types: dict[str, RawType], max_depth: int = 3):
        self.adapter = adapter
        self.types = types
        self.max_depth = max_depth
        self.warnings: list[SchemaResolutionWarning] = []

    def resolve(self, reference: str) -> FieldSet:
        """Resolve a top-level payload reference; unknown references yield an empty FieldSet."""
        raw = self.types.get(reference)
        if raw is None:
            self._warn(f"schema type '{reference}' not found in source tree", None)
            return FieldSet()
        if raw.enum_values is not None:
            self._warn(f"schema type '{reference}' is an enum, not an object", raw.site)
            return FieldSet()
        return self._resolve_type(raw, (reference,))

    def _resolve_type(self, raw: RawType, path: tuple[str, ...]) -> FieldSet:
        return FieldSet(fields=tuple(self._resolve_field(raw, rf, path) for rf in raw.fields))

    def _resolve_field(self, owner: RawType, raw_field: RawField, path: tuple[str, ...]) -> Field:
        where = f"{owner.name}.{raw_field.name}"
        field_type, nested, item_type, truncated, implied = self._resolve_ref(raw_field.type_ref, path, where, raw_field.site)

        constraints = list(implied)
        for annotation in raw_field.annotations:
            translated = self.adapter.translate(annotation, field_type)
            if translated is None:
                self._warn(f"unsupported annotation '{annotation.name}' on {where} ignored", raw_field.site)
                continue
            for c in translated:
                if not c.applies_to(field_type):
                    self._warn(f"'{annotation.name}' does not apply to {field_type.value} field {where}", raw_field.site)
                    continue
                constraints.append(c)

        return Field(
            name=raw_field.name,
            type=field_type,
            constraints=merge_constraints(constraints),
            nested=nested,
            item_type=item_type,
            truncated=truncated,
        )

    def _resolve_ref(self, ref: TypeRef, path: tuple[str, ...], where: str, site: SourceSite):
        """Return (type, nested FieldSet, item type, truncated, implied constraints)."""
        if ref.kind == FieldType.ARRAY:
            if ref.item is None:
                return FieldType.ARRAY, None, None, False, []
            item_type, item_nested, _, truncated, _ = self._resolve_ref(ref.item, path, where + "[]", site)
            return FieldType.ARRAY, item_nested, item_type, truncated, []
        if ref.kind is not None:
            return ref.kind, None, None, False, []

        raw = self.types.get(ref.name)
        if raw is None:
            self._warn(f"type '{ref.name}' of {where} not found, treated as an opaque object", site)
            return FieldType.OBJECT, None, None, False, []
        if raw.enum_values is not None:
            return FieldType.STRING, None, None, False, [Constraint.enum(raw.enum_values)]
        if ref.name in path:
            self._warn(f"recursive reference to '{ref.name}' at {where} truncated", site)
            return FieldType.OBJECT, None, None, True, []
        if len(path) >= self.max_depth:
            self._warn(f"nesting deeper than {self.max_depth} at {where} truncated", site)
            return FieldType.OBJECT, None, None, True, []
        return FieldType.OBJECT, self._resolve_type(raw, path + (ref.name,)), None, False, []

    def _warn(self, message: str, site: SourceSite | None) -> None:
        warning = SchemaResolutionWarning(message, site)
        logger.warning("schema: %s", warning)
        self.warnings.append(warning)


def merge_constraints(constraints: list[Constraint]) -> tuple[Constraint, ...]:
    """Collapse duplicates per kind, keeping the tightest bound, in a fixed kind order."""
    merged: dict[ConstraintKind, Constraint] = {}
    for c in constraints:
        current = merged.get(c.kind)
        if current is None:
            merged[c.kind] = c
        elif c.kind in (ConstraintKind.MIN_LENGTH, ConstraintKind.MIN) and c.value > current.value:
            merged[c.kind] = c
        elif c.kind in (ConstraintKind.MAX_LENGTH, ConstraintKind.MAX) and c.value < current.value:
            merged[c.kind] = c
    return tuple(sorted(merged.values(), key=lambda c: _KIND_ORDER[c.kind]))
