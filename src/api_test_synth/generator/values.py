"""Deterministic value tables for synthesized requests.

Every value here is a pure function of the field's type and constraints so
that two runs over the same descriptors render identical collections.
"""

import re
from typing import Any

from api_test_synth.parser.base import Constraint, ConstraintKind, Field, FieldSet, FieldType

# (label, payload)
INJECTION_PAYLOADS = [
    ("SQL tautology", "' OR '1'='1"),
    ("SQL comment", "admin'--"),
    ("script tag", "<script>alert(1)</script>"),
    ("path traversal", "../../../etc/passwd"),
]

PATTERN_SEEDS = [
    "user@example.com", "Sample", "sample", "SAMPLE", "abc123", "ABC123", "Abcdef1!", "Passw0rd!",
    "12345", "1", "a", "A", "2024-01-15", "+14155550100", "4155550100",
    "550e8400-e29b-41d4-a716-446655440000", "https://example.com", "sample-value", "sample_value", "AB-1234",
]
PATTERN_VIOLATIONS = ["!!invalid!!", "not valid", "invalid", "12345", "a", "", " "]
FILLERS = ["a", "1", "A", "x"]

SAMPLE_DATE = "2024-01-15"
DEFAULT_STRING_LENGTH = 8
NONEXISTENT_NUMBER = 999999999
NONEXISTENT_STRING = "nonexistent-id"


def _find(constraints, kind: ConstraintKind) -> Constraint | None:
    for c in constraints:
        if c.kind == kind:
            return c
    return None


def _compile(regex: str) -> re.Pattern | None:
    try:
        return re.compile(regex)
    except re.error:
        return None


def matches(value: str, regex: str) -> bool:
    pattern = _compile(regex)
    return pattern is not None and pattern.fullmatch(value) is not None


def fit_length(seed: str, n: int, regex: str | None = None) -> str | None:
    """Stretch or trim seed to exactly n characters, keeping it inside regex.

    Returns None when no padding/trimming strategy yields a matching string.
    """
    if n < 0:
        return None
    if regex is None:
        if not seed:
            seed = "a"
        return (seed * (n // len(seed) + 1))[:n]

    pattern = _compile(regex)
    if pattern is None:
        return None

    for candidate in _length_variants(seed, n):
        if pattern.fullmatch(candidate):
            return candidate
    for other in PATTERN_SEEDS:
        if other == seed or not pattern.fullmatch(other):
            continue
        for candidate in _length_variants(other, n):
            if pattern.fullmatch(candidate):
                return candidate
    for filler in FILLERS:
        if pattern.fullmatch(filler * n):
            return filler * n
    return None


def _length_variants(seed: str, n: int):
    k = n - len(seed)
    if k == 0:
        yield seed
    elif k > 0:
        yield seed + (seed[-1:] or "a") * k
        for i in range(len(seed)):
            yield seed[:i] + seed[i] * k + seed[i:]
        for filler in FILLERS:
            for i in range(len(seed) + 1):
                yield seed[:i] + filler * k + seed[i:]
    else:
        k = -k
        for i in range(len(seed) - k + 1):
            yield seed[:i] + seed[i + k:]


def _length_window(constraints) -> tuple[int, int | None]:
    low = _find(constraints, ConstraintKind.MIN_LENGTH)
    high = _find(constraints, ConstraintKind.MAX_LENGTH)
    return (int(low.value) if low else 0), (int(high.value) if high else None)


def _number_window(constraints) -> tuple[int | float | None, int | float | None]:
    low = _find(constraints, ConstraintKind.MIN)
    low = low.value if low else None
    if _find(constraints, ConstraintKind.POSITIVE) is not None:
        low = max(low, 1) if low is not None else 1
    elif _find(constraints, ConstraintKind.POSITIVE_OR_ZERO) is not None:
        low = max(low, 0) if low is not None else 0
    high = _find(constraints, ConstraintKind.MAX)
    return low, (high.value if high else None)


def sample_string(name: str, constraints, seed: str | None = None) -> str:
    enum = _find(constraints, ConstraintKind.ENUM)
    if enum is not None and enum.value:
        return str(enum.value[0])

    low, high = _length_window(constraints)
    pattern = _find(constraints, ConstraintKind.PATTERN)
    regex = pattern.value if pattern else None
    seed = seed or f"sample-{name}"

    if regex is not None:
        for candidate in ([seed] if matches(seed, regex) else []) + PATTERN_SEEDS:
            if matches(candidate, regex) and low <= len(candidate) and (high is None or len(candidate) <= high):
                return candidate

    if high is not None:
        target = (low + high) // 2 if low else max(1, min(high, DEFAULT_STRING_LENGTH))
        target = min(max(target, low), high)
    elif low:
        target = max(low, DEFAULT_STRING_LENGTH)
    else:
        target = None

    if regex is not None:
        for candidate in [seed] + PATTERN_SEEDS:
            fitted = fit_length(candidate, target if target is not None else len(candidate), regex)
            if fitted is not None and low <= len(fitted):
                return fitted
        return seed
    if target is None:
        return seed
    return fit_length(seed, target)


def sample_number(constraints) -> int | float:
    enum = _find(constraints, ConstraintKind.ENUM)
    if enum is not None and enum.value:
        return enum.value[0]
    low, high = _number_window(constraints)
    if low is not None and high is not None:
        mid = low + (high - low) / 2
        return int(mid) if isinstance(low, int) and isinstance(high, int) else mid
    if low is not None:
        return low + 1
    if high is not None:
        return high - 1 if high >= 1 else high
    return 1


def sample_value(field: Field, seed: str | None = None) -> Any:
    """A mid-range value satisfying every constraint on field."""
    if field.type == FieldType.STRING:
        return sample_string(field.name, field.constraints, seed)
    if field.type == FieldType.NUMBER:
        return sample_number(field.constraints)
    if field.type == FieldType.BOOLEAN:
        return True
    if field.type == FieldType.DATE:
        return SAMPLE_DATE
    if field.type == FieldType.ARRAY:
        low, high = _length_window(field.constraints)
        count = max(low, 1) if high is None or high >= 1 else 0
        return [sample_item(field) for _ in range(count)]
    if field.nested is not None:
        return sample_body(field.nested)
    return {}


def sample_item(field: Field) -> Any:
    """One array element for an ARRAY field."""
    if field.nested is not None:
        return sample_body(field.nested)
    item = Field(name=field.name, type=field.item_type or FieldType.STRING)
    return sample_value(item)


def sample_body(schema: FieldSet) -> dict:
    return {f.name: sample_value(f) for f in schema.fields if not f.truncated}


def sample_query_value(name: str, field_type: FieldType, constraints) -> Any:
    if field_type == FieldType.NUMBER:
        return sample_number(constraints)
    if field_type == FieldType.BOOLEAN:
        return True
    if field_type == FieldType.DATE:
        return SAMPLE_DATE
    return sample_string(name, constraints, seed="sample")


def render_query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def empty_value(field: Field) -> Any:
    return [] if field.type == FieldType.ARRAY else ""


def mismatch_value(field: Field, leniency_for_numeric_strings: bool) -> Any:
    """A value of an incompatible type.

    Numeric fields get the numeric-looking string "123" unless the target is
    known to coerce those, in which case a non-numeric string is used.
    """
    if field.type == FieldType.STRING:
        return 12345
    if field.type == FieldType.NUMBER:
        return "not-a-number" if leniency_for_numeric_strings else "123"
    if field.type == FieldType.BOOLEAN:
        return "not-a-boolean"
    if field.type == FieldType.DATE:
        return "not-a-date"
    if field.type == FieldType.ARRAY:
        return "not-an-array"
    return "not-an-object"


def pattern_violation(field: Field) -> str | None:
    """A string that fails the field's pattern, preferring one that fits its length limits."""
    pattern = field.get(ConstraintKind.PATTERN)
    if pattern is None:
        return None
    low, high = _length_window(field.constraints)
    misses = [v for v in PATTERN_VIOLATIONS if not matches(v, pattern.value)]
    for value in misses:
        if low <= len(value) and (high is None or len(value) <= high):
            return value
    return misses[0] if misses else None


def enum_violation(field: Field) -> Any:
    enum = field.get(ConstraintKind.ENUM)
    if enum is None:
        return None
    if field.type == FieldType.NUMBER:
        numbers = [v for v in enum.value if isinstance(v, (int, float))]
        return (max(numbers) if numbers else 0) + 1000
    return "NOT_A_VALID_VALUE"


def alternate_value(field: Field, current: Any) -> Any:
    """A different valid value for update steps; None when the field cannot change."""
    if field.type == FieldType.STRING:
        enum = field.get(ConstraintKind.ENUM)
        if enum is not None:
            others = [str(v) for v in enum.value if str(v) != current]
            return others[0] if others else None
        if field.get(ConstraintKind.PATTERN) is not None:
            return None
        candidate = sample_string(field.name, field.constraints, seed=f"updated-{field.name}")
        return candidate if candidate != current else None
    if field.type == FieldType.NUMBER and field.get(ConstraintKind.ENUM) is None:
        low, high = _number_window(field.constraints)
        if high is None or current + 1 <= high:
            return current + 1
        if low is None or current - 1 >= low:
            return current - 1
        return None
    if field.type == FieldType.BOOLEAN:
        return not current
    return None


def nonexistent_path_value(field_type: FieldType) -> str:
    return str(NONEXISTENT_NUMBER) if field_type == FieldType.NUMBER else NONEXISTENT_STRING


def malformed_path_value(field_type: FieldType) -> str | None:
    return {
        FieldType.NUMBER: "not-a-number",
        FieldType.BOOLEAN: "not-a-boolean",
        FieldType.DATE: "not-a-date",
    }.get(field_type)


def boundary_values(field: Field) -> list[tuple[str, Any, bool, str | None]]:
    """At-limit / past-limit pairs for each limit on field.

    Each entry is (label, value, expect_success, skip_reason). An at-limit
    value that another constraint on the field rejects, or that cannot be
    built at all, carries a skip reason instead of a success expectation.
    """
    result = []
    c = field.constraints
    if field.type in (FieldType.STRING, FieldType.ARRAY):
        low = _find(c, ConstraintKind.MIN_LENGTH)
        high = _find(c, ConstraintKind.MAX_LENGTH)
        if low is not None:
            n = int(low.value)
            result.append(_length_case(field, f"minLength {n}", n, True))
            if n > 0:
                result.append(_length_case(field, f"below minLength {n}", n - 1, False))
        if high is not None:
            n = int(high.value)
            result.append(_length_case(field, f"maxLength {n}", n, True))
            result.append(_length_case(field, f"above maxLength {n}", n + 1, False))
    elif field.type == FieldType.NUMBER:
        low = _find(c, ConstraintKind.MIN)
        high = _find(c, ConstraintKind.MAX)
        if low is not None:
            result.append((f"min {low.value}", low.value, True, None))
            result.append((f"below min {low.value}", _step(low.value, -1), False, None))
        if high is not None:
            result.append((f"max {high.value}", high.value, True, None))
            result.append((f"above max {high.value}", _step(high.value, 1), False, None))
        if _find(c, ConstraintKind.POSITIVE) is not None:
            result.append(("positive 1", 1, True, None))
            result.append(("positive 0", 0, False, None))
        if _find(c, ConstraintKind.POSITIVE_OR_ZERO) is not None:
            result.append(("positiveOrZero 0", 0, True, None))
            result.append(("positiveOrZero -1", -1, False, None))
    return [_check_at_limit(field, entry) for entry in result]


def violated_constraints(field: Field, value: Any) -> list[str]:
    """Names of the constraints on field that value breaks."""
    broken = []
    c = field.constraints
    if field.type == FieldType.NUMBER:
        low = _find(c, ConstraintKind.MIN)
        high = _find(c, ConstraintKind.MAX)
        if low is not None and value < low.value:
            broken.append(f"min {low.value}")
        if high is not None and value > high.value:
            broken.append(f"max {high.value}")
        if _find(c, ConstraintKind.POSITIVE) is not None and value <= 0:
            broken.append("positive")
        if _find(c, ConstraintKind.POSITIVE_OR_ZERO) is not None and value < 0:
            broken.append("positiveOrZero")
    elif field.type in (FieldType.STRING, FieldType.ARRAY):
        low, high = _length_window(c)
        if len(value) < low:
            broken.append(f"minLength {low}")
        if high is not None and len(value) > high:
            broken.append(f"maxLength {high}")
    pattern = _find(c, ConstraintKind.PATTERN)
    if pattern is not None and isinstance(value, str) and not matches(value, pattern.value):
        broken.append(f"pattern {pattern.value}")
    enum = _find(c, ConstraintKind.ENUM)
    if enum is not None and value not in enum.value and str(value) not in [str(v) for v in enum.value]:
        broken.append("enum")
    return broken


def _check_at_limit(field: Field, entry):
    label, value, expect_success, skip_reason = entry
    if not expect_success or skip_reason is not None:
        return entry
    broken = violated_constraints(field, value)
    if not broken:
        return entry
    return label, value, expect_success, f"at-limit value {value!r} breaks {', '.join(broken)}"


def _step(value, direction: int):
    if isinstance(value, int):
        return value + direction
    return round(value + direction * 0.01, 6)


def _length_case(field: Field, label: str, n: int, expect_success: bool):
    if field.type == FieldType.ARRAY:
        return label, [sample_item(field) for _ in range(n)], expect_success, None
    enum = field.get(ConstraintKind.ENUM)
    if enum is not None and expect_success:
        fitting = [str(v) for v in enum.value if len(str(v)) == n]
        if not fitting:
            return label, None, expect_success, f"no allowed value has {n} characters"
        return label, fitting[0], expect_success, None
    pattern = field.get(ConstraintKind.PATTERN)
    if pattern is None:
        return label, fit_length(f"sample-{field.name}", n), expect_success, None
    value = fit_length(sample_value(field), n, pattern.value)
    if value is None:
        return label, None, expect_success, f"no {n}-character value matches pattern {pattern.value}"
    return label, value, expect_success, None
