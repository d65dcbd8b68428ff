"""Small lexical helpers shared by the Java and JavaScript adapters.

These are not parsers. They know just enough about string literals,
comments and bracket nesting to slice declarations out of source text.
"""

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_QUOTES = "\"'`"
_REGEX_PREFIX = "(,=:[!&|?{};"


def blank_comments(text: str, js_regex: bool = False) -> str:
    """Replace comment bodies with spaces, keeping offsets and newlines intact."""
    out = list(text)
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch in _QUOTES:
            i = skip_string(text, i)
            continue
        if js_regex and _is_regex_start(text, i):
            i = _skip_regex(text, i)
            continue
        if text.startswith("//", i):
            while i < n and text[i] != "\n":
                out[i] = " "
                i += 1
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            for j in range(i, end):
                if out[j] != "\n":
                    out[j] = " "
            i = end
            continue
        i += 1
    return "".join(out)


def skip_string(text: str, start: int) -> int:
    """Return the index just past the string literal opening at start."""
    quote = text[start]
    i = start + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i + 1
        if text[i] == "\n" and quote != "`":
            return i
        i += 1
    return len(text)


def _skip_regex(text: str, start: int) -> int:
    """Return the index just past a JavaScript regex literal opening at start."""
    i = start + 1
    in_class = False
    while i < len(text) and text[i] != "\n":
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            in_class = True
        elif ch == "]":
            in_class = False
        elif ch == "/" and not in_class:
            i += 1
            while i < len(text) and text[i].isalpha():
                i += 1
            return i
        i += 1
    return i


def _is_regex_start(text: str, i: int) -> bool:
    if text[i] != "/" or text.startswith("//", i) or text.startswith("/*", i):
        return False
    j = i - 1
    while j >= 0 and text[j] in " \t\r\n":
        j -= 1
    return j < 0 or text[j] in _REGEX_PREFIX


def find_closing(text: str, open_pos: int, js_regex: bool = False) -> int:
    """Index of the bracket closing the one at open_pos, or -1 if unbalanced."""
    stack = [_OPENERS[text[open_pos]]]
    i = open_pos + 1
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            i = skip_string(text, i)
            continue
        if js_regex and _is_regex_start(text, i):
            i = _skip_regex(text, i)
            continue
        if ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch == stack[-1]:
            stack.pop()
            if not stack:
                return i
        i += 1
    return -1


def split_top_level(text: str, sep: str = ",", js_regex: bool = False) -> list[str]:
    """Split on sep where it is not nested in brackets or string literals."""
    parts = []
    depth = 0
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in _QUOTES:
            i = skip_string(text, i)
            continue
        if js_regex and _is_regex_start(text, i):
            i = _skip_regex(text, i)
            continue
        if ch in _OPENERS:
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
        i += 1
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def unquote(literal: str) -> str | None:
    """Decode a single string literal; None if the text is anything else.

    Template literals with interpolation are not static and yield None.
    """
    literal = literal.strip()
    if len(literal) < 2 or literal[0] not in _QUOTES or literal[-1] != literal[0]:
        return None
    if skip_string(literal, 0) != len(literal):
        return None
    body = literal[1:-1]
    if literal[0] == "`" and "${" in body:
        return None
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt in "\\\"'`":
                out.append(nxt)
            elif nxt == "n":
                out.append("\n")
            elif nxt == "t":
                out.append("\t")
            else:
                out.append("\\" + nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def parse_regex_literal(expr: str) -> str | None:
    """Return the source of a JavaScript /regex/flags literal."""
    expr = expr.strip()
    if not expr.startswith("/") or _skip_regex(expr, 0) != len(expr):
        return None
    end = expr.rfind("/")
    return expr[1:end] if end > 0 else None


def line_of(text: str, pos: int) -> int:
    return text.count("\n", 0, pos) + 1


def parse_number(expr: str) -> int | float | None:
    expr = expr.strip().rstrip("LlFfDd").replace("_", "")
    try:
        return int(expr)
    except ValueError:
        pass
    try:
        return float(expr)
    except ValueError:
        return None
