from api_test_synth.parser.lexing import (
    blank_comments,
    find_closing,
    line_of,
    parse_number,
    parse_regex_literal,
    split_top_level,
    unquote,
)


class TestBlankComments:
    def test_line_comment(self):
        result = blank_comments("a // note\nb")
        assert len(result) == len("a // note\nb")
        assert "note" not in result
        assert result.endswith("\nb")

    def test_block_comment_keeps_newlines(self):
        text = "a /* one\ntwo */ b"
        result = blank_comments(text)
        assert result.count("\n") == 1
        assert "two" not in result
        assert result.endswith(" b")

    def test_comment_markers_inside_strings(self):
        text = 'url = "http://example.com"'
        assert blank_comments(text) == text

    def test_js_regex_literal(self):
        text = "const r = /a\\/\\/b/; // tail"
        result = blank_comments(text, js_regex=True)
        assert "/a\\/\\/b/" in result
        assert "tail" not in result


class TestSplitTopLevel:
    def test_nested_and_quoted(self):
        assert split_top_level("a, f(b, c), 'd,e'") == ["a", "f(b, c)", "'d,e'"]

    def test_custom_separator(self):
        assert split_top_level('API + "/users"', "+") == ["API", '"/users"']

    def test_trailing_separator(self):
        assert split_top_level("a, b,") == ["a", "b"]


class TestFindClosing:
    def test_nested(self):
        assert find_closing("f(a(b)c)", 1) == 7

    def test_ignores_brackets_in_strings(self):
        text = "f(')', x)"
        assert find_closing(text, 1) == len(text) - 1

    def test_unbalanced(self):
        assert find_closing("f(a", 1) == -1


class TestUnquote:
    def test_single_and_double(self):
        assert unquote("'abc'") == "abc"
        assert unquote('"abc"') == "abc"

    def test_escapes(self):
        assert unquote("'a\\'b'") == "a'b"
        assert unquote("'/:id(\\\\d+)'") == "/:id(\\d+)"

    def test_template_literal(self):
        assert unquote("`/static`") == "/static"
        assert unquote("`/users/${id}`") is None

    def test_not_a_literal(self):
        assert unquote("prefix") is None
        assert unquote("'a' + b") is None


class TestRegexLiteral:
    def test_with_flags(self):
        assert parse_regex_literal("/^[a-z]+$/i") == "^[a-z]+$"

    def test_not_regex(self):
        assert parse_regex_literal("'abc'") is None


class TestNumbers:
    def test_parse_number(self):
        assert parse_number("10") == 10
        assert parse_number("10L") == 10
        assert parse_number("1.5f") == 1.5
        assert parse_number("1_000") == 1000
        assert parse_number("abc") is None

    def test_line_of(self):
        assert line_of("a\nb\nc", 0) == 1
        assert line_of("a\nb\nc", 4) == 3
