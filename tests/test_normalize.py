"""Tests for oracle response normalization and decoding."""

import json

import pytest

from graphlint.errors import OracleError, ParseError
from graphlint.normalize import (
    FINDINGS_SCHEMA,
    SUMMARY_SCHEMA,
    escape_control_chars,
    extract_fenced,
    normalize_response,
    parse_findings,
    parse_summary,
)


class TestExtractFenced:
    """Tests for extract_fenced."""

    def test_json_fence(self):
        assert extract_fenced('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert extract_fenced('Here you go:\n```\n{"a": 1}\n```\nThanks') == '{"a": 1}'

    def test_no_fence(self):
        assert extract_fenced('  {"a": 1}  ') == '{"a": 1}'


class TestEscapeControlChars:
    """Tests for escape_control_chars."""

    def test_newline_inside_string(self):
        assert escape_control_chars('{"a": "x\ny"}') == '{"a": "x\\ny"}'

    def test_tab_and_carriage_return(self):
        assert escape_control_chars('{"a": "x\ty\rz"}') == '{"a": "x\\ty\\rz"}'

    def test_whitespace_outside_strings_untouched(self):
        text = '{\n\t"a": 1,\n\t"b": 2\n}'
        assert escape_control_chars(text) == text

    def test_existing_escapes_untouched(self):
        """Already escaped sequences and quotes are left alone."""
        text = '{"a": "say \\"hi\\"\\n", "b": "c:\\\\"}'
        assert escape_control_chars(text) == text
        assert json.loads(escape_control_chars(text)) == {"a": 'say "hi"\n', "b": "c:\\"}


class TestNormalizeResponse:
    """Tests for normalize_response."""

    def test_fenced_with_raw_newline(self):
        """A fenced response with a raw newline in a string decodes as intended."""
        raw = '```json\n{"message": "line1\nline2"}\n```'
        decoded = json.loads(normalize_response(raw))
        assert decoded == {"message": "line1\nline2"}

    def test_valid_json_is_unchanged(self):
        text = '{"purpose": "p", "invariants": ["a", "b"]}'
        assert normalize_response(text) == text


class TestParseSummary:
    """Tests for parse_summary."""

    def test_valid(self):
        payload = parse_summary('{"purpose": "p", "behavior": "b", "invariants": ["i"], "security": null}')

        assert payload.kind == "summary"
        assert payload.purpose == "p"
        assert payload.invariants == ["i"]
        assert payload.security == []

    def test_multiline_behavior(self):
        raw = '```json\n{"purpose": "p", "behavior": "first\nsecond"}\n```'
        assert parse_summary(raw).behavior == "first\nsecond"

    def test_not_json(self):
        """Undecodable text raises ParseError with both forms of the text."""
        raw = "```\nI could not analyze this\n```"
        with pytest.raises(ParseError) as excinfo:
            parse_summary(raw)

        assert excinfo.value.raw == raw
        assert excinfo.value.normalized == "I could not analyze this"
        assert isinstance(excinfo.value, OracleError)

    def test_missing_field(self):
        with pytest.raises(ParseError):
            parse_summary('{"purpose": "p"}')


class TestParseFindings:
    """Tests for parse_findings."""

    def test_issues(self):
        raw = json.dumps({
            "issues": [
                {"function": "Load", "line": 2, "severity": "Critical", "message": "m",
                 "suggestion": "s", "code": "x := 1"},
                {"severity": "minor", "message": "n"},
            ]
        })
        issues = parse_findings(raw)

        assert len(issues) == 2
        assert issues[0].severity == "critical"
        assert issues[0].code == "x := 1"
        assert issues[1].function == ""
        assert issues[1].line == 0

    def test_empty_body(self):
        assert parse_findings("") == []
        assert parse_findings("```json\n{}\n```") == []

    def test_null_optional_fields(self):
        issues = parse_findings(
            '{"issues": [{"function": null, "line": null, "severity": "minor", "message": "m", "code": null}]}'
        )
        assert issues[0].function == ""
        assert issues[0].line == 0
        assert issues[0].code == ""

    def test_empty_issues(self):
        assert parse_findings('{"issues": []}') == []

    def test_unknown_severity(self):
        with pytest.raises(ParseError):
            parse_findings('{"issues": [{"severity": "blocker", "message": "m"}]}')

    def test_truncated(self):
        with pytest.raises(ParseError) as excinfo:
            parse_findings('{"issues": [{"severity": "minor"')
        assert excinfo.value.normalized.startswith('{"issues"')


class TestSchemas:
    """Tests for the response schemas sent to the oracle."""

    def test_summary_schema(self):
        assert SUMMARY_SCHEMA["name"] == "summary"
        properties = SUMMARY_SCHEMA["schema"]["properties"]
        assert "kind" not in properties
        assert {"purpose", "behavior", "invariants", "security"} <= set(properties)

    def test_findings_schema(self):
        assert FINDINGS_SCHEMA["name"] == "issues"
        assert "issues" in FINDINGS_SCHEMA["schema"]["properties"]
