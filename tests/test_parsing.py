"""Tests for planning-service response parsing."""

from plan_orchestrator.core.parsing import (
    Malformed,
    Parsed,
    extract_first_object,
    parse_response,
)


class TestParseResponse:
    def test_direct_json(self):
        result = parse_response('{"tasks": []}')
        assert result == Parsed({"tasks": []})

    def test_json_wrapped_in_prose(self):
        result = parse_response('Here is the plan:\n```json\n{"tasks": [{"title": "A"}]}\n```')
        assert isinstance(result, Parsed)
        assert result.data["tasks"][0]["title"] == "A"

    def test_braces_inside_strings(self):
        text = 'Sure! {"note": "use {curly} braces", "n": 1} trailing'
        result = parse_response(text)
        assert isinstance(result, Parsed)
        assert result.data["note"] == "use {curly} braces"

    def test_empty(self):
        result = parse_response("   ")
        assert isinstance(result, Malformed)
        assert result.reason == "empty response"

    def test_garbage(self):
        result = parse_response("I cannot help with that")
        assert isinstance(result, Malformed)
        assert result.raw == "I cannot help with that"

    def test_top_level_array_is_malformed(self):
        assert isinstance(parse_response("[1, 2]"), Malformed)


class TestParsedAccessors:
    def test_list_of_dicts_filters_entries(self):
        parsed = Parsed({"tasks": [{"title": "A"}, "junk", 3]})
        assert parsed.list_of_dicts("tasks") == [{"title": "A"}]

    def test_list_of_dicts_missing_key(self):
        assert Parsed({}).list_of_dicts("tasks") is None
        assert Parsed({"tasks": "nope"}).list_of_dicts("tasks") is None

    def test_list_of_str(self):
        parsed = Parsed({"issues": ["vague", 2, {"x": 1}]})
        assert parsed.list_of_str("issues") == ["vague", "2"]
        assert parsed.list_of_str("missing") == []


class TestExtractFirstObject:
    def test_nested(self):
        assert extract_first_object('x {"a": {"b": 1}} y {"c": 2}') == '{"a": {"b": 1}}'

    def test_unbalanced(self):
        assert extract_first_object('{"a": 1') is None
