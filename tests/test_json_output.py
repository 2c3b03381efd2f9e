import pytest

from dispatch_center.utils.json_output import extract_fenced_json, parse_json_reply, strip_code_fences


class TestStripCodeFences:
    def test_json_fence(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert strip_code_fences("```\n[1, 2]\n```") == "[1, 2]"

    def test_no_fence(self):
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


class TestExtractFencedJson:
    def test_finds_block_inside_prose(self):
        text = 'Reasoning first.\n```json\n{"scenes": [1]}\n```\nMore reasoning.'
        assert extract_fenced_json(text) == '{"scenes": [1]}'

    def test_requires_json_tag(self):
        assert extract_fenced_json("```\n{}\n```") is None

    def test_no_block(self):
        assert extract_fenced_json("just thinking") is None


class TestParseJsonReply:
    def test_valid_json(self):
        assert parse_json_reply('{"name": "Lin", "age": 30}') == {"name": "Lin", "age": 30}

    def test_fenced_json(self):
        assert parse_json_reply('```json\n[{"id": 1}]\n```') == [{"id": 1}]

    def test_trailing_comma_repaired(self):
        assert parse_json_reply('{"name": "Lin", "age": 30,}') == {"name": "Lin", "age": 30}

    def test_missing_comma_repaired(self):
        assert parse_json_reply('{"name": "Lin" "age": 30}') == {"name": "Lin", "age": 30}

    def test_single_quotes_repaired(self):
        assert parse_json_reply("{'name': 'Lin'}") == {"name": "Lin"}

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            parse_json_reply("   ")

    def test_unrecoverable_raises(self):
        with pytest.raises(ValueError, match="invalid JSON"):
            parse_json_reply("no json here at all")
