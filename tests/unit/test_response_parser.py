"""Unit tests for the layered JSON repair parser."""

import pytest

from vitae.utils.exceptions import ParseError
from vitae.utils.response_parser import (
    balance_unterminated,
    collapse_doubled_quotes,
    escape_inner_quotes,
    isolate_json_object,
    normalize_string_characters,
    parse_json_object,
    remove_trailing_commas,
    strip_code_fences,
)


class TestParseJsonObject:
    """Test parse_json_object() on the malformations backends actually produce."""

    @pytest.mark.unit
    def test_well_formed_json_is_returned_unchanged(self):
        """Test that valid JSON parses directly, including non-ASCII punctuation."""
        result = parse_json_object('{"name": "Ada", "note": "a – b", "skills": ["Python"]}')
        assert result == {"name": "Ada", "note": "a – b", "skills": ["Python"]}

    @pytest.mark.unit
    def test_code_fence_and_trailing_comma(self):
        """Test fenced reply with trailing commas."""
        raw = '```json\n{"name": "Ada", "skills": ["Python",],}\n```'
        assert parse_json_object(raw) == {"name": "Ada", "skills": ["Python"]}

    @pytest.mark.unit
    def test_fenced_reply_with_backticks_inside_value(self):
        """Test that a fence inside a string value does not end the fenced payload."""
        raw = '```json\n{"name": "Ada", "summary": "Writes ```code``` daily"}\n```'
        assert parse_json_object(raw) == {"name": "Ada", "summary": "Writes ```code``` daily"}

    @pytest.mark.unit
    def test_braces_in_prose_before_fence(self):
        """Test that a brace in the lead-in prose does not hide the fenced object."""
        raw = 'Here is the {JSON} you asked for:\n```json\n{"name": "Ada"}\n```'
        assert parse_json_object(raw) == {"name": "Ada"}

    @pytest.mark.unit
    def test_prose_around_object(self):
        """Test that explanations before and after the object are ignored."""
        raw = 'Here is the extracted data:\n{"name": "Ada"}\nLet me know if you need anything else!'
        assert parse_json_object(raw) == {"name": "Ada"}

    @pytest.mark.unit
    def test_literal_newline_inside_string(self):
        """Test that unescaped line breaks inside values are escaped."""
        raw = '{"summary": "Line one\nLine two\tindented"}'
        assert parse_json_object(raw) == {"summary": "Line one\nLine two\tindented"}

    @pytest.mark.unit
    def test_smart_quotes_as_delimiters(self):
        """Test object written entirely with typographic quotes."""
        assert parse_json_object("{“name”: “Ada Lovelace”}") == {"name": "Ada Lovelace"}

    @pytest.mark.unit
    def test_smart_quotes_inside_value(self):
        """Test typographic quotes inside an ASCII-quoted value become escaped quotes."""
        raw = '{"quote": "She said “hello”\n"}'
        assert parse_json_object(raw) == {"quote": 'She said "hello"\n'}

    @pytest.mark.unit
    def test_invalid_backslash_escapes(self):
        """Test Windows-style paths with invalid escapes are preserved literally."""
        raw = '{"path": "C:\\Users\\ada"}'
        assert parse_json_object(raw) == {"path": "C:\\Users\\ada"}

    @pytest.mark.unit
    def test_doubled_quotes(self):
        """Test value wrapped in doubled quotes."""
        raw = '{"title": ""Senior Engineer"", "name": "Ada"}'
        assert parse_json_object(raw) == {"title": "Senior Engineer", "name": "Ada"}

    @pytest.mark.unit
    def test_unescaped_inner_quotes(self):
        """Test quotes inside a value that do not end it."""
        raw = '{"summary": "Known as "the Enchantress" of numbers", "name": "Ada"}'
        assert parse_json_object(raw) == {
            "summary": 'Known as "the Enchantress" of numbers',
            "name": "Ada",
        }

    @pytest.mark.unit
    def test_truncated_inside_list_string(self):
        """Test reply cut off in the middle of a string inside a list."""
        raw = '{"name": "Ada", "skills": ["Python", "Mathe'
        assert parse_json_object(raw) == {"name": "Ada", "skills": ["Python", "Mathe"]}

    @pytest.mark.unit
    def test_truncated_after_key(self):
        """Test dangling key gets a null value."""
        raw = '{"name": "Ada", "email"'
        assert parse_json_object(raw) == {"name": "Ada", "email": None}

    @pytest.mark.unit
    def test_truncated_after_colon(self):
        """Test dangling colon gets a null value."""
        raw = '{"name": "Ada", "email":'
        assert parse_json_object(raw) == {"name": "Ada", "email": None}

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "   ", "\n\t", None])
    def test_empty_reply(self, raw):
        """Test empty replies raise ParseError."""
        with pytest.raises(ParseError) as exc_info:
            parse_json_object(raw)
        assert exc_info.value.defect == "empty response"

    @pytest.mark.unit
    def test_reply_without_object(self):
        """Test prose-only reply raises ParseError."""
        with pytest.raises(ParseError) as exc_info:
            parse_json_object("I could not find any résumé data in this document.")
        assert exc_info.value.defect == "no JSON object found in response"
        assert exc_info.value.offset is None

    @pytest.mark.unit
    def test_unrepairable_reply_reports_offset(self):
        """Test that an unrepairable reply carries the decoder offset and a snippet."""
        with pytest.raises(ParseError) as exc_info:
            parse_json_object("{this is not json at all")

        error = exc_info.value
        assert error.offset == 1
        assert error.snippet is not None
        assert "at offset 1" in str(error)


class TestExtractStages:
    """Test the extract-pass stages in isolation."""

    @pytest.mark.unit
    def test_strip_code_fences_without_language(self):
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    @pytest.mark.unit
    def test_strip_code_fences_unclosed(self):
        """Test that an opening fence without a closing one is still removed."""
        assert strip_code_fences('```json\n{"a": 1}') == '{"a": 1}'

    @pytest.mark.unit
    def test_strip_code_fences_keeps_backticks_inside_values(self):
        """Test that fences after the first brace are content, not markup."""
        text = '{"snippet": "```print(1)```"}'
        assert strip_code_fences(text) == text

    @pytest.mark.unit
    def test_strip_code_fences_runs_to_last_closing_fence(self):
        text = '```json\n{"a": "```x```"}\n```'
        assert strip_code_fences(text) == '{"a": "```x```"}'

    @pytest.mark.unit
    def test_strip_code_fences_after_prose_with_braces(self):
        text = 'Result for {candidate}:\n```\n{"a": 1}\n```\nDone.'
        assert strip_code_fences(text) == '{"a": 1}'

    @pytest.mark.unit
    def test_isolate_json_object(self):
        assert isolate_json_object('Sure! {"a": 1}') == '{"a": 1}'
        assert isolate_json_object('{"a": 1}') == '{"a": 1}'
        assert isolate_json_object("no braces") == "no braces"


class TestNormalizeStages:
    """Test the normalize-pass stages in isolation."""

    @pytest.mark.unit
    def test_glyphs_folded_inside_strings(self):
        result = normalize_string_characters('{"skills": "• Python – expert"}')
        assert result == '{"skills": "- Python - expert"}'

    @pytest.mark.unit
    def test_smart_single_quotes(self):
        assert normalize_string_characters('{"name": "O’Brien"}') == '{"name": "O\'Brien"}'

    @pytest.mark.unit
    def test_control_characters_escaped(self):
        assert normalize_string_characters('{"a": "x\x07y"}') == '{"a": "x\\u0007y"}'

    @pytest.mark.unit
    def test_valid_escapes_untouched(self):
        text = '{"a": "line\\nbreak \\u00e9 \\"quoted\\""}'
        assert normalize_string_characters(text) == text

    @pytest.mark.unit
    def test_trailing_commas_removed(self):
        assert remove_trailing_commas('{"a": [1, 2, ], }') == '{"a": [1, 2 ] }'

    @pytest.mark.unit
    def test_commas_inside_strings_kept(self):
        text = '{"a": "x,}", "b": "y,]"}'
        assert remove_trailing_commas(text) == text


class TestAggressiveStages:
    """Test the aggressive-pass stages in isolation."""

    @pytest.mark.unit
    def test_collapse_doubled_quotes_leaves_empty_strings(self):
        """Test that a genuine empty string value is not mistaken for doubling."""
        text = '{"a": "", "b": ""}'
        assert collapse_doubled_quotes(text) == text

    @pytest.mark.unit
    def test_escape_inner_quotes_keeps_key_quotes(self):
        text = '{"name": "Ada", "skills": ["Python"]}'
        assert escape_inner_quotes(text) == text

    @pytest.mark.unit
    def test_balance_closes_nested_structures(self):
        assert balance_unterminated('{"a": {"b": [1, 2') == '{"a": {"b": [1, 2]}}'

    @pytest.mark.unit
    def test_balance_drops_dangling_comma(self):
        assert balance_unterminated('{"a": [1, 2,') == '{"a": [1, 2]}'

    @pytest.mark.unit
    def test_balance_leaves_complete_object(self):
        assert balance_unterminated('{"a": 1}') == '{"a": 1}'
