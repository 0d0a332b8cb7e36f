"""Tests for tools.action_parser -- tag grammar, tokenizer, clean text.

Covers:
  - Tag extraction with and without parameters
  - Values containing commas, colons and quotes
  - Unknown actions are stripped from the text like any other tag
  - Whitespace left behind by removed tags

Run with:  python -m pytest tests/tools/test_action_parser.py -v
"""

import tools
from tools.action_parser import ActionTag, get_param, parse_actions, tokenize_params


class TestParseActions:
    def test_two_tags_with_quoted_comma(self):
        parsed = parse_actions(
            'Opening Chrome. [action: launchApplication, appName: Chrome] '
            'Also [action: searchFiles, query: "quarterly report, v2"]'
        )
        assert parsed.clean_text == "Opening Chrome. Also"
        assert [(t.name, t.params) for t in parsed.tags] == [
            ("launchApplication", {"appName": "Chrome"}),
            ("searchFiles", {"query": "quarterly report, v2"}),
        ]

    def test_tag_without_params(self):
        parsed = parse_actions("What else? [action: listen]")
        assert parsed.clean_text == "What else?"
        assert parsed.tags[0].name == "listen"
        assert parsed.tags[0].params == {}

    def test_action_keyword_case_insensitive(self):
        parsed = parse_actions("[ACTION: getTime]")
        assert parsed.tags[0].name == "getTime"
        assert parsed.tags[0].key == "gettime"
        assert parsed.clean_text == ""

    def test_package_docstring_tags_parse(self):
        parsed = parse_actions(tools.__doc__)
        assert [(t.name, t.params) for t in parsed.tags] == [
            ("name", {"key": "value"}),
            ("launchApplication", {"appName": "Chrome"}),
        ]

    def test_url_value_keeps_colons(self):
        parsed = parse_actions("[action: openUrl, url: https://example.com:8080/a?b=c]")
        assert parsed.tags[0].params == {"url": "https://example.com:8080/a?b=c"}

    def test_unknown_action_still_removed(self):
        parsed = parse_actions("Sure. [action: doesNotExist, x: 1] Done.")
        assert parsed.clean_text == "Sure. Done."
        assert parsed.tags[0].name == "doesNotExist"

    def test_raw_tag_kept(self):
        raw = "[action: setClipboard, text: hi]"
        assert parse_actions(f"ok {raw}").tags[0].raw == raw

    def test_no_tags(self):
        parsed = parse_actions("  Just   talking.  ")
        assert parsed.clean_text == "Just talking."
        assert parsed.tags == []

    def test_empty_and_none(self):
        assert parse_actions("").clean_text == ""
        assert parse_actions(None).tags == []

    def test_multiline_text_keeps_newlines(self):
        parsed = parse_actions("Line one [action: listen]\nLine two")
        assert parsed.clean_text == "Line one\nLine two"

    def test_nested_brackets_not_matched(self):
        parsed = parse_actions("[action: openUrl, url: [bad]]")
        assert parsed.tags == []

    def test_tag_defaults(self):
        tag = ActionTag(name="listen")
        assert tag.params == {}


class TestTokenizeParams:
    def test_multiple_keys(self):
        assert tokenize_params(", command: setVolume, value: 40") == {
            "command": "setVolume", "value": "40",
        }

    def test_unquoted_value_with_comma(self):
        assert tokenize_params(", text: apples, pears and plums") == {
            "text": "apples, pears and plums",
        }

    def test_quoted_value_hides_key_like_text(self):
        assert tokenize_params(", text: 'a, b: c', other: 1") == {
            "text": "a, b: c", "other": "1",
        }

    def test_single_quotes_stripped(self):
        assert tokenize_params(", appName: 'Visual Studio Code'") == {"appName": "Visual Studio Code"}

    def test_unterminated_quote_kept(self):
        assert tokenize_params(', text: "open') == {"text": '"open'}

    def test_later_duplicate_wins(self):
        assert tokenize_params(", a: 1, a: 2") == {"a": "2"}

    def test_empty_body(self):
        assert tokenize_params("") == {}


class TestGetParam:
    def test_case_insensitive_and_fallback_names(self):
        params = {"AppName": "Chrome"}
        assert get_param(params, "appname") == "Chrome"
        assert get_param(params, "app", "appName") == "Chrome"

    def test_empty_values_skipped(self):
        assert get_param({"value": "", "level": "30"}, "value", "level") == "30"

    def test_default(self):
        assert get_param({}, "x", default="d") == "d"
