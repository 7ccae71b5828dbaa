from __future__ import annotations

import pytest

from studyquest.core.errors import MalformedOutputError
from studyquest.core.json_parser import balance_suffix, clean_json_text, extract_final_json, lenient_decode


def test_fenced_output_decodes():
    assert lenient_decode('```json\n{"title": "春天"}\n```') == {"title": "春天"}


def test_leading_prose_is_dropped():
    assert clean_json_text('好的，结果如下：{"a": 1} 希望有帮助') == '{"a": 1}'


def test_unterminated_containers_are_balanced():
    assert lenient_decode('Result: {"a": [1, 2') == {"a": [1, 2]}


def test_truncated_string_is_closed():
    text = '{"title": "春天", "questions": [{"content": "燕子从哪里飞来'
    decoded = lenient_decode(text)
    assert decoded["title"] == "春天"
    assert decoded["questions"][0]["content"] == "燕子从哪里飞来"


def test_trailing_comma_is_tolerated():
    assert lenient_decode('{"a": 1,') == {"a": 1}


def test_balance_suffix_ignores_brackets_inside_strings():
    assert balance_suffix('{"a": "[{"') == "}"


@pytest.mark.parametrize("text", ["", "no json here at all"])
def test_unrepairable_output_raises(text):
    with pytest.raises(MalformedOutputError):
        lenient_decode(text)


def test_extract_final_json_prefers_fenced_block():
    text = 'I decided {"draft": true}.\n```json\n{"intent": "lighten"}\n```'
    assert extract_final_json(text) == {"intent": "lighten"}


def test_extract_final_json_uses_widest_span():
    assert extract_final_json('结果 {"a": {"b": 2}} 完成') == {"a": {"b": 2}}


def test_extract_final_json_wraps_plain_text():
    assert extract_final_json("今天休息一下吧") == {"answer": "今天休息一下吧"}
