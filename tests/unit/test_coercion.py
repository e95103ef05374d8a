"""Unit tests for coercion of loosely-typed completion output."""

from topic_research.core.coercion import coerce_string_list, coerce_text


def test_named_text_uses_first_present_field() -> None:
    """Mappings resolve through text, content, title, description in that order."""
    assert coerce_text({"title": "T", "content": "C"}) == "C"
    assert coerce_text({"description": "D"}) == "D"
    assert coerce_text({"text": "  ", "title": "T"}) == "T"


def test_other_mappings_are_json_encoded() -> None:
    """A mapping without any text field is serialised rather than dropped."""
    assert coerce_text({"score": 3}) == '{"score": 3}'


def test_scalars_become_strings() -> None:
    """Numbers and booleans are stringified; None becomes empty."""
    assert coerce_text(3) == "3"
    assert coerce_text(True) == "True"
    assert coerce_text(None) == ""


def test_string_list_drops_blank_entries() -> None:
    """Blank strings and blank named-text items are removed."""
    value = ["one", "", {"text": "two"}, "   ", 3]
    assert coerce_string_list(value) == ["one", "two", "3"]


def test_non_list_input_returns_empty_list() -> None:
    """Anything that is not a list or tuple coerces to []."""
    assert coerce_string_list("a string") == []
    assert coerce_string_list(None) == []
    assert coerce_string_list({"text": "x"}) == []
