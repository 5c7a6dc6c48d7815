"""Response filter tests."""

import pytest

from conduit.core.filters import apply_response_filters
from conduit.exceptions import ResponseFilterError
from conduit.types import ResponseFilter


def _rule(**kwargs) -> ResponseFilter:
    return ResponseFilter.model_validate(kwargs)


def test_remove_matching_keys_recursively():
    data = {"user": {"name": "a", "apiKey": "x", "nested": [{"apiKey": "y", "ok": 1}]}}
    result = apply_response_filters(data, [_rule(pattern="(?i)apikey", target="keys", action="remove")])
    assert result == {"user": {"name": "a", "nested": [{"ok": 1}]}}
    assert data["user"]["apiKey"] == "x"


def test_mask_matching_keys():
    result = apply_response_filters({"password": "pw", "name": "n"},
                                    [_rule(pattern="^password$", action="mask", maskValue="***")])
    assert result == {"password": "***", "name": "n"}


def test_mask_matching_values_replaces_only_the_match():
    result = apply_response_filters(
        {"note": "card 4111111111111111 on file"},
        [_rule(pattern=r"\d{16}", target="values", action="mask")],
    )
    assert result == {"note": "card [filtered] on file"}


def test_remove_matching_values_from_lists():
    result = apply_response_filters(["keep", "secret-1", "keep too"],
                                    [_rule(pattern="^secret", target="values", action="remove")])
    assert result == ["keep", "keep too"]


def test_both_targets():
    rule = _rule(pattern="internal", target="both", action="remove")
    assert apply_response_filters({"internal_id": 1, "tag": "internal", "x": "public"}, [rule]) == {"x": "public"}


def test_disabled_filters_are_skipped():
    assert apply_response_filters({"secret": 1}, [_rule(pattern="secret", enabled=False)]) == {"secret": 1}


def test_fail_action_names_the_path():
    rule = _rule(id="no-ssn", pattern=r"\d{3}-\d{2}-\d{4}", target="values", action="fail")
    with pytest.raises(ResponseFilterError) as exc_info:
        apply_response_filters({"people": [{"ssn": "123-45-6789"}]}, [rule])
    assert exc_info.value.path == "/people/0/ssn"
    assert exc_info.value.filter_id == "no-ssn"


def test_invalid_pattern_is_reported():
    with pytest.raises(ResponseFilterError, match="invalid pattern"):
        apply_response_filters({"a": 1}, [_rule(name="bad", pattern="(")])


def test_non_string_values_are_left_alone():
    rule = _rule(pattern="1", target="values", action="remove")
    assert apply_response_filters({"n": 1, "b": True, "none": None}, [rule]) == {"n": 1, "b": True, "none": None}
