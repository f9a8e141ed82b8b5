import copy

import pytest

from query_runner.errors import AggregationError, ConfigurationError
from query_runner.merge import (
    apply_merge,
    dedup_key,
    merge_array_by_key,
    validate_merge_cfg,
)

# ---------------- dedup_key ----------------


def test_dedup_key_without_paths_is_structural():
    assert dedup_key({"id": 1, "v": "a"}, None) == dedup_key({"v": "a", "id": 1}, None)
    assert dedup_key({"id": 1}, None) != dedup_key({"id": 2}, None)


def test_dedup_key_composite_paths_in_order():
    rec = {"id": 7, "meta": {"day": "2024-01-01"}}
    key = dedup_key(rec, ["id", "meta.day"])
    assert key == dedup_key({"id": 7, "meta": {"day": "2024-01-01"}, "x": 1}, ["id", "meta.day"])
    assert key != dedup_key(rec, ["meta.day", "id"])


def test_dedup_key_single_string_path():
    assert dedup_key({"id": 1, "a": 1}, "id") == dedup_key({"id": 1, "a": 2}, "id")


def test_dedup_key_missing_value_falls_back_to_whole_record():
    a = {"name": "x"}
    b = {"name": "y"}
    assert dedup_key(a, "id") != dedup_key(b, "id")
    assert dedup_key(a, "id") == dedup_key({"name": "x"}, None)


def test_dedup_key_whole_record_sentinel():
    assert dedup_key({"id": 1}, ["$"]) == dedup_key({"id": 1}, None)


# ---------------- arrayByKey ----------------

CFG = {"type": "arrayByKey", "arrayPath": "stops", "key": "code"}


def test_merge_appends_only_missing_elements_by_key():
    existing = {"id": 1, "stops": [{"code": "A"}, {"code": "B"}]}
    incoming = {"id": 1, "stops": [{"code": "B", "x": 1}, {"code": "C"}]}
    added = merge_array_by_key(existing, incoming, CFG)
    assert added == 1
    assert existing["stops"] == [{"code": "A"}, {"code": "B"}, {"code": "C"}]


def test_merge_twice_is_same_as_once():
    a = {"id": 1, "stops": [{"code": "A"}]}
    b = {"id": 1, "stops": [{"code": "B"}, {"code": "C"}]}
    once = copy.deepcopy(a)
    merge_array_by_key(once, b, CFG)
    twice = copy.deepcopy(a)
    merge_array_by_key(twice, b, CFG)
    merge_array_by_key(twice, b, CFG)
    assert once == twice


def test_merge_whole_element_match_when_no_key():
    cfg = {"type": "arrayByKey", "arrayPath": "tags"}
    existing = {"tags": ["a", "b"]}
    merge_array_by_key(existing, {"tags": ["b", "c"]}, cfg)
    assert existing["tags"] == ["a", "b", "c"]


def test_merge_creates_missing_target_array():
    existing = {"id": 1}
    apply_merge(existing, {"id": 1, "stops": [{"code": "A"}]}, CFG)
    assert existing["stops"] == [{"code": "A"}]


def test_merge_nested_array_path():
    cfg = {"type": "arrayByKey", "arrayPath": "detail.legs", "key": "n"}
    existing = {"detail": {"legs": [{"n": 1}]}}
    merge_array_by_key(existing, {"detail": {"legs": [{"n": 2}]}}, cfg)
    assert existing["detail"]["legs"] == [{"n": 1}, {"n": 2}]


def test_merge_copies_elements_instead_of_sharing():
    existing = {"stops": []}
    incoming = {"stops": [{"code": "A"}]}
    merge_array_by_key(existing, incoming, CFG)
    incoming["stops"][0]["code"] = "Z"
    assert existing["stops"] == [{"code": "A"}]


def test_merge_target_not_array_is_a_data_error():
    with pytest.raises(AggregationError):
        merge_array_by_key({"stops": "x"}, {"stops": [1]}, CFG)


# ---------------- validation ----------------


def test_validate_merge_cfg_rejects_unknown_type():
    with pytest.raises(ConfigurationError):
        validate_merge_cfg({"type": "deepMerge"})


def test_validate_merge_cfg_requires_array_path():
    with pytest.raises(ConfigurationError):
        validate_merge_cfg({"type": "arrayByKey"})


def test_validate_merge_cfg_empty_is_none():
    assert validate_merge_cfg(None) is None
    assert validate_merge_cfg({}) is None


@pytest.mark.parametrize(
    "cfg",
    [
        {"type": "arrayByKey", "arrayPath": "..."},
        {"type": "arrayByKey", "arrayPath": "stops", "key": "[]"},
        {"type": "arrayByKey", "arrayPath": 5},
    ],
)
def test_validate_merge_cfg_rejects_malformed_paths(cfg):
    with pytest.raises(ConfigurationError):
        validate_merge_cfg(cfg)
