import copy
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from query_runner.errors import AggregationError, ConfigurationError
from query_runner.small_utils import (
    canonical_json,
    checked_path,
    ensure_path,
    get_path,
    is_absent,
    is_whole,
    lookup,
    stringify,
)

KEY_SEPARATOR = "\x1f"

PathSpec = Optional[Union[str, Sequence[str]]]


def normalize_paths(paths: PathSpec) -> Optional[List[str]]:
    if paths is None:
        return None
    if isinstance(paths, str):
        return [paths]
    out = [p for p in paths if isinstance(p, str)]
    return out or None


def dedup_key(record: Any, paths: PathSpec) -> str:
    """
    Identity of a record for duplicate detection.

    With no paths the record's canonical JSON is its key. Otherwise the
    values at each path are stringified and joined in order; the whole
    record path (``$``) contributes the canonical JSON. If any referenced
    value is absent the key falls back to the canonical JSON of the record.
    """
    wanted = normalize_paths(paths)
    if not wanted:
        return canonical_json(record)
    parts: List[str] = []
    for path in wanted:
        if is_whole(path):
            parts.append(canonical_json(record))
            continue
        value = lookup(record, path)
        if is_absent(value):
            return canonical_json(record)
        parts.append(stringify(value))
    return KEY_SEPARATOR.join(parts)


def merge_array_by_key(
    existing: Dict[str, Any], incoming: Dict[str, Any], cfg: Dict[str, Any]
) -> int:
    """
    Append the elements of ``incoming[arrayPath]`` that ``existing`` does not
    already hold at the same path. Elements are matched by ``key`` (a path
    inside each element) or by their serialized form. Returns the number of
    appended elements.
    """
    array_path = cfg.get("arrayPath")
    key = cfg.get("key")
    extra = get_path(incoming, array_path)
    if not isinstance(extra, list) or not extra:
        return 0

    target = ensure_path(existing, array_path, list)
    if not isinstance(target, list):
        raise AggregationError(
            f"merge.arrayPath '{array_path}' holds {type(target).__name__} "
            "in a stored record, expected an array"
        )

    key_paths = None if is_whole(key) else key
    present = {dedup_key(item, key_paths) for item in target}
    added = 0
    for item in extra:
        k = dedup_key(item, key_paths)
        if k in present:
            continue
        target.append(copy.deepcopy(item))
        present.add(k)
        added += 1
    return added


MERGE_STRATEGIES: Dict[str, Callable[[Any, Any, Dict[str, Any]], int]] = {
    "arrayByKey": merge_array_by_key,
}


def validate_merge_cfg(cfg: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not cfg:
        return None
    kind = cfg.get("type")
    if kind not in MERGE_STRATEGIES:
        raise ConfigurationError(
            f"Unsupported merge.type: {kind!r} "
            f"(known: {', '.join(sorted(MERGE_STRATEGIES))})"
        )
    array_path = checked_path(cfg.get("arrayPath"), "merge.arrayPath")
    checked_path(cfg.get("key"), "merge.key")
    if kind == "arrayByKey" and is_whole(array_path):
        raise ConfigurationError("merge.arrayPath is required for arrayByKey")
    return dict(cfg)


def apply_merge(existing: Any, incoming: Any, cfg: Dict[str, Any]) -> int:
    strategy = MERGE_STRATEGIES[cfg["type"]]
    return strategy(existing, incoming, cfg)
