import json
import re
from typing import Any, Callable, Dict, List, Optional, Union

from query_runner.errors import ConfigurationError

ALLOWED_REQUEST_KW = {
    "headers",
    "params",
    "json",
    "timeout",
    "verify",
    "proxies",
    "allow_redirects",
}

# Path that addresses the value itself (the whole record / whole element).
WHOLE = "$"

_MISSING = object()
_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

Segment = Union[str, int]


def whitelist_request_opts(opts: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (opts or {}).items() if k in ALLOWED_REQUEST_KW}


def is_whole(path: Optional[str]) -> bool:
    return path is None or path.strip() in ("", WHOLE)


def parse_path(path: Optional[str]) -> List[Segment]:
    """
    Split a dotted path into segments.

    ``data.items``  -> ["data", "items"]
    ``rows[0].id``  -> ["rows", 0, "id"]
    ``$`` / ``""``  -> []  (the value itself)
    """
    if is_whole(path):
        return []
    text = path.strip()
    if text.startswith(WHOLE + "."):
        text = text[2:]
    segments: List[Segment] = []
    for name, index in _SEGMENT_RE.findall(text):
        segments.append(int(index) if index else name)
    if not segments:
        raise ValueError(f"Invalid path expression: {path!r}")
    return segments


def checked_path(path: Any, field: str) -> Any:
    """Validate a configured path up front; bad paths are a ConfigurationError."""
    if path is not None and not isinstance(path, str):
        raise ConfigurationError(f"{field} must be a string path, got {path!r}")
    try:
        parse_path(path)
    except ValueError as e:
        raise ConfigurationError(f"{field} is not a valid path: {path!r}") from e
    return path


def _step(cur: Any, seg: Segment) -> Any:
    if isinstance(cur, dict):
        return cur.get(seg if isinstance(seg, str) else str(seg), _MISSING)
    if isinstance(cur, list):
        if isinstance(seg, str):
            if not seg.isdigit():
                return _MISSING
            seg = int(seg)
        return cur[seg] if 0 <= seg < len(cur) else _MISSING
    return _MISSING


def lookup(obj: Any, path: Optional[str]) -> Any:
    """Like get_path but returns the module sentinel for absent values."""
    cur = obj
    for seg in parse_path(path):
        cur = _step(cur, seg)
        if cur is _MISSING:
            return _MISSING
    return cur


def get_path(obj: Any, path: Optional[str], default: Any = None) -> Any:
    value = lookup(obj, path)
    return default if value is _MISSING else value


def has_path(obj: Any, path: Optional[str]) -> bool:
    return lookup(obj, path) is not _MISSING


def is_absent(value: Any) -> bool:
    return value is _MISSING or value is None


def _container_for(seg: Segment) -> Any:
    return [] if isinstance(seg, int) else {}


def _assign(cur: Any, seg: Segment, value: Any) -> None:
    if isinstance(cur, dict):
        cur[seg if isinstance(seg, str) else str(seg)] = value
        return
    if isinstance(cur, list):
        idx = int(seg)
        if idx == len(cur):
            cur.append(value)
        else:
            cur[idx] = value
        return
    raise TypeError(f"Cannot set {seg!r} on {type(cur).__name__}")


def set_path(obj: Any, path: Optional[str], value: Any) -> Any:
    """
    Write ``value`` at ``path`` creating intermediate containers as needed.
    Returns the (possibly replaced) root, which is ``value`` for the
    whole-value path.
    """
    segments = parse_path(path)
    if not segments:
        return value
    cur = obj
    for seg, nxt in zip(segments, segments[1:]):
        child = _step(cur, seg)
        if not isinstance(child, (dict, list)):
            child = _container_for(nxt)
            _assign(cur, seg, child)
        cur = child
    _assign(cur, segments[-1], value)
    return obj


def ensure_path(
    obj: Any, path: Optional[str], factory: Callable[[], Any] = list
) -> Any:
    """Return the value at ``path``, creating it with ``factory`` if absent."""
    current = lookup(obj, path)
    if current is not _MISSING and current is not None:
        return current
    created = factory()
    set_path(obj, path, created)
    return created


def canonical_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return canonical_json(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
