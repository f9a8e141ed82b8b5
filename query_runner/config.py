import os
import re
from logging import Logger
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from query_runner.errors import ConfigurationError
from query_runner.merge import normalize_paths, validate_merge_cfg
from query_runner.request_helpers import ARRAY_FORMATS, path_placeholders
from query_runner.small_utils import checked_path

_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
PAGINATION_MODES = {"page", "offset"}

# Safety ceiling for the pagination loop when maxPages is not configured.
MAX_PAGES_CEILING = 1000
DEFAULT_PAGE_SIZE = 20
TOTALS_FIELDS = ("totalRecords", "totalPages", "currentPage")


def expand_env_value(v: Any) -> Any:
    if isinstance(v, str):
        return _ENV_RE.sub(lambda m: os.getenv(m.group(1), m.group(0)), v)
    if isinstance(v, dict):
        return {k: expand_env_value(vv) for k, vv in v.items()}
    if isinstance(v, list):
        return [expand_env_value(x) for x in v]
    return v


class ConfigReader:
    """
    Loads a configuration document (YAML or JSON) from disk.

    JSON documents are read with the YAML loader as well, which accepts them.
    """

    def __init__(self, log: Logger, configs_path: Path) -> None:
        self.configs_path = Path(configs_path)
        self.configs_data: Optional[Dict[str, Any]] = None
        self.log = log

    def load_configurations(self, optional: bool = False) -> "ConfigReader":
        """Load the file into ``configs_data``.

        :param optional: when true a missing file yields an empty document.
        :return: Self for fluent interface.
        :raises ConfigurationError: If the file is missing, unreadable or
            not a mapping.
        """
        if not self.configs_path.exists():
            if optional:
                self.log.info(f"[config] {self.configs_path} not found; using defaults.")
                self.configs_data = {}
                return self
            raise ConfigurationError(f"The file '{self.configs_path}' does not exist.")
        try:
            with open(self.configs_path, "rb") as configs_file:
                data = yaml.safe_load(configs_file)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Issue loading file '{self.configs_path}': {e}"
            ) from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"'{self.configs_path}' must contain a mapping at the top level."
            )
        self.configs_data = expand_env_value(data)
        return self


def request_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Connection-level settings shared by every query of a run."""
    raw = config.get("request_defaults") or {}
    return {
        "timeout": float(raw.get("timeout", 30)),
        "verify": raw.get("verify", True),
        "retries": raw.get("retries"),
        "tenant_header": raw.get("tenant_header") or "X-TENANT-ID",
        "headers": dict(raw.get("headers") or {}),
        "proxies": dict(raw.get("proxies") or {}),
    }


def _int_setting(
    cfg: Dict[str, Any], key: str, default: Optional[int], minimum: int = 1
) -> Optional[int]:
    value = cfg.get(key, default)
    if value is None:
        return None
    try:
        value = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"pagination.{key} must be an integer") from e
    if value < minimum:
        raise ConfigurationError(f"pagination.{key} must be at least {minimum}")
    return value


def _default_totals_path(result_path: str, field: str) -> str:
    if "." in result_path:
        return f"{result_path.rsplit('.', 1)[0]}.{field}"
    return field


def normalize_pagination(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Fill defaults and validate a query's pagination block."""
    if not raw:
        return None
    mode = (raw.get("mode") or "page").lower()
    if mode not in PAGINATION_MODES:
        raise ConfigurationError(f"Unsupported pagination mode: {mode}")

    result_path = checked_path(raw.get("resultPath") or "data", "pagination.resultPath")
    unique_by = raw.get("uniqueBy")
    for path in unique_by if isinstance(unique_by, (list, tuple)) else [unique_by]:
        checked_path(path, "pagination.uniqueBy")
    cfg: Dict[str, Any] = {
        "mode": mode,
        "resultPath": result_path,
        "maxPages": _int_setting(raw, "maxPages", MAX_PAGES_CEILING),
        "maxRecords": _int_setting(raw, "maxRecords", None),
        "uniqueBy": normalize_paths(unique_by),
        "merge": validate_merge_cfg(raw.get("merge")),
        "stopWhenNoNew": bool(raw.get("stopWhenNoNew", True)),
        "noNewThreshold": _int_setting(raw, "noNewThreshold", 1),
        "updateTotals": bool(raw.get("updateTotals", True)),
    }
    if mode == "page":
        cfg["pageParam"] = raw.get("pageParam") or "page"
        cfg["pageSizeParam"] = raw.get("pageSizeParam") or "pageSize"
        cfg["startPage"] = _int_setting(raw, "startPage", 0, minimum=0) or 0
        cfg["pageSize"] = _int_setting(raw, "pageSize", DEFAULT_PAGE_SIZE)
    else:
        cfg["offsetParam"] = raw.get("offsetParam") or "offset"
        cfg["limitParam"] = raw.get("limitParam") or "limit"
        cfg["startOffset"] = _int_setting(raw, "startOffset", 0, minimum=0) or 0
        cfg["limit"] = _int_setting(
            raw, "limit", raw.get("pageSize", DEFAULT_PAGE_SIZE)
        )

    configured = dict(raw.get("totalsPaths") or {})
    for field, path in configured.items():
        checked_path(path, f"pagination.totalsPaths.{field}")
    cfg["totalsPaths"] = {
        f: configured.get(f) or _default_totals_path(result_path, f)
        for f in TOTALS_FIELDS
    }
    cfg["totalsConfigured"] = sorted(f for f in TOTALS_FIELDS if configured.get(f))
    return cfg


def normalize_query(raw: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Query entries must be objects, got {raw!r}")
    name = raw.get("name")
    if not name:
        raise ConfigurationError("Every query needs a 'name'.")
    path = raw.get("path")
    if path is None:
        raise ConfigurationError(f"Query '{name}' needs a 'path'.")

    method = (raw.get("method") or "GET").upper()
    if method not in HTTP_METHODS:
        raise ConfigurationError(f"Query '{name}' has unsupported method {method}")

    path_params = {k: str(v) for k, v in (raw.get("pathParams") or {}).items()}
    missing = sorted(path_placeholders(path) - set(path_params))
    if missing:
        raise ConfigurationError(
            f"Query '{name}' path '{path}' needs pathParams: {', '.join(missing)}"
        )

    array_format = raw.get("arrayFormat") or "repeat"
    if array_format not in ARRAY_FORMATS:
        raise ConfigurationError(
            f"Query '{name}' has unsupported arrayFormat {array_format}"
        )

    try:
        pagination = normalize_pagination(raw.get("pagination"))
    except ConfigurationError as e:
        raise ConfigurationError(f"Query '{name}': {e}") from e

    return {
        "name": name,
        "method": method,
        "path": path,
        "pathParams": path_params,
        "params": dict(raw.get("params") or {}),
        "headers": dict(raw.get("headers") or {}),
        "body": raw.get("body"),
        "arrayFormat": array_format,
        "outputFile": raw.get("outputFile") or f"{name}.json",
        "pagination": pagination,
    }


def load_queries(
    config: Dict[str, Any], only: Optional[List[str]] = None
) -> List[Dict[str, Any]]:
    """Validate the query list, optionally keeping only the named queries."""
    raw_queries = config.get("queries") or []
    if not isinstance(raw_queries, list):
        raise ConfigurationError("'queries' must be a list.")

    queries = [normalize_query(q) for q in raw_queries]
    seen = set()
    for q in queries:
        if q["name"] in seen:
            raise ConfigurationError(f"Duplicate query name: {q['name']}")
        seen.add(q["name"])

    if only:
        unknown = sorted(set(only) - seen)
        if unknown:
            raise ConfigurationError(f"Unknown query name(s): {', '.join(unknown)}")
        queries = [q for q in queries if q["name"] in set(only)]
    return queries
