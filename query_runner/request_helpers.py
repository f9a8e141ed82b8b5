import re
import traceback
from typing import Any, Dict, Iterable, List, Optional, Set
from urllib.parse import quote, urljoin

from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from query_runner.errors import ConfigurationError

_SENSITIVE_HEADERS = {
    "authorization",
    "x-api-key",
    "api-key",
    "proxy-authorization",
}
_SENSITIVE_PARAMS = {
    "access_token",
    "token",
    "apikey",
    "api_key",
    "authorization",
    "signature",
    "client_id",
    "client_secret",
    "refresh_token",
    "secret",
    "password",
    "private_key",
    "x-authorization",
    "auth",
}

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")

ARRAY_FORMATS = {"repeat", "csv"}


def build_url(base_url: str, path: str) -> str:
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def path_placeholders(template: str) -> Set[str]:
    return set(_PLACEHOLDER_RE.findall(template or ""))


def resolve_path(template: str, path_params: Optional[Dict[str, Any]]) -> str:
    """Fill ``{name}`` segments of a path template from ``path_params``."""
    values = path_params or {}
    missing = sorted(path_placeholders(template) - set(values))
    if missing:
        raise ConfigurationError(
            f"Path '{template}' has unresolved placeholders: {', '.join(missing)}"
        )
    return _PLACEHOLDER_RE.sub(
        lambda m: quote(str(values[m.group(1)]), safe=""), template or ""
    )


def merge_params(
    static: Optional[Dict[str, Any]],
    overrides: Optional[Dict[str, Any]] = None,
    strip: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Overlay ``overrides`` on ``static`` params. An override of ``None``
    removes the key; names in ``strip`` are dropped from the static side.
    """
    stripped = set(strip)
    merged = {k: v for k, v in (static or {}).items() if k not in stripped}
    for k, v in (overrides or {}).items():
        if v is None:
            merged.pop(k, None)
        else:
            merged[k] = v
    return merged


def serialize_params(
    params: Dict[str, Any], array_format: str = "repeat"
) -> Dict[str, Any]:
    """
    Prepare params for requests. Lists are sent as repeated keys
    (``a=1&a=2``) by default or joined with commas (``a=1,2``) for ``csv``.
    """
    if array_format not in ARRAY_FORMATS:
        raise ConfigurationError(f"Unsupported arrayFormat: {array_format}")
    out: Dict[str, Any] = {}
    for k, v in params.items():
        if v is None:
            continue
        if isinstance(v, (list, tuple)):
            items: List[str] = [_scalar(x) for x in v if x is not None]
            out[k] = ",".join(items) if array_format == "csv" else items
        else:
            out[k] = _scalar(v)
    return out


def _scalar(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def build_session(retries_cfg: Optional[Dict[str, Any]]) -> Session:
    s = Session()
    if not retries_cfg:
        return s
    total = int(retries_cfg.get("total", 3))
    connect = int(retries_cfg.get("connect", total))
    read = int(retries_cfg.get("read", total))
    backoff_factor = float(retries_cfg.get("backoff_factor", 0.5))
    status_forcelist = tuple(
        retries_cfg.get("status_forcelist", [429, 502, 503, 504])
    )
    allowed = retries_cfg.get("allowed_methods", ["GET"])
    r = Retry(
        total=total,
        connect=connect,
        read=read,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=frozenset(m.upper() for m in allowed),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=r)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    return s


def apply_session_defaults(sess: Session, opts: Dict[str, Any]) -> None:
    if opts.get("headers"):
        sess.headers.update(opts["headers"])
    if opts.get("proxies"):
        sess.proxies.update(opts["proxies"])
    if "verify" in opts:
        sess.verify = opts["verify"]


def redact(values: Optional[Dict[str, Any]], sensitive: Set[str]) -> Dict[str, Any]:
    safe = dict(values or {})
    for k in list(safe):
        if k.lower() in sensitive:
            safe[k] = "***REDACTED***"
    return safe


def log_request(
    ctx: Dict[str, Any],
    method: str,
    url: str,
    opts: Dict[str, Any],
    prefix: str = "",
):
    log = ctx["log"]
    safe_headers = redact(opts.get("headers"), _SENSITIVE_HEADERS)
    safe_params = redact(opts.get("params"), _SENSITIVE_PARAMS)
    log.info(
        f"{prefix}{method.upper()} {url} params={safe_params} headers={safe_headers}"
    )


def log_exception(
    ctx: Dict[str, Any], url: str, e: Exception, prefix: str = ""
):
    ctx["log"].error(
        f"{prefix}Error retrieving data from {url}: {e}\nStack Trace: {traceback.format_exc()}"
    )
