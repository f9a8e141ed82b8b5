from typing import Any, Dict, Iterable, Optional

import requests
from requests import Response, Session

from query_runner.errors import HttpError, NetworkError
from query_runner.request_helpers import (
    build_url,
    log_request,
    merge_params,
    resolve_path,
    serialize_params,
)
from query_runner.small_utils import whitelist_request_opts
from query_runner.token_manager import TokenManager

DEFAULT_TENANT_HEADER = "X-TENANT-ID"
DEFAULT_TIMEOUT = 30


def decode_body(resp: Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class RequestExecutor:
    """Issues one authenticated request for a query descriptor."""

    def __init__(
        self,
        log,
        session: Session,
        tokens: TokenManager,
        tenant_header: str = DEFAULT_TENANT_HEADER,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.ctx: Dict[str, Any] = {"log": log}
        self.log = log
        self.sess = session
        self.tokens = tokens
        self.tenant_header = tenant_header
        self.timeout = timeout

    def execute(
        self,
        query: Dict[str, Any],
        base_url: str,
        tenant_id: Optional[str],
        auth: Dict[str, Any],
        param_overrides: Optional[Dict[str, Any]] = None,
        strip_params: Iterable[str] = (),
    ) -> Any:
        method = (query.get("method") or "GET").upper()
        url = build_url(base_url, resolve_path(query["path"], query.get("pathParams")))
        params = serialize_params(
            merge_params(query.get("params"), param_overrides, strip=strip_params),
            query.get("arrayFormat") or "repeat",
        )

        resp = None
        for attempt in (1, 2):
            # A 401 on the first attempt forces one token renewal and one retry.
            token = self.tokens.get_token(auth, force_renew=attempt > 1)
            resp = self._send(method, url, params, query, token, tenant_id)
            if resp.status_code == 401 and attempt == 1:
                self.log.warning(
                    f"[request] 401 from {url}; renewing token and retrying once."
                )
                continue
            break

        body = decode_body(resp)
        if not 200 <= resp.status_code < 300:
            raise HttpError(resp.status_code, resp.reason, body, url=url)
        return body

    def _send(
        self,
        method: str,
        url: str,
        params: Dict[str, Any],
        query: Dict[str, Any],
        token: str,
        tenant_id: Optional[str],
    ) -> Response:
        headers = dict(query.get("headers") or {})
        headers["Authorization"] = f"Bearer {token}"
        if tenant_id:
            headers[self.tenant_header] = str(tenant_id)
        opts: Dict[str, Any] = {
            "headers": headers,
            "params": params,
            "timeout": self.timeout,
        }
        if query.get("body") is not None:
            opts["json"] = query["body"]

        log_request(self.ctx, method, url, opts, prefix=f"[{query.get('name')}] ")
        try:
            return self.sess.request(method, url, **whitelist_request_opts(opts))
        except requests.Timeout as e:
            raise NetworkError(
                f"Request to {url} timed out after {self.timeout}s"
            ) from e
        except requests.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e
