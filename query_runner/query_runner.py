from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from requests import Session

from query_runner.config import request_defaults
from query_runner.errors import HttpError, QueryError
from query_runner.executor import RequestExecutor
from query_runner.output import write_error, write_output
from query_runner.pagination import fetch_all
from query_runner.request_helpers import (
    apply_session_defaults,
    build_session,
    build_url,
    log_exception,
)
from query_runner.token_manager import TokenManager

SUMMARY_COLUMNS = [
    "query",
    "ok",
    "status",
    "pages",
    "items",
    "duplicates",
    "duration_s",
    "output_path",
    "error",
]


class QueryRunner:
    """Runs a resolved runtime's queries in order and writes their results."""

    def __init__(
        self,
        runtime: Dict[str, Any],
        log,
        output_dir: Path = Path("output"),
        defaults: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
        tokens: Optional[TokenManager] = None,
    ):
        self.runtime = runtime
        self.log = log
        self.output_dir = Path(output_dir)
        self.defaults = defaults or request_defaults({})
        self.ctx: Dict[str, Any] = {"log": log}

        self.sess = session or build_session(self.defaults.get("retries"))
        apply_session_defaults(self.sess, self.defaults)
        self.tokens = tokens or TokenManager(
            log,
            session=self.sess,
            timeout=self.defaults["timeout"],
            verify=self.defaults.get("verify", True),
        )
        self.executor = RequestExecutor(
            log,
            self.sess,
            self.tokens,
            tenant_header=self.defaults["tenant_header"],
            timeout=self.defaults["timeout"],
        )

    # ------------ run ------------
    def run(self, queries: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """
        Execute every query sequentially.

        Authentication problems raise and stop the run; failures of a single
        query are recorded in its result and the run moves on.
        """
        queries = self.runtime["queries"] if queries is None else queries
        self.log.info(
            f"[run] start env={self.runtime['env_name']} tenant={self.runtime['tenant_id']} "
            f"base_url={self.runtime['base_url']} queries={len(queries)}"
        )
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # Fail fast: without a token no query can succeed.
        self.tokens.get_token(self.runtime["auth"])

        results = [self.run_query(q) for q in queries]
        failed = sum(1 for r in results if not r["ok"])
        self.log.info(
            f"[run] done queries={len(results)} ok={len(results) - failed} failed={failed}"
        )
        return results

    def fetch(self, query: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        rt = self.runtime
        if query.get("pagination"):
            res = fetch_all(
                self.executor, query, rt["base_url"], rt["tenant_id"], rt["auth"], log=self.log
            )
            return res["payload"], res["stats"]
        body = self.executor.execute(query, rt["base_url"], rt["tenant_id"], rt["auth"])
        items = len(body) if isinstance(body, list) else None
        return body, {"pages": 1, "items": items, "duplicates": 0}

    def run_query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        started = pd.Timestamp.now(tz="UTC")
        name = query["name"]
        self.log.info(f"[run_query] Executing query: {name}")
        result: Dict[str, Any] = {
            "query": name,
            "ok": False,
            "status": None,
            "payload": None,
            "pages": None,
            "items": None,
            "duplicates": None,
            "output_path": None,
            "error_path": None,
            "error": None,
            "paginated": bool(query.get("pagination")),
        }

        try:
            payload, stats = self.fetch(query)
        except QueryError as e:
            url = build_url(self.runtime["base_url"], query["path"])
            log_exception(self.ctx, url, e, prefix=f"[{name}] ")
            if isinstance(e, HttpError):
                result["status"] = e.status
            result["error"] = str(e)
            err_meta = write_error(self.ctx, e.body, self.output_dir, query["outputFile"])
            if err_meta:
                result["error_path"] = err_meta["path"]
            return self._finish(result, started)

        out_meta = write_output(self.ctx, payload, self.output_dir, query["outputFile"])
        result.update(
            ok=True,
            payload=payload,
            pages=stats.get("pages"),
            items=stats.get("items"),
            duplicates=stats.get("duplicates"),
            output_path=out_meta["path"],
        )
        return self._finish(result, started)

    def _finish(self, result: Dict[str, Any], started: pd.Timestamp) -> Dict[str, Any]:
        ended = pd.Timestamp.now(tz="UTC")
        result["started_at"] = started.isoformat()
        result["ended_at"] = ended.isoformat()
        result["duration_s"] = float((ended - started).total_seconds())
        return result


def summarize(results: List[Dict[str, Any]]) -> pd.DataFrame:
    """One row per query outcome, for logging at the end of a run."""
    return pd.DataFrame(
        [{c: r.get(c) for c in SUMMARY_COLUMNS} for r in results],
        columns=SUMMARY_COLUMNS,
    )
