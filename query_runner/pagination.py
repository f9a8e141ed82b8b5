import copy
import math
from typing import Any, Dict, List, Optional

from query_runner.errors import AggregationError
from query_runner.merge import apply_merge, dedup_key
from query_runner.small_utils import (
    get_path,
    has_path,
    is_absent,
    is_whole,
    lookup,
    set_path,
)


class Aggregate:
    """
    The consolidated document built while folding pages together.

    ``items`` is the live list inside ``payload`` at the result path. It is
    emptied when the first page arrives and rebuilt from deduplicated
    records.
    """

    def __init__(
        self,
        result_path: str,
        unique_by: Optional[List[str]] = None,
        merge_cfg: Optional[Dict[str, Any]] = None,
    ):
        self.result_path = result_path
        self.unique_by = unique_by
        self.merge_cfg = merge_cfg
        self.payload: Any = None
        self.items: Optional[List[Any]] = None
        self.seen: Dict[str, Any] = {}
        self.duplicates = 0
        self.merged = 0
        self.pages = 0

    @property
    def started(self) -> bool:
        return self.items is not None

    @property
    def total_items(self) -> int:
        return len(self.items or [])

    def start(self, first_page: Any) -> None:
        if is_whole(self.result_path):
            self.payload = []
            self.items = self.payload
            return
        self.payload = copy.deepcopy(first_page)
        if not isinstance(self.payload, dict):
            self.payload = {}
        self.items = []
        set_path(self.payload, self.result_path, self.items)
        self.seen = {}

    def synthesize(self, first_response: Any) -> None:
        """Empty aggregate for queries that never produced a record."""
        self.start(first_response if isinstance(first_response, dict) else {})

    def fold(self, records: List[Any]) -> int:
        """Add a page of records; returns how many were new."""
        new = 0
        for record in records:
            key = dedup_key(record, self.unique_by)
            if key not in self.seen:
                stored = copy.deepcopy(record)
                self.seen[key] = stored
                self.items.append(stored)
                new += 1
                continue
            self.duplicates += 1
            if self.merge_cfg:
                self.merged += apply_merge(self.seen[key], record, self.merge_cfg)
        return new

    def truncate(self, limit: int) -> None:
        del self.items[limit:]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def page_records(body: Any, result_path: str, page_no: int) -> List[Any]:
    """The array of records in one response; missing means an empty page."""
    value = lookup(body, result_path)
    if is_absent(value):
        return []
    if not isinstance(value, list):
        raise AggregationError(
            f"resultPath '{result_path}' on page {page_no} is "
            f"{type(value).__name__}, expected an array"
        )
    return value


def update_totals(agg: Aggregate, cfg: Dict[str, Any]) -> None:
    """Rewrite pagination metadata so it describes the aggregate."""
    if not isinstance(agg.payload, dict):
        return
    per_page = cfg["pageSize"] if cfg["mode"] == "page" else cfg["limit"]
    start = cfg["startPage"] if cfg["mode"] == "page" else cfg["startOffset"]
    size = agg.total_items
    values = {
        "totalRecords": size,
        "totalPages": math.ceil(size / per_page),
        "currentPage": start,
    }
    configured = set(cfg.get("totalsConfigured") or [])
    for field, path in cfg["totalsPaths"].items():
        if field in configured or has_path(agg.payload, path):
            set_path(agg.payload, path, values[field])


def fetch_all(
    executor,
    query: Dict[str, Any],
    base_url: str,
    tenant_id: Optional[str],
    auth: Dict[str, Any],
    log=None,
) -> Dict[str, Any]:
    """
    Request every page of a paginated query and fold them into one payload.

    Pages are requested strictly in order; each continuation decision uses
    the page just folded. Supported modes are ``page`` (page number + page
    size) and ``offset`` (offset + limit).
    """
    log = log or executor.log
    cfg = query["pagination"]
    page_mode = cfg["mode"] == "page"
    if page_mode:
        index_param, size_param = cfg["pageParam"], cfg["pageSizeParam"]
        cursor, size = cfg["startPage"], cfg["pageSize"]
    else:
        index_param, size_param = cfg["offsetParam"], cfg["limitParam"]
        cursor, size = cfg["startOffset"], cfg["limit"]

    totals = cfg["totalsPaths"]
    agg = Aggregate(cfg["resultPath"], cfg.get("uniqueBy"), cfg.get("merge"))
    first_response: Any = None
    no_new_streak = 0
    stop_reason = "maxPages"
    name = query.get("name")

    for _ in range(cfg["maxPages"]):
        body = executor.execute(
            query,
            base_url,
            tenant_id,
            auth,
            {index_param: cursor, size_param: size},
            strip_params=(index_param, size_param),
        )
        agg.pages += 1
        if agg.pages == 1:
            first_response = body

        records = page_records(body, cfg["resultPath"], agg.pages)
        fetched = len(records)
        if fetched == 0:
            stop_reason = "empty page"
            break

        if not agg.started:
            agg.start(body)
        new = agg.fold(records)
        log.info(
            f"[paginate] {name} {index_param}={cursor} fetched={fetched} "
            f"new={new} total={agg.total_items} duplicates={agg.duplicates}"
        )

        if cfg.get("maxRecords") and agg.total_items >= cfg["maxRecords"]:
            agg.truncate(cfg["maxRecords"])
            stop_reason = "maxRecords"
            break

        no_new_streak = 0 if new else no_new_streak + 1
        if cfg["stopWhenNoNew"] and no_new_streak >= cfg["noNewThreshold"]:
            stop_reason = "no new records"
            break

        total_pages = _number(get_path(body, totals["totalPages"])) if page_mode else None
        if total_pages is not None:
            reported = _number(get_path(body, totals["currentPage"]))
            current = reported if reported is not None else cursor
            if current + 1 >= total_pages:
                stop_reason = "last page reported"
                break
        elif fetched < size:
            stop_reason = "short page"
            break

        cursor += 1 if page_mode else size

    if not agg.started:
        agg.synthesize(first_response)
    if cfg["updateTotals"]:
        update_totals(agg, cfg)

    log.info(
        f"[paginate] {name} done pages={agg.pages} items={agg.total_items} "
        f"duplicates={agg.duplicates} stop={stop_reason}"
    )
    return {
        "payload": agg.payload,
        "stats": {
            "pages": agg.pages,
            "items": agg.total_items,
            "duplicates": agg.duplicates,
        },
    }
