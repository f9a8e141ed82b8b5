import pytest

from query_runner import config as cfg
from query_runner.errors import ConfigurationError

# ---------- expand_env_value ----------


def test_expand_env_value_str_replaces_and_keeps_unknown(monkeypatch):
    monkeypatch.setenv("KNOWN", "ok")
    monkeypatch.delenv("UNKNOWN", raising=False)
    out = cfg.expand_env_value("x ${KNOWN} y ${UNKNOWN}")
    assert out == "x ok y ${UNKNOWN}"


def test_expand_env_value_dict_and_list_recursive(monkeypatch):
    monkeypatch.setenv("A", "1")
    monkeypatch.delenv("NOPE", raising=False)
    obj = {
        "k": "${A}",
        "inner": {"v": "${A}", "raw": "${NOPE}"},
        "arr": ["${A}", {"x": "${A}"}],
        "n": 3,
    }
    out = cfg.expand_env_value(obj)
    assert out["k"] == "1"
    assert out["inner"]["v"] == "1" and out["inner"]["raw"] == "${NOPE}"
    assert out["arr"][0] == "1" and out["arr"][1]["x"] == "1"
    assert out["n"] == 3


# ---------- ConfigReader ----------


def test_config_reader_loads_json_and_expands(tmp_path, monkeypatch, capture_log):
    monkeypatch.setenv("BASE", "https://api")
    p = tmp_path / "config.json"
    p.write_text('{"globals": {"baseUrl": "${BASE}"}, "queries": []}', encoding="utf-8")

    data = cfg.ConfigReader(capture_log, p).load_configurations().configs_data

    assert data == {"globals": {"baseUrl": "https://api"}, "queries": []}


def test_config_reader_loads_yaml(tmp_path, capture_log):
    p = tmp_path / "config.yml"
    p.write_text("queries:\n  - name: a\n    path: /a\n", encoding="utf-8")
    data = cfg.ConfigReader(capture_log, p).load_configurations().configs_data
    assert data["queries"][0]["name"] == "a"


def test_config_reader_missing_file(tmp_path, capture_log):
    reader = cfg.ConfigReader(capture_log, tmp_path / "nope.json")
    with pytest.raises(ConfigurationError):
        reader.load_configurations()
    assert reader.load_configurations(optional=True).configs_data == {}


def test_config_reader_rejects_non_mapping(tmp_path, capture_log):
    p = tmp_path / "list.json"
    p.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        cfg.ConfigReader(capture_log, p).load_configurations()


def test_config_reader_bad_syntax(tmp_path, capture_log):
    p = tmp_path / "bad.yml"
    p.write_text("a: [1, 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        cfg.ConfigReader(capture_log, p).load_configurations()


def test_config_reader_empty_file_is_empty_mapping(tmp_path, capture_log):
    p = tmp_path / "empty.yml"
    p.write_text("", encoding="utf-8")
    assert cfg.ConfigReader(capture_log, p).load_configurations().configs_data == {}


# ---------- request_defaults ----------


def test_request_defaults_fill_in():
    d = cfg.request_defaults({})
    assert d["timeout"] == 30
    assert d["verify"] is True
    assert d["retries"] is None
    assert d["tenant_header"] == "X-TENANT-ID"


def test_request_defaults_read_config():
    d = cfg.request_defaults(
        {
            "request_defaults": {
                "timeout": 5,
                "verify": False,
                "retries": {"total": 2},
                "tenant_header": "X-Org",
                "headers": {"Accept": "application/json"},
            }
        }
    )
    assert d["timeout"] == 5.0
    assert d["verify"] is False
    assert d["retries"] == {"total": 2}
    assert d["tenant_header"] == "X-Org"
    assert d["headers"] == {"Accept": "application/json"}


# ---------- normalize_pagination ----------


def test_normalize_pagination_page_defaults():
    p = cfg.normalize_pagination({"resultPath": "data.items"})
    assert p["mode"] == "page"
    assert (p["pageParam"], p["pageSizeParam"]) == ("page", "pageSize")
    assert p["startPage"] == 0 and p["pageSize"] == cfg.DEFAULT_PAGE_SIZE
    assert p["maxPages"] == cfg.MAX_PAGES_CEILING
    assert p["maxRecords"] is None
    assert p["stopWhenNoNew"] is True and p["noNewThreshold"] == 1
    assert p["totalsPaths"] == {
        "totalRecords": "data.totalRecords",
        "totalPages": "data.totalPages",
        "currentPage": "data.currentPage",
    }
    assert p["totalsConfigured"] == []


def test_normalize_pagination_offset_defaults_limit_from_page_size():
    p = cfg.normalize_pagination({"mode": "offset", "pageSize": 50})
    assert (p["offsetParam"], p["limitParam"]) == ("offset", "limit")
    assert p["limit"] == 50 and p["startOffset"] == 0
    assert p["resultPath"] == "data"
    assert p["totalsPaths"]["totalPages"] == "totalPages"


def test_normalize_pagination_unique_by_and_merge():
    p = cfg.normalize_pagination(
        {
            "uniqueBy": "id",
            "merge": {"type": "arrayByKey", "arrayPath": "stops", "key": "code"},
            "totalsPaths": {"totalRecords": "meta.count"},
        }
    )
    assert p["uniqueBy"] == ["id"]
    assert p["merge"]["arrayPath"] == "stops"
    assert p["totalsPaths"]["totalRecords"] == "meta.count"
    assert p["totalsConfigured"] == ["totalRecords"]


@pytest.mark.parametrize(
    "raw",
    [
        {"mode": "cursor"},
        {"pageSize": 0},
        {"maxPages": "many"},
        {"merge": {"type": "deep"}},
    ],
)
def test_normalize_pagination_rejects_invalid(raw):
    with pytest.raises(ConfigurationError):
        cfg.normalize_pagination(raw)


def test_normalize_pagination_absent_is_none():
    assert cfg.normalize_pagination(None) is None
    assert cfg.normalize_pagination({}) is None


# ---------- normalize_query ----------


def test_normalize_query_defaults():
    q = cfg.normalize_query({"name": "a", "path": "/a"})
    assert q["method"] == "GET"
    assert q["outputFile"] == "a.json"
    assert q["arrayFormat"] == "repeat"
    assert q["params"] == {} and q["headers"] == {}
    assert q["pagination"] is None


def test_normalize_query_stringifies_path_params():
    q = cfg.normalize_query(
        {"name": "a", "path": "/v/{id}", "pathParams": {"id": 7}, "method": "post"}
    )
    assert q["pathParams"] == {"id": "7"}
    assert q["method"] == "POST"


@pytest.mark.parametrize(
    "raw,needle",
    [
        ({"path": "/a"}, "name"),
        ({"name": "a"}, "path"),
        ({"name": "a", "path": "/v/{id}"}, "id"),
        ({"name": "a", "path": "/a", "method": "FETCH"}, "method"),
        ({"name": "a", "path": "/a", "arrayFormat": "brackets"}, "arrayFormat"),
        ({"name": "a", "path": "/a", "pagination": {"mode": "x"}}, "Query 'a'"),
    ],
)
def test_normalize_query_errors(raw, needle):
    with pytest.raises(ConfigurationError) as err:
        cfg.normalize_query(raw)
    assert needle in str(err.value)


# ---------- load_queries ----------


def _queries():
    return {
        "queries": [
            {"name": "a", "path": "/a"},
            {"name": "b", "path": "/b"},
        ]
    }


def test_load_queries_all_and_subset():
    assert [q["name"] for q in cfg.load_queries(_queries())] == ["a", "b"]
    assert [q["name"] for q in cfg.load_queries(_queries(), only=["b"])] == ["b"]


def test_load_queries_unknown_name():
    with pytest.raises(ConfigurationError) as err:
        cfg.load_queries(_queries(), only=["c"])
    assert "c" in str(err.value)


def test_load_queries_duplicate_names():
    doc = {"queries": [{"name": "a", "path": "/a"}, {"name": "a", "path": "/b"}]}
    with pytest.raises(ConfigurationError):
        cfg.load_queries(doc)


def test_load_queries_must_be_list():
    with pytest.raises(ConfigurationError):
        cfg.load_queries({"queries": {"a": {}}})


# ---------- path validation ----------


@pytest.mark.parametrize(
    "pagination,field",
    [
        ({"resultPath": "..."}, "resultPath"),
        ({"uniqueBy": ["id", "[]"]}, "uniqueBy"),
        ({"uniqueBy": 7}, "uniqueBy"),
        ({"totalsPaths": {"totalPages": "..."}}, "totalsPaths.totalPages"),
        ({"merge": {"type": "arrayByKey", "arrayPath": "..."}}, "merge.arrayPath"),
    ],
)
def test_malformed_paths_rejected_at_load(pagination, field):
    with pytest.raises(ConfigurationError) as err:
        cfg.normalize_query({"name": "a", "path": "/a", "pagination": pagination})
    assert field in str(err.value)


@pytest.mark.parametrize(
    "raw",
    [
        {"startPage": "first"},
        {"startPage": -1},
        {"mode": "offset", "startOffset": "x"},
        {"mode": "offset", "startOffset": -5},
    ],
)
def test_start_values_must_be_non_negative_integers(raw):
    with pytest.raises(ConfigurationError):
        cfg.normalize_pagination(raw)


def test_start_values_accept_numeric_strings():
    assert cfg.normalize_pagination({"startPage": "1"})["startPage"] == 1
    assert cfg.normalize_pagination({"mode": "offset", "startOffset": "0"})["startOffset"] == 0
