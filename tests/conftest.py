from logging import Logger

import pytest

from logger.basic_logger import setup_logger
from query_runner.config import normalize_query


# ----- simple logger used across tests -----
class Log:
    def __init__(self):
        self.infos = []
        self.warnings = []
        self.errors = []

    def info(self, msg, *a, **k):
        self.infos.append(msg)

    def warning(self, msg, *a, **k):
        self.warnings.append(msg)

    def error(self, msg, *a, **k):
        self.errors.append(msg)


@pytest.fixture
def capture_log():
    return Log()


@pytest.fixture(scope="session", autouse=True)
def log() -> Logger:
    log = setup_logger()
    return log


# ----- executor double for pagination tests -----
class FakeExecutor:
    """
    Serves canned bodies in order and records the param overrides and the
    stripped static param names of every call. ``pages`` may also be a
    callable taking the overrides dict.
    """

    def __init__(self, pages):
        self._pages = pages if callable(pages) else list(pages)
        self.calls = []
        self.stripped = []
        self.log = Log()

    def execute(
        self, query, base_url, tenant_id, auth, param_overrides=None, strip_params=()
    ):
        self.calls.append(dict(param_overrides or {}))
        self.stripped.append(tuple(strip_params))
        if callable(self._pages):
            return self._pages(param_overrides or {})
        return self._pages.pop(0) if self._pages else {}


@pytest.fixture
def fake_executor():
    return FakeExecutor


@pytest.fixture
def make_query():
    def _make(pagination=None, **overrides):
        raw = {
            "name": "q",
            "method": "GET",
            "path": "/items",
            "outputFile": "q.json",
            "pagination": pagination,
        }
        raw.update(overrides)
        return normalize_query(raw)

    return _make


# ----- shared auth / runtime fixtures -----
TOKEN_URL = "https://idp.example/realms/acme/protocol/openid-connect/token"
BASE_URL = "https://api.example/api-integration"


@pytest.fixture
def cc_auth():
    return {
        "grant_type": "client_credentials",
        "client_id": "svc",
        "client_secret": "s3cret",
        "token_url": TOKEN_URL,
    }


@pytest.fixture
def runtime(cc_auth):
    return {
        "env_name": "dev",
        "env_description": None,
        "env_config": None,
        "tenant_id": "11",
        "tenant_label": "11",
        "tenant_config": None,
        "base_url": BASE_URL,
        "auth": cc_auth,
        "queries": [],
    }
