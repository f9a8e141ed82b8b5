"""
Runtime resolution: pick the environment, tenant and auth grant for a run.

Selection precedence for both environment and tenant is: explicit CLI value,
then environment variable, then configured default / single option, then an
interactive prompt. Anything still ambiguous is a ConfigurationError.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import pandas as pd

from query_runner.config import load_queries
from query_runner.errors import ConfigurationError

ENV_ENV_VAR = "API_TEST_ENV"
TENANT_ENV_VAR = "API_TEST_TENANT"

DEFAULT_CONFIG_FILE = Path("config.json")
DEFAULT_TARGETS_FILE = Path("config") / "targets.json"
DEFAULT_RUNTIME_CACHE_FILE = Path("config") / "runtime.cache.json"

Option = Tuple[str, str]
Prompt = Callable[[str, List[Option], Optional[str]], Optional[str]]


def is_interactive() -> bool:
    return bool(sys.stdin.isatty() and sys.stdout.isatty())


def match_key(value: Optional[str], collection: Mapping[str, Any]) -> Optional[str]:
    if not value:
        return None
    if value in collection:
        return value
    lower = value.lower()
    for key in collection:
        if key.lower() == lower:
            return key
    return None


def environment_options(environments: Dict[str, Any]) -> List[Option]:
    out = []
    for key, value in environments.items():
        desc = (value or {}).get("description")
        out.append((key, f"{key} - {desc}" if desc else key))
    return out


def tenant_options(tenants: Dict[str, Any]) -> List[Option]:
    out = []
    for key, value in tenants.items():
        label = (value or {}).get("label")
        out.append((key, f"{key} - {label}" if label else key))
    return out


def prompt_choice(
    message: str,
    options: List[Option],
    default_key: Optional[str] = None,
    input_fn: Callable[[str], str] = input,
) -> Optional[str]:
    """Numbered terminal menu; accepts an index or a key (case-insensitive)."""
    if not options:
        return None
    print("")
    print(message)
    for i, (_, label) in enumerate(options, start=1):
        print(f"  [{i}] {label}")
    keys = [k for k, _ in options]
    default_idx = keys.index(default_key) if default_key in keys else -1
    suffix = f" ({default_idx + 1})" if default_idx >= 0 else ""

    while True:
        try:
            answer = input_fn(f"Select an option{suffix}: ").strip()
        except EOFError as e:
            raise ConfigurationError("No selection made.") from e
        if not answer and default_idx >= 0:
            return keys[default_idx]
        if answer.isdigit() and 1 <= int(answer) <= len(keys):
            return keys[int(answer) - 1]
        matched = match_key(answer, dict.fromkeys(keys))
        if matched:
            return matched
        print("Invalid option, try again.")


def url_origin(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def url_pathname(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return urlparse(url).path or None


def build_token_url(identity_base_url: Optional[str], realm: Optional[str]) -> Optional[str]:
    if not identity_base_url or not realm:
        return None
    return f"{identity_base_url.rstrip('/')}/realms/{realm}/protocol/openid-connect/token"


def resolve_tenant_secret(
    tenant_conf: Optional[Dict[str, Any]], env_vars: Mapping[str, str]
) -> Optional[str]:
    """Named environment variables win over an inline client_secret."""
    if not tenant_conf:
        return None
    candidates = []
    if tenant_conf.get("client_secret_env"):
        candidates.append(tenant_conf["client_secret_env"])
    candidates.extend(tenant_conf.get("client_secret_envs") or [])
    for key in candidates:
        if key and env_vars.get(key):
            return env_vars[key]
    return tenant_conf.get("client_secret") or None


def _client_credentials_auth(
    env_name: str,
    env_conf: Dict[str, Any],
    tenant_id: Optional[str],
    tenant_conf: Optional[Dict[str, Any]],
    env_vars: Mapping[str, str],
) -> Dict[str, Any]:
    if not tenant_conf:
        raise ConfigurationError(
            f"Tenant '{tenant_id}' is not configured for environment {env_name}."
        )
    identity_base_url = (
        tenant_conf.get("identity_base_url")
        or env_conf.get("identity_base_url")
        or url_origin(tenant_conf.get("token_url"))
        or url_origin(env_conf.get("token_url"))
    )
    realm = tenant_conf.get("realm") or env_conf.get("realm")
    token_url = (
        tenant_conf.get("token_url")
        or env_conf.get("token_url")
        or build_token_url(identity_base_url, realm)
    )
    if not token_url:
        raise ConfigurationError(
            f"Could not determine token_url for tenant {tenant_id} in {env_name}."
        )

    secret = resolve_tenant_secret(tenant_conf, env_vars)
    if not secret:
        hints = []
        if tenant_conf.get("client_secret_env"):
            hints.append(f"environment variable {tenant_conf['client_secret_env']}")
        hints.append("client_secret in the targets file")
        raise ConfigurationError(
            f"No client_secret found for tenant {tenant_id}. Set {' or '.join(hints)}."
        )

    auth = {
        "grant_type": "client_credentials",
        "client_id": tenant_conf.get("client_id"),
        "client_secret": secret,
        "token_url": token_url,
        "realm": realm,
        "identity_base_url": identity_base_url,
    }
    scope = tenant_conf.get("scope") or env_conf.get("scope")
    if scope:
        auth["scope"] = scope
    return auth


def _password_auth(
    env_conf: Dict[str, Any], legacy_auth: Dict[str, Any], env_vars: Mapping[str, str]
) -> Dict[str, Any]:
    password_env = env_conf.get("password_env")
    auth = {
        "identity_base_url": env_conf.get("identity_base_url") or legacy_auth.get("identity_base_url"),
        "realm": env_conf.get("realm") or legacy_auth.get("realm"),
        "grant_type": "password",
        "client_id": env_conf.get("client_id") or legacy_auth.get("client_id"),
        "username": env_conf.get("username") or legacy_auth.get("username"),
        "password": (password_env and env_vars.get(password_env)) or legacy_auth.get("password"),
    }
    missing = [k for k, v in auth.items() if not v]
    if missing:
        raise ConfigurationError(
            f"Incomplete password grant configuration; missing: {', '.join(missing)}"
        )
    return auth


def resolve_runtime(
    config: Dict[str, Any],
    targets: Dict[str, Any],
    args: Optional[Dict[str, Any]] = None,
    env_vars: Optional[Mapping[str, str]] = None,
    allow_prompt: bool = True,
    prompt: Optional[Prompt] = None,
) -> Dict[str, Any]:
    """
    Resolve ``{env_name, tenant_id, base_url, auth, queries, ...}`` for one run.

    Args:
        config:   Query document (``globals`` for legacy settings, ``queries``).
        targets:  Targets document with ``environments``.
        args:     CLI selections: ``env``, ``tenant``, ``query`` (list of names).
        env_vars: Environment mapping, ``os.environ`` by default.
        allow_prompt: Ask on the terminal when the choice is ambiguous.
        prompt:   Replacement for the terminal menu (same signature as
                  ``prompt_choice`` without ``input_fn``).
    """
    args = args or {}
    env_vars = os.environ if env_vars is None else env_vars
    legacy = config.get("globals") or {}
    legacy_auth = legacy.get("auth") or {}
    environments = targets.get("environments") or {}
    interactive = allow_prompt and (prompt is not None or is_interactive())
    ask = prompt or prompt_choice

    # ---------- environment ----------
    requested_env = (args.get("env") or env_vars.get(ENV_ENV_VAR) or "").strip()
    # An unknown requested name falls through to the single option or the prompt.
    env_name = match_key(requested_env, environments)
    env_opts = environment_options(environments)
    if not env_name and len(env_opts) == 1:
        env_name = env_opts[0][0]
    if not env_name and len(env_opts) > 1:
        if not interactive:
            problem = (
                f"environment '{requested_env}' is not configured"
                if requested_env
                else "none was chosen"
            )
            raise ConfigurationError(
                f"Several environments are configured and {problem}; choose one "
                f"with --env or {ENV_ENV_VAR}. Available: {', '.join(environments)}"
            )
        env_name = ask("Select the environment to use:", env_opts, None)
    if env_name and env_name not in environments:
        raise ConfigurationError(
            f"Environment '{env_name}' is not configured. "
            f"Available: {', '.join(environments) or 'none'}"
        )

    env_conf = environments.get(env_name) if env_name else None
    base_url = (env_conf or {}).get("api_base_url") or legacy.get("baseUrl")
    if not base_url:
        raise ConfigurationError(
            "Could not determine the base URL. Set globals.baseUrl or an "
            "environment api_base_url in the targets file."
        )

    # ---------- tenant ----------
    tenants = (env_conf or {}).get("tenants") or {}
    tenant_id = (
        args.get("tenant")
        or env_vars.get(TENANT_ENV_VAR)
        or (env_conf or {}).get("default_tenant_id")
        or legacy.get("tenant_id")
    )
    tenant_id = str(tenant_id).strip() if tenant_id is not None else None
    if tenant_id and tenants:
        tenant_id = match_key(tenant_id, tenants) or tenant_id
    if (not tenant_id or (tenants and tenant_id not in tenants)) and tenants and interactive:
        tenant_id = ask(
            "Select the tenant to use:",
            tenant_options(tenants),
            (env_conf or {}).get("default_tenant_id"),
        )
    if tenants and not tenant_id:
        raise ConfigurationError(
            f"A tenant is required for environment {env_name}. "
            f"Available: {', '.join(tenants)}"
        )
    tenant_conf = tenants.get(tenant_id) if tenant_id else None
    tenant_label = tenant_id

    # ---------- auth ----------
    auth_mode = (env_conf or {}).get("auth_mode")
    if auth_mode == "client_credentials":
        auth = _client_credentials_auth(env_name, env_conf, tenant_id, tenant_conf, env_vars)
        tenant_label = tenant_conf.get("label") or tenant_id
    elif auth_mode == "password":
        auth = _password_auth(env_conf, legacy_auth, env_vars)
    elif auth_mode:
        raise ConfigurationError(f"Unsupported auth_mode: {auth_mode}")
    else:
        auth = dict(legacy_auth)

    if not auth.get("client_id"):
        raise ConfigurationError("Could not determine the authentication configuration.")
    if not tenant_id:
        raise ConfigurationError(
            "Could not determine the tenant. Use --tenant or set a default in the "
            "targets file or globals.tenant_id."
        )

    return {
        "env_name": env_name or "default",
        "env_description": (env_conf or {}).get("description"),
        "env_config": env_conf,
        "tenant_id": tenant_id,
        "tenant_label": tenant_label,
        "tenant_config": tenant_conf,
        "base_url": base_url,
        "auth": auth,
        "queries": load_queries(config, only=args.get("query")),
    }


def runtime_cache_payload(runtime: Dict[str, Any]) -> Dict[str, Any]:
    auth = runtime["auth"]
    return {
        "envName": runtime["env_name"],
        "tenantId": runtime["tenant_id"],
        "baseUrl": runtime["base_url"],
        "timestamp": pd.Timestamp.now(tz="UTC").isoformat(),
        "auth": {
            "client_id": auth.get("client_id"),
            "client_secret": auth.get("client_secret"),
            "grant_type": auth.get("grant_type"),
            "token_url": auth.get("token_url"),
            "identity_base_url": auth.get("identity_base_url") or url_origin(auth.get("token_url")),
            "realm": auth.get("realm"),
            "scope": auth.get("scope"),
            "username": auth.get("username"),
            "password": auth.get("password"),
        },
        "tenantLabel": runtime.get("tenant_label"),
        "envDescription": runtime.get("env_description"),
    }


def save_runtime_cache(
    runtime: Dict[str, Any], path: Path = DEFAULT_RUNTIME_CACHE_FILE
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(runtime_cache_payload(runtime), indent=2), encoding="utf-8"
    )
    return path


def load_runtime_cache(
    path: Path = DEFAULT_RUNTIME_CACHE_FILE,
) -> Optional[Dict[str, Any]]:
    """Cached runtime record, or None when absent or incomplete."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigurationError(f"Runtime cache {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        return None
    if not data.get("baseUrl") or not (data.get("auth") or {}).get("client_id"):
        return None
    return data


def runtime_from_cache(cached: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a cache record like ``resolve_runtime`` output (without queries)."""
    auth = {k: v for k, v in (cached.get("auth") or {}).items() if v is not None}
    return {
        "env_name": cached.get("envName") or "default",
        "env_description": cached.get("envDescription"),
        "env_config": None,
        "tenant_id": cached.get("tenantId"),
        "tenant_label": cached.get("tenantLabel"),
        "tenant_config": None,
        "base_url": cached["baseUrl"],
        "auth": auth,
        "queries": [],
    }
