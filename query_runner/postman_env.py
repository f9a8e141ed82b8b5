import copy
import json
from pathlib import Path
from typing import Any, Dict, Optional

from query_runner.errors import ConfigurationError
from query_runner.runtime import url_origin, url_pathname

# Variables that may hold a token from an earlier session.
STALE_TOKEN_KEYS = (
    "token",
    "refresh_token",
    "access_token",
    "token_expires_at",
    "token_expiry",
)


def set_env_value(
    environment: Dict[str, Any], key: str, value: Any, kind: str = "default"
) -> None:
    values = environment.setdefault("values", [])
    for entry in values:
        if entry.get("key") == key:
            entry.update(value=value, type=kind, enabled=True)
            return
    values.append({"key": key, "value": value, "type": kind, "enabled": True})


def clear_env_value(environment: Dict[str, Any], key: str) -> None:
    set_env_value(environment, key, "")


def compute_host_map(
    base_url: str, derived_hosts: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """
    Hosts derived from the API base URL: its origin plus one URL per entry
    of ``derived_hosts`` (variable name -> path suffix on the origin).
    """
    origin = url_origin(base_url)
    if not origin:
        raise ConfigurationError(f"Invalid base URL: {base_url}")
    hosts = {"app_host": origin, "back_host": origin}
    for name, suffix in (derived_hosts or {}).items():
        hosts[name] = origin + "/" + str(suffix).lstrip("/")
    return hosts


def build_environment(
    template: Dict[str, Any],
    runtime: Dict[str, Any],
    derived_hosts: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    env = copy.deepcopy(template)
    auth = runtime["auth"]
    tenant_id = runtime["tenant_id"]
    env_name = runtime.get("env_name")

    suffix = f"Tenant {tenant_id}"
    if env_name:
        suffix = f"{env_name.upper()} - {suffix}"
    env["name"] = f"Runtime {suffix}"

    set_env_value(env, "baseUrl", runtime["base_url"])
    set_env_value(env, "api_base_url", runtime["base_url"])
    set_env_value(env, "tenant_id", tenant_id)
    set_env_value(env, "x_tenant_id", tenant_id)
    set_env_value(env, "client_id", auth.get("client_id"))
    if auth.get("client_secret"):
        set_env_value(env, "client_secret", auth["client_secret"], kind="secret")
    set_env_value(env, "auth_grant", auth.get("grant_type") or "client_credentials")
    for key in ("username", "password"):
        if auth.get(key):
            set_env_value(env, key, auth[key], kind="secret" if key == "password" else "default")
        else:
            clear_env_value(env, key)
    if auth.get("scope"):
        set_env_value(env, "scope", auth["scope"])

    identity_base = auth.get("identity_base_url") or url_origin(auth.get("token_url"))
    if identity_base:
        set_env_value(env, "identity_base_url", identity_base)
    if auth.get("realm"):
        set_env_value(env, "realm", auth["realm"])
    token_path = url_pathname(auth.get("token_url"))
    if token_path:
        set_env_value(env, "token_path", token_path)
    if auth.get("token_url"):
        set_env_value(env, "token_url", auth["token_url"])

    for key, value in compute_host_map(runtime["base_url"], derived_hosts).items():
        set_env_value(env, key, value)
    for key in STALE_TOKEN_KEYS:
        clear_env_value(env, key)
    return env


def write_environment(
    log,
    template_path: Path,
    out_path: Path,
    runtime: Dict[str, Any],
    derived_hosts: Optional[Dict[str, str]] = None,
) -> Path:
    try:
        template = json.loads(Path(template_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(
            f"Could not load the Postman environment template {template_path}: {e}"
        ) from e
    env = build_environment(template, runtime, derived_hosts)
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(env, indent=2), encoding="utf-8")
    log.info(f"[postman] Wrote environment '{env['name']}' to {out_path}")
    return out_path
