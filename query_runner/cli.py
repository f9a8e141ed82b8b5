import argparse
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from logger.basic_logger import setup_logger
from query_runner.config import ConfigReader, request_defaults
from query_runner.errors import AuthenticationError, ConfigurationError
from query_runner.postman_env import write_environment
from query_runner.query_runner import QueryRunner, summarize
from query_runner.runtime import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_RUNTIME_CACHE_FILE,
    DEFAULT_TARGETS_FILE,
    load_runtime_cache,
    resolve_runtime,
    runtime_from_cache,
    save_runtime_cache,
)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=str(DEFAULT_CONFIG_FILE), help="Query config (JSON or YAML)")
    common.add_argument("--targets", default=str(DEFAULT_TARGETS_FILE), help="Environments/tenants config")
    common.add_argument("--env", dest="env_name", help="Environment key under 'environments'")
    common.add_argument("--tenant", help="Tenant key under the chosen environment")
    common.add_argument("--runtime_cache", default=str(DEFAULT_RUNTIME_CACHE_FILE))
    common.add_argument("--env_file", default=".env", help="dotenv file loaded before resolution")
    common.add_argument("--no_prompt", action="store_true", help="Never ask on the terminal")
    common.add_argument("--log_level", default="INFO")
    common.add_argument("--extra_env", action="append", default=[], help="KEY=VALUE; repeatable")

    parser = argparse.ArgumentParser(
        prog="query-runner",
        description="Run configured API queries with token handling and pagination.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Execute the configured queries")
    run.add_argument("--output_dir", default="output")
    run.add_argument("--query", action="append", help="Only run this query; repeatable")

    pm = sub.add_parser(
        "postman-env", parents=[common], help="Write a Postman environment for the runtime"
    )
    pm.add_argument("--template", required=True, help="Postman environment template")
    pm.add_argument("--out", required=True, help="Generated environment file")

    return parser.parse_args(argv)


def _load_documents(args: argparse.Namespace, log):
    config = ConfigReader(log, Path(args.config)).load_configurations(optional=True).configs_data
    targets = ConfigReader(log, Path(args.targets)).load_configurations(optional=True).configs_data
    return config, targets


def _selection(args: argparse.Namespace) -> dict:
    return {
        "env": args.env_name,
        "tenant": args.tenant,
        "query": getattr(args, "query", None),
    }


def _run(args: argparse.Namespace, log) -> int:
    config, targets = _load_documents(args, log)
    runtime = resolve_runtime(
        config, targets, args=_selection(args), allow_prompt=not args.no_prompt
    )
    save_runtime_cache(runtime, Path(args.runtime_cache))

    runner = QueryRunner(
        runtime, log, output_dir=Path(args.output_dir), defaults=request_defaults(config)
    )
    results = runner.run()
    if results:
        log.info("[run] summary\n" + summarize(results).to_string(index=False))
    failed = [r["query"] for r in results if not r["ok"]]
    print(json.dumps({"status": "ok", "queries": len(results), "failed": failed}))
    return 0


def _postman_env(args: argparse.Namespace, log) -> int:
    config, targets = _load_documents(args, log)
    runtime = None
    if not (args.env_name or args.tenant):
        cached = load_runtime_cache(Path(args.runtime_cache))
        if cached:
            log.info(f"[postman] Using runtime cache {args.runtime_cache}")
            runtime = runtime_from_cache(cached)
    if runtime is None:
        runtime = resolve_runtime(
            config, targets, args=_selection(args), allow_prompt=not args.no_prompt
        )
        save_runtime_cache(runtime, Path(args.runtime_cache))

    derived_hosts = (targets.get("postman") or {}).get("hosts")
    write_environment(log, Path(args.template), Path(args.out), runtime, derived_hosts)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    log = setup_logger(getattr(logging, args.log_level.upper(), logging.INFO))

    for kv in args.extra_env:
        if "=" in kv:
            k, v = kv.split("=", 1)
            os.environ[k] = v
            log.info(f"Set env {k}")
    if args.env_file and Path(args.env_file).exists():
        load_dotenv(args.env_file)
        log.info(f"Loaded environment from {args.env_file}")

    try:
        if args.command == "run":
            return _run(args, log)
        return _postman_env(args, log)
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
    except AuthenticationError as e:
        log.error(f"Authentication failed: {e}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
