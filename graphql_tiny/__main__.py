from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from secrets import token_hex
from typing import Any

from graphql_tiny.api.client import GraphQLClient
from graphql_tiny.api.errors import ArgumentError, GraphQLTinyError
from graphql_tiny.config import ConfigError, load_config
from graphql_tiny.obs.logging import LogSettings, build_logger, log_event
from graphql_tiny.obs.metrics import write_http_metrics

EXIT_OK = 0
EXIT_REQUEST_ERROR = 1
EXIT_USAGE_ERROR = 2


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="GraphQL client with retries and pagination")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("execute", help="Execute a query or mutation")
    run_parser.add_argument("--config", required=True, help="Path to config YAML")
    run_parser.add_argument("--query", required=True, help="Path to file with the query text")
    run_parser.add_argument("--variables", help="Query variables as a JSON object")
    run_parser.add_argument("--paginate", choices=["after", "before"], help="Follow page cursors")
    run_parser.add_argument("--path", help="Dotted path to the paginated field, e.g. product.variants")
    run_parser.add_argument("--variable", help="Query variable receiving the cursor")
    run_parser.add_argument("--max-pages", type=int, help="Stop after this many pages")
    run_parser.add_argument("--metrics-out", help="Write HTTP metrics JSON to this file")
    run_parser.add_argument("--log-level", help="Logging level (overrides config)")

    return parser.parse_args(argv)


def generate_run_id() -> str:
    return token_hex(4)


def parse_path(value: str | None) -> list[Any] | None:
    if not value:
        return None
    parts: list[Any] = []
    for part in value.split("."):
        part = part.strip()
        if not part:
            continue
        parts.append(int(part) if part.lstrip("-").isdigit() else part)
    return parts or None


def _parse_variables(value: str | None) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        variables = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ArgumentError(f"--variables is not valid JSON: {exc}") from exc
    if not isinstance(variables, dict):
        raise ArgumentError("--variables must be a JSON object")
    return variables


def _emit(page: Any) -> None:
    sys.stdout.write(json.dumps(page, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    if args.command != "execute":
        raise ValueError(f"Unsupported command: {args.command}")

    run_id = generate_run_id()
    logger = build_logger(LogSettings(level="INFO", run_id=run_id, log_file=None, jsonl=True))

    try:
        loaded = load_config(Path(args.config))
    except ConfigError as exc:
        log_event(logger, 40, "config_invalid", str(exc))
        return EXIT_USAGE_ERROR

    logger = build_logger(
        LogSettings(
            level=(args.log_level or loaded.config.obs.log_level).upper(),
            run_id=run_id,
            log_file=None,
            jsonl=loaded.config.obs.log_jsonl,
        )
    )

    try:
        query = Path(args.query).read_text(encoding="utf-8")
    except OSError as exc:
        log_event(logger, 40, "query_unreadable", str(exc))
        return EXIT_USAGE_ERROR

    try:
        variables = _parse_variables(args.variables)
        client = GraphQLClient.from_config(loaded.config.client, logger=logger, run_id=run_id)
    except ArgumentError as exc:
        log_event(logger, 40, "arguments_invalid", str(exc))
        return EXIT_USAGE_ERROR

    exit_code = EXIT_OK
    with client:
        try:
            if args.paginate:
                pager = client.paginate(
                    args.paginate,
                    locator=parse_path(args.path),
                    variable=args.variable,
                    max_pages=args.max_pages,
                )
                pages = pager.execute(query, variables, _emit)
                log_event(logger, 20, "pagination_done", "Pagination finished", pages=pages)
            else:
                _emit(client.execute(query, variables))
        except ArgumentError as exc:
            log_event(logger, 40, "arguments_invalid", str(exc))
            exit_code = EXIT_USAGE_ERROR
        except GraphQLTinyError as exc:
            log_event(logger, 40, "request_failed", str(exc), error_type=type(exc).__name__)
            exit_code = EXIT_REQUEST_ERROR
        finally:
            if args.metrics_out:
                write_http_metrics(Path(args.metrics_out), client.metrics)

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
