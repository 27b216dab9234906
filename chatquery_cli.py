import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from chatquery.config import load_settings
from chatquery.errors import InputInvalid
from chatquery.export import filter_results, results_to_csv
from chatquery.ingest import parse_chat_csv, parse_query_csv
from chatquery.orchestrator import Processor, results_to_rows
from chatquery.schemas import Notice


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


async def _print_notice(notice: Notice) -> None:
    print(f"[{notice.level}] {notice.text}", file=sys.stderr)


def run_process(args: argparse.Namespace) -> int:
    settings = load_settings(Path(args.config) if args.config else None)
    try:
        messages = parse_chat_csv(Path(args.chat).read_text(encoding="utf-8-sig"))
        queries = parse_query_csv(Path(args.queries).read_text(encoding="utf-8-sig"))
    except InputInvalid as exc:
        print(exc.message, file=sys.stderr)
        return 1
    api_key = args.api_key or settings.openai_api_key
    processor = Processor(settings)
    results = asyncio.run(processor.process(messages, queries, api_key, on_notice=_print_notice))
    if results is None:
        return 1
    content = results_to_csv(filter_results(results_to_rows(results), args.search or ""))
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        print(f"Wrote {len(results)} sessions to {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(content)
    return 0


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        try:
            resp = client.get(_join_url(base, "/api/status"), timeout=10)
        except httpx.RequestError as exc:
            print(f"Failed to reach service: {exc}")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code}")
            return 1
        processing = resp.json().get("is_processing")
    print("Processing" if processing else "Idle")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat session query processor")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Answer queries for every session in a chat log")
    run.add_argument("--chat", required=True, help="Chat log CSV")
    run.add_argument("--queries", required=True, help="Query CSV")
    run.add_argument("--api-key", default=None, help="Completion service API key (defaults to settings)")
    run.add_argument("--output", default=None, help="Result CSV path (stdout when omitted)")
    run.add_argument("--search", default=None, help="Only export rows containing this text")
    run.add_argument("--config", default=None, help="Path to config.json")

    status = subparsers.add_parser("status", help="Show whether a running service is processing")
    status.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if args.command == "run":
        return run_process(args)
    if args.command == "status":
        return run_status(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
