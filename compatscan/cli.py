"""Command line entry point: ``compatscan serve`` and ``compatscan scan``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from compatscan.base.config import get_config, setup_logging
from compatscan.cortex.events import LifecycleEvent, ProgressEvent
from compatscan.server.state import build_runtime

logger = logging.getLogger(__name__)


def _payload_for(target: str, args) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if "://" in target or target.startswith("git@"):
        payload["repo_url"] = target
    else:
        payload["local_path"] = os.path.abspath(target)
    if args.branch:
        payload["branch"] = args.branch
    if args.exclude:
        payload["exclude_paths"] = args.exclude
    if args.browsers:
        payload["target_browsers"] = [b.strip() for b in args.browsers.split(",") if b.strip()]
    return payload


async def _scan(target: str, args) -> int:
    config = get_config()
    if not args.persist:
        config = replace(config, storage=replace(config.storage, persistence_enabled=False))
    runtime = build_runtime(config)

    def _print_progress(event: LifecycleEvent) -> None:
        if isinstance(event, ProgressEvent) and not args.quiet:
            print(f"[{event.progress:3d}%] {event.step}", file=sys.stderr)

    runtime.bus.subscribe(_print_progress)
    await runtime.start()
    try:
        job = runtime.scheduler.create_job(_payload_for(target, args))
        await runtime.scheduler.wait_idle()
        print(json.dumps({"scanId": job.id, "status": job.status.value, "result": job.result}, indent=2, default=str))
        return 0 if job.status.value == "done" else 1
    finally:
        await runtime.stop(cancel_running=True)


def run_serve(args) -> int:
    from compatscan.server.api import serve

    serve(host=args.host, port=args.port)
    return 0


def run_scan(args) -> int:
    setup_logging()
    return asyncio.run(_scan(args.target, args))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="compatscan", description="Browser compatibility scan orchestrator")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", help="Bind address (default from COMPATSCAN_API_HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default from COMPATSCAN_API_PORT)")
    serve_parser.set_defaults(func=run_serve)

    scan_parser = subparsers.add_parser("scan", help="Scan a local directory or git URL and print the result")
    scan_parser.add_argument("target", help="Local path or repository URL")
    scan_parser.add_argument("--branch", help="Branch to clone")
    scan_parser.add_argument("--exclude", action="append", help="Path substring to skip (repeatable)")
    scan_parser.add_argument("--browsers", help="Comma-separated target browsers")
    scan_parser.add_argument("--persist", action="store_true", help="Record the job in the SQLite store")
    scan_parser.add_argument("-q", "--quiet", action="store_true", help="Suppress progress output")
    scan_parser.set_defaults(func=run_scan)

    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
