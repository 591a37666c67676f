"""CLI entry point for the stream watchdog.

Watches one or more camera feeds for a while, logging every connection
transition, then prints a status report.

    python -m feed_watchdog.main \\
        --base-url http://127.0.0.1:5000 \\
        --feed feed_1 --feed feed_2 \\
        --duration 60
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from feed_watchdog.config import (
    BASE_DELAY_MS,
    LOAD_TIMEOUT_S,
    MAX_ATTEMPTS,
    STALE_TIMEOUT_MS,
    WatchdogConfig,
)
from feed_watchdog.loader import MjpegLoader
from feed_watchdog.models import StreamStatus
from feed_watchdog.stream import LiveStream

log = logging.getLogger(__name__)


# ── Watch loop ───────────────────────────────────────────────────────────────

async def watch_feeds(
    base_url: str,
    feed_ids: list[str],
    config: WatchdogConfig,
    duration: float,
    decode: bool = True,
    timeout: float = LOAD_TIMEOUT_S,
) -> list[StreamStatus]:
    """Run one `LiveStream` per feed for *duration* seconds and return the final statuses."""
    loader = MjpegLoader(timeout=timeout, decode=decode)

    def _log_change(status: StreamStatus) -> None:
        log.info(
            "%-10s %-12s attempts=%d/%d",
            status.feed_id, status.state.value, status.attempts, status.max_attempts,
        )

    def _log_failure(status: StreamStatus) -> None:
        log.error("%s gave up; stream unavailable", status.feed_id)

    streams = [
        LiveStream(
            feed_id, base_url, loader, config,
            on_change=_log_change, on_failure=_log_failure,
        )
        for feed_id in feed_ids
    ]
    try:
        for stream in streams:
            stream.start()
        await asyncio.sleep(duration)
        return [stream.status() for stream in streams]
    finally:
        for stream in streams:
            await stream.close()
        await loader.aclose()


# ── Text report formatter ────────────────────────────────────────────────────

SEPARATOR = "=" * 72


def format_report(statuses: list[StreamStatus]) -> str:
    lines: list[str] = [SEPARATOR, "  LIVE FEED WATCHDOG — STREAM STATUS", SEPARATOR, ""]
    if not statuses:
        lines.append("  No feeds watched.")
    for s in statuses:
        lines.append(f"  [{s.label}] {s.feed_id}  ({s.state.value})")
        lines.append(f"        Attempts: {s.attempts}/{s.max_attempts}")
        if s.last_activity is not None:
            lines.append(f"        Last activity: {s.last_activity:%H:%M:%S}")
        if s.last_failure is not None:
            lines.append(f"        Last failure: {s.last_failure.value}")
        lines.append(f"        URL: {s.url}")
        lines.append("")
    lines.append(SEPARATOR)
    return "\n".join(lines)


# ── CLI ──────────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Live feed stream watchdog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--base-url", required=True,
        help="Backend base URL serving /api/video/stream/<feed_id>",
    )
    parser.add_argument(
        "--feed", action="append", dest="feeds", default=[],
        help="Feed id to watch (repeatable)",
    )
    parser.add_argument(
        "--max-attempts", type=int, default=MAX_ATTEMPTS,
        help=f"Automatic reconnects before giving up (default: {MAX_ATTEMPTS})",
    )
    parser.add_argument(
        "--base-delay-ms", type=float, default=BASE_DELAY_MS,
        help=f"Backoff unit in milliseconds (default: {BASE_DELAY_MS})",
    )
    parser.add_argument(
        "--stale-timeout-ms", type=float, default=STALE_TIMEOUT_MS,
        help=f"Inactivity threshold in milliseconds (default: {STALE_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--duration", type=float, default=30.0,
        help="How long to watch, in seconds (default: 30)",
    )
    parser.add_argument(
        "--no-decode", action="store_true",
        help="Skip decoding frames with OpenCV",
    )
    parser.add_argument(
        "--json-output", action="store_true",
        help="Print raw JSON status instead of formatted report",
    )
    args = parser.parse_args(argv)

    if not args.feeds:
        print("Error: provide at least one --feed <id>", file=sys.stderr)
        sys.exit(1)
    if args.duration <= 0:
        print("Error: --duration must be positive", file=sys.stderr)
        sys.exit(1)

    try:
        config = WatchdogConfig(
            max_attempts=args.max_attempts,
            base_delay_ms=args.base_delay_ms,
            stale_timeout_ms=args.stale_timeout_ms,
        )
    except ValidationError as exc:
        print(f"Error: invalid watchdog settings:\n{exc}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(name)-20s  %(message)s")

    try:
        statuses = asyncio.run(
            watch_feeds(
                args.base_url, args.feeds, config, args.duration,
                decode=not args.no_decode,
            )
        )
    except KeyboardInterrupt:
        print("\n  Watch interrupted.", file=sys.stderr)
        sys.exit(130)

    if args.json_output:
        print(json.dumps([s.model_dump(mode="json") for s in statuses], indent=2))
    else:
        print(format_report(statuses))


if __name__ == "__main__":
    main()
