from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

import requests

from .config import ArchiveConfig, SiteLimits
from .crawl import run_archive
from .errors import CheckpointWriteError, StorageError
from .models import Site

logger = logging.getLogger("rfa_archive.cli")


def _parse_month(text: str) -> tuple[int, int]:
    try:
        year_s, month_s = text.strip().split("-", 1)
        year, month = int(year_s), int(month_s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {text!r}") from None
    if not 1 <= month <= 12:
        raise argparse.ArgumentTypeError(f"month out of range in {text!r}")
    return year, month


def _parse_sites(values: list[str] | None) -> tuple[Site, ...]:
    if not values:
        return tuple(Site)
    sites: list[Site] = []
    for value in values:
        for name in value.split(","):
            if not name.strip():
                continue
            site = Site.parse(name)
            if site not in sites:
                sites.append(site)
    return tuple(sites)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rfa-archive",
        description="Archive Radio Free Asia editions: lists, pages and images",
    )
    parser.add_argument(
        "-w",
        "--site",
        dest="sites",
        action="append",
        default=None,
        help=(
            "Repeatable or comma separated; default is every edition: "
            + ",".join(s.value for s in Site)
        ),
    )
    parser.add_argument("-o", "--out", type=Path, default=Path("rfa_data"))
    parser.add_argument(
        "--proxy",
        default=None,
        help="Proxy for all requests (e.g. http://127.0.0.1:8089)",
    )
    parser.add_argument("--concurrency", type=int, default=4)
    parser.add_argument(
        "--per-site-delay",
        type=float,
        default=0.5,
        help="Minimum seconds between request starts to one site",
    )
    parser.add_argument("--timeout", type=float, default=30)
    parser.add_argument("--max-retries", type=int, default=4)
    parser.add_argument(
        "--checkpoint-interval",
        type=float,
        default=60.0,
        help="Seconds between full checkpoint snapshots; progress is journaled in between",
    )
    parser.add_argument("--since", type=_parse_month, default=(1998, 1))
    parser.add_argument("--until", type=_parse_month, default=None)
    parser.add_argument(
        "--no-resume",
        action="store_true",
        help="Ignore existing checkpoints and walk everything again",
    )
    parser.add_argument(
        "--no-retry-failed",
        action="store_true",
        help="On resume, do not retry URLs that failed transiently",
    )
    parser.add_argument("--no-progress", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        sites = _parse_sites(args.sites)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    if args.concurrency < 1:
        print("--concurrency must be at least 1", file=sys.stderr)
        return 2

    config = ArchiveConfig(
        out_dir=args.out,
        sites=sites,
        proxy=args.proxy,
        timeout_s=float(args.timeout),
        max_retries=int(args.max_retries),
        checkpoint_interval_s=float(args.checkpoint_interval),
        start_month=args.since,
        end_month=args.until,
        default_limits=SiteLimits(
            concurrency=int(args.concurrency),
            min_delay_s=float(args.per_site_delay),
        ),
        resume=not bool(args.no_resume),
        retry_failed=not bool(args.no_retry_failed),
        show_progress=not bool(args.no_progress),
    )

    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.warning("Signal %d received; finishing in-flight fetches", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    logger.info("Archiving %s into %s", ",".join(s.value for s in sites), args.out)
    try:
        summaries = run_archive(
            config, session=requests.Session(), stop_event=stop_event
        )
    except CheckpointWriteError as e:
        print(str(e), file=sys.stderr)
        return 3
    except StorageError as e:
        print(str(e), file=sys.stderr)
        return 3

    for name, summary in summaries.items():
        stats = summary["stats"]
        print(
            f"{name}: fetched={stats['fetched']} "
            f"skipped_duplicate={stats['skipped_duplicate']} "
            f"not_found={stats['not_found']} "
            f"parse_failed={stats['parse_failed']} "
            f"error={stats['error']}"
            + (" (stopped)" if summary["stopped"] else "")
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
