# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HAR capturer CLI: load URLs in a remote Chromium and write a HAR file.

Usage:
    harcapturer [options] URL [URL ...]
    python -m harcapturer.cli --config capture.yaml --summary -o out.har

Chromium must be listening for DevTools connections, e.g.
``chromium --remote-debugging-port=9222 --enable-benchmarking --enable-net-benchmarking``,
or pass ``--launch`` to start a headless one.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, TextIO

from . import __version__, har
from .capturer import Capturer
from .errors import CaptureError, OptionsError
from .events import CONNECT, ERROR, PAGE_END, PAGE_ERROR, PAGE_START, CallbackSink
from .options import CaptureOptions, load_config

logger = logging.getLogger(__name__)


def _require_cli_deps(*names: str) -> None:
    """Check that CLI optional dependencies are installed."""
    for name in names:
        try:
            __import__(name)
        except ImportError as e:
            print(
                f"Missing CLI dependency: {e.name}\nInstall with: pip install harcapturer[cli]",
                file=sys.stderr,
            )
            sys.exit(1)


def _read_script(value: str | None) -> str | None:
    """``@path`` reads the script from a file, anything else is the script."""
    if not value:
        return None
    if value.startswith("@"):
        path = Path(value[1:])
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise OptionsError(f"Cannot read prepare script {path}: {exc}") from exc
    return value


def build_options(args: argparse.Namespace, base: CaptureOptions | None = None) -> CaptureOptions:
    """Apply command line flags on top of ``base`` (config file or defaults)."""
    base = base or CaptureOptions()
    overrides: dict[str, Any] = {}
    flag_map = {
        "host": "host",
        "port": "port",
        "agent": "user_agent",
        "delay": "on_load_delay",
        "last_response_delay": "on_last_response_delay",
        "give_up": "give_up_time",
    }
    for flag, field_name in flag_map.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field_name] = value
    switches = (("content", "fetch_content"), ("force", "force"), ("cache", "cache"), ("launch", "launch"))
    for flag, field_name in switches:
        if getattr(args, flag, False):
            overrides[field_name] = True
    prepare = _read_script(getattr(args, "prepare", None))
    if prepare:
        overrides["prepare"] = prepare
    return base.replace(**overrides) if overrides else base


def progress_sink(stream: TextIO) -> CallbackSink:
    """Per-page status lines for a terminal."""
    sink = CallbackSink()
    sink.on(CONNECT, lambda: print("Connected to browser", file=stream))
    sink.on(PAGE_START, lambda url: print(f"  … {url}", file=stream))
    sink.on(PAGE_END, lambda url: print(f"  ✓ {url}", file=stream))
    sink.on(PAGE_ERROR, lambda url: print(f"  ✗ {url}", file=stream))
    sink.on(ERROR, lambda err: print(f"Error: {err}", file=stream))
    return sink


def summary_table(capturer: Capturer) -> str:
    from tabulate import tabulate

    rows = []
    for record, state in zip(capturer.records, capturer.outcomes, strict=False):
        tracker = record.tracker
        on_load = har.page_to_har(record)["pageTimings"]["onLoad"]
        rows.append(
            [
                record.index,
                record.url,
                state,
                sum(1 for e in tracker.entries if e.complete),
                "-" if on_load < 0 else f"{on_load:.0f}",
            ]
        )
    return tabulate(rows, headers=["#", "URL", "Outcome", "Entries", "onLoad (ms)"], tablefmt="simple")


def run_capture(args: argparse.Namespace) -> int:
    import asyncio

    urls: list[str] = []
    base = None
    if args.config:
        _require_cli_deps("yaml")
        urls, base = load_config(args.config)
    urls.extend(args.urls)
    if not urls:
        print("Error: no URLs given (pass URLs or --config FILE).", file=sys.stderr)
        return 2

    options = build_options(args, base)
    if args.summary:
        _require_cli_deps("tabulate")

    capturer = Capturer(urls, options, progress_sink(sys.stderr))
    report = asyncio.run(capturer.run())
    if report is None:
        return 1

    if args.output:
        har.save(report, args.output)
    else:
        json.dump(report, sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")

    if args.summary:
        print("\n" + summary_table(capturer), file=sys.stderr)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Capture HAR files from a remote Chromium instance",
        prog="harcapturer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  %(prog)s https://example.com                      HAR to stdout
  %(prog)s -o out.har -g 30 https://a.test https://b.test
  %(prog)s --launch -c --summary https://example.com
  %(prog)s --config capture.yaml -x @prepare.js""",
    )
    parser.add_argument("urls", nargs="*", metavar="URL", help="URLs to load, in order")
    parser.add_argument("-t", "--host", type=str, help="DevTools host (default: localhost)")
    parser.add_argument("-p", "--port", type=int, help="DevTools port (default: 9222)")
    parser.add_argument("--launch", action="store_true", help="Launch a local headless Chromium")
    parser.add_argument("-o", "--output", type=str, metavar="FILE", help="Write HAR to FILE (default: stdout)")
    parser.add_argument("-c", "--content", action="store_true", help="Store response bodies")
    parser.add_argument("-a", "--agent", type=str, metavar="UA", help="User-Agent override")
    parser.add_argument("-d", "--delay", type=int, metavar="MS", help="Settle time after the load event (ms)")
    parser.add_argument(
        "-l", "--last-response-delay", type=int, metavar="MS", help="Quiet time after the last response (ms)"
    )
    parser.add_argument("-g", "--give-up", type=float, metavar="SEC", help="Give up on a page after SEC seconds")
    parser.add_argument("-f", "--force", action="store_true", help="Continue when connection cleanup fails")
    parser.add_argument("-x", "--prepare", type=str, metavar="JS", help="Script run after each page (@file to read)")
    parser.add_argument("--cache", action="store_true", help="Keep the browser HTTP cache enabled")
    parser.add_argument("--config", type=str, metavar="FILE", help="YAML file with 'urls' and 'options'")
    parser.add_argument("--summary", action="store_true", help="Print a per-page table on stderr")
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    from .logging_config import configure as configure_logging

    configure_logging(json_output=args.json_logs, level="DEBUG" if args.verbose else "WARNING")

    try:
        code = run_capture(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except SystemExit:
        raise
    except CaptureError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2 if isinstance(e, OptionsError) else 1)
    except Exception as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
